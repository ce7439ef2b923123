from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, TYPE_CHECKING
import asyncio
import json
import logging
import shutil
import subprocess

from app.auto_start import AutoStartOptions, auto_start
from app.hardware import HardwareProfile, probe_system
from app.llama_bootstrap import (
    ensure_model,
    ensure_runtime,
    find_llama_bench,
    find_llama_server,
    runtime_dir,
)
from app.tier_selection import clamp_gpu_layers_by_vram, recommend, tier_from_benchmark
from config.compute_config import ComputeConfig
from config.llm_models import (
    DEFAULT_MODEL_ID,
    model_candidate_paths,
    model_file_path,
    model_id_for_file_name,
    sanitize_model_id,
)
from config.tier_config import TierConfig
from helpers.archive import copy_gguf, extract_archive
from interfaces.llm.status import RuntimeStatus, ServerStatus
from interfaces.model.registry import ModelInfo
from interfaces.model.selection import AutoStartResult, BenchmarkResult, Recommendation
from llm.errors import (
    LlmSetupError,
    ModelNotFoundError,
    ResourceBusyError,
    RuntimeUnavailable,
)

if TYPE_CHECKING:
    import httpx

    from interfaces.progress.sink import ProgressSink
    from llm.supervisor import BuiltinLlmSupervisor

logger = logging.getLogger(__name__)

_MAX_IMPORT_SUFFIX = 999


def parse_bench_output(stdout: str) -> tuple[float, int, int]:
    """(tokens/s, generated tokens, elapsed ms) from `llama-bench -o json` output."""
    try:
        results = json.loads(stdout.strip())
    except json.JSONDecodeError as e:
        raise LlmSetupError(f"failed to parse llama-bench JSON: {e}\nstdout: {stdout}") from e
    if not isinstance(results, list):
        raise LlmSetupError("llama-bench JSON is not a list")

    gen = next(
        (r for r in results if isinstance(r, dict) and int(r.get("n_gen") or 0) > 0),
        None,
    )
    if gen is None:
        raise LlmSetupError("no generation benchmark result in llama-bench output")

    tps = float(gen.get("avg_ts") or 0.0)
    n_gen = int(gen.get("n_gen") or 0)
    elapsed_ms = int(float(gen.get("avg_ns") or 0.0) / 1_000_000)
    if tps <= 0.0:
        raise LlmSetupError("llama-bench returned 0 tok/s")
    return tps, n_gen, elapsed_ms


@dataclass
class BuiltinLlmService:
    """
    Everything a UI can ask of the built-in LLM. Thin layer over the
    supervisor, the acquisition helpers and the tier selector.
    """
    supervisor: "BuiltinLlmSupervisor"
    tiers: TierConfig = field(default_factory=TierConfig)
    prober: Optional[Callable[[], HardwareProfile]] = None
    run_command: Callable[..., Any] = subprocess.run

    @property
    def paths(self):
        return self.supervisor.paths

    # ---- queries ----

    def probe(self) -> HardwareProfile:
        if self.prober is not None:
            return self.prober()
        return probe_system(self.supervisor.platform, self.tiers)

    def recommend(
        self,
        preferred_tier: Optional[str] = None,
        preferred_compute: Optional[str] = None,
        cuda_version: Optional[str] = None,
    ) -> Recommendation:
        return recommend(self.probe(), preferred_tier, preferred_compute, cuda_version, self.tiers)

    def status(self, model_id: Optional[str] = None, config: ComputeConfig | None = None) -> ServerStatus:
        return self.supervisor.status(sanitize_model_id(model_id), config)

    def runtime_status(self, config: ComputeConfig | None = None) -> RuntimeStatus:
        config = config or ComputeConfig()
        rt = runtime_dir(self.paths.llm_dir, config)
        return RuntimeStatus(
            installed=find_llama_server(rt) is not None,
            runtime_dir=str(rt),
            compute_mode=config.compute_mode.value,
            gpu_backend=config.gpu_backend.value,
            cuda_version=config.cuda_version.value,
        )

    def is_bundled_only(self) -> bool:
        return self.supervisor.platform.is_bundled_runtime_only()

    def list_models(self) -> list[ModelInfo]:
        models_dir = self.paths.models_dir
        models_dir.mkdir(parents=True, exist_ok=True)
        out: list[ModelInfo] = []
        for path in models_dir.iterdir():
            if not path.is_file() or path.suffix.lower() != ".gguf":
                continue
            try:
                size = path.stat().st_size
            except OSError:
                continue
            out.append(ModelInfo(model_id=model_id_for_file_name(path.name), file_name=path.name, size=size))
        out.sort(key=lambda m: m.model_id)
        return out

    # ---- downloads ----

    def cancel_download(self) -> None:
        logger.info("Download cancel requested")
        self.supervisor.cancel.set()

    async def install_runtime(
        self,
        config: ComputeConfig,
        *,
        runtime_url: Optional[str] = None,
        cudart_url: Optional[str] = None,
        sink: "ProgressSink | None" = None,
        client: "httpx.AsyncClient | None" = None,
    ) -> Path:
        self.supervisor.cancel.clear()
        return await ensure_runtime(
            self.paths, config,
            platform=self.supervisor.platform,
            download=self.supervisor.download,
            sink=sink,
            cancel=self.supervisor.cancel,
            runtime_url=runtime_url,
            cudart_url=cudart_url,
            client=client,
        )

    async def install(
        self,
        model_id: Optional[str],
        config: ComputeConfig,
        allow_download: bool = True,
        *,
        model_url: Optional[str] = None,
        runtime_url: Optional[str] = None,
        cudart_url: Optional[str] = None,
        sink: "ProgressSink | None" = None,
        client: "httpx.AsyncClient | None" = None,
    ) -> ServerStatus:
        """Runtime first, then the model. Nothing is started."""
        model_id = sanitize_model_id(model_id)
        await self.install_runtime(config, runtime_url=runtime_url, cudart_url=cudart_url, sink=sink, client=client)
        await ensure_model(
            self.paths, model_id, allow_download,
            download=self.supervisor.download,
            sink=sink,
            cancel=self.supervisor.cancel,
            model_url=model_url,
            client=client,
        )
        return self.status(model_id, config)

    # ---- lifecycle ----

    async def ensure_running(
        self,
        model_id: Optional[str],
        config: ComputeConfig,
        allow_download: bool = True,
        *,
        model_url: Optional[str] = None,
        runtime_url: Optional[str] = None,
        cudart_url: Optional[str] = None,
        sink: "ProgressSink | None" = None,
        client: "httpx.AsyncClient | None" = None,
    ) -> ServerStatus:
        self.supervisor.cancel.clear()
        return await self.supervisor.ensure_running(
            config, sanitize_model_id(model_id), allow_download,
            sink=sink, model_url=model_url, runtime_url=runtime_url, cudart_url=cudart_url, client=client,
        )

    async def stop(self, model_id: Optional[str] = None, config: ComputeConfig | None = None) -> ServerStatus:
        await self.supervisor.stop()
        return self.status(model_id, config)

    async def auto_start(
        self,
        options: AutoStartOptions | None = None,
        *,
        sink: "ProgressSink | None" = None,
        client: "httpx.AsyncClient | None" = None,
    ) -> AutoStartResult:
        self.supervisor.cancel.clear()
        profile = await asyncio.to_thread(self.probe)
        return await auto_start(self.supervisor, profile, options, tiers=self.tiers, sink=sink, client=client)

    # ---- model files ----

    def _import_target(self, model_id: str) -> Path:
        desired = model_file_path(self.paths.models_dir, model_id)
        if not desired.exists():
            return desired
        stem = desired.stem or "model"
        for i in range(1, _MAX_IMPORT_SUFFIX + 1):
            cand = desired.with_name(f"{stem}-{i}.gguf")
            if not cand.exists():
                return cand
        return desired

    async def import_model(self, source: str | Path, model_id: Optional[str] = None) -> ServerStatus:
        """
        Copy a user-supplied GGUF into the models directory. Existing files are
        never overwritten; the copy gets a -1, -2, ... suffix instead.
        """
        src = Path(source).expanduser()
        if not src.is_file():
            raise FileNotFoundError(f"Model file not found: {src}")
        if not (model_id or "").strip():
            model_id = src.stem
        model_id = sanitize_model_id(model_id)

        target = self._import_target(model_id)
        target.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Importing model %s as %s", src, target.name)
        await asyncio.to_thread(copy_gguf, src, target, "imported model")
        return self.status(model_id)

    def delete_model(self, model_id: Optional[str]) -> None:
        model_id = sanitize_model_id(model_id)
        if self.supervisor.is_running() and self.supervisor.running_model_id() == model_id:
            raise ResourceBusyError("Cannot delete a model that is currently running. Stop it first.")

        deleted = False
        for cand in model_candidate_paths(self.paths.models_dir, model_id):
            if cand.exists():
                cand.unlink()
                logger.info("Deleted model file %s", cand)
                deleted = True
        if not deleted:
            raise ModelNotFoundError(f"Model file not found for '{model_id}'")

    # ---- runtime files ----

    async def import_runtime(self, archives: Iterable[str | Path], config: ComputeConfig) -> Path:
        rt = runtime_dir(self.paths.llm_dir, config)
        rt.mkdir(parents=True, exist_ok=True)
        for archive in archives:
            await asyncio.to_thread(extract_archive, Path(archive).expanduser(), rt)

        server = find_llama_server(rt)
        if server is None:
            raise RuntimeUnavailable(
                "Imported zip(s) do not contain llama-server. For CUDA, import both the llama zip and cudart zip."
            )
        return server

    async def delete_runtime(self, config: ComputeConfig) -> None:
        server = self.supervisor.server
        if self.supervisor.is_running():
            await self.supervisor.stop()
            # file handles on Windows are released a moment after the process dies
            await asyncio.sleep(server.delete_retry_delay_s)

        rt = runtime_dir(self.paths.llm_dir, config)
        if not rt.exists():
            return
        last_err: Optional[OSError] = None
        for attempt in range(server.delete_retry_attempts):
            try:
                await asyncio.to_thread(shutil.rmtree, rt)
                logger.info("Deleted runtime %s", rt)
                return
            except OSError as e:
                last_err = e
                logger.warning("Deleting %s failed (attempt %s): %s", rt, attempt + 1, e)
                if attempt + 1 < server.delete_retry_attempts:
                    await asyncio.sleep(server.delete_retry_delay_s)
        raise LlmSetupError(f"Failed to delete runtime dir: {last_err}")

    # ---- benchmark ----

    def _run_bench(self, bench: Path, model: Path, rt: Path, ngl: int) -> subprocess.CompletedProcess:
        server = self.supervisor.server
        cmd = [
            str(bench),
            "-m", str(model),
            "-p", "0",
            "-n", str(server.bench_n_gen),
            "-r", str(server.bench_repetitions),
            "-ngl", str(ngl),
            "-o", "json",
        ]
        logger.info("Running benchmark: %s", cmd)
        try:
            return self.run_command(
                cmd,
                capture_output=True,
                text=True,
                **self.supervisor.platform.popen_kwargs(bench, rt),
            )
        except OSError as e:
            raise LlmSetupError(f"failed to run llama-bench: {e}") from e

    async def benchmark(self, config: ComputeConfig) -> BenchmarkResult:
        """
        Measure generation speed of the smallest model with llama-bench and map
        it to a tier. GPU runs need the GPU runtime; the CPU build would
        silently ignore -ngl.
        """
        rt = runtime_dir(self.paths.llm_dir, config)
        bench = find_llama_bench(rt)
        if bench is None:
            variant = "CPU" if not config.uses_gpu else config.gpu_backend.value
            raise RuntimeUnavailable(f"llama-bench not found in {rt}. Please install the {variant} runtime first.")

        model = model_file_path(self.paths.models_dir, DEFAULT_MODEL_ID)
        if not model.exists():
            raise ModelNotFoundError("Benchmark model (Qwen3-0.6B) not installed")

        profile = await asyncio.to_thread(self.probe)
        ngl = clamp_gpu_layers_by_vram(config.n_gpu_layers(), profile.vram_bytes, self.tiers) if config.uses_gpu else 0

        out = await asyncio.to_thread(self._run_bench, bench, model, rt, ngl)
        if out.returncode != 0 and not (out.stdout or "").strip():
            last = (out.stderr or "").strip().splitlines()
            raise LlmSetupError(f"llama-bench failed (exit {out.returncode}): {last[-1] if last else ''}")

        tps, n_gen, elapsed_ms = parse_bench_output(out.stdout)
        tier, model_id = tier_from_benchmark(tps, profile, config.compute_mode, self.tiers)
        logger.info("Benchmark: %.1f tok/s -> tier %s (%s)", tps, tier, model_id)
        return BenchmarkResult(
            tokens_per_second=tps,
            completion_tokens=n_gen,
            elapsed_ms=elapsed_ms,
            recommended_tier=tier,
            recommended_model_id=model_id,
        )
