from __future__ import annotations

from pathlib import Path
from typing import Optional, TYPE_CHECKING
import asyncio
import logging
import os
import shutil
import threading

from platformdirs import user_data_dir

from config.compute_config import ComputeConfig, ComputeMode, GpuBackend
from config.download_config import DownloadConfig
from config.llm_models import (
    GGUF_MAGIC,
    is_builtin_model_id,
    model_candidate_paths,
    model_file_name,
    model_file_path,
    model_urls,
)
from config.paths_config import LlmPathsConfig
from helpers.archive import copy_gguf, extract_archive, file_starts_with, find_file
from helpers.downloader import download_to_file
from helpers.platforms import current_platform
from llm.errors import (
    DownloadCancelled,
    LlmSetupError,
    ModelIntegrityError,
    ModelNotFoundError,
    RuntimeUnavailable,
)

if TYPE_CHECKING:
    import httpx

    from interfaces.platform.capabilities import PlatformCapabilities
    from interfaces.progress.sink import ProgressSink

logger = logging.getLogger(__name__)

SERVER_NAMES = ("llama-server.exe", "server.exe", "llama-server", "server")
BENCH_NAMES = ("llama-bench.exe", "llama-bench")

RUNTIME_DOWNLOAD_LABEL = "Downloading LLM runtime"
RUNTIME_EXTRACT_LABEL = "Extracting LLM runtime"
CUDART_DOWNLOAD_LABEL = "Downloading CUDA runtime"
CUDART_EXTRACT_LABEL = "Extracting CUDA runtime"


_TRUTHY = frozenset({"1", "true", "yes", "on"})


def get_app_base_dir(app_name: str, org: str) -> Path:
    """
    Root under which runtimes and models are stored.

    APP_DATA_DIR wins outright. A truthy DEV_MODE keeps everything in
    `<checkout>/.appdata`.
    Otherwise the platformdirs user data directory for `app_name`/`org`.
    """
    explicit = os.environ.get("APP_DATA_DIR", "").strip()
    if explicit:
        return Path(explicit).expanduser().resolve()

    if os.environ.get("DEV_MODE", "").strip().lower() in _TRUTHY:
        checkout = Path(__file__).resolve().parent.parent
        return checkout / ".appdata"

    return Path(user_data_dir(appname=app_name, appauthor=org)).resolve()


# cpu ignores the backend; gpu/hybrid get one directory per backend (and per CUDA version)
def runtime_dir(llm_dir: Path, config: ComputeConfig) -> Path:
    base = llm_dir / "runtime"
    if not config.uses_gpu:
        return base / "cpu"
    if config.gpu_backend is GpuBackend.CUDA:
        return base / f"cuda-{config.cuda_version.value}"
    if config.gpu_backend is GpuBackend.METAL:
        return base / "metal"
    return base / "vulkan"


def find_llama_server(runtime: Path) -> Optional[Path]:
    return find_file(runtime, SERVER_NAMES)


def find_llama_bench(runtime: Path) -> Optional[Path]:
    return find_file(runtime, BENCH_NAMES)


def runtime_installed(llm_dir: Path, config: ComputeConfig) -> bool:
    return find_llama_server(runtime_dir(llm_dir, config)) is not None


# Older releases unpacked the CPU runtime straight into runtime/
def migrate_legacy_runtime(llm_dir: Path) -> None:
    legacy = llm_dir / "runtime"
    target = legacy / "cpu"
    if find_llama_server(target) is not None:
        return
    if not any((legacy / n).is_file() for n in SERVER_NAMES):
        return
    target.mkdir(parents=True, exist_ok=True)
    logger.info("Migrating legacy CPU runtime from %s to %s", legacy, target)
    for entry in legacy.iterdir():
        if entry.is_file():
            try:
                entry.replace(target / entry.name)
            except OSError as e:
                logger.warning("Could not move %s: %s", entry, e)


def _copy_tree_best_effort(src: Path, dst: Path) -> None:
    for dirpath, _dirnames, filenames in os.walk(src):
        rel = Path(dirpath).relative_to(src)
        for fname in filenames:
            out = dst / rel / fname
            try:
                out.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(Path(dirpath) / fname, out)
            except OSError as e:
                logger.warning("Could not copy bundled file %s: %s", Path(dirpath) / fname, e)


def _first_existing(candidates: list[Path]) -> Optional[Path]:
    return next((c for c in candidates if c.exists()), None)


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)


async def _extract(
    archive: Path,
    dest: Path,
    sink: "ProgressSink | None",
    label: str,
    download: DownloadConfig,
) -> None:
    await asyncio.to_thread(
        extract_archive,
        archive,
        dest,
        sink=sink,
        label=label,
        interval_s=download.extract_progress_interval_s,
    )


async def _ensure_cudart(
    paths: LlmPathsConfig,
    rt: Path,
    cudart_name: str,
    *,
    download: DownloadConfig,
    sink: "ProgressSink | None",
    cancel: Optional[threading.Event],
    cudart_url: Optional[str],
    client: "httpx.AsyncClient | None",
    allow_download: bool = True,
) -> None:
    """
    Put the CUDA runtime libraries (cuBLAS etc.) next to the server. Best effort:
    the server still starts without them, it just falls back to the CPU.
    """
    bundled = _first_existing(paths.bundled_candidates("runtime", cudart_name))
    if bundled is not None:
        try:
            await _extract(bundled, rt, sink, CUDART_EXTRACT_LABEL, download)
            return
        except (LlmSetupError, OSError) as e:
            logger.warning("Failed to extract bundled cudart from %s: %s", bundled, e)
    if not allow_download:
        return

    urls = [cudart_url] if cudart_url else download.runtime_urls(cudart_name)
    archive = rt / cudart_name
    try:
        await download_to_file(
            urls, archive, CUDART_DOWNLOAD_LABEL,
            sink=sink, cancel=cancel, config=download, client=client,
        )
        await _extract(archive, rt, sink, CUDART_EXTRACT_LABEL, download)
    except DownloadCancelled:
        raise
    except (LlmSetupError, OSError) as e:
        logger.warning("Failed to install cudart (CUDA may fall back to CPU): %s", e)
    finally:
        _remove_quietly(archive)


async def ensure_runtime(
    paths: LlmPathsConfig,
    config: ComputeConfig,
    *,
    platform: "PlatformCapabilities | None" = None,
    download: DownloadConfig | None = None,
    sink: "ProgressSink | None" = None,
    cancel: Optional[threading.Event] = None,
    runtime_url: Optional[str] = None,
    cudart_url: Optional[str] = None,
    client: "httpx.AsyncClient | None" = None,
) -> Path:
    """
    Make sure a llama-server for `config` is installed and return its path.

    Sources, in order: already installed, bundled directory, bundled archive,
    download. Systems that cannot run the official builds never download.
    """
    plat = platform or current_platform()
    download = download or DownloadConfig()
    rt = runtime_dir(paths.llm_dir, config)

    if config.compute_mode is ComputeMode.CPU:
        migrate_legacy_runtime(paths.llm_dir)

    cudart_name = plat.cudart_archive_name(config)

    server = find_llama_server(rt)
    if server is not None:
        if cudart_name and not plat.cuda_libraries_present(rt):
            logger.warning("CUDA server found but cuBLAS libraries missing in %s; repairing", rt)
            await _ensure_cudart(
                paths, rt, cudart_name,
                download=download, sink=sink, cancel=cancel, cudart_url=cudart_url, client=client,
                allow_download=not plat.is_bundled_runtime_only(),
            )
        return server

    rt.mkdir(parents=True, exist_ok=True)

    for bundled in paths.bundled_candidates("runtime", rt.name):
        if not bundled.is_dir():
            continue
        logger.info("Copying bundled runtime from %s", bundled)
        await asyncio.to_thread(_copy_tree_best_effort, bundled, rt)
        server = find_llama_server(rt)
        if server is not None:
            return server

    archive_name = plat.runtime_archive_name(config, download.release)
    bundled_archives = [p for p in paths.bundled_candidates("runtime", archive_name) if p.exists()]
    if bundled_archives and cudart_name:
        await _ensure_cudart(
            paths, rt, cudart_name,
            download=download, sink=sink, cancel=cancel, cudart_url=cudart_url, client=client,
            allow_download=False,
        )
    for bundled in bundled_archives:
        await _extract(bundled, rt, sink, RUNTIME_EXTRACT_LABEL, download)
        server = find_llama_server(rt)
        if server is not None:
            return server

    if plat.is_bundled_runtime_only():
        raise RuntimeUnavailable(
            f"Bundled LLM runtime not found for {config.compute_mode.value} / {config.gpu_backend.value}. "
            "This system (glibc < 2.34) cannot use downloaded runtimes; they were compiled for newer systems. "
            "Please re-install the application or contact support."
        )

    if cudart_name:
        await _ensure_cudart(
            paths, rt, cudart_name,
            download=download, sink=sink, cancel=cancel, cudart_url=cudart_url, client=client,
        )

    urls = [runtime_url] if runtime_url else download.runtime_urls(archive_name)
    archive = rt / archive_name
    await download_to_file(
        urls, archive, RUNTIME_DOWNLOAD_LABEL,
        sink=sink, cancel=cancel, config=download, client=client,
    )
    try:
        await _extract(archive, rt, sink, RUNTIME_EXTRACT_LABEL, download)
    finally:
        _remove_quietly(archive)

    server = find_llama_server(rt)
    if server is None:
        raise RuntimeUnavailable(
            f"builtin LLM runtime not found. Please place llama-server under: {rt} "
            f"(computeMode={config.compute_mode.value}, gpuBackend={config.gpu_backend.value}, "
            f"cudaVersion={config.cuda_version.value})"
        )
    return server


async def ensure_model(
    paths: LlmPathsConfig,
    model_id: str,
    allow_download: bool = True,
    *,
    download: DownloadConfig | None = None,
    sink: "ProgressSink | None" = None,
    cancel: Optional[threading.Event] = None,
    model_url: Optional[str] = None,
    client: "httpx.AsyncClient | None" = None,
) -> Path:
    """
    Make sure the model file is on disk and return its path.
    Only catalog models can be fetched; custom ids must be imported first.
    """
    download = download or DownloadConfig()
    models_dir = paths.models_dir
    models_dir.mkdir(parents=True, exist_ok=True)

    for cand in model_candidate_paths(models_dir, model_id):
        if cand.exists():
            return cand

    if not is_builtin_model_id(model_id):
        raise ModelNotFoundError("custom model not found. Please import a GGUF file from Settings.")

    target = model_file_path(models_dir, model_id)
    bundled = _first_existing(paths.bundled_candidates("models", model_file_name(model_id)))
    if bundled is not None:
        logger.info("Copying bundled model %s", bundled)
        await asyncio.to_thread(copy_gguf, bundled, target, "bundled model")
        return target

    if not allow_download:
        raise ModelNotFoundError(
            "builtin model not found. Please bundle it under resources/llm/models or import it from Settings."
        )

    urls = [model_url] if model_url else list(model_urls(model_id))
    if not urls or not urls[0]:
        raise ModelNotFoundError("builtin model URL not configured")

    await download_to_file(
        urls, target, model_id,
        sink=sink, cancel=cancel, config=download, client=client,
    )

    if not file_starts_with(target, GGUF_MAGIC):
        _remove_quietly(target)
        raise ModelIntegrityError("downloaded model is not a GGUF file (signature mismatch)")
    return target


def default_runtime_config(platform: "PlatformCapabilities | None" = None) -> ComputeConfig:
    """Metal on Apple Silicon, CPU everywhere else."""
    plat = platform or current_platform()
    if plat.is_apple_silicon():
        return ComputeConfig.from_strings("gpu", plat.default_gpu_backend().value)
    return ComputeConfig.from_strings("cpu")


def auto_install_default_runtime(
    paths: LlmPathsConfig,
    platform: "PlatformCapabilities | None" = None,
    download: DownloadConfig | None = None,
) -> Optional[Path]:
    """
    First-launch setup: unpack the bundled default runtime archive if the
    runtime is not installed yet. Never raises; failures are only logged.
    """
    plat = platform or current_platform()
    download = download or DownloadConfig()
    config = default_runtime_config(plat)
    rt = runtime_dir(paths.llm_dir, config)

    server = find_llama_server(rt)
    if server is not None:
        return server

    archive_name = plat.runtime_archive_name(config, download.release)
    for archive in paths.bundled_candidates("runtime", archive_name):
        if not archive.exists():
            continue
        try:
            rt.mkdir(parents=True, exist_ok=True)
            extract_archive(archive, rt)
        except (LlmSetupError, OSError) as e:
            logger.warning("Failed to extract runtime from %s: %s", archive, e)
            continue
        logger.info("Runtime auto-extracted from %s", archive)
        return find_llama_server(rt)
    return None
