from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional
import logging

from config.compute_config import ComputeConfig
from config.llama_config import LlamaServerDefaults

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LlamaServerConfig:
    server_bin: Path
    model_path: Path
    runtime_dir: Path
    host: str
    port: int
    n_ctx: int
    jinja: bool
    n_gpu_layers: int

    def command(self) -> list[str]:
        cmd = [
            str(self.server_bin),
            "-m", str(self.model_path),
            "--host", self.host,
            "--port", str(self.port),
            "--ctx-size", str(self.n_ctx),
        ]
        if self.jinja:
            cmd.append("--jinja")
        cmd += ["--n-gpu-layers", str(self.n_gpu_layers)]
        return cmd


# Tuning knobs a caller may change. Paths always come from the supervisor.
_TUNABLE = frozenset({"host", "port", "n_ctx", "jinja", "n_gpu_layers"})


def _tuned(values: dict[str, Any], tweaks: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    if not tweaks:
        return values
    rejected = sorted(k for k in tweaks if k not in _TUNABLE)
    if rejected:
        raise ValueError(f"Unknown override for llama-server: {', '.join(rejected)}")
    return {**values, **tweaks}


def resolve_server_config(
    defaults: LlamaServerDefaults,
    compute: ComputeConfig,
    *,
    server_bin: Path,
    model_path: Path,
    runtime_dir: Path,
    port: int,
    server_overrides: Optional[Mapping[str, Any]] = None,
) -> LlamaServerConfig:
    """Combine server defaults, the compute choice and per-launch values into one argv source."""
    values = _tuned(
        {
            "host": defaults.llama_host,
            "port": port,
            "n_ctx": defaults.llama_n_ctx,
            "jinja": defaults.llama_jinja,
            "n_gpu_layers": compute.n_gpu_layers(),
        },
        server_overrides,
    )

    if not isinstance(values["port"], int) or not 0 < values["port"] < 65536:
        raise ValueError(f"Invalid llama-server port: {values['port']!r}")
    if values["n_gpu_layers"] < 0:
        raise ValueError(f"n_gpu_layers must not be negative: {values['n_gpu_layers']!r}")

    cfg = LlamaServerConfig(
        server_bin=Path(server_bin).expanduser(),
        model_path=Path(model_path).expanduser(),
        runtime_dir=Path(runtime_dir).expanduser(),
        **values,
    )
    logger.debug("llama-server launch config: %s", cfg)
    return cfg
