from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class ServerStatus:
    runtime_installed: bool
    model_installed: bool
    model_id: str
    running_model_id: Optional[str]
    running_this_model: bool
    running: bool
    base_url: Optional[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "runtimeInstalled": self.runtime_installed,
            "modelInstalled": self.model_installed,
            "modelId": self.model_id,
            "runningModelId": self.running_model_id,
            "runningThisModel": self.running_this_model,
            "running": self.running,
            "baseUrl": self.base_url,
        }


@dataclass(frozen=True)
class RuntimeStatus:
    installed: bool
    runtime_dir: str
    compute_mode: str
    gpu_backend: str
    cuda_version: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "installed": self.installed,
            "runtimeDir": self.runtime_dir,
            "computeMode": self.compute_mode,
            "gpuBackend": self.gpu_backend,
            "cudaVersion": self.cuda_version,
        }
