from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from config.compute_config import ComputeMode, CudaVersion, GpuBackend

if TYPE_CHECKING:
    from app.hardware import HardwareProfile
    from interfaces.llm.status import ServerStatus


@dataclass(frozen=True)
class Recommendation:
    tier: int
    model_id: str
    compute_mode: ComputeMode
    gpu_backend: GpuBackend
    cuda_version: CudaVersion
    probe: "HardwareProfile"


@dataclass(frozen=True)
class AutoStartResult:
    chosen_model_id: str
    chosen_compute_mode: ComputeMode
    chosen_gpu_backend: GpuBackend
    chosen_cuda_version: CudaVersion
    status: "ServerStatus"
    probe: "HardwareProfile"


@dataclass(frozen=True)
class BenchmarkResult:
    tokens_per_second: float
    completion_tokens: int
    elapsed_ms: int
    recommended_tier: int
    recommended_model_id: str
