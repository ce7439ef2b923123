from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import sys

# llama-server treats any value >= the layer count as "offload everything"
ALL_GPU_LAYERS = 999
DEFAULT_GPU_LAYERS = 20


class ComputeMode(str, Enum):
    CPU = "cpu"
    GPU = "gpu"
    HYBRID = "hybrid"

    @property
    def uses_gpu(self) -> bool:
        return self is not ComputeMode.CPU


class GpuBackend(str, Enum):
    CUDA = "cuda"
    METAL = "metal"
    VULKAN = "vulkan"
    NONE = "none"

    @staticmethod
    def platform_default() -> "GpuBackend":
        return GpuBackend.METAL if sys.platform == "darwin" else GpuBackend.VULKAN


class CudaVersion(str, Enum):
    V12_4 = "12.4"
    V13_1 = "13.1"


def normalize_compute_mode(raw: Optional[str]) -> ComputeMode:
    """Unknown or missing values fall back to CPU."""
    if isinstance(raw, ComputeMode):
        return raw
    value = (raw or "").strip().lower()
    for mode in ComputeMode:
        if mode.value == value:
            return mode
    return ComputeMode.CPU


def normalize_gpu_backend(raw: Optional[str]) -> GpuBackend:
    """Unknown or missing values fall back to the platform default (Metal on macOS, Vulkan elsewhere)."""
    if isinstance(raw, GpuBackend):
        return raw
    value = (raw or "").strip().lower()
    for backend in GpuBackend:
        if backend.value == value:
            return backend
    return GpuBackend.platform_default()


def normalize_cuda_version(raw: Optional[str]) -> CudaVersion:
    if isinstance(raw, CudaVersion):
        return raw
    value = (raw or "").strip()
    if value == CudaVersion.V13_1.value:
        return CudaVersion.V13_1
    return CudaVersion.V12_4


@dataclass(frozen=True, slots=True)
class ComputeConfig:
    """
    How the inference server should run: which runtime variant and which
    --n-gpu-layers value it gets.
    """
    compute_mode: ComputeMode = ComputeMode.CPU
    gpu_backend: GpuBackend = GpuBackend.NONE
    cuda_version: CudaVersion = CudaVersion.V12_4
    gpu_layers: int = DEFAULT_GPU_LAYERS

    @property
    def uses_gpu(self) -> bool:
        return self.compute_mode.uses_gpu

    @property
    def is_cuda(self) -> bool:
        return self.gpu_backend is GpuBackend.CUDA

    def n_gpu_layers(self) -> int:
        if self.compute_mode is ComputeMode.GPU:
            return ALL_GPU_LAYERS
        if self.compute_mode is ComputeMode.HYBRID:
            return self.gpu_layers
        return 0

    def same_launch_as(self, other: "ComputeConfig") -> bool:
        """True when a server started with `other` can serve a request for `self`."""
        if self.compute_mode is not other.compute_mode:
            return False
        if self.gpu_backend is not other.gpu_backend:
            return False
        if self.compute_mode is ComputeMode.HYBRID and self.gpu_layers != other.gpu_layers:
            return False
        if self.is_cuda and self.cuda_version is not other.cuda_version:
            return False
        return True

    def describe(self) -> str:
        parts = [self.compute_mode.value, self.gpu_backend.value]
        if self.is_cuda:
            parts.append(f"cuda {self.cuda_version.value}")
        if self.compute_mode is ComputeMode.HYBRID:
            parts.append(f"{self.gpu_layers} layers")
        return "/".join(parts)

    @staticmethod
    def from_strings(
        compute_mode: Optional[str] = None,
        gpu_backend: Optional[str] = None,
        cuda_version: Optional[str] = None,
        gpu_layers: Optional[int] = None,
    ) -> "ComputeConfig":
        """
        Build a config from loosely typed values (UI options, CLI flags).

        CPU mode always carries the `none` backend. GPU modes never do; it is
        replaced by the platform default. Negative layer counts become 0.
        """
        mode = normalize_compute_mode(compute_mode)
        backend = normalize_gpu_backend(gpu_backend)
        if not mode.uses_gpu:
            backend = GpuBackend.NONE
        elif backend is GpuBackend.NONE:
            backend = GpuBackend.platform_default()
        layers = DEFAULT_GPU_LAYERS if gpu_layers is None else max(int(gpu_layers), 0)
        return ComputeConfig(
            compute_mode=mode,
            gpu_backend=backend,
            cuda_version=normalize_cuda_version(cuda_version),
            gpu_layers=layers,
        )
