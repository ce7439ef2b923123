from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Protocol

from config.compute_config import ComputeConfig, GpuBackend


class PlatformCapabilities(Protocol):
    """OS-specific probes and conventions. The core logic never branches on sys.platform itself."""

    name: str

    def exe_name(self, stem: str) -> str:
        ...

    def default_gpu_backend(self) -> GpuBackend:
        ...

    def is_apple_silicon(self) -> bool:
        ...

    def is_bundled_runtime_only(self) -> bool:
        ...

    def runtime_archive_name(self, config: ComputeConfig, release: str) -> str:
        ...

    def cudart_archive_name(self, config: ComputeConfig) -> Optional[str]:
        ...

    def cuda_libraries_present(self, runtime_dir: Path) -> bool:
        ...

    def cpu_brand(self) -> str:
        ...

    def probe_vram_bytes(self, total_memory_bytes: int, unified_memory_fraction: float) -> Optional[int]:
        ...

    def probe_gpu_name(self, virtual_display_patterns: tuple[str, ...]) -> Optional[str]:
        ...

    def has_cuda(self) -> bool:
        ...

    def has_vulkan(self) -> bool:
        ...

    def has_metal(self) -> bool:
        ...

    def popen_kwargs(self, exe_path: Path, runtime_dir: Path) -> dict[str, Any]:
        ...

    def find_pid_by_port(self, port: int) -> Optional[int]:
        ...

    def kill_pid_tree(self, pid: int) -> None:
        ...
