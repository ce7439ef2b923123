"""
Shared pytest fixtures for the built-in LLM tests.

Provides:
- FakePlatform: deterministic stand-in for the OS probes
- Hardware profile factory
- Temporary LLM paths
- Helpers for fake GGUF files and runtime archives
"""

import io
import zipfile
from pathlib import Path
from typing import Optional

import pytest

from app.hardware import HardwareProfile
from config.compute_config import ComputeConfig, GpuBackend
from config.paths_config import LlmPathsConfig

GIB = 1024 ** 3


class FakePlatform:
    """Records kills and answers every probe from constructor arguments."""

    name = "fake"

    def __init__(
        self,
        *,
        apple_silicon: bool = False,
        bundled_only: bool = False,
        listening: Optional[dict[int, int]] = None,
    ):
        self.apple_silicon = apple_silicon
        self.bundled_only = bundled_only
        self.listening = dict(listening or {})
        self.killed: list[int] = []

    def exe_name(self, stem: str) -> str:
        return stem

    def default_gpu_backend(self) -> GpuBackend:
        return GpuBackend.METAL if self.apple_silicon else GpuBackend.VULKAN

    def is_apple_silicon(self) -> bool:
        return self.apple_silicon

    def is_bundled_runtime_only(self) -> bool:
        return self.bundled_only

    def runtime_archive_name(self, config: ComputeConfig, release: str) -> str:
        variant = "gpu" if config.uses_gpu else "cpu"
        return f"llama-{release}-test-{variant}.zip"

    def cudart_archive_name(self, config: ComputeConfig) -> Optional[str]:
        return None

    def cuda_libraries_present(self, runtime_dir: Path) -> bool:
        return True

    def cpu_brand(self) -> str:
        return "Test CPU"

    def probe_vram_bytes(self, total_memory_bytes, unified_memory_fraction):
        return None

    def probe_gpu_name(self, virtual_display_patterns):
        return None

    def has_cuda(self) -> bool:
        return False

    def has_vulkan(self) -> bool:
        return False

    def has_metal(self) -> bool:
        return self.apple_silicon

    def popen_kwargs(self, exe_path, runtime_dir):
        return {}

    def find_pid_by_port(self, port: int) -> Optional[int]:
        return self.listening.get(port)

    def kill_pid_tree(self, pid: int) -> None:
        self.killed.append(pid)


@pytest.fixture
def fake_platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def llm_paths(tmp_path: Path) -> LlmPathsConfig:
    paths = LlmPathsConfig(llm_dir=tmp_path / "llm", models_dir=tmp_path / "models")
    paths.ensure_dirs()
    return paths


@pytest.fixture
def make_profile():
    """Factory for HardwareProfile with sane CPU-only defaults."""

    def _make(**overrides) -> HardwareProfile:
        values = dict(
            cpu_cores=8,
            cpu_brand="Test CPU",
            total_memory_bytes=16 * GIB,
            vram_bytes=None,
            gpu_name=None,
            has_cuda=False,
            has_vulkan=False,
            has_metal=False,
            is_apple_silicon=False,
        )
        values.update(overrides)
        return HardwareProfile(**values)

    return _make


def write_gguf(path: Path, payload: bytes = b"\x00" * 32) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"GGUF" + payload)
    return path


def runtime_zip_bytes(entries: Optional[dict[str, bytes]] = None) -> bytes:
    """In-memory zip laid out like a llama.cpp release (binaries under build/bin)."""
    if entries is None:
        entries = {
            "build/bin/llama-server": b"#!/bin/sh\n",
            "build/bin/llama-bench": b"#!/bin/sh\n",
            "build/bin/libggml.so": b"\x7fELF",
        }
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buf.getvalue()
