from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional
import ctypes
import logging
import os
import platform
import re
import subprocess
import sys

import psutil

from config.compute_config import ComputeConfig, GpuBackend

logger = logging.getLogger(__name__)

# Official llama.cpp Linux builds need glibc >= 2.34
MIN_GLIBC = (2, 34)

_CREATE_NO_WINDOW = 0x08000000
_GIB = 1024 ** 3
_MIB = 1024 ** 2


def parse_glibc_version(text: str) -> Optional[tuple[int, int]]:
    """
    Pull (major, minor) out of `ldd --version` / confstr output.
    e.g. "ldd (Ubuntu GLIBC 2.31-0ubuntu9) 2.31" -> (2, 31)
    """
    lines = [ln for ln in (text or "").splitlines() if ln.strip()]
    if not lines:
        return None
    matches = re.findall(r"(\d+)\.(\d+)", lines[0])
    if not matches:
        return None
    major, minor = matches[-1]
    return int(major), int(minor)


def _digits_max(text: str) -> int:
    best = 0
    for line in (text or "").splitlines():
        digits = "".join(c for c in line.strip() if c.isdigit())
        if digits:
            best = max(best, int(digits))
    return best


class _BasePlatform(ABC):
    """Behaviour shared by every OS. Subclasses override the probes that differ."""

    name = "generic"
    _creationflags = 0

    def _run(self, cmd: list[str], timeout: float = 10.0) -> Optional[str]:
        """Run a probe tool. Missing tools, timeouts and non-zero exits all mean "no answer"."""
        try:
            out = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                creationflags=self._creationflags,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("Probe %s unavailable: %s", cmd[0], e)
            return None
        if out.returncode != 0:
            logger.debug("Probe %s exited with %s", cmd[0], out.returncode)
            return None
        return out.stdout

    @staticmethod
    def _can_load(*names: str) -> bool:
        for n in names:
            try:
                ctypes.CDLL(n)
                return True
            except OSError:
                continue
        return False

    def exe_name(self, stem: str) -> str:
        return stem

    def default_gpu_backend(self) -> GpuBackend:
        return GpuBackend.VULKAN

    def is_apple_silicon(self) -> bool:
        return False

    def is_bundled_runtime_only(self) -> bool:
        return False

    @abstractmethod
    def runtime_archive_name(self, config: ComputeConfig, release: str) -> str:
        """File name of the llama.cpp release archive for this OS and variant."""

    def cudart_archive_name(self, config: ComputeConfig) -> Optional[str]:
        return None

    def cuda_libraries_present(self, runtime_dir: Path) -> bool:
        return True

    def cpu_brand(self) -> str:
        return platform.processor() or platform.machine() or ""

    def vram_from_nvidia_smi(self) -> Optional[int]:
        out = self._run(["nvidia-smi", "--query-gpu=memory.total", "--format=csv,noheader,nounits"])
        if out is None:
            return None
        best_mb = 0
        for line in out.splitlines():
            try:
                best_mb = max(best_mb, int(line.strip()))
            except ValueError:
                continue
        return best_mb * _MIB if best_mb > 0 else None

    def gpu_name_from_nvidia_smi(self) -> Optional[str]:
        out = self._run(["nvidia-smi", "--query-gpu=name", "--format=csv,noheader,nounits"])
        name = (out or "").strip()
        return name or None

    def probe_vram_bytes(self, total_memory_bytes: int, unified_memory_fraction: float) -> Optional[int]:
        return self.vram_from_nvidia_smi()

    def probe_gpu_name(self, virtual_display_patterns: tuple[str, ...]) -> Optional[str]:
        return self.gpu_name_from_nvidia_smi()

    def has_cuda(self) -> bool:
        return False

    def has_vulkan(self) -> bool:
        return False

    def has_metal(self) -> bool:
        return False

    def popen_kwargs(self, exe_path: Path, runtime_dir: Path) -> dict[str, Any]:
        return {}

    def find_pid_by_port(self, port: int) -> Optional[int]:
        """PID listening on exactly this TCP port, if any."""
        try:
            for conn in psutil.net_connections(kind="tcp"):
                if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port and conn.pid:
                    return conn.pid
            return None
        except (psutil.AccessDenied, PermissionError):
            logger.debug("net_connections denied; falling back to OS tool for port %s", port)
        return self._find_pid_by_port_tool(port)

    def _find_pid_by_port_tool(self, port: int) -> Optional[int]:
        out = self._run(["lsof", "-i", f":{port}", "-sTCP:LISTEN", "-t"])
        for line in (out or "").strip().splitlines():
            try:
                return int(line.strip())
            except ValueError:
                continue
        return None

    def kill_pid_tree(self, pid: int) -> None:
        try:
            parent = psutil.Process(pid)
        except psutil.NoSuchProcess:
            return
        try:
            procs = parent.children(recursive=True)
        except psutil.NoSuchProcess:
            procs = []
        procs.append(parent)
        for p in procs:
            try:
                p.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as e:
                logger.warning("Not allowed to kill pid %s: %s", p.pid, e)
        _, alive = psutil.wait_procs(procs, timeout=5)
        for p in alive:
            logger.warning("Process %s still alive after kill", p.pid)


class LinuxPlatform(_BasePlatform):
    name = "linux"

    def glibc_version(self) -> Optional[tuple[int, int]]:
        try:
            found = parse_glibc_version(os.confstr("CS_GNU_LIBC_VERSION") or "")
        except (ValueError, OSError, AttributeError):
            found = None
        if found:
            return found
        return parse_glibc_version(self._run(["ldd", "--version"]) or "")

    def is_bundled_runtime_only(self) -> bool:
        version = self.glibc_version()
        return version is not None and version < MIN_GLIBC

    def runtime_archive_name(self, config: ComputeConfig, release: str) -> str:
        # no official Linux CUDA build; GPU modes use the Vulkan archive
        if config.uses_gpu:
            return f"llama-{release}-bin-ubuntu-vulkan-x64.tar.gz"
        return f"llama-{release}-bin-ubuntu-x64.tar.gz"

    def cpu_brand(self) -> str:
        try:
            with open("/proc/cpuinfo", encoding="utf-8") as f:
                for line in f:
                    if line.lower().startswith("model name"):
                        return line.split(":", 1)[1].strip()
        except OSError:
            pass
        return super().cpu_brand()

    def probe_vram_bytes(self, total_memory_bytes: int, unified_memory_fraction: float) -> Optional[int]:
        found = self.vram_from_nvidia_smi()
        if found:
            return found
        # AMD exposes VRAM through sysfs
        drm = Path("/sys/class/drm")
        try:
            cards = sorted(drm.iterdir())
        except OSError:
            return None
        for card in cards:
            vram_path = card / "device" / "mem_info_vram_total"
            try:
                value = int(vram_path.read_text().strip())
            except (OSError, ValueError):
                continue
            if value > 0:
                return value
        return None

    def probe_gpu_name(self, virtual_display_patterns: tuple[str, ...]) -> Optional[str]:
        out = self._run(["lspci"])
        gpus = []
        for line in (out or "").splitlines():
            lower = line.lower()
            if "vga" in lower or "3d" in lower or "display" in lower:
                pos = line.find(": ")
                if pos >= 0:
                    name = line[pos + 2:].strip()
                    if name:
                        gpus.append(name)
        if gpus:
            return ", ".join(gpus)
        return self.gpu_name_from_nvidia_smi()

    def has_cuda(self) -> bool:
        return self._can_load("libcuda.so.1", "libcuda.so")

    def has_vulkan(self) -> bool:
        return self._can_load("libvulkan.so.1")


class MacPlatform(_BasePlatform):
    name = "macos"

    def default_gpu_backend(self) -> GpuBackend:
        return GpuBackend.METAL

    def is_apple_silicon(self) -> bool:
        return platform.machine().lower() in {"arm64", "aarch64"}

    def runtime_archive_name(self, config: ComputeConfig, release: str) -> str:
        # macOS builds ship Metal support in the single per-arch archive
        arch = "arm64" if self.is_apple_silicon() else "x64"
        return f"llama-{release}-bin-macos-{arch}.tar.gz"

    def cpu_brand(self) -> str:
        out = self._run(["sysctl", "-n", "machdep.cpu.brand_string"])
        return (out or "").strip() or super().cpu_brand()

    def _displays_report(self) -> str:
        return self._run(["system_profiler", "SPDisplaysDataType"], timeout=20.0) or ""

    def probe_vram_bytes(self, total_memory_bytes: int, unified_memory_fraction: float) -> Optional[int]:
        found = self.vram_from_nvidia_smi()
        if found:
            return found
        for line in self._displays_report().splitlines():
            trimmed = line.strip()
            # "VRAM (Total): 8 GB" or "VRAM (Dynamic, Max): 67.67 GB"
            if "VRAM" not in trimmed or ":" not in trimmed:
                continue
            after = trimmed.split(":", 1)[1].strip().lower()
            m = re.match(r"[\d.]+", after)
            if not m:
                continue
            try:
                val = float(m.group(0))
            except ValueError:
                continue
            if "gb" in after:
                found = int(val * _GIB)
            elif "mb" in after:
                found = int(val * _MIB)
            else:
                found = int(val)
            if found > 0:
                return found
        if self.is_apple_silicon() and total_memory_bytes > 0:
            return int(total_memory_bytes * unified_memory_fraction)
        return None

    def probe_gpu_name(self, virtual_display_patterns: tuple[str, ...]) -> Optional[str]:
        for line in self._displays_report().splitlines():
            trimmed = line.strip()
            if trimmed.startswith("Chipset Model:"):
                name = trimmed[len("Chipset Model:"):].strip()
                if name:
                    return name
        brand = self.cpu_brand()
        return brand if "Apple" in brand else None

    def has_metal(self) -> bool:
        return True


class WindowsPlatform(_BasePlatform):
    name = "windows"
    _creationflags = _CREATE_NO_WINDOW

    def exe_name(self, stem: str) -> str:
        return f"{stem}.exe"

    def runtime_archive_name(self, config: ComputeConfig, release: str) -> str:
        if config.uses_gpu:
            if config.is_cuda:
                return f"llama-{release}-bin-win-cuda-{config.cuda_version.value}-x64.zip"
            return f"llama-{release}-bin-win-vulkan-x64.zip"
        return f"llama-{release}-bin-win-cpu-x64.zip"

    def cudart_archive_name(self, config: ComputeConfig) -> Optional[str]:
        if config.uses_gpu and config.is_cuda:
            return f"cudart-llama-bin-win-cuda-{config.cuda_version.value}-x64.zip"
        return None

    def cuda_libraries_present(self, runtime_dir: Path) -> bool:
        if not runtime_dir.exists():
            return False
        base_depth = len(runtime_dir.parts)
        for root, dirs, files in os.walk(runtime_dir):
            if len(Path(root).parts) - base_depth >= 3:
                dirs[:] = []
            for f in files:
                lower = f.lower()
                if lower.startswith("cublas64") and lower.endswith(".dll"):
                    return True
        return False

    def probe_vram_bytes(self, total_memory_bytes: int, unified_memory_fraction: float) -> Optional[int]:
        found = self.vram_from_nvidia_smi()
        if found:
            return found
        # wmic is gone from recent Windows builds; PowerShell CIM is the fallback
        best = _digits_max(self._run(["wmic", "path", "win32_VideoController", "get", "AdapterRAM"]) or "")
        if best > 0:
            return best
        best = _digits_max(self._run([
            "powershell",
            "-NoProfile",
            "-Command",
            "(Get-CimInstance Win32_VideoController | Select-Object -ExpandProperty AdapterRAM) -join '\n'",
        ]) or "")
        return best or None

    def probe_gpu_name(self, virtual_display_patterns: tuple[str, ...]) -> Optional[str]:
        out = self._run([
            "powershell",
            "-NoProfile",
            "-Command",
            "(Get-CimInstance Win32_VideoController | Select-Object -ExpandProperty Name) -join ', '",
        ])
        names = (out or "").strip()
        if not names:
            return None
        real = [
            g.strip() for g in names.split(",")
            if g.strip() and not any(p in g.lower() for p in virtual_display_patterns)
        ]
        return ", ".join(real) if real else names

    def has_cuda(self) -> bool:
        return self._can_load("nvcuda.dll")

    def has_vulkan(self) -> bool:
        return self._can_load("vulkan-1.dll")

    def popen_kwargs(self, exe_path: Path, runtime_dir: Path) -> dict[str, Any]:
        # CUDA/Vulkan DLLs sit next to the exe or in the runtime root
        path = os.pathsep.join([str(exe_path.parent), str(runtime_dir), os.environ.get("PATH", "")])
        env = dict(os.environ)
        env["PATH"] = path
        return {"creationflags": _CREATE_NO_WINDOW, "env": env}

    def _find_pid_by_port_tool(self, port: int) -> Optional[int]:
        out = self._run(["netstat", "-ano", "-p", "TCP"])
        needle = f":{port}"
        for line in (out or "").splitlines():
            line = line.strip()
            if "LISTENING" not in line:
                continue
            # TCP  0.0.0.0:PORT  0.0.0.0:0  LISTENING  PID
            parts = line.split()
            if len(parts) >= 5 and parts[1].endswith(needle):
                try:
                    return int(parts[-1])
                except ValueError:
                    continue
        return None


def current_platform() -> _BasePlatform:
    if sys.platform == "win32":
        return WindowsPlatform()
    if sys.platform == "darwin":
        return MacPlatform()
    return LinuxPlatform()
