from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, TYPE_CHECKING
import logging
import os

import psutil

from config.tier_config import TierConfig
from helpers.platforms import current_platform

if TYPE_CHECKING:
    from interfaces.platform.capabilities import PlatformCapabilities

logger = logging.getLogger(__name__)

_GIB = 1024 ** 3


@dataclass(frozen=True, slots=True)
class HardwareProfile:
    cpu_cores: int
    cpu_brand: str
    total_memory_bytes: int
    vram_bytes: Optional[int]
    gpu_name: Optional[str]
    has_cuda: bool
    has_vulkan: bool
    has_metal: bool
    is_apple_silicon: bool

    @property
    def total_memory_gb(self) -> float:
        return self.total_memory_bytes / _GIB

    @property
    def vram_gb(self) -> Optional[float]:
        return self.vram_bytes / _GIB if self.vram_bytes else None

    @property
    def summary(self) -> str:
        vram = f"{self.vram_gb:.1f} GB VRAM" if self.vram_gb is not None else "VRAM unknown"
        gpu = self.gpu_name or "no GPU detected"
        backends = [name for name, ok in (
            ("CUDA", self.has_cuda),
            ("Vulkan", self.has_vulkan),
            ("Metal", self.has_metal),
        ) if ok]
        return (
            f"RAM: {self.total_memory_gb:.1f} GB | CPU: {self.cpu_cores} ({self.cpu_brand or 'unknown'}) | "
            f"{gpu}, {vram} | backends: {', '.join(backends) or 'none'}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "cpuCores": self.cpu_cores,
            "cpuBrand": self.cpu_brand,
            "totalMemoryBytes": self.total_memory_bytes,
            "vramBytes": self.vram_bytes,
            "gpuName": self.gpu_name,
            "hasCuda": self.has_cuda,
            "hasVulkan": self.has_vulkan,
            "hasMetal": self.has_metal,
            "isAppleSilicon": self.is_apple_silicon,
        }


def probe_system(
    platform: "PlatformCapabilities | None" = None,
    tiers: TierConfig | None = None,
) -> HardwareProfile:
    """
    Collect the hardware facts used for tier and backend selection.
    Every probe is best effort: a missing tool leaves its field empty.
    """
    plat = platform or current_platform()
    tiers = tiers or TierConfig()

    total_memory = int(psutil.virtual_memory().total)
    cpu_cores = psutil.cpu_count(logical=True) or os.cpu_count() or 1

    vram = plat.probe_vram_bytes(total_memory, tiers.unified_memory_fraction)
    profile = HardwareProfile(
        cpu_cores=int(cpu_cores),
        cpu_brand=plat.cpu_brand(),
        total_memory_bytes=total_memory,
        vram_bytes=vram if vram and vram > 0 else None,
        gpu_name=plat.probe_gpu_name(tiers.virtual_display_patterns),
        has_cuda=plat.has_cuda(),
        has_vulkan=plat.has_vulkan(),
        has_metal=plat.has_metal(),
        is_apple_silicon=plat.is_apple_silicon(),
    )
    logger.info("Hardware probe: %s", profile.summary)
    return profile


def is_gpu_worth_using(profile: HardwareProfile, tiers: TierConfig | None = None) -> bool:
    """Integrated, virtual and tiny GPUs are slower than just using the CPU."""
    tiers = tiers or TierConfig()
    if profile.is_apple_silicon:
        return True
    # unknown VRAM counts as none
    if (profile.vram_gb or 0.0) < tiers.min_useful_vram_gb:
        return False
    if profile.gpu_name and tiers.gpu_name_discounted(profile.gpu_name):
        return False
    return True
