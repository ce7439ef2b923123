from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Iterable, Sequence


def _ladder(value: float, bounds: Sequence[float]) -> int:
    """Number of ascending bounds that `value` reaches."""
    return sum(1 for b in bounds if value >= b)


@dataclass(frozen=True, slots=True)
class TierConfig:
    """
    Calibration data for tier selection.

    Every ladder is a tuple of ascending lower bounds: reaching the n-th bound
    unlocks tier n+1. The defaults come from field testing on consumer machines
    and should be revalidated when the catalog or the runtime build changes.
    """
    max_tier: int = 5

    ram_bounds_gb: tuple[int, ...] = (8, 12, 20, 32, 48)
    # logical cores; targets >= 8 tok/s generation on CPU only
    cpu_core_bounds: tuple[int, ...] = (8, 20, 24)
    vram_bounds_gb: tuple[int, ...] = (4, 6, 10, 12, 24)

    # (min VRAM GB, max offloaded layers); below the first entry nothing is offloaded
    gpu_layer_caps: tuple[tuple[int, int], ...] = ((4, 8), (6, 16), (8, 999))

    # tok/s measured on the tier-0 model. Tier n needs roughly
    # 8 tok/s * slowdown(n): 1.7B ~2.8x, 4B ~6.5x, 8B ~13x, 14B ~23x, 32B ~53x.
    benchmark_bounds_tps: tuple[float, ...] = (20.0, 50.0, 100.0, 185.0, 420.0)

    min_useful_vram_gb: int = 2
    unified_memory_fraction: float = 0.75

    # every substring in a group must match for the GPU to be discounted
    integrated_gpu_patterns: tuple[tuple[str, ...], ...] = (
        ("intel", "uhd"),
        ("intel", " hd "),
        ("intel", "iris"),
    )
    virtual_gpu_patterns: tuple[str, ...] = ("idddriver", "virtual", "remote")
    # adapters dropped from the reported GPU name list (remote desktop / streaming drivers)
    virtual_display_patterns: tuple[str, ...] = ("idddriver", "virtual", "remote", "parsec", "rdp")
    # names matching any of these are never discounted by the patterns above
    gpu_allow_patterns: tuple[str, ...] = field(default_factory=tuple)

    def clamp_tier(self, tier: int) -> int:
        return max(0, min(int(tier), self.max_tier))

    def ram_tier(self, total_mem_gb: float) -> int:
        return self.clamp_tier(_ladder(total_mem_gb, self.ram_bounds_gb))

    def cpu_tier(self, cpu_cores: int) -> int:
        return self.clamp_tier(_ladder(cpu_cores, self.cpu_core_bounds))

    def vram_tier(self, vram_gb: float) -> int:
        return self.clamp_tier(_ladder(vram_gb, self.vram_bounds_gb))

    def benchmark_tier(self, tokens_per_second: float) -> int:
        return self.clamp_tier(_ladder(tokens_per_second, self.benchmark_bounds_tps))

    def max_gpu_layers(self, vram_gb: float) -> int:
        cap = 0
        for min_gb, layers in self.gpu_layer_caps:
            if vram_gb >= min_gb:
                cap = layers
        return cap

    def gpu_name_discounted(self, gpu_name: str) -> bool:
        lower = gpu_name.lower()
        if any(p in lower for p in self.gpu_allow_patterns):
            return False
        if any(all(part in lower for part in group) for group in self.integrated_gpu_patterns):
            return True
        return any(p in lower for p in self.virtual_gpu_patterns)

    def with_allowed_gpus(self, patterns: Iterable[str]) -> "TierConfig":
        return replace(self, gpu_allow_patterns=tuple(p.lower() for p in patterns))

    def validate(self) -> None:
        for label, bounds in [
            ("ram_bounds_gb", self.ram_bounds_gb),
            ("cpu_core_bounds", self.cpu_core_bounds),
            ("vram_bounds_gb", self.vram_bounds_gb),
            ("benchmark_bounds_tps", self.benchmark_bounds_tps),
        ]:
            if list(bounds) != sorted(bounds):
                raise ValueError(f"TierConfig.{label} must be ascending.")
            if len(bounds) > self.max_tier:
                raise ValueError(f"TierConfig.{label} has more steps than tiers.")
        if not 0.0 < self.unified_memory_fraction <= 1.0:
            raise ValueError("TierConfig.unified_memory_fraction must be in (0, 1].")
        if self.min_useful_vram_gb < 0:
            raise ValueError("TierConfig.min_useful_vram_gb must be >= 0.")
