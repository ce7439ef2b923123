from __future__ import annotations

from typing import Optional
import logging

from app.hardware import HardwareProfile, is_gpu_worth_using
from config.compute_config import (
    ComputeMode,
    GpuBackend,
    normalize_cuda_version,
)
from config.llm_models import tier_to_model_id
from config.tier_config import TierConfig
from interfaces.model.selection import Recommendation

logger = logging.getLogger(__name__)

_GIB = 1024 ** 3
_DEFAULT_TIERS = TierConfig()


def _vram_gb(vram_bytes: Optional[int]) -> Optional[float]:
    if not vram_bytes or vram_bytes <= 0:
        return None
    return vram_bytes / _GIB


def ram_tier(total_mem_gb: float, tiers: TierConfig = _DEFAULT_TIERS) -> int:
    return tiers.ram_tier(total_mem_gb)


def cpu_tier(cpu_cores: int, tiers: TierConfig = _DEFAULT_TIERS) -> int:
    return tiers.cpu_tier(cpu_cores)


def vram_tier(vram_gb: float, tiers: TierConfig = _DEFAULT_TIERS) -> int:
    return tiers.vram_tier(vram_gb)


def tier_from_resources(
    profile: HardwareProfile,
    mode: ComputeMode,
    tiers: TierConfig = _DEFAULT_TIERS,
) -> int:
    """
    Largest tier the machine can run fluently in the given mode.

    cpu and hybrid: RAM and core count both limit. In hybrid the GPU only
    accelerates some layers; the layer count is capped separately.
    gpu: the model has to fit in VRAM.
    """
    ram = tiers.ram_tier(profile.total_memory_gb)
    if mode is ComputeMode.GPU:
        return tiers.clamp_tier(min(ram, tiers.vram_tier(profile.vram_gb or 0.0)))
    return tiers.clamp_tier(min(ram, tiers.cpu_tier(profile.cpu_cores)))


def cap_tier_by_vram(tier: int, vram_bytes: Optional[int], tiers: TierConfig = _DEFAULT_TIERS) -> int:
    gb = _vram_gb(vram_bytes)
    if gb is None:
        return tiers.clamp_tier(tier)
    return tiers.clamp_tier(min(tier, tiers.vram_tier(gb)))


def clamp_gpu_layers_by_vram(layers: int, vram_bytes: Optional[int], tiers: TierConfig = _DEFAULT_TIERS) -> int:
    layers = max(int(layers), 0)
    gb = _vram_gb(vram_bytes)
    if gb is None:
        return layers
    return min(layers, tiers.max_gpu_layers(gb))


def parse_preferred_tier(raw: Optional[str]) -> Optional[int]:
    """Returns None for "auto", empty or out-of-range input."""
    if raw is None:
        return None
    value = str(raw).strip()
    if value in {"0", "1", "2", "3", "4", "5"}:
        return int(value)
    return None


def normalize_preferred_compute(raw: Optional[str]) -> Optional[ComputeMode]:
    """Unlike normalize_compute_mode, unknown values mean "let the selector decide"."""
    if isinstance(raw, ComputeMode):
        return raw
    value = (raw or "").strip().lower()
    for mode in ComputeMode:
        if mode.value == value:
            return mode
    return None


def _pinned_backend(profile: HardwareProfile, mode: ComputeMode) -> GpuBackend:
    if not mode.uses_gpu:
        return GpuBackend.NONE
    if profile.has_cuda:
        return GpuBackend.CUDA
    if profile.has_metal:
        return GpuBackend.METAL
    return GpuBackend.platform_default()


def compute_candidates(
    profile: HardwareProfile,
    preferred_compute: Optional[ComputeMode] = None,
    tiers: TierConfig = _DEFAULT_TIERS,
) -> list[tuple[ComputeMode, GpuBackend]]:
    """
    (mode, backend) pairs to try, best first. An explicit preference pins a
    single candidate; otherwise every usable accelerator is listed and CPU
    always comes last.
    """
    if preferred_compute is not None:
        return [(preferred_compute, _pinned_backend(profile, preferred_compute))]

    gpu_useful = is_gpu_worth_using(profile, tiers)
    out: list[tuple[ComputeMode, GpuBackend]] = []
    if profile.has_metal and gpu_useful:
        out.append((ComputeMode.GPU, GpuBackend.METAL))
    if profile.has_cuda and gpu_useful:
        out.append((ComputeMode.GPU, GpuBackend.CUDA))
    if profile.has_vulkan and gpu_useful:
        out.append((ComputeMode.HYBRID, GpuBackend.VULKAN))
    out.append((ComputeMode.CPU, GpuBackend.NONE))
    return out


def choose_backend(
    profile: HardwareProfile,
    preferred_compute: Optional[ComputeMode] = None,
    tiers: TierConfig = _DEFAULT_TIERS,
) -> tuple[ComputeMode, GpuBackend]:
    return compute_candidates(profile, preferred_compute, tiers)[0]


def start_tier(
    profile: HardwareProfile,
    mode: ComputeMode,
    preferred_tier: Optional[int] = None,
    tiers: TierConfig = _DEFAULT_TIERS,
) -> int:
    tier = preferred_tier if preferred_tier is not None else tier_from_resources(profile, mode, tiers)
    tier = tiers.clamp_tier(tier)
    if mode.uses_gpu:
        tier = cap_tier_by_vram(tier, profile.vram_bytes, tiers)
    return tier


def recommend(
    profile: HardwareProfile,
    preferred_tier: Optional[str] = None,
    preferred_compute: Optional[str] = None,
    cuda_version: Optional[str] = None,
    tiers: TierConfig = _DEFAULT_TIERS,
) -> Recommendation:
    mode, backend = choose_backend(profile, normalize_preferred_compute(preferred_compute), tiers)
    tier = start_tier(profile, mode, parse_preferred_tier(preferred_tier), tiers)
    rec = Recommendation(
        tier=tier,
        model_id=tier_to_model_id(tier),
        compute_mode=mode,
        gpu_backend=backend,
        cuda_version=normalize_cuda_version(cuda_version),
        probe=profile,
    )
    logger.info("Recommended %s on %s/%s (tier %s)", rec.model_id, mode.value, backend.value, tier)
    return rec


def tier_from_benchmark(
    tokens_per_second: float,
    profile: HardwareProfile,
    mode: ComputeMode,
    tiers: TierConfig = _DEFAULT_TIERS,
) -> tuple[int, str]:
    """
    Tier from the measured generation speed of the smallest model, capped by
    RAM and (for GPU modes) VRAM.
    """
    tier = min(tiers.benchmark_tier(tokens_per_second), tiers.ram_tier(profile.total_memory_gb))
    if mode.uses_gpu:
        tier = cap_tier_by_vram(tier, profile.vram_bytes, tiers)
    tier = tiers.clamp_tier(tier)
    return tier, tier_to_model_id(tier)

