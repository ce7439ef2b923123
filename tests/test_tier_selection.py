"""
Tests for hardware-based tier and backend selection.

Tests cover:
- RAM / CPU / VRAM ladders and the GPU layer cap
- Which GPUs are worth using
- Candidate order for auto start
- Recommendations and benchmark-derived tiers
"""

import pytest

from app.hardware import is_gpu_worth_using
from app.tier_selection import (
    cap_tier_by_vram,
    choose_backend,
    clamp_gpu_layers_by_vram,
    compute_candidates,
    cpu_tier,
    normalize_preferred_compute,
    parse_preferred_tier,
    ram_tier,
    recommend,
    start_tier,
    tier_from_benchmark,
    tier_from_resources,
    vram_tier,
)
from config.compute_config import ComputeMode, CudaVersion, GpuBackend
from config.tier_config import TierConfig

GIB = 1024 ** 3


class TestLadders:

    @pytest.mark.parametrize("gb,expected", [(4, 0), (8, 1), (11.9, 1), (12, 2), (20, 3), (32, 4), (64, 5)])
    def test_ram_tier(self, gb, expected):
        assert ram_tier(gb) == expected

    @pytest.mark.parametrize("cores,expected", [(4, 0), (8, 1), (16, 1), (20, 2), (32, 3)])
    def test_cpu_tier(self, cores, expected):
        assert cpu_tier(cores) == expected

    @pytest.mark.parametrize("gb,expected", [(2, 0), (4, 1), (8, 2), (10, 3), (16, 4), (24, 5)])
    def test_vram_tier(self, gb, expected):
        assert vram_tier(gb) == expected

    @pytest.mark.parametrize("gb,expected", [(3, 0), (4, 8), (6, 16), (8, 20), (24, 20)])
    def test_gpu_layers_clamped_by_vram(self, gb, expected):
        assert clamp_gpu_layers_by_vram(20, gb * GIB) == expected

    def test_unknown_vram_leaves_layers_and_tier_alone(self):
        assert clamp_gpu_layers_by_vram(20, None) == 20
        assert cap_tier_by_vram(4, None) == 4

    def test_custom_ladders_are_honoured(self):
        tiers = TierConfig(ram_bounds_gb=(1, 2, 3, 4, 5))
        assert ram_tier(6, tiers) == 5


class TestGpuWorthUsing:

    def test_apple_silicon_always_counts(self, make_profile):
        assert is_gpu_worth_using(make_profile(is_apple_silicon=True, has_metal=True))

    def test_unknown_vram_does_not_count(self, make_profile):
        assert not is_gpu_worth_using(make_profile(gpu_name="NVIDIA GeForce RTX 4090"))

    def test_tiny_vram_does_not_count(self, make_profile):
        assert not is_gpu_worth_using(make_profile(vram_bytes=1 * GIB, gpu_name="NVIDIA GT 710"))

    def test_integrated_intel_is_discounted(self, make_profile):
        profile = make_profile(vram_bytes=4 * GIB, gpu_name="Intel(R) UHD Graphics 630")
        assert not is_gpu_worth_using(profile)

    def test_virtual_adapter_is_discounted(self, make_profile):
        profile = make_profile(vram_bytes=4 * GIB, gpu_name="Microsoft Remote Display Adapter")
        assert not is_gpu_worth_using(profile)

    def test_allow_list_overrides_discount(self, make_profile):
        profile = make_profile(vram_bytes=4 * GIB, gpu_name="Intel(R) Iris(R) Xe Graphics")
        assert not is_gpu_worth_using(profile)
        assert is_gpu_worth_using(profile, TierConfig().with_allowed_gpus(["Iris(R) Xe"]))

    def test_discrete_gpu_counts(self, make_profile):
        assert is_gpu_worth_using(make_profile(vram_bytes=8 * GIB, gpu_name="NVIDIA GeForce RTX 3070"))


class TestCandidates:

    def test_cpu_only_machine(self, make_profile):
        assert compute_candidates(make_profile()) == [(ComputeMode.CPU, GpuBackend.NONE)]

    def test_full_order_metal_cuda_vulkan_cpu(self, make_profile):
        profile = make_profile(
            vram_bytes=12 * GIB,
            gpu_name="Some GPU",
            has_metal=True,
            has_cuda=True,
            has_vulkan=True,
        )
        assert compute_candidates(profile) == [
            (ComputeMode.GPU, GpuBackend.METAL),
            (ComputeMode.GPU, GpuBackend.CUDA),
            (ComputeMode.HYBRID, GpuBackend.VULKAN),
            (ComputeMode.CPU, GpuBackend.NONE),
        ]

    def test_weak_gpu_leaves_only_cpu(self, make_profile):
        profile = make_profile(vram_bytes=1 * GIB, has_cuda=True, has_vulkan=True)
        assert compute_candidates(profile) == [(ComputeMode.CPU, GpuBackend.NONE)]

    def test_preference_pins_a_single_candidate(self, make_profile):
        profile = make_profile(vram_bytes=8 * GIB, has_cuda=True)
        assert compute_candidates(profile, ComputeMode.HYBRID) == [(ComputeMode.HYBRID, GpuBackend.CUDA)]
        assert compute_candidates(profile, ComputeMode.CPU) == [(ComputeMode.CPU, GpuBackend.NONE)]

    def test_choose_backend_is_first_candidate(self, make_profile):
        profile = make_profile(vram_bytes=8 * GIB, gpu_name="NVIDIA", has_cuda=True)
        assert choose_backend(profile) == (ComputeMode.GPU, GpuBackend.CUDA)


class TestPreferences:

    @pytest.mark.parametrize("raw,expected", [("3", 3), (" 0 ", 0), ("auto", None), ("", None), ("7", None), (None, None)])
    def test_parse_preferred_tier(self, raw, expected):
        assert parse_preferred_tier(raw) == expected

    def test_unknown_compute_preference_means_auto(self):
        assert normalize_preferred_compute("auto") is None
        assert normalize_preferred_compute("Hybrid") is ComputeMode.HYBRID


class TestRecommend:

    def test_big_cpu_box_is_limited_by_cores(self, make_profile):
        profile = make_profile(total_memory_bytes=32 * GIB, cpu_cores=16)
        rec = recommend(profile)
        assert rec.tier == 1
        assert rec.model_id == "qwen3_1_7b_q4_k_m"
        assert rec.compute_mode is ComputeMode.CPU
        assert rec.gpu_backend is GpuBackend.NONE
        assert rec.cuda_version is CudaVersion.V12_4

    def test_8gb_cuda_card_gets_tier_2_on_gpu(self, make_profile):
        profile = make_profile(
            total_memory_bytes=32 * GIB,
            cpu_cores=16,
            vram_bytes=8 * GIB,
            gpu_name="NVIDIA GeForce RTX 3070",
            has_cuda=True,
        )
        rec = recommend(profile, cuda_version="13.1")
        assert (rec.tier, rec.compute_mode, rec.gpu_backend) == (2, ComputeMode.GPU, GpuBackend.CUDA)
        assert rec.model_id == "qwen3_4b_q4_k_m"
        assert rec.cuda_version is CudaVersion.V13_1

    def test_preferred_tier_is_still_capped_by_vram_on_gpu(self, make_profile):
        profile = make_profile(vram_bytes=6 * GIB, gpu_name="NVIDIA", has_cuda=True)
        assert start_tier(profile, ComputeMode.GPU, 5) == 2
        assert start_tier(profile, ComputeMode.CPU, 5) == 5

    def test_gpu_tier_needs_ram_too(self, make_profile):
        profile = make_profile(total_memory_bytes=8 * GIB, vram_bytes=24 * GIB)
        assert tier_from_resources(profile, ComputeMode.GPU) == 1


class TestBenchmarkTier:

    @pytest.mark.parametrize("tps,expected", [(5.0, 0), (20.0, 1), (60.0, 2), (150.0, 3), (200.0, 4), (500.0, 5)])
    def test_speed_thresholds(self, make_profile, tps, expected):
        profile = make_profile(total_memory_bytes=64 * GIB)
        tier, model_id = tier_from_benchmark(tps, profile, ComputeMode.CPU)
        assert tier == expected
        assert model_id.startswith("qwen3_")

    def test_ram_caps_a_fast_result(self, make_profile):
        profile = make_profile(total_memory_bytes=12 * GIB)
        assert tier_from_benchmark(500.0, profile, ComputeMode.CPU)[0] == 2

    def test_vram_caps_gpu_result(self, make_profile):
        profile = make_profile(total_memory_bytes=64 * GIB, vram_bytes=4 * GIB)
        assert tier_from_benchmark(500.0, profile, ComputeMode.GPU)[0] == 1
