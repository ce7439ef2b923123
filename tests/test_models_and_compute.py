"""
Tests for the model catalog and compute configuration.

Tests cover:
- Model id sanitising and catalog lookups
- File name <-> id mapping
- Compute mode / backend / CUDA normalisation
- Reuse comparison between launch configs
"""

from pathlib import Path

import pytest

from config.compute_config import (
    ALL_GPU_LAYERS,
    ComputeConfig,
    ComputeMode,
    CudaVersion,
    GpuBackend,
    normalize_compute_mode,
    normalize_cuda_version,
    normalize_gpu_backend,
)
from config.llm_models import (
    DEFAULT_MODEL_ID,
    MODEL_SPECS,
    model_file_name,
    model_file_path,
    model_id_for_file_name,
    model_id_from_path,
    model_urls,
    sanitize_model_id,
    tier_to_model_id,
)


class TestSanitizeModelId:

    @pytest.mark.parametrize("raw", [None, "", "   ", "...", "___"])
    def test_empty_input_falls_back_to_default(self, raw):
        assert sanitize_model_id(raw) == DEFAULT_MODEL_ID

    def test_disallowed_characters_become_underscores(self):
        assert sanitize_model_id("my model/v2") == "my_model_v2"

    def test_non_ascii_is_replaced(self):
        assert sanitize_model_id("модель1") == "1"

    def test_edges_are_trimmed(self):
        assert sanitize_model_id("._my-model_.") == "my-model"

    def test_length_is_capped(self):
        assert len(sanitize_model_id("a" * 200)) == 80

    def test_catalog_keys_are_stable(self):
        for spec in MODEL_SPECS:
            assert sanitize_model_id(spec.key) == spec.key


class TestCatalog:

    def test_one_model_per_tier(self):
        assert sorted(s.tier for s in MODEL_SPECS) == [0, 1, 2, 3, 4, 5]

    def test_tier_to_model_id_clamps(self):
        assert tier_to_model_id(-3) == "qwen3_0_6b_q4_k_m"
        assert tier_to_model_id(2) == "qwen3_4b_q4_k_m"
        assert tier_to_model_id(42) == "qwen3_32b_q4_k_m"

    def test_unknown_id_uses_smallest_file_name(self):
        assert model_file_name("nope") == "Qwen3-0.6B-Q4_K_M.gguf"

    def test_builtin_urls_list_modelscope_then_hugging_face(self):
        urls = model_urls("qwen3_8b_q4_k_m")
        assert len(urls) == 3
        assert urls[0].startswith("https://www.modelscope.cn/models/unsloth/Qwen3-8B-GGUF/")
        assert "huggingface.co" in urls[1]
        assert urls[1] == urls[2]
        assert all(u.endswith("Qwen3-8B-Q4_K_M.gguf") for u in urls)

    def test_custom_model_has_no_urls(self):
        assert model_urls("my_model") == ()

    def test_custom_model_path_appends_extension_once(self, tmp_path: Path):
        assert model_file_path(tmp_path, "mine") == tmp_path / "mine.gguf"
        assert model_file_path(tmp_path, "mine.gguf") == tmp_path / "mine.gguf"

    def test_path_maps_back_to_catalog_key(self, tmp_path: Path):
        path = model_file_path(tmp_path, "qwen3_1_7b_q4_k_m")
        assert model_id_from_path(tmp_path, path) == "qwen3_1_7b_q4_k_m"
        assert model_id_from_path(tmp_path, tmp_path / "my model.gguf") == "my_model"
        assert model_id_from_path(tmp_path, Path("/elsewhere/x.gguf")) is None

    def test_file_name_maps_to_id(self):
        assert model_id_for_file_name("Qwen3-14B-Q4_K_M.gguf") == "qwen3_14b_q4_k_m"
        assert model_id_for_file_name("custom-7b.gguf") == "custom-7b"


class TestNormalisers:

    def test_unknown_compute_mode_is_cpu(self):
        assert normalize_compute_mode("turbo") is ComputeMode.CPU
        assert normalize_compute_mode(None) is ComputeMode.CPU
        assert normalize_compute_mode(" GPU ") is ComputeMode.GPU

    def test_unknown_backend_is_platform_default(self):
        assert normalize_gpu_backend("directx") is GpuBackend.platform_default()
        assert normalize_gpu_backend("CUDA") is GpuBackend.CUDA

    def test_unknown_cuda_version_is_12_4(self):
        assert normalize_cuda_version("11.8") is CudaVersion.V12_4
        assert normalize_cuda_version("13.1") is CudaVersion.V13_1


class TestComputeConfig:

    def test_cpu_always_carries_none_backend(self):
        cfg = ComputeConfig.from_strings("cpu", "cuda")
        assert cfg.gpu_backend is GpuBackend.NONE
        assert cfg.n_gpu_layers() == 0

    def test_gpu_mode_never_carries_none_backend(self):
        cfg = ComputeConfig.from_strings("gpu", "none")
        assert cfg.gpu_backend is GpuBackend.platform_default()
        assert cfg.n_gpu_layers() == ALL_GPU_LAYERS

    def test_hybrid_uses_requested_layers(self):
        cfg = ComputeConfig.from_strings("hybrid", "vulkan", None, 12)
        assert cfg.n_gpu_layers() == 12

    def test_negative_layers_become_zero(self):
        assert ComputeConfig.from_strings("hybrid", "vulkan", None, -4).gpu_layers == 0

    def test_same_launch_ignores_layers_outside_hybrid(self):
        a = ComputeConfig.from_strings("gpu", "cuda", "12.4", 10)
        b = ComputeConfig.from_strings("gpu", "cuda", "12.4", 30)
        assert a.same_launch_as(b)

    def test_same_launch_compares_hybrid_layers(self):
        a = ComputeConfig.from_strings("hybrid", "vulkan", None, 10)
        b = ComputeConfig.from_strings("hybrid", "vulkan", None, 30)
        assert not a.same_launch_as(b)

    def test_same_launch_compares_cuda_version(self):
        a = ComputeConfig.from_strings("gpu", "cuda", "12.4")
        b = ComputeConfig.from_strings("gpu", "cuda", "13.1")
        assert not a.same_launch_as(b)

    def test_same_launch_compares_backend(self):
        a = ComputeConfig.from_strings("gpu", "cuda")
        b = ComputeConfig.from_strings("gpu", "vulkan")
        assert not a.same_launch_as(b)
