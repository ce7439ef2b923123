from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from huggingface_hub import hf_hub_url

DEFAULT_MODEL_ID = "qwen3_0_6b_q4_k_m"
MAX_MODEL_ID_LEN = 80
GGUF_MAGIC = b"GGUF"

_MODELSCOPE_BASE = "https://www.modelscope.cn/models"


@dataclass(frozen=True)
class BuiltinModelSpec:
    key: str
    display_name: str
    tier: int
    hf_repo_id: str
    hf_filename: str
    param_size_b: float

    @property
    def urls(self) -> tuple[str, ...]:
        """
        Mirror list in declared order: ModelScope, Hugging Face, Hugging Face again
        as a retry slot. The download order is decided at runtime by the mirror race.
        """
        modelscope = f"{_MODELSCOPE_BASE}/{self.hf_repo_id}/resolve/master/{self.hf_filename}"
        hf = hf_hub_url(repo_id=self.hf_repo_id, filename=self.hf_filename)
        return (modelscope, hf, hf)


MODEL_SPECS: list[BuiltinModelSpec] = [
    BuiltinModelSpec(
        key="qwen3_0_6b_q4_k_m",
        display_name="Qwen3 0.6B Q4_K_M",
        tier=0,
        hf_repo_id="unsloth/Qwen3-0.6B-GGUF",
        hf_filename="Qwen3-0.6B-Q4_K_M.gguf",
        param_size_b=0.6,
    ),
    BuiltinModelSpec(
        key="qwen3_1_7b_q4_k_m",
        display_name="Qwen3 1.7B Q4_K_M",
        tier=1,
        hf_repo_id="unsloth/Qwen3-1.7B-GGUF",
        hf_filename="Qwen3-1.7B-Q4_K_M.gguf",
        param_size_b=1.7,
    ),
    BuiltinModelSpec(
        key="qwen3_4b_q4_k_m",
        display_name="Qwen3 4B Q4_K_M",
        tier=2,
        hf_repo_id="unsloth/Qwen3-4B-GGUF",
        hf_filename="Qwen3-4B-Q4_K_M.gguf",
        param_size_b=4,
    ),
    BuiltinModelSpec(
        key="qwen3_8b_q4_k_m",
        display_name="Qwen3 8B Q4_K_M",
        tier=3,
        hf_repo_id="unsloth/Qwen3-8B-GGUF",
        hf_filename="Qwen3-8B-Q4_K_M.gguf",
        param_size_b=8,
    ),
    BuiltinModelSpec(
        key="qwen3_14b_q4_k_m",
        display_name="Qwen3 14B Q4_K_M",
        tier=4,
        hf_repo_id="unsloth/Qwen3-14B-GGUF",
        hf_filename="Qwen3-14B-Q4_K_M.gguf",
        param_size_b=14,
    ),
    BuiltinModelSpec(
        key="qwen3_32b_q4_k_m",
        display_name="Qwen3 32B Q4_K_M",
        tier=5,
        hf_repo_id="unsloth/Qwen3-32B-GGUF",
        hf_filename="Qwen3-32B-Q4_K_M.gguf",
        param_size_b=32,
    ),
]

_SPECS_BY_KEY = {s.key: s for s in MODEL_SPECS}

# Files written by older releases under a different name
LEGACY_MODEL_FILES: dict[str, str] = {
    "q8_0": "Qwen3-Embedding-0.6B-Q8_0.gguf",
}


def sanitize_model_id(raw: Optional[str]) -> str:
    """
    Map any input onto a usable model id: ASCII alphanumerics plus `_-.`,
    at most 80 chars, never empty.
    """
    value = (raw or "").strip()
    if not value:
        return DEFAULT_MODEL_ID

    out = "".join(ch if (ch.isascii() and ch.isalnum()) or ch in "_-." else "_" for ch in value)
    out = out.strip(".").strip("_").strip("-")
    out = out[:MAX_MODEL_ID_LEN]
    if not out:
        return DEFAULT_MODEL_ID
    return out


def is_builtin_model_id(model_id: str) -> bool:
    return model_id in _SPECS_BY_KEY


def get_builtin_spec(model_id: str) -> Optional[BuiltinModelSpec]:
    return _SPECS_BY_KEY.get(model_id)


def tier_to_model_id(tier: int) -> str:
    tier = max(0, min(int(tier), len(MODEL_SPECS) - 1))
    return next(s.key for s in MODEL_SPECS if s.tier == tier)


def model_file_name(model_id: str) -> str:
    """Catalog file name; unknown ids map to the smallest model."""
    spec = _SPECS_BY_KEY.get(model_id) or _SPECS_BY_KEY[DEFAULT_MODEL_ID]
    return spec.hf_filename


def model_urls(model_id: str) -> tuple[str, ...]:
    spec = _SPECS_BY_KEY.get(model_id)
    return spec.urls if spec else ()


def model_file_path(models_dir: Path, model_id: str) -> Path:
    if is_builtin_model_id(model_id):
        return models_dir / model_file_name(model_id)
    stem = model_id[: -len(".gguf")] if model_id.endswith(".gguf") else model_id
    return models_dir / f"{stem}.gguf"


def model_candidate_paths(models_dir: Path, model_id: str) -> list[Path]:
    out = [model_file_path(models_dir, model_id)]
    legacy = LEGACY_MODEL_FILES.get(model_id)
    if legacy:
        out.append(models_dir / legacy)
    return out


def model_id_from_path(models_dir: Path, path: Path) -> Optional[str]:
    """Reverse of model_file_path: catalog files map back to their key, anything else to its sanitized stem."""
    for spec in MODEL_SPECS:
        if path == model_file_path(models_dir, spec.key):
            return spec.key
    try:
        rel = path.relative_to(models_dir)
    except ValueError:
        return None
    if not rel.stem:
        return None
    return sanitize_model_id(rel.stem)


def model_id_for_file_name(file_name: str) -> str:
    for spec in MODEL_SPECS:
        if spec.hf_filename == file_name:
            return spec.key
    return sanitize_model_id(Path(file_name).stem)
