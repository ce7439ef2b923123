from __future__ import annotations

from dataclasses import dataclass
import os

from app.llama_bootstrap import get_app_base_dir
from config.download_config import DownloadConfig
from config.llama_config import LlamaServerDefaults
from config.paths_config import LlmPathsConfig
from config.tier_config import TierConfig

APP_NAME = "Aireader"
APP_ORG = "Aireader"


@dataclass(frozen=True, slots=True)
class AppConfig:
    paths: LlmPathsConfig
    server: LlamaServerDefaults
    download: DownloadConfig
    tiers: TierConfig


def build_settings() -> AppConfig:

    paths = LlmPathsConfig.from_strings(
        llm_dir=get_app_base_dir(APP_NAME, APP_ORG) / "llm",
        models_dir=os.getenv("LLM_MODELS_DIR") or None,
        resource_dir=os.getenv("LLM_RESOURCE_DIR") or None,
    )
    paths.validate()
    paths.ensure_dirs()

    server = LlamaServerDefaults.from_strings(
        llama_host="127.0.0.1",
        llama_n_ctx=4096,
        ready_timeout_s=12.0,
    )

    download = DownloadConfig()
    download.validate()

    tiers = TierConfig()
    tiers.validate()

    return AppConfig(paths=paths, server=server, download=download, tiers=tiers)
