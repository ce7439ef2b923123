from __future__ import annotations

from dataclasses import dataclass
from config.paths_config import LlmPathsConfig
from config.llama_config import LlamaServerDefaults
from config.download_config import DownloadConfig
from config.tier_config import TierConfig


@dataclass(frozen=True)
class AppConfigShape:
    paths: LlmPathsConfig
    server: LlamaServerDefaults
    download: DownloadConfig
    tiers: TierConfig
