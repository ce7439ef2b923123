from __future__ import annotations
from dataclasses import dataclass

LLAMA_CPP_RELEASE = "b7966"


@dataclass(frozen=True, slots=True)
class DownloadConfig:
    """
    Network settings for runtime and model acquisition.

    runtime_base_urls are release folders; the archive name for the current
    platform/variant is appended to each of them.
    """
    probe_timeout_s: float = 8.0
    connect_timeout_s: float = 30.0
    read_timeout_s: float = 30.0
    progress_interval_s: float = 0.2
    extract_progress_interval_s: float = 0.15
    speed_window_s: float = 1.0
    chunk_size: int = 1024 * 1024
    user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) Aireader/0.1"
    release: str = LLAMA_CPP_RELEASE
    runtime_base_urls: tuple[str, ...] = (
        f"https://www.modelscope.cn/datasets/Lissajous/llamacppforall/resolve/master/{LLAMA_CPP_RELEASE}",
        f"https://github.com/ggml-org/llama.cpp/releases/download/{LLAMA_CPP_RELEASE}",
    )

    def runtime_urls(self, archive_name: str) -> list[str]:
        return [f"{base.rstrip('/')}/{archive_name}" for base in self.runtime_base_urls]

    def validate(self) -> None:
        if self.probe_timeout_s <= 0:
            raise ValueError("DownloadConfig.probe_timeout_s must be positive.")
        if self.read_timeout_s <= 0:
            raise ValueError("DownloadConfig.read_timeout_s must be positive.")
        if self.progress_interval_s <= 0 or self.extract_progress_interval_s <= 0:
            raise ValueError("DownloadConfig progress intervals must be positive.")
        if self.speed_window_s <= 0:
            raise ValueError("DownloadConfig.speed_window_s must be positive.")
        if self.chunk_size <= 0:
            raise ValueError("DownloadConfig.chunk_size must be a positive integer.")
        if not self.runtime_base_urls:
            raise ValueError("DownloadConfig.runtime_base_urls must not be empty.")
