from __future__ import annotations
from dataclasses import dataclass

from config.compute_config import DEFAULT_GPU_LAYERS

@dataclass(frozen=True, slots=True)
class LlamaServerDefaults:
    llama_host: str = "127.0.0.1"
    llama_n_ctx: int = 4096
    llama_jinja: bool = True
    llama_default_gpu_layers: int = DEFAULT_GPU_LAYERS

    # readiness = the port accepts a TCP connection
    ready_timeout_s: float = 12.0
    ready_poll_interval_s: float = 0.15
    stop_wait_s: float = 5.0

    # deleting a runtime right after stopping the server can race with file handles
    delete_retry_attempts: int = 3
    delete_retry_delay_s: float = 0.5

    bench_n_gen: int = 64
    bench_repetitions: int = 1

    def base_url(self, port: int) -> str:
        return f"http://{self.llama_host}:{port}"

    def validate(self) -> None:
        if not isinstance(self.llama_host, str) or not self.llama_host.strip():
            raise ValueError("LlamaServerDefaults.llama_host must be a non-empty string.")
        if not isinstance(self.llama_n_ctx, int) or self.llama_n_ctx <= 0:
            raise ValueError("LlamaServerDefaults.llama_n_ctx must be a positive integer.")
        if not isinstance(self.llama_default_gpu_layers, int) or self.llama_default_gpu_layers < 0:
            raise ValueError("LlamaServerDefaults.llama_default_gpu_layers must be a non-negative integer.")
        if self.ready_timeout_s <= 0:
            raise ValueError("LlamaServerDefaults.ready_timeout_s must be positive.")
        if self.ready_poll_interval_s <= 0:
            raise ValueError("LlamaServerDefaults.ready_poll_interval_s must be positive.")
        if self.delete_retry_attempts < 1:
            raise ValueError("LlamaServerDefaults.delete_retry_attempts must be at least 1.")
        if self.bench_n_gen <= 0:
            raise ValueError("LlamaServerDefaults.bench_n_gen must be a positive integer.")

    @staticmethod
    def from_strings(
        llama_host: str = "127.0.0.1",
        llama_n_ctx: int = 4096,
        ready_timeout_s: float = 12.0,
    ) -> "LlamaServerDefaults":
        cfg = LlamaServerDefaults(
            llama_host=llama_host,
            llama_n_ctx=int(llama_n_ctx),
            ready_timeout_s=float(ready_timeout_s),
        )
        cfg.validate()
        return cfg
