from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, TYPE_CHECKING
import asyncio
import logging
import threading

from app.llama_bootstrap import ensure_model, ensure_runtime, runtime_dir, runtime_installed
from config.compute_config import ComputeConfig
from config.download_config import DownloadConfig
from config.llama_config import LlamaServerDefaults
from config.llm_models import model_candidate_paths, model_id_from_path, sanitize_model_id
from config.paths_config import LlmPathsConfig
from helpers.platforms import current_platform
from interfaces.llm.status import ServerStatus
from llm.config_resolver import resolve_server_config
from llm.errors import ServerStartError
from llm.server_process import LlamaServerProcess, pick_free_port, wait_port_open

if TYPE_CHECKING:
    import httpx

    from interfaces.platform.capabilities import PlatformCapabilities
    from interfaces.progress.sink import ProgressSink

logger = logging.getLogger(__name__)


class BuiltinLlmSupervisor:
    """
    Owns the single llama-server child process.

    Each tracked field has its own lock, held only for one read or write, so
    status queries never wait behind a slow start. ensure_running and stop are
    serialised by an asyncio lock.
    """

    def __init__(
        self,
        paths: LlmPathsConfig,
        server: LlamaServerDefaults | None = None,
        download: DownloadConfig | None = None,
        platform: "PlatformCapabilities | None" = None,
        process_factory: Callable[..., LlamaServerProcess] = LlamaServerProcess,
    ) -> None:
        self.paths = paths
        self.server = server or LlamaServerDefaults()
        self.download = download or DownloadConfig()
        self.platform = platform or current_platform()
        self.process_factory = process_factory

        # set from any thread to abort the download in progress
        self.cancel = threading.Event()

        self._proc_lock = threading.Lock()
        self._proc: Optional[LlamaServerProcess] = None
        self._port_lock = threading.Lock()
        self._port: Optional[int] = None
        self._model_lock = threading.Lock()
        self._model_path: Optional[Path] = None
        self._config_lock = threading.Lock()
        self._config: Optional[ComputeConfig] = None

        self._op_lock = asyncio.Lock()

    # ---- state accessors ----

    def is_running(self) -> bool:
        with self._proc_lock:
            proc = self._proc
            if proc is None:
                return False
            if proc.is_running():
                return True
            logger.warning("llama-server pid %s exited on its own", proc.pid)
            self._proc = None
            return False

    def current_port(self) -> Optional[int]:
        with self._port_lock:
            return self._port

    def current_model_path(self) -> Optional[Path]:
        with self._model_lock:
            return self._model_path

    def running_config(self) -> Optional[ComputeConfig]:
        with self._config_lock:
            return self._config

    def running_model_id(self) -> Optional[str]:
        path = self.current_model_path()
        if path is None:
            return None
        return model_id_from_path(self.paths.models_dir, path)

    def base_url(self) -> Optional[str]:
        port = self.current_port()
        return self.server.base_url(port) if port is not None else None

    def adopt_orphan(self, port: int) -> None:
        """Remember a server left behind by an earlier run so stop() can clean it up."""
        logger.info("Adopting orphaned llama-server port %s", port)
        with self._port_lock:
            self._port = port

    def _record(self, proc: LlamaServerProcess, port: int, model_path: Path, config: ComputeConfig) -> None:
        with self._proc_lock:
            self._proc = proc
        with self._port_lock:
            self._port = port
        with self._model_lock:
            self._model_path = model_path
        with self._config_lock:
            self._config = config

    def _clear(self) -> tuple[Optional[LlamaServerProcess], Optional[int]]:
        with self._proc_lock:
            proc, self._proc = self._proc, None
        with self._port_lock:
            port, self._port = self._port, None
        with self._model_lock:
            self._model_path = None
        with self._config_lock:
            self._config = None
        return proc, port

    # ---- status ----

    def status(self, model_id: str, config: ComputeConfig | None = None) -> ServerStatus:
        model_id = sanitize_model_id(model_id)
        config = config or ComputeConfig()
        running = self.is_running()
        running_model_id = self.running_model_id() if running else None
        return ServerStatus(
            runtime_installed=runtime_installed(self.paths.llm_dir, config),
            model_installed=any(p.exists() for p in model_candidate_paths(self.paths.models_dir, model_id)),
            model_id=model_id,
            running_model_id=running_model_id,
            running_this_model=running_model_id == model_id,
            running=running,
            base_url=self.base_url() if running else None,
        )

    # ---- lifecycle ----

    def can_reuse(self, model_id: str, config: ComputeConfig) -> bool:
        if not self.is_running():
            return False
        current = self.running_config()
        if current is None or self.running_model_id() != model_id:
            return False
        return config.same_launch_as(current)

    async def ensure_running(
        self,
        config: ComputeConfig,
        model_id: str,
        allow_download: bool = True,
        *,
        sink: "ProgressSink | None" = None,
        model_url: Optional[str] = None,
        runtime_url: Optional[str] = None,
        cudart_url: Optional[str] = None,
        client: "httpx.AsyncClient | None" = None,
    ) -> ServerStatus:
        """
        Start llama-server for (model, config), reusing the current server when it
        already runs the same model with the same launch settings.
        """
        model_id = sanitize_model_id(model_id)
        async with self._op_lock:
            if self.can_reuse(model_id, config):
                logger.info("Reusing running llama-server for %s (%s)", model_id, config.describe())
                return self.status(model_id, config)
            if self.is_running() or self.current_port() is not None:
                logger.info("Restarting llama-server for %s (%s)", model_id, config.describe())
                self.shutdown()

            server_bin = await ensure_runtime(
                self.paths, config,
                platform=self.platform, download=self.download, sink=sink, cancel=self.cancel,
                runtime_url=runtime_url, cudart_url=cudart_url, client=client,
            )
            model = await ensure_model(
                self.paths, model_id, allow_download,
                download=self.download, sink=sink, cancel=self.cancel, model_url=model_url, client=client,
            )

            port = pick_free_port(self.server.llama_host)
            cfg = resolve_server_config(
                self.server, config,
                server_bin=server_bin,
                model_path=model,
                runtime_dir=runtime_dir(self.paths.llm_dir, config),
                port=port,
            )
            proc = self.process_factory(cfg=cfg, platform=self.platform)
            proc.start()
            self._record(proc, port, model, config)

            ready = await asyncio.to_thread(
                wait_port_open,
                self.server.llama_host,
                port,
                self.server.ready_timeout_s,
                self.server.ready_poll_interval_s,
                proc.has_exited,
            )
            if not ready:
                logger.error("llama-server did not open port %s within %.1fs", port, self.server.ready_timeout_s)
                self.shutdown()
                raise ServerStartError("llama-server failed to start")

            logger.info("llama-server ready at %s serving %s", self.server.base_url(port), model.name)
            return self.status(model_id, config)

    async def stop(self) -> None:
        async with self._op_lock:
            self.shutdown()

    def shutdown(self) -> None:
        """
        Synchronous stop for atexit and finalisers. Kills the tracked child, or
        whatever still listens on the recorded port when the child was lost.
        """
        proc, port = self._clear()
        if proc is not None:
            logger.info("Stopping llama-server pid %s", proc.pid)
            proc.stop(self.server.stop_wait_s)
        elif port is not None:
            pid = self.platform.find_pid_by_port(port)
            if pid is not None:
                logger.warning("Killing orphaned llama-server pid %s on port %s", pid, port)
                self.platform.kill_pid_tree(pid)

    def __del__(self) -> None:
        if "_proc_lock" in self.__dict__:
            self.shutdown()

