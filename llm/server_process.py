from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional
import logging
import socket
import subprocess
import time

from helpers.platforms import current_platform
from interfaces.platform.capabilities import PlatformCapabilities
from llm.config_resolver import LlamaServerConfig
from llm.errors import ServerStartError

logger = logging.getLogger(__name__)


def pick_free_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for an unused port. The socket is closed before the server binds it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


def wait_port_open(
    host: str,
    port: int,
    timeout_s: float,
    interval_s: float = 0.15,
    should_abort: Optional[Callable[[], bool]] = None,
) -> bool:
    """
    Poll until something accepts TCP connections on host:port.
    Readiness here means "listening", not "model loaded".
    """
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        try:
            with socket.create_connection((host, port), timeout=interval_s):
                return True
        except OSError:
            pass
        if should_abort is not None and should_abort():
            return False
        time.sleep(interval_s)
    return False


@dataclass
class LlamaServerProcess:
    cfg: LlamaServerConfig
    platform: PlatformCapabilities = field(default_factory=current_platform)
    popen: Callable[..., Any] = subprocess.Popen

    _proc: Any = None

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    def is_running(self) -> bool:
        return self._proc is not None and (self._proc.poll() is None)

    def has_exited(self) -> bool:
        return self._proc is not None and self._proc.poll() is not None

    def start(self) -> None:
        if self.is_running():
            return

        if not self.cfg.server_bin.exists():
            raise FileNotFoundError(f"llama-server not found: {self.cfg.server_bin}")
        if not self.cfg.model_path.exists():
            raise FileNotFoundError(f"Model not found: {self.cfg.model_path}")

        cmd = self.cfg.command()
        logger.info("Starting llama-server with args: %s", cmd)

        try:
            self._proc = self.popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                **self.platform.popen_kwargs(self.cfg.server_bin, self.cfg.runtime_dir),
            )
        except OSError as e:
            raise ServerStartError(f"failed to spawn llama-server: {e}") from e

    def stop(self, wait_s: float = 5.0) -> None:
        """Kill the server and everything it spawned."""
        if self._proc is None:
            return
        proc, self._proc = self._proc, None
        if proc.poll() is None:
            self.platform.kill_pid_tree(proc.pid)
        try:
            proc.wait(timeout=wait_s)
        except subprocess.TimeoutExpired:
            logger.warning("llama-server pid %s did not exit within %.1fs", proc.pid, wait_s)
