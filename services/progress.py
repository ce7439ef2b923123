from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Sequence
import logging
import threading

from interfaces.progress.sink import DownloadProgress, ProgressSink

logger = logging.getLogger(__name__)


class NullProgressSink:
    def report(self, progress: DownloadProgress) -> None:
        return None


def _fmt_bytes(n: int) -> str:
    value = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


@dataclass
class LoggingProgressSink:
    """
    Logs progress lines. Repeated events for the same label are thinned to one
    every `min_step_pct` percent so a multi-GB download does not flood the log.
    """
    level: int = logging.INFO
    min_step_pct: float = 5.0
    _last_pct: dict[str, float] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def report(self, progress: DownloadProgress) -> None:
        if progress.total:
            pct = 100.0 * progress.written / progress.total
            with self._lock:
                last = self._last_pct.get(progress.label)
                done = progress.written >= progress.total
                if last is not None and not done and pct - last < self.min_step_pct:
                    return
                self._last_pct[progress.label] = pct
            speed = f" at {_fmt_bytes(progress.speed)}/s" if progress.speed else ""
            logger.log(
                self.level, "%s: %s / %s (%.0f%%)%s",
                progress.label, _fmt_bytes(progress.written), _fmt_bytes(progress.total), pct, speed,
            )
        elif progress.written == 0:
            logger.log(self.level, "%s: connecting", progress.label)


@dataclass
class CallbackProgressSink:
    """Adapts a plain callable (UI channel, websocket send, ...) receiving the camelCase dict."""
    callback: Callable[[dict], None]

    def report(self, progress: DownloadProgress) -> None:
        self.callback(progress.to_dict())


@dataclass
class ProgressFanOut:
    sinks: Sequence[ProgressSink]

    def report(self, progress: DownloadProgress) -> None:
        for sink in self.sinks:
            sink.report(progress)
