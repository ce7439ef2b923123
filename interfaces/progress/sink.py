from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol


@dataclass(frozen=True)
class DownloadProgress:
    written: int
    total: Optional[int]
    label: str
    speed: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {"written": self.written, "total": self.total, "label": self.label, "speed": self.speed}


class ProgressSink(Protocol):
    def report(self, progress: DownloadProgress) -> None:
        ...
