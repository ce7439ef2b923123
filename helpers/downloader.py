from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence, TYPE_CHECKING
import asyncio
import logging
import os
import threading
import time

import httpx

from config.download_config import DownloadConfig
from interfaces.progress.sink import DownloadProgress
from llm.errors import DownloadCancelled, DownloadFailed

if TYPE_CHECKING:
    from interfaces.progress.sink import ProgressSink

logger = logging.getLogger(__name__)


def part_path(dest: Path) -> Path:
    return dest.with_name(dest.name + ".part")


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)


async def _probe_one(client: httpx.AsyncClient, url: str, timeout_s: float) -> Optional[float]:
    start = time.monotonic()
    try:
        resp = await asyncio.wait_for(client.head(url), timeout=timeout_s)
    except (httpx.HTTPError, asyncio.TimeoutError) as e:
        logger.debug("Mirror probe failed for %s: %s", url, e)
        return None
    # some CDNs refuse HEAD but serve GET fine
    if resp.is_success or resp.status_code == 405:
        return time.monotonic() - start
    logger.debug("Mirror probe for %s returned HTTP %s", url, resp.status_code)
    return None


async def probe_mirror_order(
    client: httpx.AsyncClient,
    urls: Sequence[str],
    timeout_s: float = 8.0,
) -> list[str]:
    """
    Order mirrors fastest first by racing HEAD requests.

    Each distinct URL is probed once. Responders come first, sorted by
    latency. Every other declared entry follows in declared order, repeats
    included, so a URL listed twice keeps its retry slot. When nothing
    responds the declared order comes back unchanged.
    """
    first_index: dict[str, int] = {}
    for i, url in enumerate(urls):
        if url and url not in first_index:
            first_index[url] = i
    if not first_index:
        return []
    probed = list(first_index.items())
    latencies = await asyncio.gather(*(_probe_one(client, u, timeout_s) for u, _ in probed))
    responded = sorted(
        (lat, i) for (_, i), lat in zip(probed, latencies) if lat is not None
    )
    logger.debug(
        "Mirror probe results: %s",
        [(urls[i][:50], round(lat * 1000)) for lat, i in responded],
    )
    used = {i for _, i in responded}
    ordered = [urls[i] for _, i in responded]
    ordered += [u for i, u in enumerate(urls) if u and i not in used]
    return ordered


def _report(sink: "ProgressSink | None", progress: DownloadProgress) -> None:
    if sink is not None:
        sink.report(progress)


class _Throttle:
    """Emits at most once per interval and keeps a moving speed estimate."""

    def __init__(self, interval_s: float, speed_window_s: float) -> None:
        self.interval_s = interval_s
        self.speed_window_s = speed_window_s
        now = time.monotonic()
        self._last_emit = now
        self._window_start = now
        self._window_written = 0
        self.speed: Optional[int] = None

    def due(self, written: int) -> bool:
        now = time.monotonic()
        if now - self._last_emit < self.interval_s:
            return False
        elapsed = now - self._window_start
        if elapsed >= self.speed_window_s:
            self.speed = int((written - self._window_written) / elapsed)
            self._window_written = written
            self._window_start = now
        self._last_emit = now
        return True


async def _attempt(
    client: httpx.AsyncClient,
    url: str,
    tmp: Path,
    label: str,
    sink: "ProgressSink | None",
    cancel: Optional[threading.Event],
    config: DownloadConfig,
) -> Optional[str]:
    """
    One mirror. Returns None on success, otherwise the reason this mirror failed.
    Raises DownloadCancelled when the cancel flag trips mid-stream.
    """
    async with client.stream("GET", url) as resp:
        if not resp.is_success:
            return f"HTTP {resp.status_code}"

        raw_len = resp.headers.get("content-length")
        expected = int(raw_len) if raw_len and raw_len.isdigit() else None
        _report(sink, DownloadProgress(written=0, total=expected, label=label))

        written = 0
        throttle = _Throttle(config.progress_interval_s, config.speed_window_s)
        with open(tmp, "wb") as f:
            async for chunk in resp.aiter_bytes(config.chunk_size):
                if cancel is not None and cancel.is_set():
                    raise DownloadCancelled()
                f.write(chunk)
                written += len(chunk)
                if throttle.due(written):
                    _report(sink, DownloadProgress(written=written, total=expected, label=label, speed=throttle.speed))

        _report(sink, DownloadProgress(written=written, total=expected, label=label, speed=throttle.speed))

    if expected is not None and written != expected:
        return f"incomplete download ({written}/{expected})"
    return None


def _new_client(config: DownloadConfig) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        headers={"User-Agent": config.user_agent},
        timeout=httpx.Timeout(config.connect_timeout_s, read=config.read_timeout_s),
        follow_redirects=True,
    )


async def download_to_file(
    urls: Sequence[str],
    dest: Path,
    label: str,
    *,
    sink: "ProgressSink | None" = None,
    cancel: Optional[threading.Event] = None,
    config: DownloadConfig | None = None,
    client: httpx.AsyncClient | None = None,
) -> Path:
    """
    Download `dest` from the first mirror that delivers it completely.

    Data goes to `<dest>.part` and is moved onto `dest` only after the length
    check passes. Cancellation removes the partial file.
    """
    config = config or DownloadConfig()
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = part_path(dest)

    owns_client = client is None
    if client is None:
        client = _new_client(config)

    errors: list[str] = []
    try:
        ordered = await probe_mirror_order(client, urls, config.probe_timeout_s)
        if not ordered:
            ordered = [u for u in urls if u]

        for url in ordered:
            if cancel is not None and cancel.is_set():
                raise DownloadCancelled()

            logger.info("Downloading %s from %s", label, url)
            _report(sink, DownloadProgress(written=0, total=None, label=label))
            try:
                reason = await _attempt(client, url, tmp, label, sink, cancel, config)
            except httpx.HTTPError as e:
                reason = str(e) or type(e).__name__
            if reason is None:
                os.replace(tmp, dest)
                logger.info("Downloaded %s to %s", label, dest)
                return dest

            logger.warning("Mirror failed for %s: %s -> %s", label, url, reason)
            errors.append(f"{url} -> {reason}")
            _remove_quietly(tmp)
    except DownloadCancelled:
        logger.info("Download of %s cancelled", label)
        _remove_quietly(tmp)
        raise
    finally:
        if owns_client:
            await client.aclose()

    _remove_quietly(tmp)
    raise DownloadFailed(errors)
