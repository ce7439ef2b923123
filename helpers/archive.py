from __future__ import annotations

from pathlib import Path
from typing import Optional, TYPE_CHECKING
import logging
import os
import shutil
import sys
import tarfile
import time
import zipfile

from config.llm_models import GGUF_MAGIC
from helpers.downloader import part_path
from interfaces.progress.sink import DownloadProgress
from llm.errors import ModelIntegrityError, RuntimeUnavailable

if TYPE_CHECKING:
    from interfaces.progress.sink import ProgressSink

logger = logging.getLogger(__name__)

_EXECUTABLES = {"llama-server", "llama-bench", "server"}
_CHMOD_MAX_DEPTH = 3


def file_starts_with(path: Path, magic: bytes) -> bool:
    try:
        with open(path, "rb") as f:
            return f.read(len(magic)) == magic
    except OSError:
        return False


def copy_gguf(src: Path, target: Path, label: str = "model") -> Path:
    """
    Copy a GGUF file through `<target>.part` and move it onto `target` only
    after the signature matches. An interrupted or rejected copy leaves
    nothing behind.
    """
    tmp = part_path(target)
    try:
        shutil.copyfile(src, tmp)
        if not file_starts_with(tmp, GGUF_MAGIC):
            raise ModelIntegrityError(f"{label} is not a GGUF file (signature mismatch)")
        os.replace(tmp, target)
    finally:
        tmp.unlink(missing_ok=True)
    return target


def is_tar_archive(path: Path) -> bool:
    name = path.name.lower()
    return name.endswith(".tar.gz") or name.endswith(".tgz")


def is_archive(path: Path) -> bool:
    return is_tar_archive(path) or path.name.lower().endswith(".zip")


def _unsafe_name(name: str) -> bool:
    name = name.replace("\\", "/")
    return name.startswith("/") or ".." in name


class _ExtractProgress:
    def __init__(self, sink: "ProgressSink | None", label: str, total: int, interval_s: float) -> None:
        self.sink = sink if label else None
        self.label = label
        self.total = total
        self.interval_s = interval_s
        self._last = time.monotonic()

    def start(self) -> None:
        self._emit(0)

    def advance(self, done: int) -> None:
        now = time.monotonic()
        if now - self._last >= self.interval_s:
            self._emit(done)
            self._last = now

    def finish(self) -> None:
        self._emit(self.total)

    def _emit(self, written: int) -> None:
        if self.sink is not None:
            self.sink.report(DownloadProgress(written=written, total=self.total, label=self.label))


def _extract_zip(archive: Path, dest: Path, progress: _ExtractProgress) -> None:
    done = 0
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            name = info.filename.replace("\\", "/")
            if _unsafe_name(name):
                logger.warning("Skipping unsafe zip entry %r in %s", info.filename, archive.name)
                continue
            out_path = dest / name
            if info.is_dir():
                out_path.mkdir(parents=True, exist_ok=True)
            else:
                out_path.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(out_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)
            done += info.compress_size
            progress.advance(done)


def _extract_tar(archive: Path, dest: Path, progress: _ExtractProgress) -> None:
    done = 0
    with tarfile.open(archive, "r:gz") as tf:
        for member in tf.getmembers():
            if _unsafe_name(member.name):
                raise RuntimeUnavailable(f"tar extraction failed: unsafe member {member.name!r} in {archive.name}")
            if hasattr(tarfile, "data_filter"):
                tf.extract(member, dest, filter="data")
            else:
                tf.extract(member, dest)
            done += member.size
            progress.advance(done)


def extract_archive(
    archive: Path,
    dest: Path,
    *,
    sink: "ProgressSink | None" = None,
    label: str = "",
    interval_s: float = 0.15,
) -> None:
    """
    Unpack a runtime archive into `dest`.

    Zip entries that would land outside `dest` are skipped; a tarball with such
    a member is refused outright. Progress is reported only when a label is given.
    Blocking: call through asyncio.to_thread from async code.
    """
    dest.mkdir(parents=True, exist_ok=True)
    try:
        total = archive.stat().st_size
    except OSError:
        total = 0
    progress = _ExtractProgress(sink, label, total, interval_s)
    progress.start()

    logger.info("Extracting %s into %s", archive.name, dest)
    try:
        if is_tar_archive(archive):
            _extract_tar(archive, dest, progress)
        else:
            _extract_zip(archive, dest, progress)
    except (zipfile.BadZipFile, tarfile.TarError) as e:
        raise RuntimeUnavailable(f"could not extract {archive.name}: {e}") from e

    progress.finish()
    if sys.platform != "win32":
        set_executable_permissions(dest)


def set_executable_permissions(root: Path, max_depth: int = _CHMOD_MAX_DEPTH) -> None:
    """chmod 755 the server/bench binaries and anything that looks like one (no extension)."""
    base_depth = len(root.parts)
    for dirpath, dirnames, filenames in os.walk(root):
        if len(Path(dirpath).parts) - base_depth >= max_depth - 1:
            dirnames[:] = []
        for fname in filenames:
            lower = fname.lower()
            if lower in _EXECUTABLES or lower.startswith("llama-") or "." not in lower:
                path = Path(dirpath) / fname
                try:
                    os.chmod(path, 0o755)
                except OSError as e:
                    logger.debug("chmod failed for %s: %s", path, e)


def find_file(root: Path, names: tuple[str, ...]) -> Optional[Path]:
    """First file named one of `names`, directly under `root` first, then anywhere below."""
    for name in names:
        direct = root / name
        if direct.is_file():
            return direct
    if not root.is_dir():
        return None
    wanted = {n.lower() for n in names}
    for dirpath, _dirnames, filenames in os.walk(root):
        for fname in filenames:
            if fname.lower() in wanted:
                return Path(dirpath) / fname
    return None
