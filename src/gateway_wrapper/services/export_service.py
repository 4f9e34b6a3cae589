from __future__ import annotations

import gzip
import os
import stat
import tarfile
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path


EXCLUDED_DIR_NAMES = frozenset({"node_modules", ".npm", ".pnpm-store", "__pycache__"})
EXPORT_CHUNK_SIZE = 64 * 1024


class _ChunkBuffer:
    """Write-only file object that hands written bytes back to a generator."""

    def __init__(self) -> None:
        self._chunks: list[bytes] = []
        self._size = 0

    def write(self, data: bytes) -> int:
        if data:
            self._chunks.append(bytes(data))
            self._size += len(data)
        return len(data)

    def flush(self) -> None:
        return None

    def drain(self, minimum: int = 0) -> bytes:
        if not self._size or self._size < minimum:
            return b""
        data = b"".join(self._chunks)
        self._chunks.clear()
        self._size = 0
        return data


def export_filename(now: datetime | None = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    return f"clawdbot-backup-{stamp}.tar.gz"


def is_excluded(relative: Path) -> bool:
    return any(part in EXCLUDED_DIR_NAMES for part in relative.parts)


def iter_export_members(state_dir: Path) -> Iterator[Path]:
    root = Path(state_dir)
    for current, dir_names, file_names in os.walk(root):
        current_path = Path(current)
        dir_names[:] = sorted(name for name in dir_names if name not in EXCLUDED_DIR_NAMES)
        for name in dir_names:
            yield current_path / name
        for name in sorted(file_names):
            yield current_path / name


def archive_member_info(path: Path, arcname: str) -> tarfile.TarInfo | None:
    """Build the tar header for ``path``; ``None`` for sockets, fifos and devices."""
    st = path.lstat()
    info = tarfile.TarInfo(arcname)
    info.mode = stat.S_IMODE(st.st_mode)
    info.mtime = int(st.st_mtime)
    info.uid = st.st_uid
    info.gid = st.st_gid
    if stat.S_ISLNK(st.st_mode):
        info.type = tarfile.SYMTYPE
        info.linkname = os.readlink(path)
    elif stat.S_ISDIR(st.st_mode):
        info.type = tarfile.DIRTYPE
    elif stat.S_ISREG(st.st_mode):
        info.type = tarfile.REGTYPE
        info.size = st.st_size
    else:
        return None
    return info


def _copy_file_data(path: Path, size: int, out: gzip.GzipFile, buffer: _ChunkBuffer) -> Iterator[bytes]:
    remaining = size
    with path.open("rb") as fp:
        while remaining > 0:
            block = fp.read(min(EXPORT_CHUNK_SIZE, remaining))
            if not block:
                # File shrank after its header was written; keep the member length consistent.
                block = tarfile.NUL * min(EXPORT_CHUNK_SIZE, remaining)
            out.write(block)
            remaining -= len(block)
            chunk = buffer.drain(EXPORT_CHUNK_SIZE)
            if chunk:
                yield chunk
    padding = -size % tarfile.BLOCKSIZE
    if padding:
        out.write(tarfile.NUL * padding)


def stream_state_archive(state_dir: Path) -> Iterator[bytes]:
    """Yield a gzip-compressed tar of ``state_dir`` rooted at its base name.

    File contents are read and compressed in ``EXPORT_CHUNK_SIZE`` pieces, so
    memory stays bounded regardless of how large individual files are.
    """
    root = Path(state_dir)
    arc_root = root.name or "state"
    buffer = _ChunkBuffer()
    written = 0
    with gzip.GzipFile(fileobj=buffer, mode="wb") as out:
        members = [root, *(path for path in iter_export_members(root) if not is_excluded(path.relative_to(root)))]
        for path in members:
            arcname = str(Path(arc_root) / path.relative_to(root))
            info = archive_member_info(path, arcname)
            if info is None:
                continue
            header = info.tobuf(tarfile.PAX_FORMAT, "utf-8", "surrogateescape")
            out.write(header)
            written += len(header)
            if info.type == tarfile.REGTYPE and info.size:
                yield from _copy_file_data(path, info.size, out, buffer)
                written += info.size + (-info.size % tarfile.BLOCKSIZE)
            chunk = buffer.drain(EXPORT_CHUNK_SIZE)
            if chunk:
                yield chunk
        end_of_archive = tarfile.BLOCKSIZE * 2
        written += end_of_archive
        out.write(tarfile.NUL * (end_of_archive + (-written % tarfile.RECORDSIZE)))
    tail = buffer.drain()
    if tail:
        yield tail


__all__ = [
    "EXCLUDED_DIR_NAMES",
    "EXPORT_CHUNK_SIZE",
    "archive_member_info",
    "export_filename",
    "is_excluded",
    "iter_export_members",
    "stream_state_archive",
]
