"""Filesystem helpers shared by every store.

Writes are atomic: data is written to a temporary file in the same directory,
fsynced, then renamed over the target path.  The parent directory is fsynced
afterwards so the rename itself survives a crash.  Readers therefore see
either the old document or the new one, never a partial write.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from pathlib import Path

from nebi.local.errors import IOFailure


def ensure_dir(path: Path, mode: int = 0o700) -> None:
    try:
        path.mkdir(mode=mode, parents=True, exist_ok=True)
    except OSError as exc:
        raise IOFailure.wrap("creating directory", path, exc) from exc


def atomic_write(path: Path, data: bytes, *, mode: int = 0o600, tmp_name: str | None = None) -> None:
    """Write ``data`` to ``path`` atomically with the given permission bits.

    ``tmp_name`` pins the temporary file name (the sidecar uses
    ``.nebi.toml.tmp``); otherwise a unique name is chosen.
    """
    parent = path.parent
    ensure_dir(parent)
    if tmp_name is not None:
        tmp_path = str(parent / tmp_name)
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        except OSError as exc:
            raise IOFailure.wrap("writing", tmp_path, exc) from exc
    else:
        try:
            fd, tmp_path = tempfile.mkstemp(dir=parent, prefix=f".{path.name}.", suffix=".tmp")
        except OSError as exc:
            raise IOFailure.wrap("writing", path, exc) from exc
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException as exc:
        # Clean up temp file on any failure.
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        if isinstance(exc, OSError):
            raise IOFailure.wrap("writing", path, exc) from exc
        raise
    fsync_dir(parent)


def fsync_dir(path: Path) -> None:
    """Flush a directory entry.  No-op on platforms without directory fds."""
    if os.name == "nt":
        return
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        with contextlib.suppress(OSError):
            os.fsync(fd)
    finally:
        os.close(fd)


def read_bytes(path: Path) -> bytes | None:
    """Read file contents.  Returns ``None`` if missing."""
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise IOFailure.wrap("reading", path, exc) from exc


def rmtree(path: Path) -> None:
    """Remove directory tree.  No-op if path doesn't exist."""
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as exc:
        raise IOFailure.wrap("removing", path, exc) from exc
