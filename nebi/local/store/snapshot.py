"""Committed snapshots of a workspace's spec files.

A snapshot is the drift baseline for a workspace that was never pulled::

    {data_dir}/snapshots/{workspace_id}/pixi.toml
    {data_dir}/snapshots/{workspace_id}/pixi.lock     (optional)

Snapshots are partitioned by workspace id, so invocations touching different
workspaces never contend.  Files are written atomically one at a time.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from nebi.local.errors import IOFailure, NotFound
from nebi.local.store._fs import atomic_write, read_bytes, rmtree

PIXI_TOML = "pixi.toml"
PIXI_LOCK = "pixi.lock"
SPEC_FILES = (PIXI_TOML, PIXI_LOCK)


class SnapshotStore:
    """Layout::

    {data_dir}/snapshots/{workspace_id}/{pixi.toml,pixi.lock}
    """

    def __init__(self, data_dir: str | Path) -> None:
        self._base = Path(data_dir) / "snapshots"

    def snapshot_dir(self, workspace_id: str) -> Path:
        return self._base / workspace_id

    # -- Write -----------------------------------------------------------------

    def commit(self, workspace_id: str, src_dir: str | Path) -> list[str]:
        """Copy the spec files of ``src_dir`` into the snapshot.

        ``pixi.toml`` is required (``NotFound`` otherwise).  A ``pixi.lock``
        left over from an earlier commit is removed when the workspace no
        longer has one.  Returns the names of the files written.
        """
        src = Path(src_dir)
        manifest = read_bytes(src / PIXI_TOML)
        if manifest is None:
            msg = f"no {PIXI_TOML} in {src}"
            raise NotFound(msg)
        lock = read_bytes(src / PIXI_LOCK)

        target = self.snapshot_dir(workspace_id)
        atomic_write(target / PIXI_TOML, manifest, mode=0o600)
        written = [PIXI_TOML]
        if lock is not None:
            atomic_write(target / PIXI_LOCK, lock, mode=0o600)
            written.append(PIXI_LOCK)
        else:
            stale = target / PIXI_LOCK
            try:
                stale.unlink(missing_ok=True)
            except OSError as exc:
                raise IOFailure.wrap("removing", stale, exc) from exc

        logger.debug("Committed snapshot {} ({})", workspace_id, ", ".join(written))
        return written

    # -- Read ------------------------------------------------------------------

    def exists(self, workspace_id: str) -> bool:
        return (self.snapshot_dir(workspace_id) / PIXI_TOML).is_file()

    def read(self, workspace_id: str, name: str) -> bytes | None:
        """Read one committed file.  Returns ``None`` if it was never committed."""
        return read_bytes(self.snapshot_dir(workspace_id) / name)

    def read_all(self, workspace_id: str) -> dict[str, bytes]:
        files = {}
        for name in SPEC_FILES:
            data = self.read(workspace_id, name)
            if data is not None:
                files[name] = data
        return files

    # -- Utilities -------------------------------------------------------------

    def remove(self, workspace_id: str) -> None:
        """Delete the snapshot.  No-op if there is none."""
        rmtree(self.snapshot_dir(workspace_id))
