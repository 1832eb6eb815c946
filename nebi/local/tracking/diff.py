"""Unified diffs between two spec sources.

A source is anything that yields a ``pixi.toml`` (and optionally a
``pixi.lock``): a directory, a committed snapshot, or a ``spec:tag``
published on a server.  Server sources are downloaded into a temporary
directory first (both files in parallel) and then diffed like any other
directory.
"""

from __future__ import annotations

import difflib
import tempfile
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field

from nebi.local.client import NebiClient, with_retry
from nebi.local.errors import NotFound
from nebi.local.store._fs import atomic_write, read_bytes
from nebi.local.store.snapshot import PIXI_LOCK, PIXI_TOML, SnapshotStore

DEFAULT_FETCH_WORKERS = 4


class SpecSource(BaseModel):
    """Spec file contents plus the label shown in diff headers."""

    label: str
    files: dict[str, bytes] = Field(default_factory=dict)

    def text(self, name: str) -> str:
        return self.files.get(name, b"").decode("utf-8", errors="replace")


# -- Loaders -------------------------------------------------------------------


def load_directory(directory: str | Path, label: str) -> SpecSource:
    directory = Path(directory)
    manifest = read_bytes(directory / PIXI_TOML)
    if manifest is None:
        msg = f"no {PIXI_TOML} in {directory}"
        raise NotFound(msg)
    files = {PIXI_TOML: manifest}
    lock = read_bytes(directory / PIXI_LOCK)
    if lock is not None:
        files[PIXI_LOCK] = lock
    return SpecSource(label=label, files=files)


def load_snapshot(snapshots: SnapshotStore, workspace_id: str, label: str) -> SpecSource:
    files = snapshots.read_all(workspace_id)
    if PIXI_TOML not in files:
        msg = "nothing committed yet; run 'nebi commit' first"
        raise NotFound(msg)
    return SpecSource(label=label, files=files)


def fetch_version(
    client: NebiClient,
    env_id: str,
    version: int,
    *,
    workers: int = DEFAULT_FETCH_WORKERS,
) -> dict[str, bytes]:
    """Spec files of one published version.

    ``pixi.toml`` and ``pixi.lock`` are fetched concurrently, each retried on
    ``Unavailable``; the pool is joined before returning.
    """
    with ThreadPoolExecutor(max_workers=workers) as pool:
        toml_future = pool.submit(with_retry, partial(client.get_pixi_toml, env_id, version))
        lock_future = pool.submit(with_retry, partial(client.get_pixi_lock, env_id, version))
        files = {PIXI_TOML: toml_future.result()}
        lock = lock_future.result()
    if lock:
        files[PIXI_LOCK] = lock
    return files


def fetch_remote(
    client: NebiClient,
    spec: str,
    tag: str | None,
    dest: str | Path,
    *,
    workers: int = DEFAULT_FETCH_WORKERS,
) -> tuple[int, dict[str, bytes]]:
    """Download ``spec:tag`` into ``dest``.

    Returns the resolved version number and the files written.
    """
    env = client.find_environment(spec)
    version = client.resolve_version(env, tag)
    logger.debug("Fetching {} version {} from {}", spec, version, client.server_url)
    files = fetch_version(client, env.id, version, workers=workers)

    dest = Path(dest)
    for name, data in files.items():
        atomic_write(dest / name, data, mode=0o644)
    return version, files


def load_remote(
    client: NebiClient,
    spec: str,
    tag: str | None,
    *,
    workers: int = DEFAULT_FETCH_WORKERS,
) -> SpecSource:
    label = f"{spec}:{tag}" if tag else spec
    with tempfile.TemporaryDirectory(prefix="nebi-diff-") as tmp:
        fetch_remote(client, spec, tag, tmp, workers=workers)
        source = load_directory(tmp, label)
    return source


def load_version(
    client: NebiClient,
    spec: str,
    version: int,
    label: str,
    *,
    workers: int = DEFAULT_FETCH_WORKERS,
) -> SpecSource:
    """A published version by number, whatever its tags point at today."""
    env = client.find_environment(spec)
    return SpecSource(label=label, files=fetch_version(client, env.id, version, workers=workers))


# -- Diff ----------------------------------------------------------------------


def unified_diff(a: SpecSource, b: SpecSource, *, include_lock: bool = False) -> str:
    """Unified diff of ``pixi.toml`` (and ``pixi.lock``) between two sources.

    Returns an empty string when the sources are identical.
    """
    names = [PIXI_TOML, PIXI_LOCK] if include_lock else [PIXI_TOML]
    chunks = []
    for name in names:
        lines = difflib.unified_diff(
            a.text(name).splitlines(keepends=True),
            b.text(name).splitlines(keepends=True),
            fromfile=f"{a.label}/{name}",
            tofile=f"{b.label}/{name}",
        )
        for line in lines:
            chunks.append(line if line.endswith("\n") else line + "\n\\ No newline at end of file\n")
    return "".join(chunks)
