"""Drift classification of a workspace's spec files against their origin.

The origin (baseline) is chosen in this order:

1. the ``.nebi.toml`` sidecar in the workspace directory (pulled workspaces),
2. the most recent index entry recorded for the path,
3. the committed snapshot (tracked-only workspaces),

and if none is available the workspace is ``unknown``.  Callers get one
``WorkspaceStatus`` regardless of which baseline was used.

Classification is a pure function of the bytes on disk and the origin
record: no network access, no writes.  Unreadable files classify as
``unknown`` instead of raising.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field

from nebi.local.digest import digest, digest_file
from nebi.local.errors import NebiError
from nebi.local.models.enums import DriftStatus, OriginSource
from nebi.local.models.workspace import IndexEntry, Workspace
from nebi.local.store import sidecar as sidecar_codec
from nebi.local.store.snapshot import PIXI_TOML, SPEC_FILES, SnapshotStore


class FileStatus(BaseModel):
    name: str
    status: DriftStatus
    origin_digest: str | None = None
    current_digest: str | None = None


class WorkspaceStatus(BaseModel):
    """Drift report for one workspace directory."""

    path: str
    status: DriftStatus
    origin_source: OriginSource = OriginSource.NONE
    origin_name: str | None = Field(default=None, description="``spec:tag`` of the pulled origin, if any")
    files: list[FileStatus] = Field(default_factory=list)

    def file(self, name: str) -> FileStatus | None:
        for f in self.files:
            if f.name == name:
                return f
        return None


class RemoteStatus(BaseModel):
    """Where the origin's tag points on the server now, compared with what was pulled."""

    origin_name: str
    origin_version: int
    current_version: int | None = None
    tag_has_moved: bool = False
    error: str | None = Field(default=None, description="Why the server could not be asked")


class _Baseline(BaseModel):
    source: OriginSource
    digests: dict[str, str]
    name: str | None = None


# -- Per-file ------------------------------------------------------------------


def classify_file(path: Path, origin_digest: str | None, *, has_origin: bool = True) -> FileStatus:
    """Classify one file.

    ``has_origin=False`` means no baseline exists at all, so every file is
    ``unknown``.  Otherwise ``origin_digest=None`` means the origin recorded
    no such file.
    """
    try:
        current = digest_file(path)
    except NebiError as exc:
        logger.debug("Cannot read {}: {}", path, exc)
        return FileStatus(name=path.name, status=DriftStatus.UNKNOWN, origin_digest=origin_digest)

    if not has_origin:
        status = DriftStatus.UNKNOWN
    elif current is None:
        status = DriftStatus.MISSING if origin_digest is not None else DriftStatus.CLEAN
    elif origin_digest is None:
        status = DriftStatus.UNTRACKED
    elif current == origin_digest:
        status = DriftStatus.CLEAN
    else:
        status = DriftStatus.MODIFIED
    return FileStatus(name=path.name, status=status, origin_digest=origin_digest, current_digest=current)


def classify_files(directory: str | Path, origin_digests: dict[str, str] | None) -> list[FileStatus]:
    """Classify ``pixi.toml`` and ``pixi.lock`` in ``directory``.

    ``origin_digests=None`` means there is no origin.  A ``pixi.lock`` that
    neither exists nor was recorded is omitted.
    """
    directory = Path(directory)
    has_origin = origin_digests is not None
    recorded = origin_digests or {}
    results = []
    for name in SPEC_FILES:
        result = classify_file(directory / name, recorded.get(name), has_origin=has_origin)
        if name != PIXI_TOML and result.current_digest is None and result.origin_digest is None:
            continue
        results.append(result)
    return results


def rollup(files: list[FileStatus]) -> DriftStatus:
    """Combine per-file results under ``clean < untracked < modified``.

    A recorded file that has disappeared counts as a modification of the
    workspace; only a missing manifest makes the whole workspace missing.
    """
    overall = DriftStatus.CLEAN
    for f in files:
        status = f.status
        if status == DriftStatus.MISSING:
            status = DriftStatus.MISSING if f.name == PIXI_TOML else DriftStatus.MODIFIED
        if status.rank > overall.rank:
            overall = status
    return overall


# -- Workspace -----------------------------------------------------------------


def select_baseline(
    directory: Path,
    *,
    workspace: Workspace | None = None,
    entry: IndexEntry | None = None,
    snapshots: SnapshotStore | None = None,
) -> _Baseline | None:
    try:
        sidecar = sidecar_codec.read(directory, require_id=False)
    except NebiError as exc:
        logger.debug("Ignoring unreadable sidecar in {}: {}", directory, exc)
        sidecar = None
    if sidecar is not None:
        return _Baseline(source=OriginSource.SIDECAR, digests=sidecar.layer_digests(), name=sidecar.display_name)

    if entry is not None and entry.layers:
        return _Baseline(source=OriginSource.INDEX, digests=dict(entry.layers), name=entry.display_name)

    if workspace is not None and snapshots is not None:
        try:
            files = snapshots.read_all(workspace.id)
        except NebiError as exc:
            logger.debug("Ignoring unreadable snapshot {}: {}", workspace.id, exc)
            files = {}
        if PIXI_TOML in files:
            return _Baseline(
                source=OriginSource.SNAPSHOT,
                digests={name: digest(data) for name, data in files.items()},
            )
    return None


def classify_workspace(
    path: str | Path,
    *,
    workspace: Workspace | None = None,
    entry: IndexEntry | None = None,
    snapshots: SnapshotStore | None = None,
) -> WorkspaceStatus:
    """Classify the workspace at ``path``.  Never raises for filesystem problems."""
    directory = Path(path)
    if not directory.is_dir():
        return WorkspaceStatus(path=str(directory), status=DriftStatus.MISSING)

    baseline = select_baseline(directory, workspace=workspace, entry=entry, snapshots=snapshots)
    files = classify_files(directory, baseline.digests if baseline else None)

    if not (directory / PIXI_TOML).exists():
        status = DriftStatus.MISSING
    elif baseline is None:
        status = DriftStatus.UNKNOWN
    else:
        status = rollup(files)

    return WorkspaceStatus(
        path=str(directory),
        status=status,
        origin_source=baseline.source if baseline else OriginSource.NONE,
        origin_name=baseline.name if baseline else None,
        files=files,
    )


def summarize(local: DriftStatus, remote: RemoteStatus) -> str:
    """One line combining local drift with the remote tag check."""
    modified = local == DriftStatus.MODIFIED
    if remote.error is not None:
        return "modified locally (remote check failed)" if modified else "clean locally (remote check failed)"
    if modified and remote.tag_has_moved:
        return "modified locally AND remote tag has moved"
    if modified:
        return "modified locally, remote unchanged"
    if remote.tag_has_moved:
        return "clean locally, but remote tag has moved"
    return "clean (local matches origin, tag unchanged)"
