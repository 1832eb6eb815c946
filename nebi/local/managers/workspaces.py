"""Workspace lifecycle operations.

Encapsulates everything a command does to a workspace: track (init), commit
a snapshot, promote to a global workspace, pull from and push to a server,
remove, prune, list and report status (locally, or against the server with
``check_remote``).  Functions take an ``AppContext`` and raise the domain
errors from ``nebi.local.errors``; printing is left to the CLI.
"""

from __future__ import annotations

import os
from enum import StrEnum
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field

from nebi.local import pixi
from nebi.local.client import NebiClient
from nebi.local.context import AppContext
from nebi.local.digest import digest
from nebi.local.errors import AlreadyExists, IOFailure, Malformed, NebiError, NotFound, Unavailable
from nebi.local.managers.servers import client_for
from nebi.local.models.enums import DriftStatus, OriginSource, ResolutionKind, WorkspaceKind
from nebi.local.models.sidecar import MEDIA_TYPE_PIXI_LOCK, MEDIA_TYPE_PIXI_TOML, Layer, Origin, Sidecar
from nebi.local.models.workspace import IndexEntry, Workspace, new_id, utcnow
from nebi.local.store import sidecar as sidecar_codec
from nebi.local.store._fs import atomic_write, ensure_dir, rmtree
from nebi.local.store.index import normalize_path
from nebi.local.store.snapshot import PIXI_LOCK, PIXI_TOML
from nebi.local.tracking import diff as spec_diff
from nebi.local.tracking.drift import RemoteStatus, WorkspaceStatus, classify_workspace
from nebi.local.tracking.resolver import is_path, pick_workspace, resolve, validate_name

SNAPSHOT_KEYWORD = "@snapshot"

_MEDIA_TYPES = {PIXI_TOML: MEDIA_TYPE_PIXI_TOML, PIXI_LOCK: MEDIA_TYPE_PIXI_LOCK}


class CommitOutcome(StrEnum):
    COMMITTED = "committed"
    CLEAN = "clean"
    PULLED = "pulled"


class WorkspaceListing(BaseModel):
    workspace: Workspace
    status: WorkspaceStatus
    entry: IndexEntry | None = None


class PullResult(BaseModel):
    workspace: Workspace
    entry: IndexEntry
    path: str


class PushResult(BaseModel):
    workspace: Workspace
    entry: IndexEntry
    created: bool = False


class PushPreview(BaseModel):
    """Dry-run report for ``push``."""

    spec: str
    tag: str
    sizes: dict[str, int] = Field(default_factory=dict)
    origin_name: str | None = None
    diff: str = ""
    lock_changed: bool = False

    @property
    def unchanged(self) -> bool:
        return self.origin_name is not None and not self.diff and not self.lock_changed


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


def require_tracked(ctx: AppContext, directory: str | Path) -> Workspace:
    ws = ctx.index.find_by_path(directory)
    if ws is None:
        msg = "current directory is not a tracked workspace; run 'nebi init' first"
        raise NotFound(msg)
    return ws


def find_workspace(ctx: AppContext, name_or_path: str) -> Workspace:
    """Look up a tracked workspace by path (anything path-like) or by name."""
    if is_path(name_or_path):
        ws = ctx.index.find_by_path(name_or_path)
        if ws is None:
            msg = f"no tracked workspace at {normalize_path(name_or_path)}"
            raise NotFound(msg)
        return ws
    ws = pick_workspace(ctx.index.load(), name_or_path)
    if ws is None:
        msg = f"no workspace named '{name_or_path}'"
        raise NotFound(msg)
    return ws


def workspace_status(ctx: AppContext, ws: Workspace) -> WorkspaceStatus:
    entry = ctx.index.find_entry_by_path(ws.path)
    return classify_workspace(ws.path, workspace=ws, entry=entry, snapshots=ctx.snapshots)


def status_for_path(ctx: AppContext, directory: str | Path) -> tuple[Workspace | None, WorkspaceStatus]:
    """Classify ``directory`` whether or not it is tracked."""
    ws = ctx.index.find_by_path(directory)
    if ws is not None:
        return ws, workspace_status(ctx, ws)
    return None, classify_workspace(normalize_path(directory))


def sync_name(ctx: AppContext, ws: Workspace) -> str | None:
    """Adopt the name from ``pixi.toml`` if it changed.  Returns the old name on change.

    Global workspaces keep the name they were promoted or pulled under.
    """
    if ws.is_global:
        return None
    name = pixi.manifest_name(ws.path)
    if name is None or name == ws.name:
        return None
    validate_name(name)
    old = ws.name
    with ctx.index.transaction() as index:
        current = index.workspaces.get(ws.path)
        if current is not None:
            current.name = name
            current.updated_at = utcnow()
    ws.name = name
    logger.debug("Renamed workspace {} -> {} from {}", old, name, PIXI_TOML)
    return old


# ---------------------------------------------------------------------------
# Init / commit
# ---------------------------------------------------------------------------


def init_workspace(ctx: AppContext, directory: str | Path, *, run_pixi_init: bool = False) -> Workspace:
    """Track ``directory`` as a local workspace.

    The name comes from ``[workspace].name`` (or ``[project].name``) in
    ``pixi.toml``, else the directory name.
    """
    directory = Path(normalize_path(directory))
    if ctx.index.find_by_path(directory) is not None:
        msg = f"workspace already tracked: {directory}"
        raise AlreadyExists(msg)
    if not (directory / PIXI_TOML).is_file():
        if not run_pixi_init:
            msg = f"no {PIXI_TOML} found in {directory}; run 'pixi init' first or pass --pixi-init"
            raise NotFound(msg)
        pixi.pixi_init(directory, pixi_bin=ctx.settings.pixi_bin)

    name = pixi.manifest_name(directory) or directory.name
    validate_name(name)
    return ctx.index.add_workspace(Workspace(name=name, path=str(directory)))


def commit_workspace(ctx: AppContext, directory: str | Path) -> tuple[Workspace, CommitOutcome]:
    """Snapshot the spec files of the tracked workspace at ``directory``.

    Pulled workspaces are left alone: their origin (the sidecar, or the
    index entry once the sidecar is gone) outranks any snapshot.  A clean
    workspace is not rewritten.
    """
    ws = require_tracked(ctx, directory)
    status = workspace_status(ctx, ws)
    if status.origin_source in (OriginSource.SIDECAR, OriginSource.INDEX):
        return ws, CommitOutcome.PULLED
    if status.status == DriftStatus.MISSING:
        msg = f"workspace directory or {PIXI_TOML} is missing: {ws.path}"
        raise NotFound(msg)
    if status.origin_source == OriginSource.SNAPSHOT and status.status == DriftStatus.CLEAN:
        return ws, CommitOutcome.CLEAN

    ctx.snapshots.commit(ws.id, ws.path)
    ws = ctx.index.touch_workspace(ws.path)
    return ws, CommitOutcome.COMMITTED


# ---------------------------------------------------------------------------
# Promote / remove / prune
# ---------------------------------------------------------------------------


def promote_workspace(ctx: AppContext, name: str, src_dir: str | Path) -> Workspace:
    """Copy the spec files of ``src_dir`` into a new global workspace called ``name``."""
    validate_name(name)
    src = Path(normalize_path(src_dir))
    if not (src / PIXI_TOML).is_file():
        msg = f"no {PIXI_TOML} found in {src}"
        raise NotFound(msg)
    if ctx.index.find_global_by_name(name) is not None:
        msg = f"a global workspace named '{name}' already exists"
        raise AlreadyExists(msg)

    workspace_id = new_id()
    target = ctx.index.global_workspace_dir(workspace_id)
    ensure_dir(target)
    try:
        for filename in (PIXI_TOML, PIXI_LOCK):
            if (src / filename).is_file():
                atomic_write(target / filename, (src / filename).read_bytes(), mode=0o644)
        ws = ctx.index.add_workspace(
            Workspace(id=workspace_id, name=name, path=str(target), kind=WorkspaceKind.GLOBAL)
        )
        ctx.snapshots.commit(ws.id, target)
    except BaseException:
        rmtree(target)
        raise
    return ws


def remove_workspace(ctx: AppContext, name_or_path: str) -> Workspace:
    """Stop tracking a workspace.

    A global workspace's directory and snapshot are deleted with it; the
    files of a local workspace are never touched.
    """
    ws = find_workspace(ctx, name_or_path)
    ctx.index.remove_workspace(ws.path)
    ctx.snapshots.remove(ws.id)
    if ws.is_global and ctx.index.is_global_path(ws.path):
        rmtree(Path(ws.path))
    return ws


def prune_workspaces(ctx: AppContext) -> list[Workspace]:
    removed = ctx.index.prune()
    for ws in removed:
        ctx.snapshots.remove(ws.id)
    return removed


def list_workspaces(ctx: AppContext) -> list[WorkspaceListing]:
    index = ctx.index.load()
    listings = []
    for ws in sorted(index.workspaces.values(), key=lambda ws: (ws.name, ws.path)):
        entry = index.latest_entry_for_path(ws.path)
        status = classify_workspace(ws.path, workspace=ws, entry=entry, snapshots=ctx.snapshots)
        listings.append(WorkspaceListing(workspace=ws, status=status, entry=entry))
    return listings


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


def pull_workspace(
    ctx: AppContext,
    client: NebiClient,
    spec: str,
    tag: str | None,
    *,
    output_dir: str | Path | None = None,
    global_name: str | None = None,
    force: bool = False,
) -> PullResult:
    """Download ``spec:tag`` and record its origin.

    Files land in ``output_dir`` (default: the current directory) or, with
    ``global_name``, in a global workspace of that name.  Existing spec
    files are only overwritten with ``force``.
    """
    index = ctx.index
    existing_global: Workspace | None = None
    if global_name is not None:
        validate_name(global_name)
        existing_global = index.find_global_by_name(global_name)
        if existing_global is not None and not force:
            msg = f"a global workspace named '{global_name}' already exists; use --force to overwrite"
            raise AlreadyExists(msg)
        entry_id = existing_global.id if existing_global else new_id()
        target = Path(existing_global.path) if existing_global else index.global_workspace_dir(entry_id)
    else:
        entry_id = new_id()
        target = Path(normalize_path(output_dir or os.getcwd()))
        if (target / PIXI_TOML).exists() and not force:
            msg = f"{PIXI_TOML} already exists in {target}; use --force to overwrite"
            raise AlreadyExists(msg)

    version, files = spec_diff.fetch_remote(client, spec, tag, target, workers=ctx.settings.fetch_workers)
    if PIXI_LOCK not in files:
        stale_lock = target / PIXI_LOCK
        try:
            stale_lock.unlink(missing_ok=True)
        except OSError as exc:
            raise IOFailure.wrap("removing", stale_lock, exc) from exc

    ws, entry = _record_origin(
        ctx,
        target,
        IndexEntry(
            id=entry_id,
            spec_name=spec,
            version_name=tag or "",
            version_id=version,
            server_url=client.server_url,
            path=str(target),
            layers={name: digest(data) for name, data in files.items()},
            is_global=global_name is not None,
        ),
        files,
        workspace_name=global_name or pixi.manifest_name(target) or spec,
    )
    logger.debug("Pulled {} version {} into {}", entry.display_name, version, target)
    return PullResult(workspace=ws, entry=entry, path=str(target))


def _record_origin(
    ctx: AppContext,
    target: Path,
    entry: IndexEntry,
    files: dict[str, bytes],
    *,
    workspace_name: str,
) -> tuple[Workspace, IndexEntry]:
    """Record ``entry`` in the index and (re)write the sidecar in ``target``.

    Unknown keys of an existing sidecar are carried over.
    """
    entry = ctx.index.add_entry(entry, workspace_name=workspace_name)
    ws = ctx.index.find_by_path(target)
    if ws is None:
        msg = f"index lost track of {target} while recording its origin"
        raise NebiError(msg)

    try:
        previous = sidecar_codec.read(target, require_id=False)
    except Malformed:
        previous = None
    sidecar_codec.write(
        target,
        Sidecar(
            id=ws.id,
            origin=Origin(
                spec_name=entry.spec_name,
                version_name=entry.version_name,
                version_id=entry.version_id,
                server_url=entry.server_url,
                pulled_at=entry.pulled_at,
            ),
            layers={
                name: Layer(digest=digest(data), size=len(data), media_type=_MEDIA_TYPES[name])
                for name, data in files.items()
            },
            extra=previous.extra if previous is not None else {},
        ),
    )
    return ws, entry


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


def preview_push(ctx: AppContext, spec: str, tag: str, directory: str | Path) -> PushPreview:
    """What ``push`` would send, diffed against the pulled origin when there is one."""
    directory = Path(normalize_path(directory))
    local = spec_diff.load_directory(directory, "local (to be pushed)")
    preview = PushPreview(
        spec=spec,
        tag=tag,
        sizes={name: len(data) for name, data in local.files.items()},
    )
    sidecar = sidecar_codec.read(directory, require_id=False)
    if sidecar is None:
        return preview

    origin = sidecar.origin
    with client_for(ctx, origin.server_url) as client:
        remote = spec_diff.load_version(
            client,
            origin.spec_name,
            origin.version_id,
            f"origin ({sidecar.display_name})",
            workers=ctx.settings.fetch_workers,
        )
    preview.origin_name = sidecar.display_name
    preview.diff = spec_diff.unified_diff(remote, local)
    preview.lock_changed = remote.files.get(PIXI_LOCK) != local.files.get(PIXI_LOCK)
    return preview


def push_workspace(
    ctx: AppContext,
    client: NebiClient,
    spec: str,
    tag: str,
    directory: str | Path,
    *,
    force: bool = False,
) -> PushResult:
    """Publish the spec files in ``directory`` as ``spec:tag``.

    The spec is created on the server first if it does not exist, and the
    push waits until the server reports it ready.  Afterwards the pushed
    version is the workspace's origin: the sidecar and index entry are
    rewritten, so the workspace classifies clean.
    """
    if tag.startswith("@"):
        msg = f"cannot push to a digest reference '{spec}{tag}'; use <spec>:<tag>"
        raise Malformed(msg)
    directory = Path(normalize_path(directory))
    local = spec_diff.load_directory(directory, "local")
    manifest = local.files[PIXI_TOML]
    lock = local.files.get(PIXI_LOCK)

    created = False
    try:
        env = client.find_environment(spec)
    except NotFound:
        env = client.create_environment(spec, manifest)
        created = True
        logger.debug("Created {} on {}; waiting for it to become ready", spec, client.server_url)
        env = client.wait_until_ready(
            env.id,
            timeout=ctx.settings.ready_timeout,
            interval=ctx.settings.ready_poll_interval,
        )

    try:
        pushed = client.push_version(env.id, tag, manifest, lock, force=force)
    except AlreadyExists as exc:
        msg = f"{spec}:{tag} already exists on {client.server_url}; use --force to overwrite it"
        raise AlreadyExists(msg) from exc

    existing = ctx.index.find_by_path(directory)
    is_global = existing is not None and existing.is_global
    ws, entry = _record_origin(
        ctx,
        directory,
        IndexEntry(
            id=existing.id if is_global else new_id(),
            spec_name=spec,
            version_name=tag,
            version_id=pushed.version_number,
            server_url=client.server_url,
            path=str(directory),
            layers={name: digest(data) for name, data in local.files.items()},
            is_global=is_global,
        ),
        local.files,
        workspace_name=pixi.manifest_name(directory) or spec,
    )
    logger.debug("Pushed {} as version {}", entry.display_name, pushed.version_number)
    return PushResult(workspace=ws, entry=entry, created=created)


# ---------------------------------------------------------------------------
# Remote drift
# ---------------------------------------------------------------------------


def check_remote(ctx: AppContext, directory: str | Path) -> RemoteStatus:
    """Ask the origin's server where the pulled tag points now.

    The origin comes from the sidecar, else from the index entry.  A server
    that cannot be reached, or no longer knows the spec or tag, is reported
    in ``RemoteStatus.error``; missing credentials still raise.
    """
    directory = normalize_path(directory)
    sidecar = sidecar_codec.read(directory, require_id=False)
    if sidecar is not None:
        origin = sidecar.origin
        spec, tag, version, server_url = origin.spec_name, origin.version_name, origin.version_id, origin.server_url
        name = sidecar.display_name
    else:
        entry = ctx.index.find_entry_by_path(directory)
        if entry is None or not entry.server_url:
            msg = f"{directory} was not pulled from a server; nothing to compare against"
            raise NotFound(msg)
        spec, tag, version, server_url = entry.spec_name, entry.version_name, entry.version_id, entry.server_url
        name = entry.display_name

    remote = RemoteStatus(origin_name=name, origin_version=version)
    with client_for(ctx, server_url) as client:
        try:
            env = client.find_environment(spec)
            remote.current_version = client.resolve_version(env, tag or None)
        except (NotFound, Unavailable) as exc:
            remote.error = str(exc)
            return remote
    remote.tag_has_moved = remote.current_version != version
    return remote


# ---------------------------------------------------------------------------
# Diff sources
# ---------------------------------------------------------------------------


def load_spec_source(
    ctx: AppContext,
    ref: str,
    *,
    server: str | None = None,
    cwd: str | Path | None = None,
) -> spec_diff.SpecSource:
    """Load a diff operand: a path, a tracked name, ``@snapshot`` or ``spec:tag``."""
    cwd = normalize_path(cwd or os.getcwd())
    if ref == SNAPSHOT_KEYWORD:
        ws = require_tracked(ctx, cwd)
        return spec_diff.load_snapshot(ctx.snapshots, ws.id, label="snapshot")

    resolution = resolve(ref, store=ctx.index, server=server, cwd=cwd)
    if resolution.kind == ResolutionKind.TAG_REF:
        with client_for(ctx, resolution.server or server) as client:
            return spec_diff.load_remote(
                client,
                resolution.spec or "",
                resolution.tag,
                workers=ctx.settings.fetch_workers,
            )

    label = "local" if resolution.dir == cwd else ref
    return spec_diff.load_directory(resolution.dir or cwd, label)

