"""Reconcile the index with ``.nebi.toml`` files found on disk.

Recovers from workspaces that were moved, copied or deleted behind the
tool's back:

1. scan roots (an explicit path, else the cwd and ``{data_dir}/envs``)
   breadth-first for sidecars,
2. match each sidecar to the index by id (legacy sidecars without an id
   match by path),
3. flag every workspace or entry whose path no longer exists as stale.

``plan_repair`` only reads; ``apply_repair`` rewrites the index under its
lock.  Applying a plan with no path updates and no stale records changes
nothing, so repeating a repair is a no-op.
"""

from __future__ import annotations

import os
from collections import deque
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field

from nebi.local.errors import NebiError
from nebi.local.models.enums import RepairAction
from nebi.local.models.sidecar import SIDECAR_FILE_NAME, Sidecar
from nebi.local.models.workspace import Index
from nebi.local.store import sidecar as sidecar_codec
from nebi.local.store.index import IndexStore, normalize_path

DEFAULT_MAX_DEPTH = 5
SKIP_DIRS = frozenset({".git", "node_modules", ".pixi", "__pycache__"})


class FoundSidecar(BaseModel):
    path: str
    sidecar: Sidecar


class RepairRecord(BaseModel):
    action: RepairAction
    display_name: str
    path: str = Field(description="Where the workspace is now (or was, for stale records)")
    old_path: str | None = Field(default=None, description="Indexed path of a moved workspace")
    workspace_id: str | None = None
    entry_ids: list[str] = Field(default_factory=list)


class RepairPlan(BaseModel):
    roots: list[str] = Field(default_factory=list)
    records: list[RepairRecord] = Field(default_factory=list)

    def by_action(self, action: RepairAction) -> list[RepairRecord]:
        return [r for r in self.records if r.action == action]

    @property
    def counts(self) -> dict[RepairAction, int]:
        return {action: len(self.by_action(action)) for action in RepairAction}

    @property
    def has_changes(self) -> bool:
        return any(r.action in (RepairAction.PATH_MOVED, RepairAction.STALE) for r in self.records)


# -- Scan ----------------------------------------------------------------------


def scan_roots(store: IndexStore, path: str | Path | None = None, *, cwd: str | Path | None = None) -> list[Path]:
    if path is not None:
        return [Path(normalize_path(path))]
    roots = [Path(normalize_path(cwd or os.getcwd()))]
    if store.envs_dir.is_dir():
        roots.append(Path(normalize_path(store.envs_dir)))
    return roots


def scan_for_sidecars(roots: list[Path], max_depth: int = DEFAULT_MAX_DEPTH) -> list[FoundSidecar]:
    """Breadth-first walk of ``roots`` collecting readable sidecars.

    Directories deeper than ``max_depth`` below their root, well-known
    vendor/cache directories, unreadable subtrees and real paths already
    visited are skipped.
    """
    found: list[FoundSidecar] = []
    seen: set[str] = set()
    queue: deque[tuple[Path, int]] = deque((root, 0) for root in roots)

    while queue:
        directory, depth = queue.popleft()
        real = os.path.realpath(directory)
        if real in seen:
            continue
        seen.add(real)

        try:
            with os.scandir(directory) as it:
                children = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            logger.debug("Skipping {}: {}", directory, exc)
            continue

        for child in children:
            if child.name == SIDECAR_FILE_NAME and _is_file(child):
                _collect(found, directory)
            elif depth < max_depth and child.name not in SKIP_DIRS and _is_dir(child):
                queue.append((Path(child.path), depth + 1))

    return found


def _collect(found: list[FoundSidecar], directory: Path) -> None:
    try:
        sidecar = sidecar_codec.read(directory, require_id=False)
    except NebiError as exc:
        logger.debug("Skipping unreadable sidecar in {}: {}", directory, exc)
        return
    if sidecar is not None:
        found.append(FoundSidecar(path=normalize_path(directory), sidecar=sidecar))


def _is_file(entry: os.DirEntry) -> bool:
    try:
        return entry.is_file(follow_symlinks=False)
    except OSError:
        return False


def _is_dir(entry: os.DirEntry) -> bool:
    try:
        return entry.is_dir()
    except OSError:
        return False


# -- Plan ----------------------------------------------------------------------


def _holds_sidecar(directory: str, sidecar_id: str) -> bool:
    try:
        sidecar = sidecar_codec.read(directory, require_id=False)
    except NebiError:
        return False
    return sidecar is not None and sidecar.id == sidecar_id


def reconcile(found: list[FoundSidecar], index: Index) -> list[RepairRecord]:
    """Classify every found sidecar, then every indexed path that is gone.

    A sidecar whose id is indexed at another path is a move only while that
    path no longer holds the same id; otherwise it is a copy and reported as
    orphaned.  When several copies claim one vanished path, the first found
    (breadth-first, by name) takes it.
    """
    records: list[RepairRecord] = []
    ws_by_id = {ws.id: ws for ws in index.workspaces.values()}
    entry_by_id = {e.id: e for e in index.entries}
    claimed: set[str] = set()

    for item in found:
        sc = item.sidecar
        indexed_path: str | None = None
        workspace_id: str | None = None
        if sc.id:
            if sc.id in ws_by_id:
                workspace_id = sc.id
                indexed_path = ws_by_id[sc.id].path
            elif sc.id in entry_by_id:
                indexed_path = entry_by_id[sc.id].path
                owner = index.workspaces.get(indexed_path)
                workspace_id = owner.id if owner else None
        elif item.path in index.workspaces or index.entries_for_path(item.path):
            indexed_path = item.path
            owner = index.workspaces.get(item.path)
            workspace_id = owner.id if owner else None

        if indexed_path is None:
            action = RepairAction.ORPHANED
        elif indexed_path == item.path:
            action = RepairAction.OK
        elif indexed_path in claimed or (sc.id and _holds_sidecar(indexed_path, sc.id)):
            logger.debug("{} is a copy of the workspace at {}", item.path, indexed_path)
            action = RepairAction.ORPHANED
            indexed_path = workspace_id = None
        else:
            action = RepairAction.PATH_MOVED
            claimed.add(indexed_path)

        records.append(
            RepairRecord(
                action=action,
                display_name=sc.display_name,
                path=item.path,
                old_path=indexed_path if action == RepairAction.PATH_MOVED else None,
                workspace_id=workspace_id,
                entry_ids=[e.id for e in index.entries_for_path(indexed_path)] if indexed_path else [],
            )
        )

    moved_from = {r.old_path for r in records if r.action == RepairAction.PATH_MOVED}
    for path, ws in sorted(index.workspaces.items()):
        if path in moved_from or os.path.exists(path):
            continue
        entries = index.entries_for_path(path)
        name = entries[-1].display_name if entries else ws.name
        records.append(
            RepairRecord(
                action=RepairAction.STALE,
                display_name=name,
                path=path,
                workspace_id=ws.id,
                entry_ids=[e.id for e in entries],
            )
        )
    # Entries whose path has no workspace (legacy indexes).
    for entry in index.entries:
        if entry.path in index.workspaces or entry.path in moved_from or os.path.exists(entry.path):
            continue
        records.append(
            RepairRecord(
                action=RepairAction.STALE, display_name=entry.display_name, path=entry.path, entry_ids=[entry.id]
            )
        )
    return records


def plan_repair(
    store: IndexStore,
    roots: list[Path],
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> RepairPlan:
    found = scan_for_sidecars(roots, max_depth=max_depth)
    logger.debug("Found {} sidecar(s) under {}", len(found), ", ".join(str(r) for r in roots))
    return RepairPlan(roots=[str(r) for r in roots], records=reconcile(found, store.load()))


# -- Apply ---------------------------------------------------------------------


def apply_repair(store: IndexStore, plan: RepairPlan) -> int:
    """Apply path updates, then drop stale records.  Returns the number of changes."""
    if not plan.has_changes:
        return 0

    changes = 0
    with store.transaction() as index:
        for record in plan.by_action(RepairAction.PATH_MOVED):
            old, new = record.old_path, record.path
            if old is None or new in index.workspaces:
                continue
            ws = index.workspaces.pop(old, None)
            if ws is not None:
                index.workspaces[new] = ws.model_copy(update={"path": new})
            for entry in index.entries:
                if entry.path == old:
                    entry.path = new
            changes += 1

        stale_ws = {r.workspace_id for r in plan.by_action(RepairAction.STALE) if r.workspace_id}
        stale_entries = {eid for r in plan.by_action(RepairAction.STALE) for eid in r.entry_ids}
        before = len(index.workspaces) + len(index.entries)
        index.workspaces = {p: ws for p, ws in index.workspaces.items() if ws.id not in stale_ws}
        index.entries = [e for e in index.entries if e.id not in stale_entries]
        changes += before - len(index.workspaces) - len(index.entries)

    logger.debug("Repair applied {} change(s)", changes)
    return changes
