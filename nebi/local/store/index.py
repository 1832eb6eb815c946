"""Local workspace index store.

The index is a single JSON document::

    {data_dir}/index.json      (0600)
    {data_dir}/index.lock      advisory lock for writers

Readers never lock: writes are atomic renames (see ``_fs.atomic_write``),
so a reader sees either the previous or the next document.  Writers go
through ``transaction()``, which holds the lock for the whole
load-modify-save window so concurrent invocations never lose updates.

Each public mutator is its own transaction; callers that need to combine
several changes open ``transaction()`` directly and edit the ``Index``.
"""

from __future__ import annotations

import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from nebi.local.errors import AlreadyExists, Corrupt, NotFound
from nebi.local.models.enums import WorkspaceKind
from nebi.local.models.workspace import Index, IndexEntry, Workspace, utcnow
from nebi.local.settings import NebiSettings, get_settings
from nebi.local.store._fs import atomic_write, ensure_dir, read_bytes
from nebi.local.store.lock import FileLock
from nebi.local.store.migrations import migrate

INDEX_FILE_NAME = "index.json"
LOCK_FILE_NAME = "index.lock"

_STALE_READ_RETRIES = 2
_STALE_READ_DELAY = 0.05


def normalize_path(path: str | Path) -> str:
    """Absolute, user-expanded form used as the index key."""
    return os.path.abspath(os.path.expanduser(str(path)))


class IndexStore:
    """Persistent catalogue of tracked workspaces, servers and pulled entries.

    Layout::

        {data_dir}/index.json
        {data_dir}/index.lock
        {data_dir}/envs/{workspace_id}/     global workspaces
    """

    def __init__(self, data_dir: str | Path, *, lock_timeout: float | None = None) -> None:
        self.data_dir = Path(data_dir)
        self.lock_timeout = lock_timeout

    @classmethod
    def open(cls, settings: NebiSettings | None = None) -> IndexStore:
        """Open the store at the configured data directory.

        Creates the directory (0700) and persists any pending schema migration.
        """
        settings = settings or get_settings()
        store = cls(settings.resolve_data_dir())
        ensure_dir(store.data_dir)
        store.upgrade()
        return store

    # -- Paths -----------------------------------------------------------------

    @property
    def index_path(self) -> Path:
        return self.data_dir / INDEX_FILE_NAME

    @property
    def lock_path(self) -> Path:
        return self.data_dir / LOCK_FILE_NAME

    @property
    def envs_dir(self) -> Path:
        return self.data_dir / "envs"

    def global_workspace_dir(self, workspace_id: str) -> Path:
        return self.envs_dir / workspace_id

    def is_global_path(self, path: str | Path) -> bool:
        root = str(self.envs_dir) + os.sep
        return normalize_path(path).startswith(root)

    # -- Load / save -----------------------------------------------------------

    def load(self) -> Index:
        """Read the whole index.  A missing file yields an empty index."""
        index, _ = self._load()
        return index

    def _load(self) -> tuple[Index, bool]:
        path = self.index_path
        attempt = 0
        while True:
            raw = read_bytes(path)
            if raw is None:
                return Index(), False
            try:
                doc = json.loads(raw)
                break
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                # A writer that bypasses the rename (older release, manual
                # edit) can leave a half-written file; re-read before failing.
                attempt += 1
                if attempt > _STALE_READ_RETRIES:
                    raise Corrupt(path, f"invalid JSON: {exc}") from None
                logger.debug("Stale read of {} ({}), retrying", path, exc)
                time.sleep(_STALE_READ_DELAY)

        if not isinstance(doc, dict):
            raise Corrupt(path, "top-level value is not an object")
        doc, migrated = migrate(doc, data_dir=self.data_dir, source=path)
        try:
            return Index.model_validate(doc), migrated
        except ValidationError as exc:
            raise Corrupt(path, str(exc.errors()[0]["msg"])) from None

    def save(self, index: Index) -> None:
        data = index.model_dump_json(indent=2).encode("utf-8")
        atomic_write(self.index_path, data, mode=0o600)
        logger.debug("Saved index {} ({} workspaces)", self.index_path, len(index.workspaces))

    def upgrade(self) -> bool:
        """Persist a pending schema migration.  Returns True if one was written."""
        if not self.index_path.exists():
            return False
        with FileLock(self.lock_path, timeout=self.lock_timeout):
            index, migrated = self._load()
            if migrated:
                self.save(index)
                logger.info("Upgraded index {} to version {}", self.index_path, index.version)
        return migrated

    @contextmanager
    def transaction(self) -> Iterator[Index]:
        """Lock, load, yield the index for mutation, then save.

        Nothing is written if the body raises.  The lock is released on every
        exit path.
        """
        with FileLock(self.lock_path, timeout=self.lock_timeout):
            index = self.load()
            yield index
            self.save(index)

    # -- Workspaces ------------------------------------------------------------

    def add_workspace(self, ws: Workspace) -> Workspace:
        """Track a workspace.  Raises ``AlreadyExists`` on a path, id or global-name collision."""
        ws = ws.model_copy(update={"path": normalize_path(ws.path)})
        with self.transaction() as index:
            if ws.path in index.workspaces:
                msg = f"workspace already tracked: {ws.path}"
                raise AlreadyExists(msg)
            if index.workspace_by_id(ws.id) is not None:
                msg = f"workspace id already in use: {ws.id}"
                raise AlreadyExists(msg)
            if ws.kind == WorkspaceKind.GLOBAL and _global_by_name(index, ws.name) is not None:
                msg = f"a global workspace named '{ws.name}' already exists"
                raise AlreadyExists(msg)
            index.workspaces[ws.path] = ws
        logger.debug("Added workspace {} ({}) at {}", ws.name, ws.kind, ws.path)
        return ws

    def remove_workspace(self, path: str | Path) -> Workspace:
        """Stop tracking the workspace at ``path`` (and its pulled entries).

        Never touches files.  Raises ``NotFound`` if nothing is tracked there.
        """
        key = normalize_path(path)
        with self.transaction() as index:
            ws = index.workspaces.pop(key, None)
            if ws is None:
                msg = f"no tracked workspace at {key}"
                raise NotFound(msg)
            index.entries = [e for e in index.entries if e.path != key]
        logger.debug("Removed workspace {} at {}", ws.name, key)
        return ws

    def touch_workspace(self, path: str | Path) -> Workspace:
        key = normalize_path(path)
        with self.transaction() as index:
            ws = index.workspaces.get(key)
            if ws is None:
                msg = f"no tracked workspace at {key}"
                raise NotFound(msg)
            ws.updated_at = utcnow()
        return ws

    def prune(self) -> list[Workspace]:
        """Drop workspaces (and entries) whose path no longer exists on disk."""
        with self.transaction() as index:
            removed = [ws for path, ws in index.workspaces.items() if not os.path.exists(path)]
            for ws in removed:
                del index.workspaces[ws.path]
            index.entries = [e for e in index.entries if os.path.exists(e.path)]
        for ws in removed:
            logger.debug("Pruned workspace {} at {}", ws.name, ws.path)
        return removed

    def list_workspaces(self) -> list[Workspace]:
        return sorted(self.load().workspaces.values(), key=lambda ws: (ws.name, ws.path))

    def find_by_path(self, path: str | Path) -> Workspace | None:
        return self.load().workspaces.get(normalize_path(path))

    def find_by_name(self, name: str) -> list[Workspace]:
        return [ws for ws in self.load().workspaces.values() if ws.name == name]

    def find_global_by_name(self, name: str) -> Workspace | None:
        return _global_by_name(self.load(), name)

    # -- Pulled entries --------------------------------------------------------

    def add_entry(self, entry: IndexEntry, *, workspace_name: str | None = None) -> IndexEntry:
        """Record a pulled reference at ``entry.path``.

        An existing entry at the same path is replaced and keeps its id.  If no
        workspace is tracked at the path one is created, so every entry path
        belongs to exactly one workspace.
        """
        entry = entry.model_copy(update={"path": normalize_path(entry.path)})
        with self.transaction() as index:
            for i, existing in enumerate(index.entries):
                if existing.path == entry.path:
                    entry = entry.model_copy(update={"id": existing.id})
                    index.entries[i] = entry
                    break
            else:
                index.entries.append(entry)

            ws = index.workspaces.get(entry.path)
            if ws is None:
                kind = WorkspaceKind.GLOBAL if entry.is_global else WorkspaceKind.LOCAL
                index.workspaces[entry.path] = Workspace(
                    id=entry.id,
                    name=workspace_name or entry.spec_name,
                    path=entry.path,
                    kind=kind,
                )
            else:
                ws.updated_at = utcnow()
        return entry

    def find_by_tag(self, spec_name: str, tag: str) -> list[IndexEntry]:
        return [e for e in self.load().entries if e.spec_name == spec_name and e.version_name == tag]

    def find_global(self, spec_name: str, tag: str) -> IndexEntry | None:
        for entry in self.find_by_tag(spec_name, tag):
            if entry.is_global:
                return entry
        return None

    def find_entry_by_path(self, path: str | Path) -> IndexEntry | None:
        return self.load().latest_entry_for_path(normalize_path(path))

    # -- Servers ---------------------------------------------------------------

    def servers(self) -> dict[str, str]:
        return dict(self.load().servers)

    def add_server(self, name: str, url: str) -> None:
        with self.transaction() as index:
            if name in index.servers:
                msg = f"server '{name}' already exists; remove it first"
                raise AlreadyExists(msg)
            index.servers[name] = url.rstrip("/")

    def remove_server(self, name: str) -> str:
        with self.transaction() as index:
            url = index.servers.pop(name, None)
            if url is None:
                msg = f"server '{name}' not found"
                raise NotFound(msg)
        return url


def _global_by_name(index: Index, name: str) -> Workspace | None:
    for ws in index.workspaces.values():
        if ws.kind == WorkspaceKind.GLOBAL and ws.name == name:
            return ws
    return None
