"""Structural upgrades for the index document.

Each step takes the raw JSON document of version ``n`` and returns version
``n + 1``.  ``migrate`` applies every step between the document's version and
``CURRENT_INDEX_VERSION`` in order; a document from a newer release raises
``UnsupportedVersion`` instead of being guessed at.

History:

- **v1** -- ``{"repos": [...]}`` (or ``{"workspaces": [...]}`` before that):
  one record per pulled repo, keyed by ``repo``/``workspace`` + ``tag``.
- **v2** -- ``{"version": 2, "entries": [...], "aliases": {...}}``: entries
  gained stable ids; global repos got user-facing aliases.
- **v3** -- ``{"version": 3, "workspaces": {path: ...}, "servers": {...},
  "entries": [...]}``: workspaces became first-class, keyed by path.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

from loguru import logger

from nebi.local.errors import UnsupportedVersion
from nebi.local.models.workspace import CURRENT_INDEX_VERSION, new_id, utcnow

Document = dict[str, Any]


def detect_version(doc: Document) -> int:
    version = doc.get("version")
    if isinstance(version, int) and not isinstance(version, bool):
        return version
    # Unversioned documents: a path-keyed mapping is the v3 shape without
    # the marker; anything else predates versioning.
    if isinstance(doc.get("workspaces"), dict):
        return CURRENT_INDEX_VERSION
    return 1


def migrate(doc: Document, *, data_dir: Path, source: Path) -> tuple[Document, bool]:
    """Upgrade ``doc`` in place to the current version.

    Returns the document and whether any step was applied.
    """
    version = detect_version(doc)
    if version > CURRENT_INDEX_VERSION:
        raise UnsupportedVersion(source, version, CURRENT_INDEX_VERSION)

    # v0 documents share the v1 layout.
    version = max(version, 1)
    changed = doc.get("version") != version
    while version < CURRENT_INDEX_VERSION:
        step = _STEPS[version]
        logger.debug("Migrating index {} from v{} to v{}", source, version, version + 1)
        doc = step(doc, data_dir)
        version += 1
        changed = True
    doc["version"] = CURRENT_INDEX_VERSION
    return _normalize_v3(doc), changed


# -- Steps ---------------------------------------------------------------------


def _v1_to_v2(doc: Document, data_dir: Path) -> Document:
    old = doc.get("repos")
    if old is None:
        old = doc.get("workspaces")
    entries = []
    for record in old or []:
        if not isinstance(record, dict):
            continue
        entries.append({
            "id": new_id(),
            "spec_name": record.get("repo") or record.get("workspace") or "",
            "version_name": record.get("tag", ""),
            "version_id": str(record.get("server_version_id", 0)),
            "server_url": record.get("server_url", ""),
            "path": record.get("path", ""),
            "pulled_at": record.get("pulled_at") or utcnow().isoformat(),
            "layers": record.get("layers") or {},
            "is_global": bool(record.get("is_global", False)),
        })
    return {"version": 2, "entries": entries, "aliases": {}}


def _v2_to_v3(doc: Document, data_dir: Path) -> Document:
    repos_root = str(data_dir / "repos") + os.sep
    envs_root = str(data_dir / "envs") + os.sep

    alias_names: dict[str, str] = {}
    for name, alias in (doc.get("aliases") or {}).items():
        if isinstance(alias, dict) and alias.get("uuid"):
            alias_path = str(data_dir / "repos" / alias["uuid"] / alias.get("tag", ""))
            alias_names[alias_path] = name

    workspaces: dict[str, Document] = {}
    entries: list[Document] = []
    for entry in doc.get("entries") or []:
        if not isinstance(entry, dict) or not entry.get("path"):
            continue
        path = entry["path"]
        is_global = bool(entry.get("is_global")) or path.startswith((repos_root, envs_root))
        entries.append({
            "id": entry.get("id") or new_id(),
            "spec_name": entry.get("spec_name", ""),
            "version_name": entry.get("version_name", ""),
            "version_id": _as_int(entry.get("version_id")),
            "server_url": entry.get("server_url", ""),
            "path": path,
            "pulled_at": entry.get("pulled_at") or utcnow().isoformat(),
            "layers": entry.get("layers") or {},
            "is_global": is_global,
        })
        if path in workspaces:
            continue
        pulled_at = entries[-1]["pulled_at"]
        workspaces[path] = {
            "id": entries[-1]["id"],
            "name": alias_names.get(path) or entries[-1]["spec_name"] or Path(path).name,
            "path": path,
            "kind": "global" if is_global else "local",
            "created_at": pulled_at,
            "updated_at": pulled_at,
        }

    return {"version": 3, "workspaces": workspaces, "servers": {}, "entries": entries}


_STEPS: dict[int, Callable[[Document, Path], Document]] = {
    1: _v1_to_v2,
    2: _v2_to_v3,
}


def _normalize_v3(doc: Document) -> Document:
    """Fill defaults for fields older v3 writers left out."""
    workspaces = doc.get("workspaces") or {}
    for path, ws in workspaces.items():
        if not isinstance(ws, dict):
            continue
        ws.setdefault("path", path)
        if "kind" not in ws:
            ws["kind"] = "global" if ws.pop("global", False) else "local"
        ws.pop("origins", None)
    doc["workspaces"] = workspaces
    doc.setdefault("servers", {})
    doc.setdefault("entries", [])
    return doc


def _as_int(value: object) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0
