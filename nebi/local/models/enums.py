"""Shared enumerations used across the local workspace tooling."""

from __future__ import annotations

from enum import StrEnum

# -- Workspace ---------------------------------------------------------------


class WorkspaceKind(StrEnum):
    """Who owns the files of a tracked workspace."""

    LOCAL = "local"
    GLOBAL = "global"


# -- Drift -------------------------------------------------------------------


class DriftStatus(StrEnum):
    """Classification of a spec file (or whole workspace) against its origin."""

    CLEAN = "clean"
    UNTRACKED = "untracked"
    MODIFIED = "modified"
    MISSING = "missing"
    UNKNOWN = "unknown"

    @property
    def rank(self) -> int:
        return _DRIFT_RANK[self]


_DRIFT_RANK = {
    DriftStatus.CLEAN: 0,
    DriftStatus.UNTRACKED: 1,
    DriftStatus.MODIFIED: 2,
    DriftStatus.MISSING: 3,
    DriftStatus.UNKNOWN: 4,
}


class OriginSource(StrEnum):
    """Where the drift baseline came from."""

    SIDECAR = "sidecar"
    INDEX = "index"
    SNAPSHOT = "snapshot"
    NONE = "none"


# -- Resolution --------------------------------------------------------------


class ResolutionKind(StrEnum):
    """How a user-supplied workspace argument was interpreted."""

    CWD = "cwd"
    PATH = "path"
    TRACKED_NAME = "tracked-name"
    TAG_REF = "tag-ref"


# -- Repair ------------------------------------------------------------------


class RepairAction(StrEnum):
    OK = "ok"
    PATH_MOVED = "path_moved"
    ORPHANED = "orphaned"
    STALE = "stale"
