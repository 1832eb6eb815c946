"""Workspace index data model.

The index is a single JSON document under the data directory cataloguing
every tracked workspace (keyed by absolute path), the registered servers,
and one entry per pulled reference.  See ``store/index.py`` for persistence.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, Field, field_validator

from nebi.local.models.enums import WorkspaceKind

CURRENT_INDEX_VERSION = 3
"""Schema version written by this release.  See ``store/migrations.py``."""


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Workspace(BaseModel):
    """A tracked directory containing a ``pixi.toml``."""

    id: str = Field(default_factory=new_id)
    name: str
    path: str = Field(description="Absolute filesystem path, unique across the index")
    kind: WorkspaceKind = WorkspaceKind.LOCAL
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_times(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def is_global(self) -> bool:
        return self.kind == WorkspaceKind.GLOBAL


class IndexEntry(BaseModel):
    """A pulled reference (``spec:tag``) materialized at ``path``."""

    id: str = Field(default_factory=new_id)
    spec_name: str
    version_name: str = ""
    version_id: int = 0
    server_url: str = ""
    path: str
    pulled_at: datetime = Field(default_factory=utcnow)
    layers: dict[str, str] = Field(default_factory=dict, description="File name -> sha256 digest")
    is_global: bool = False

    @field_validator("pulled_at")
    @classmethod
    def normalize_pulled_at(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def display_name(self) -> str:
        if self.version_name:
            return f"{self.spec_name}:{self.version_name}"
        return self.spec_name


class Index(BaseModel):
    """The whole persisted index document."""

    version: int = CURRENT_INDEX_VERSION
    workspaces: dict[str, Workspace] = Field(default_factory=dict)
    servers: dict[str, str] = Field(default_factory=dict)
    entries: list[IndexEntry] = Field(default_factory=list)

    # -- Lookups ---------------------------------------------------------------

    def workspace_by_id(self, workspace_id: str) -> Workspace | None:
        for ws in self.workspaces.values():
            if ws.id == workspace_id:
                return ws
        return None

    def entries_for_path(self, path: str) -> list[IndexEntry]:
        return [e for e in self.entries if e.path == path]

    def latest_entry_for_path(self, path: str) -> IndexEntry | None:
        entries = self.entries_for_path(path)
        if not entries:
            return None
        return max(entries, key=lambda e: e.pulled_at)
