"""Response schemas for the Nebi server REST API.

Only the fields the CLI consumes are declared; everything else in the
server's JSON bodies is ignored.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class RemoteOwner(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: str


class RemoteEnvironment(BaseModel):
    """An environment (server-side spec) as returned by ``GET /environments``."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    status: str = ""
    owner: RemoteOwner | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def owner_name(self) -> str:
        return self.owner.username if self.owner else ""


class RemoteTag(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tag: str
    version_number: int
    created_at: datetime | None = None


class LoginResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: str
    username: str


class PushResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version_number: int
    tag: str = ""


class RemoteVersion(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version_number: int
    created_at: datetime | None = None
