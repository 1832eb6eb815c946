"""Config-directory documents: server credentials and CLI preferences."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ServerCredential(BaseModel):
    token: str
    username: str | None = None


class Credentials(BaseModel):
    """``credentials.json`` -- server URL -> credential.  Stored with 0600."""

    servers: dict[str, ServerCredential] = Field(default_factory=dict)


class CliConfig(BaseModel):
    """``config.json`` -- user preferences that are not secrets."""

    default_server: str | None = None
