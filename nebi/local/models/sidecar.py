"""Origin sidecar (``.nebi.toml``) data model.

A sidecar is written into a workspace directory by a pull.  It records where
the spec came from and the digest of every file exactly as pulled, so drift
can be detected without touching the network::

    id = "8d0c..."

    [origin]
    spec_name = "data-science"
    version_name = "v1.0"
    version_id = 42
    server_url = "https://nebi.example.com"
    pulled_at = 2024-01-20T10:30:00Z

    [layers."pixi.toml"]
    digest = "sha256:111..."
    size = 2345

Encoding and decoding live in ``store/sidecar.py``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from nebi.local.models.workspace import as_utc, utcnow

SIDECAR_FILE_NAME = ".nebi.toml"

MEDIA_TYPE_PIXI_TOML = "application/vnd.pixi.toml.v1+toml"
MEDIA_TYPE_PIXI_LOCK = "application/vnd.pixi.lock.v1+yaml"


class Origin(BaseModel):
    model_config = ConfigDict(extra="allow")

    spec_name: str
    version_name: str
    version_id: int
    server_url: str
    registry_url: str | None = None
    manifest_digest: str | None = None
    pulled_at: datetime = Field(default_factory=utcnow)

    @field_validator("pulled_at")
    @classmethod
    def normalize_pulled_at(cls, value: datetime) -> datetime:
        return as_utc(value)


class Layer(BaseModel):
    model_config = ConfigDict(extra="allow")

    digest: str
    size: int
    media_type: str | None = None


class Sidecar(BaseModel):
    """Contents of a ``.nebi.toml`` file."""

    id: str | None = Field(default=None, description="Workspace id; None only for legacy files")
    origin: Origin
    layers: dict[str, Layer] = Field(default_factory=dict)
    extra: dict[str, Any] = Field(default_factory=dict, description="Unknown top-level keys, preserved on write")

    @property
    def display_name(self) -> str:
        if self.origin.version_name:
            return f"{self.origin.spec_name}:{self.origin.version_name}"
        return self.origin.spec_name

    def layer_digest(self, filename: str) -> str | None:
        layer = self.layers.get(filename)
        return layer.digest if layer else None

    def layer_digests(self) -> dict[str, str]:
        return {name: layer.digest for name, layer in self.layers.items()}
