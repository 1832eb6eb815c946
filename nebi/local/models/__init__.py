"""Data models for the local workspace tooling."""

from nebi.local.models.credentials import CliConfig, Credentials, ServerCredential
from nebi.local.models.enums import (
    DriftStatus,
    OriginSource,
    RepairAction,
    ResolutionKind,
    WorkspaceKind,
)
from nebi.local.models.remote import LoginResponse, RemoteEnvironment, RemoteOwner, RemoteTag, RemoteVersion
from nebi.local.models.sidecar import SIDECAR_FILE_NAME, Layer, Origin, Sidecar
from nebi.local.models.workspace import CURRENT_INDEX_VERSION, Index, IndexEntry, Workspace

__all__ = [
    "CURRENT_INDEX_VERSION",
    "SIDECAR_FILE_NAME",
    # Config directory
    "CliConfig",
    "Credentials",
    # Enums
    "DriftStatus",
    # Index
    "Index",
    "IndexEntry",
    # Sidecar
    "Layer",
    # Remote
    "LoginResponse",
    "Origin",
    "OriginSource",
    "RemoteEnvironment",
    "RemoteOwner",
    "RemoteTag",
    "RemoteVersion",
    "RepairAction",
    "ResolutionKind",
    "ServerCredential",
    "Sidecar",
    "Workspace",
    "WorkspaceKind",
]
