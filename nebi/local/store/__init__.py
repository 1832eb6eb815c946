"""Persistence for the local workspace tooling.

- ``index`` -- the workspace index (``index.json``) and its lock.
- ``sidecar`` -- the ``.nebi.toml`` origin file inside pulled workspaces.
- ``snapshot`` -- committed copies of spec files.
- ``credentials`` / ``config`` -- documents in the config directory.
"""

from nebi.local.store.config import ConfigStore
from nebi.local.store.credentials import CredentialStore
from nebi.local.store.index import IndexStore, normalize_path
from nebi.local.store.snapshot import SnapshotStore

__all__ = ["ConfigStore", "CredentialStore", "IndexStore", "SnapshotStore", "normalize_path"]
