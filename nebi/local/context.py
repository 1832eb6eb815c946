"""Per-invocation application context.

Every CLI command builds one ``AppContext`` and hands it to the manager
functions explicitly.  Nothing in the package holds stores or settings in
module-level state, so tests can point two contexts at different data
directories in the same process.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from nebi.local.settings import NebiSettings, get_settings
from nebi.local.store.config import ConfigStore
from nebi.local.store.credentials import CredentialStore
from nebi.local.store.index import IndexStore
from nebi.local.store.snapshot import SnapshotStore


@dataclass
class AppContext:
    """Resolved configuration and stores for one command."""

    settings: NebiSettings
    index: IndexStore
    snapshots: SnapshotStore
    credentials: CredentialStore
    config: ConfigStore
    transport: httpx.BaseTransport | None = None
    """Substitute HTTP transport for server calls (``httpx.MockTransport`` in tests)."""

    @classmethod
    def create(
        cls,
        settings: NebiSettings | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> AppContext:
        """Open every store at the directories named by ``settings``.

        The index is opened eagerly so a pending migration is persisted (or
        an unsupported version reported) before the command does anything.
        """
        settings = settings or get_settings()
        data_dir = settings.resolve_data_dir()
        config_dir = settings.resolve_config_dir()
        return cls(
            settings=settings,
            index=IndexStore.open(settings),
            snapshots=SnapshotStore(data_dir),
            credentials=CredentialStore(config_dir),
            config=ConfigStore(config_dir),
            transport=transport,
        )
