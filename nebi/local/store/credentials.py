"""Server credentials file.

Stored as ``{config_dir}/credentials.json`` with mode 0600, keyed by server
URL.  Credentials are never merged into the index.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from nebi.local.errors import Corrupt
from nebi.local.models.credentials import Credentials, ServerCredential
from nebi.local.store._fs import atomic_write, read_bytes
from nebi.local.store.lock import FileLock

CREDENTIALS_FILE_NAME = "credentials.json"
CREDENTIALS_LOCK_NAME = "credentials.lock"


class CredentialStore:
    def __init__(self, config_dir: str | Path) -> None:
        self.path = Path(config_dir) / CREDENTIALS_FILE_NAME
        self.lock_path = Path(config_dir) / CREDENTIALS_LOCK_NAME

    def load(self) -> Credentials:
        raw = read_bytes(self.path)
        if raw is None:
            return Credentials()
        try:
            return Credentials.model_validate_json(raw)
        except ValidationError as exc:
            raise Corrupt(self.path, str(exc.errors()[0]["msg"])) from None

    def save(self, creds: Credentials) -> None:
        atomic_write(self.path, creds.model_dump_json(indent=2, exclude_none=True).encode("utf-8"), mode=0o600)

    def get(self, server_url: str) -> ServerCredential | None:
        return self.load().servers.get(_key(server_url))

    def set(self, server_url: str, credential: ServerCredential) -> None:
        with FileLock(self.lock_path):
            creds = self.load()
            creds.servers[_key(server_url)] = credential
            self.save(creds)
        logger.debug("Stored credential for {}", server_url)

    def delete(self, server_url: str) -> bool:
        """Forget the credential for ``server_url``.  Returns False if there was none."""
        with FileLock(self.lock_path):
            creds = self.load()
            if creds.servers.pop(_key(server_url), None) is None:
                return False
            self.save(creds)
        return True


def _key(server_url: str) -> str:
    return server_url.rstrip("/")
