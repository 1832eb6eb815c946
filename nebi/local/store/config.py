"""CLI preferences file (``{config_dir}/config.json``, mode 0600)."""

from __future__ import annotations

from pathlib import Path

from pydantic import ValidationError

from nebi.local.errors import Corrupt
from nebi.local.models.credentials import CliConfig
from nebi.local.store._fs import atomic_write, read_bytes

CONFIG_FILE_NAME = "config.json"


class ConfigStore:
    def __init__(self, config_dir: str | Path) -> None:
        self.path = Path(config_dir) / CONFIG_FILE_NAME

    def load(self) -> CliConfig:
        raw = read_bytes(self.path)
        if raw is None:
            return CliConfig()
        try:
            return CliConfig.model_validate_json(raw)
        except ValidationError as exc:
            raise Corrupt(self.path, str(exc.errors()[0]["msg"])) from None

    def save(self, config: CliConfig) -> None:
        atomic_write(self.path, config.model_dump_json(indent=2).encode("utf-8"), mode=0o600)
