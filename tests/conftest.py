"""Shared test fixtures.

Every test runs against its own data and config directories under
``tmp_path`` so nothing touches the real user index.  Tests that exercise
a server use ``FakeServer`` (see ``tests/local/conftest.py``) through
``httpx.MockTransport``; no network is required.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from nebi.local.context import AppContext
from nebi.local.settings import _get_settings_cached

DEFAULT_DEPS = 'python = ">=3.11"'


@pytest.fixture(autouse=True)
def nebi_dirs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[tuple[Path, Path]]:
    """Point NEBI_DATA_DIR / NEBI_CONFIG_DIR at the test's tmp_path and skip readiness waits."""
    data_dir = tmp_path / "data"
    config_dir = tmp_path / "config"
    monkeypatch.setenv("NEBI_DATA_DIR", str(data_dir))
    monkeypatch.setenv("NEBI_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("NEBI_READY_POLL_INTERVAL", "0")
    _get_settings_cached.cache_clear()
    yield data_dir, config_dir
    _get_settings_cached.cache_clear()


@pytest.fixture
def app() -> AppContext:
    return AppContext.create()


def _write_pixi_toml(directory: Path, name: str, deps: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "pixi.toml"
    path.write_text(f'[workspace]\nname = "{name}"\nchannels = ["conda-forge"]\n\n[dependencies]\n{deps}\n')
    return path


@pytest.fixture
def make_project(tmp_path: Path) -> Callable[..., Path]:
    """Factory creating a directory with a minimal pixi.toml; returns the directory."""

    def _make(name: str = "demo", *, directory: Path | None = None, deps: str = DEFAULT_DEPS) -> Path:
        directory = directory or tmp_path / "projects" / name
        _write_pixi_toml(directory, name, deps)
        return directory

    return _make


@pytest.fixture
def project(make_project: Callable[..., Path]) -> Path:
    """A directory holding a pixi.toml named ``demo``."""
    return make_project("demo")
