"""Delegation to the ``pixi`` executable.

nebi never resolves or installs environments itself; ``init``, ``shell`` and
``run`` spawn pixi with inherited stdio and wait for it.
"""

from __future__ import annotations

import shutil
import subprocess
import tomllib
from pathlib import Path

from loguru import logger

from nebi.local.errors import Malformed, NebiError, NotFound
from nebi.local.store.snapshot import PIXI_TOML

PIXI_INSTALL_URL = "https://pixi.sh"


def find_pixi(pixi_bin: str = "pixi") -> str:
    path = shutil.which(pixi_bin)
    if path is None:
        msg = f"{pixi_bin} not found in PATH; install it from {PIXI_INSTALL_URL}"
        raise NotFound(msg)
    return path


def reject_manifest_path(args: list[str] | tuple[str, ...], command: str) -> None:
    """Refuse a user-supplied ``--manifest-path``; nebi sets it for named workspaces."""
    for arg in args:
        if arg == "--manifest-path" or arg.startswith("--manifest-path="):
            msg = f"--manifest-path cannot be used with nebi {command}; use pixi {command} directly"
            raise Malformed(msg)


def manifest_name(directory: str | Path) -> str | None:
    """``[workspace].name`` (or legacy ``[project].name``) from ``pixi.toml``.

    Returns ``None`` when the file is missing, unparsable or has no name.
    """
    path = Path(directory) / PIXI_TOML
    try:
        doc = tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        logger.debug("Cannot read workspace name from {}: {}", path, exc)
        return None
    for table in ("workspace", "project"):
        section = doc.get(table)
        if isinstance(section, dict) and isinstance(section.get("name"), str) and section["name"]:
            return section["name"]
    return None


def run_pixi(
    subcommand: str,
    args: list[str] | tuple[str, ...] = (),
    *,
    cwd: str | Path,
    manifest_path: str | Path | None = None,
    pixi_bin: str = "pixi",
) -> None:
    """Run ``pixi <subcommand> [--manifest-path M] <args>`` and wait for it.

    Raises ``NebiError`` if pixi cannot be started or exits non-zero.
    """
    argv = [find_pixi(pixi_bin), subcommand]
    if manifest_path is not None:
        argv += ["--manifest-path", str(manifest_path)]
    argv += list(args)
    logger.debug("Running {} in {}", argv, cwd)

    try:
        completed = subprocess.run(argv, cwd=cwd, check=False)
    except OSError as exc:
        msg = f"failed to start pixi {subcommand}: {exc}"
        raise NebiError(msg) from exc
    if completed.returncode != 0:
        msg = f"pixi {subcommand} exited with code {completed.returncode}"
        raise NebiError(msg)


def pixi_init(directory: str | Path, *, pixi_bin: str = "pixi") -> None:
    run_pixi("init", cwd=directory, pixi_bin=pixi_bin)
