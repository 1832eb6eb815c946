"""Turn a user-supplied workspace argument into a directory or a remote reference.

Interpretation order:

1. empty -> the current directory,
2. anything path-like (contains a separator, or is ``.``/``..``) -> that path,
3. ``spec@digest`` or ``spec:tag`` -> a remote reference,
4. a bare name -> a global workspace, then a local one, then a registered
   server short name (whose reference is the next argument).
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

from nebi.local.errors import Malformed, NotFound
from nebi.local.models.enums import ResolutionKind, WorkspaceKind
from nebi.local.models.workspace import Index, Workspace
from nebi.local.store.index import IndexStore, normalize_path

_FORBIDDEN_NAME_CHARS = ("/", "\\", ":", "@")
_RESERVED_NAMES = (".", "..")


class Resolution(BaseModel):
    kind: ResolutionKind
    dir: str | None = Field(default=None, description="Absolute directory; None for remote references")
    rest_args: list[str] = Field(default_factory=list)
    spec: str | None = None
    tag: str | None = None
    server: str | None = None
    workspace: Workspace | None = None

    @property
    def is_remote(self) -> bool:
        return self.kind == ResolutionKind.TAG_REF


# -- Parsing -------------------------------------------------------------------


def validate_name(name: str) -> str:
    """Raise ``Malformed`` unless ``name`` is usable as a workspace name."""
    if not name or not name.strip():
        msg = "workspace name must not be empty"
        raise Malformed(msg)
    if any(ch in name for ch in _FORBIDDEN_NAME_CHARS):
        msg = f"workspace name '{name}' must not contain '/', '\\', ':' or '@'"
        raise Malformed(msg)
    if name in _RESERVED_NAMES:
        msg = f"workspace name '{name}' is reserved and cannot be used"
        raise Malformed(msg)
    return name


def is_path(arg: str) -> bool:
    if arg in _RESERVED_NAMES:
        return True
    return "/" in arg or os.sep in arg or (os.altsep is not None and os.altsep in arg)


def is_ref(arg: str) -> bool:
    return "@" in arg or ":" in arg


def parse_ref(ref: str) -> tuple[str, str]:
    """Split ``spec:tag`` or ``spec@sha256:...`` into ``(spec, tag)``.

    A digest reference splits at the first ``@`` and the tag keeps the
    ``@`` prefix.  Otherwise the split is at the last ``:``, so ``a:b:c``
    yields ``("a:b", "c")``.
    """
    if "@" in ref:
        at = ref.index("@")
        spec, tag = ref[:at], ref[at:]
    elif ":" in ref:
        spec, _, tag = ref.rpartition(":")
    else:
        msg = f"'{ref}' is not a reference; expected <spec>:<tag> or <spec>@<digest>"
        raise Malformed(msg)
    if not spec:
        msg = f"reference '{ref}' has an empty spec name"
        raise Malformed(msg)
    if not tag.lstrip("@"):
        msg = f"reference '{ref}' has an empty tag"
        raise Malformed(msg)
    return spec, tag


# -- Resolution ----------------------------------------------------------------


def resolve(
    arg: str | None,
    rest: list[str] | tuple[str, ...] = (),
    *,
    store: IndexStore,
    server: str | None = None,
    env: str | None = None,
    cwd: str | Path | None = None,
) -> Resolution:
    """Resolve ``arg`` (plus trailing arguments) against the index."""
    env_args = ["-e", env] if env else []
    rest_args = [*env_args, *rest]

    if not arg:
        directory = normalize_path(cwd or os.getcwd())
        return Resolution(kind=ResolutionKind.CWD, dir=directory, rest_args=rest_args)

    if is_path(arg):
        base = Path(cwd) if cwd else Path.cwd()
        target = Path(arg).expanduser()
        directory = normalize_path(target if target.is_absolute() else base / target)
        return Resolution(kind=ResolutionKind.PATH, dir=directory, rest_args=rest_args)

    if is_ref(arg):
        spec, tag = parse_ref(arg)
        return Resolution(kind=ResolutionKind.TAG_REF, spec=spec, tag=tag, server=server, rest_args=rest_args)

    index = store.load()
    ws = pick_workspace(index, arg)
    if ws is not None:
        return Resolution(kind=ResolutionKind.TRACKED_NAME, dir=ws.path, workspace=ws, rest_args=rest_args)

    if arg in index.servers:
        if not rest:
            msg = f"server '{arg}' given without a reference; expected <spec>:<tag>"
            raise Malformed(msg)
        spec, tag = parse_ref(rest[0])
        return Resolution(
            kind=ResolutionKind.TAG_REF, spec=spec, tag=tag, server=arg, rest_args=[*env_args, *rest[1:]]
        )

    msg = f"no workspace named '{arg}'"
    raise NotFound(msg)


def pick_workspace(index: Index, name: str) -> Workspace | None:
    """Choose among workspaces called ``name``.

    A global workspace wins.  Among local ones the most recently pulled wins
    (ties broken by path); workspaces that were never pulled come after,
    most recently updated first.
    """
    matches = [ws for ws in index.workspaces.values() if ws.name == name]
    if not matches:
        return None
    for ws in sorted(matches, key=lambda ws: ws.path):
        if ws.kind == WorkspaceKind.GLOBAL:
            return ws

    pulled = []
    unpulled = []
    for ws in matches:
        entry = index.latest_entry_for_path(ws.path)
        if entry is not None:
            pulled.append((entry.pulled_at, ws))
        else:
            unpulled.append(ws)

    if pulled:
        newest = max(pulled_at for pulled_at, _ in pulled)
        return min((ws for pulled_at, ws in pulled if pulled_at == newest), key=lambda ws: ws.path)
    return sorted(unpulled, key=lambda ws: (-ws.updated_at.timestamp(), ws.path))[0]
