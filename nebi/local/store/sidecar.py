"""Read/write the ``.nebi.toml`` origin sidecar.

Parsing uses ``tomllib``; writing uses a small emitter covering the value
types a sidecar can hold (strings, integers, floats, booleans, datetimes,
arrays and tables).  Unknown keys are kept (top-level ones in
``Sidecar.extra``, those inside ``[origin]`` and ``[layers.*]`` on the models
themselves) and written back after the known ones.

Writes go to ``.nebi.toml.tmp``, are fsynced, then renamed into place with
mode 0644.
"""

from __future__ import annotations

import datetime as dt
import json
import re
import tomllib
from collections.abc import Mapping
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from nebi.local.digest import is_valid_digest
from nebi.local.errors import Malformed
from nebi.local.models.sidecar import SIDECAR_FILE_NAME, Layer, Origin, Sidecar
from nebi.local.store._fs import atomic_write, read_bytes

SIDECAR_TMP_NAME = SIDECAR_FILE_NAME + ".tmp"

_KNOWN_KEYS = frozenset({"id", "origin", "layers"})
_REQUIRED_ORIGIN_KEYS = ("spec_name", "version_name", "version_id", "server_url", "pulled_at")
_REQUIRED_LAYER_KEYS = ("digest", "size")
_ORIGIN_KEY_ORDER = (*_REQUIRED_ORIGIN_KEYS[:4], "registry_url", "manifest_digest", "pulled_at")
_LAYER_KEY_ORDER = (*_REQUIRED_LAYER_KEYS, "media_type")
_BARE_KEY_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def sidecar_path(directory: str | Path) -> Path:
    return Path(directory) / SIDECAR_FILE_NAME


def exists(directory: str | Path) -> bool:
    return sidecar_path(directory).is_file()


def read(directory: str | Path, *, require_id: bool = True) -> Sidecar | None:
    """Read the sidecar in ``directory``.

    Returns ``None`` if there is no sidecar.  Raises ``Malformed`` when the
    file cannot be parsed, a required key is missing, or a digest is not a
    valid ``sha256:<hex>`` string.  ``require_id=False`` accepts legacy files
    written before workspaces had stable ids.
    """
    path = sidecar_path(directory)
    raw = read_bytes(path)
    if raw is None:
        return None
    return decode(raw, source=path, require_id=require_id)


def write(directory: str | Path, sidecar: Sidecar) -> Path:
    path = sidecar_path(directory)
    atomic_write(path, encode(sidecar).encode("utf-8"), mode=0o644, tmp_name=SIDECAR_TMP_NAME)
    logger.debug("Wrote sidecar {} ({})", path, sidecar.display_name)
    return path


# -- Decode --------------------------------------------------------------------


def decode(raw: bytes, *, source: str | Path = SIDECAR_FILE_NAME, require_id: bool = True) -> Sidecar:
    try:
        doc = tomllib.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        msg = f"{source}: invalid TOML: {exc}"
        raise Malformed(msg) from None

    sidecar_id = doc.get("id")
    if sidecar_id is None and require_id:
        msg = f"{source}: missing required key 'id'"
        raise Malformed(msg)
    if sidecar_id is not None and not isinstance(sidecar_id, str):
        msg = f"{source}: 'id' must be a string"
        raise Malformed(msg)

    origin_doc = doc.get("origin")
    if not isinstance(origin_doc, dict):
        msg = f"{source}: missing required table 'origin'"
        raise Malformed(msg)
    for key in _REQUIRED_ORIGIN_KEYS:
        if key not in origin_doc:
            msg = f"{source}: missing required key 'origin.{key}'"
            raise Malformed(msg)

    layers_doc = doc.get("layers", {})
    if not isinstance(layers_doc, dict):
        msg = f"{source}: 'layers' must be a table"
        raise Malformed(msg)
    for name, layer in layers_doc.items():
        if not isinstance(layer, dict):
            msg = f"{source}: 'layers.{name}' must be a table"
            raise Malformed(msg)
        for key in _REQUIRED_LAYER_KEYS:
            if key not in layer:
                msg = f"{source}: missing required key 'layers.{name}.{key}'"
                raise Malformed(msg)
        if not isinstance(layer["digest"], str) or not is_valid_digest(layer["digest"]):
            msg = f"{source}: 'layers.{name}.digest' is not a valid sha256 digest"
            raise Malformed(msg)

    manifest_digest = origin_doc.get("manifest_digest")
    if manifest_digest is not None and not is_valid_digest(str(manifest_digest)):
        msg = f"{source}: 'origin.manifest_digest' is not a valid sha256 digest"
        raise Malformed(msg)

    try:
        return Sidecar(
            id=sidecar_id,
            origin=Origin.model_validate(origin_doc),
            layers={name: Layer.model_validate(layer) for name, layer in layers_doc.items()},
            extra={k: v for k, v in doc.items() if k not in _KNOWN_KEYS},
        )
    except ValidationError as exc:
        msg = f"{source}: {_first_error(exc)}"
        raise Malformed(msg) from None


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(part) for part in err["loc"])
    return f"{loc}: {err['msg']}" if loc else err["msg"]


# -- Encode --------------------------------------------------------------------


def encode(sidecar: Sidecar) -> str:
    lines: list[str] = []
    if sidecar.id is not None:
        lines.append(f"id = {_toml_value(sidecar.id)}")
    for key in sorted(sidecar.extra):
        lines.append(f"{_toml_key(key)} = {_toml_value(sidecar.extra[key])}")

    lines.append("")
    lines.append("[origin]")
    origin = sidecar.origin.model_dump(exclude_none=True)
    lines.extend(_table_lines(origin, _ORIGIN_KEY_ORDER))

    for name in sorted(sidecar.layers):
        layer = sidecar.layers[name].model_dump(exclude_none=True)
        lines.append("")
        lines.append(f"[layers.{_toml_key(name)}]")
        lines.extend(_table_lines(layer, _LAYER_KEY_ORDER))

    return "\n".join(lines) + "\n"


def _table_lines(table: dict, known: tuple[str, ...]) -> list[str]:
    """Known keys in their fixed order, then any others sorted."""
    keys = [key for key in known if key in table]
    keys += sorted(key for key in table if key not in known)
    return [f"{_toml_key(key)} = {_toml_value(table[key])}" for key in keys]


def _toml_key(value: str) -> str:
    if _BARE_KEY_RE.match(value):
        return value
    return json.dumps(value, ensure_ascii=False)


def _toml_value(value: object) -> str:
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, dt.datetime):
        if value.tzinfo is not None and value.utcoffset() == dt.timedelta(0):
            return value.replace(tzinfo=None).isoformat() + "Z"
        return value.isoformat()
    if isinstance(value, dt.date | dt.time):
        return value.isoformat()
    if isinstance(value, list | tuple):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, Mapping):
        items = [f"{_toml_key(str(key))} = {_toml_value(item)}" for key, item in value.items()]
        return "{ " + ", ".join(items) + " }" if items else "{}"
    msg = f"unsupported TOML value type: {type(value).__name__}"
    raise Malformed(msg)

