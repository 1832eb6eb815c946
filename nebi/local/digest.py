"""Content addressing for spec files.

Digests use the OCI layer format ``sha256:<64 lowercase hex>`` so a digest
recorded in a sidecar can be compared byte-for-byte with one published by the
registry.
"""

from __future__ import annotations

import hashlib
import re
from pathlib import Path

from nebi.local.errors import IOFailure

DIGEST_PREFIX = "sha256:"
_DIGEST_RE = re.compile(r"^sha256:[0-9a-f]{64}$")
_CHUNK_SIZE = 1 << 16


def digest(data: bytes) -> str:
    return DIGEST_PREFIX + hashlib.sha256(data).hexdigest()


def digest_file(path: str | Path) -> str | None:
    """Digest the file at ``path``.

    Returns ``None`` when the file does not exist.  Every other I/O error
    raises ``IOFailure``.
    """
    h = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            while chunk := f.read(_CHUNK_SIZE):
                h.update(chunk)
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise IOFailure.wrap("reading", path, exc) from exc
    return DIGEST_PREFIX + h.hexdigest()


def is_valid_digest(value: str) -> bool:
    return bool(_DIGEST_RE.match(value))
