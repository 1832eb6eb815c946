"""Unit tests for the ``.nebi.toml`` sidecar codec and content digests."""

from __future__ import annotations

import os
import stat
from datetime import UTC, datetime

import pytest

from nebi.local.digest import digest, digest_file, is_valid_digest
from nebi.local.errors import Malformed
from nebi.local.models.sidecar import Layer, Origin, Sidecar
from nebi.local.store import sidecar as sidecar_codec

TOML_DIGEST = "sha256:" + "1" * 64
LOCK_DIGEST = "sha256:" + "2" * 64

VALID = f"""
id = "8d0c6a36-0000-4000-8000-000000000001"

[origin]
spec_name = "data-science"
version_name = "v1.0"
version_id = 42
server_url = "https://nebi.example.com"
pulled_at = 2024-01-20T10:30:00Z

[layers."pixi.toml"]
digest = "{TOML_DIGEST}"
size = 2345

[layers."pixi.lock"]
digest = "{LOCK_DIGEST}"
size = 128000
"""


def _sidecar(**extra: object) -> Sidecar:
    return Sidecar(
        id="ws-1",
        origin=Origin(
            spec_name="data-science",
            version_name="v1.0",
            version_id=42,
            server_url="https://nebi.example.com",
            pulled_at=datetime(2024, 1, 20, 10, 30, tzinfo=UTC),
        ),
        layers={"pixi.toml": Layer(digest=TOML_DIGEST, size=10, media_type="application/vnd.pixi.toml.v1+toml")},
        extra=dict(extra),
    )


# ---------------------------------------------------------------------------
# Digests
# ---------------------------------------------------------------------------


def test_digest_format(tmp_path) -> None:
    value = digest(b"hello")
    assert value == "sha256:2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
    assert is_valid_digest(value)

    path = tmp_path / "f"
    path.write_bytes(b"hello")
    assert digest_file(path) == value


def test_digest_file_missing_returns_none(tmp_path) -> None:
    assert digest_file(tmp_path / "nope") is None


@pytest.mark.parametrize("value", ["sha256:abc", "md5:" + "0" * 64, "sha256:" + "G" * 64, ""])
def test_invalid_digests(value: str) -> None:
    assert not is_valid_digest(value)


# ---------------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------------


def test_decode_valid() -> None:
    sc = sidecar_codec.decode(VALID.encode())
    assert sc.id == "8d0c6a36-0000-4000-8000-000000000001"
    assert sc.origin.spec_name == "data-science"
    assert sc.origin.version_id == 42
    assert sc.origin.pulled_at == datetime(2024, 1, 20, 10, 30, tzinfo=UTC)
    assert sc.layer_digests() == {"pixi.toml": TOML_DIGEST, "pixi.lock": LOCK_DIGEST}
    assert sc.display_name == "data-science:v1.0"


def test_decode_missing_id_rejected_unless_legacy() -> None:
    legacy = VALID.replace('id = "8d0c6a36-0000-4000-8000-000000000001"', "")
    with pytest.raises(Malformed, match="'id'"):
        sidecar_codec.decode(legacy.encode())
    assert sidecar_codec.decode(legacy.encode(), require_id=False).id is None


def test_decode_missing_origin_key() -> None:
    broken = VALID.replace("version_id = 42\n", "")
    with pytest.raises(Malformed, match="origin.version_id"):
        sidecar_codec.decode(broken.encode())


def test_decode_bad_digest() -> None:
    broken = VALID.replace(LOCK_DIGEST, "sha256:nothex")
    with pytest.raises(Malformed, match="layers.pixi.lock.digest"):
        sidecar_codec.decode(broken.encode())


def test_decode_invalid_toml() -> None:
    with pytest.raises(Malformed, match="invalid TOML"):
        sidecar_codec.decode(b"id = [unterminated")


# ---------------------------------------------------------------------------
# Write / read
# ---------------------------------------------------------------------------


def test_write_then_read(tmp_path) -> None:
    original = _sidecar()
    path = sidecar_codec.write(tmp_path, original)

    assert path == tmp_path / ".nebi.toml"
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o644
    assert not (tmp_path / ".nebi.toml.tmp").exists()
    assert sidecar_codec.read(tmp_path) == original


def test_unknown_keys_survive_rewrite(tmp_path) -> None:
    (tmp_path / ".nebi.toml").write_text('future_field = "keep me"\nnested = { a = 1 }\n' + VALID)
    sc = sidecar_codec.read(tmp_path)
    assert sc.extra == {"future_field": "keep me", "nested": {"a": 1}}

    sidecar_codec.write(tmp_path, sc)
    text = (tmp_path / ".nebi.toml").read_text()
    assert 'future_field = "keep me"' in text
    assert sidecar_codec.read(tmp_path).extra == sc.extra


def test_unknown_origin_and_layer_keys_survive_rewrite(tmp_path) -> None:
    text = VALID.replace(
        'server_url = "https://nebi.example.com"\n',
        'server_url = "https://nebi.example.com"\nchannel = "stable"\n',
    ).replace("size = 2345\n", 'size = 2345\ncompression = "zstd"\n')
    (tmp_path / ".nebi.toml").write_text(text)

    sc = sidecar_codec.read(tmp_path)
    sidecar_codec.write(tmp_path, sc)
    rewritten = (tmp_path / ".nebi.toml").read_text()
    assert 'channel = "stable"' in rewritten
    assert 'compression = "zstd"' in rewritten

    again = sidecar_codec.read(tmp_path)
    assert again.origin.model_extra == {"channel": "stable"}
    assert again.layers["pixi.toml"].model_extra == {"compression": "zstd"}
    assert again.layers["pixi.lock"].model_extra == {}
    assert again == sc


def test_read_absent(tmp_path) -> None:
    assert sidecar_codec.read(tmp_path) is None
    assert not sidecar_codec.exists(tmp_path)
