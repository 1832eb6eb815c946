"""Tests for the workspace and server managers.

Server interactions go through ``FakeServer``; no network or pixi binary is
required.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from nebi.local.context import AppContext
from nebi.local.digest import digest
from nebi.local.errors import AlreadyExists, AuthRequired, Malformed, NebiError, NotFound
from nebi.local.managers import servers as server_mgr
from nebi.local.managers import workspaces as ws_mgr
from nebi.local.models.enums import DriftStatus, OriginSource, WorkspaceKind
from nebi.local.models.workspace import IndexEntry
from nebi.local.store import sidecar as sidecar_codec
from nebi.local.tracking.drift import summarize

DS_TOML = b'[workspace]\nname = "ds"\nchannels = ["conda-forge"]\n'
DS_LOCK = b"version: 6\n"


# ---------------------------------------------------------------------------
# Init / commit
# ---------------------------------------------------------------------------


def test_init_uses_manifest_name(app: AppContext, project: Path) -> None:
    ws = ws_mgr.init_workspace(app, project)
    assert ws.name == "demo"
    assert ws.kind == WorkspaceKind.LOCAL
    assert app.index.find_by_path(project) == ws

    with pytest.raises(AlreadyExists):
        ws_mgr.init_workspace(app, project)


def test_init_requires_manifest(app: AppContext, tmp_path) -> None:
    with pytest.raises(NotFound, match="--pixi-init"):
        ws_mgr.init_workspace(app, tmp_path)


def test_commit_lifecycle(app: AppContext, project: Path) -> None:
    with pytest.raises(NotFound, match="nebi init"):
        ws_mgr.commit_workspace(app, project)

    ws_mgr.init_workspace(app, project)
    _, status = ws_mgr.status_for_path(app, project)
    assert status.status == DriftStatus.UNKNOWN

    assert ws_mgr.commit_workspace(app, project)[1] == ws_mgr.CommitOutcome.COMMITTED
    assert ws_mgr.commit_workspace(app, project)[1] == ws_mgr.CommitOutcome.CLEAN

    (project / "pixi.toml").write_text((project / "pixi.toml").read_text() + 'numpy = "*"\n')
    _, status = ws_mgr.status_for_path(app, project)
    assert status.status == DriftStatus.MODIFIED
    assert status.origin_source == OriginSource.SNAPSHOT

    assert ws_mgr.commit_workspace(app, project)[1] == ws_mgr.CommitOutcome.COMMITTED
    assert ws_mgr.status_for_path(app, project)[1].status == DriftStatus.CLEAN


def test_commit_after_sidecar_deleted_keeps_index_origin(app: AppContext, project: Path) -> None:
    ws = ws_mgr.init_workspace(app, project)
    manifest = (project / "pixi.toml").read_bytes()
    app.index.add_entry(
        IndexEntry(
            spec_name="demo",
            version_name="v1",
            version_id=1,
            server_url="https://nebi.test",
            path=str(project),
            layers={"pixi.toml": digest(manifest)},
        )
    )
    (project / "pixi.toml").write_bytes(manifest + b'numpy = "*"\n')

    assert ws_mgr.commit_workspace(app, project)[1] == ws_mgr.CommitOutcome.PULLED
    assert app.snapshots.read_all(ws.id) == {}
    _, status = ws_mgr.status_for_path(app, project)
    assert status.status == DriftStatus.MODIFIED
    assert status.origin_source == OriginSource.INDEX


def test_commit_missing_manifest(app: AppContext, project: Path) -> None:
    ws_mgr.init_workspace(app, project)
    (project / "pixi.toml").unlink()
    with pytest.raises(NotFound, match="missing"):
        ws_mgr.commit_workspace(app, project)


def test_sync_name_follows_manifest(app: AppContext, project: Path) -> None:
    ws = ws_mgr.init_workspace(app, project)
    assert ws_mgr.sync_name(app, ws) is None

    (project / "pixi.toml").write_text('[workspace]\nname = "renamed"\n')
    assert ws_mgr.sync_name(app, ws) == "demo"
    assert ws.name == "renamed"
    assert app.index.find_by_path(project).name == "renamed"


# ---------------------------------------------------------------------------
# Promote / remove / prune / list
# ---------------------------------------------------------------------------


def test_promote_creates_global_copy(app: AppContext, project: Path) -> None:
    (project / "pixi.lock").write_bytes(b"lock")
    ws = ws_mgr.promote_workspace(app, "tools", project)

    assert ws.kind == WorkspaceKind.GLOBAL
    target = Path(ws.path)
    assert target == app.index.global_workspace_dir(ws.id)
    assert (target / "pixi.toml").read_bytes() == (project / "pixi.toml").read_bytes()
    assert (target / "pixi.lock").read_bytes() == b"lock"
    assert app.snapshots.exists(ws.id)
    assert ws_mgr.workspace_status(app, ws).status == DriftStatus.CLEAN

    with pytest.raises(AlreadyExists, match="tools"):
        ws_mgr.promote_workspace(app, "tools", project)
    with pytest.raises(Malformed):
        ws_mgr.promote_workspace(app, "bad/name", project)


def test_remove_global_deletes_directory(app: AppContext, project: Path) -> None:
    ws = ws_mgr.promote_workspace(app, "tools", project)
    ws_mgr.remove_workspace(app, "tools")

    assert not Path(ws.path).exists()
    assert not app.snapshots.exists(ws.id)
    assert app.index.find_global_by_name("tools") is None
    # The source directory is untouched.
    assert (project / "pixi.toml").is_file()


def test_remove_local_keeps_files(app: AppContext, project: Path) -> None:
    ws_mgr.init_workspace(app, project)
    ws_mgr.remove_workspace(app, str(project))
    assert app.index.find_by_path(project) is None
    assert (project / "pixi.toml").is_file()

    with pytest.raises(NotFound):
        ws_mgr.remove_workspace(app, "demo")


def test_prune_removes_only_missing(app: AppContext, make_project) -> None:
    keep = make_project("keep")
    gone = make_project("gone")
    ws_mgr.init_workspace(app, keep)
    gone_ws = ws_mgr.init_workspace(app, gone)
    ws_mgr.commit_workspace(app, gone)
    for child in gone.iterdir():
        child.unlink()
    gone.rmdir()

    removed = ws_mgr.prune_workspaces(app)
    assert [ws.name for ws in removed] == ["gone"]
    assert not app.snapshots.exists(gone_ws.id)
    assert [ws.name for ws in app.index.list_workspaces()] == ["keep"]
    assert (keep / "pixi.toml").is_file()
    assert ws_mgr.prune_workspaces(app) == []


def test_list_reports_status(app: AppContext, make_project) -> None:
    a = make_project("alpha")
    b = make_project("beta")
    ws_mgr.init_workspace(app, a)
    ws_mgr.init_workspace(app, b)
    ws_mgr.commit_workspace(app, a)

    listings = {item.workspace.name: item.status.status for item in ws_mgr.list_workspaces(app)}
    assert listings == {"alpha": DriftStatus.CLEAN, "beta": DriftStatus.UNKNOWN}


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


def _pull(app: AppContext, spec: str, tag: str | None, **kwargs):
    with server_mgr.client_for(app, None) as client:
        return ws_mgr.pull_workspace(app, client, spec, tag, **kwargs)


def test_pull_into_directory(remote_app: AppContext, server, tmp_path) -> None:
    server.publish("ds", 2, DS_TOML, DS_LOCK, tag="v1")
    target = tmp_path / "pulled"

    result = _pull(remote_app, "ds", "v1", output_dir=target)

    assert (target / "pixi.toml").read_bytes() == DS_TOML
    assert (target / "pixi.lock").read_bytes() == DS_LOCK
    assert result.entry.version_id == 2
    assert result.workspace.name == "ds"
    assert result.workspace.kind == WorkspaceKind.LOCAL

    sc = sidecar_codec.read(target)
    assert sc.id == result.workspace.id
    assert sc.display_name == "ds:v1"
    assert sc.origin.server_url == "https://nebi.test"
    assert set(sc.layers) == {"pixi.toml", "pixi.lock"}

    status = ws_mgr.workspace_status(remote_app, result.workspace)
    assert status.status == DriftStatus.CLEAN
    assert status.origin_source == OriginSource.SIDECAR


def test_pull_refuses_overwrite_without_force(remote_app: AppContext, server, tmp_path) -> None:
    server.publish("ds", 1, DS_TOML, tag="v1")
    server.publish("ds", 2, DS_TOML + b"# v2\n", tag="v2")
    target = tmp_path / "pulled"
    first = _pull(remote_app, "ds", "v1", output_dir=target)

    sc = sidecar_codec.read(target)
    sidecar_codec.write(target, sc.model_copy(update={"extra": {"note": "keep"}}))

    with pytest.raises(AlreadyExists, match="--force"):
        _pull(remote_app, "ds", "v2", output_dir=target)

    second = _pull(remote_app, "ds", "v2", output_dir=target, force=True)
    assert second.entry.id == first.entry.id
    assert second.workspace.id == first.workspace.id
    assert len(remote_app.index.load().entries) == 1
    rewritten = sidecar_codec.read(target)
    assert rewritten.origin.version_name == "v2"
    assert rewritten.extra == {"note": "keep"}


def test_pull_drops_stale_lock(remote_app: AppContext, server, tmp_path) -> None:
    server.publish("ds", 1, DS_TOML, tag="v1")
    target = tmp_path / "pulled"
    target.mkdir()
    (target / "pixi.lock").write_bytes(b"old lock")

    _pull(remote_app, "ds", "v1", output_dir=target)
    assert not (target / "pixi.lock").exists()


def test_pull_global(remote_app: AppContext, server) -> None:
    server.publish("ds", 3, DS_TOML, tag="v1")
    result = _pull(remote_app, "ds", "v1", global_name="ds-global")

    assert result.workspace.kind == WorkspaceKind.GLOBAL
    assert result.workspace.name == "ds-global"
    assert remote_app.index.is_global_path(result.path)
    assert remote_app.index.find_global("ds", "v1").path == result.path

    with pytest.raises(AlreadyExists):
        _pull(remote_app, "ds", "v1", global_name="ds-global")


def test_pull_unknown_tag(remote_app: AppContext, server, tmp_path) -> None:
    server.publish("ds", 1, DS_TOML, tag="v1")
    with pytest.raises(NotFound, match="v9"):
        _pull(remote_app, "ds", "v9", output_dir=tmp_path / "x")
    assert remote_app.index.load().entries == []


# ---------------------------------------------------------------------------
# Push / remote drift
# ---------------------------------------------------------------------------


def _push(app: AppContext, spec: str, tag: str, directory: Path, **kwargs):
    with server_mgr.client_for(app, None) as client:
        return ws_mgr.push_workspace(app, client, spec, tag, directory, **kwargs)


def test_push_creates_spec_and_records_origin(remote_app: AppContext, server, project: Path) -> None:
    (project / "pixi.lock").write_bytes(DS_LOCK)
    ws = ws_mgr.init_workspace(remote_app, project)

    result = _push(remote_app, "demo", "v1", project)

    assert result.created
    assert result.workspace.id == ws.id
    assert result.entry.version_id == 1
    assert server.envs["demo"].status == "ready"
    assert server.envs["demo"].versions[1] == ((project / "pixi.toml").read_bytes(), DS_LOCK)

    sc = sidecar_codec.read(project)
    assert sc.id == ws.id
    assert sc.display_name == "demo:v1"
    assert set(sc.layers) == {"pixi.toml", "pixi.lock"}
    _, status = ws_mgr.status_for_path(remote_app, project)
    assert status.status == DriftStatus.CLEAN
    assert status.origin_source == OriginSource.SIDECAR


def test_push_modified_pull_updates_origin(remote_app: AppContext, server, tmp_path) -> None:
    server.publish("ds", 1, DS_TOML, tag="v1")
    target = tmp_path / "pulled"
    pulled = _pull(remote_app, "ds", "v1", output_dir=target)
    (target / "pixi.toml").write_bytes(DS_TOML + b"# tweak\n")

    with pytest.raises(AlreadyExists, match="--force"):
        _push(remote_app, "ds", "v1", target)

    result = _push(remote_app, "ds", "v2", target)
    assert not result.created
    assert result.entry.version_id == 2
    assert result.entry.id == pulled.entry.id
    assert len(remote_app.index.load().entries) == 1
    assert sidecar_codec.read(target).display_name == "ds:v2"
    assert ws_mgr.workspace_status(remote_app, result.workspace).status == DriftStatus.CLEAN

    forced = _push(remote_app, "ds", "v1", target, force=True)
    assert forced.entry.version_id == 3
    assert server.envs["ds"].tags["v1"] == 3


def test_push_rejects_digest_ref(remote_app: AppContext, project: Path) -> None:
    with pytest.raises(Malformed, match="digest"):
        _push(remote_app, "demo", "@sha256:abc", project)


def test_push_waits_for_failed_environment(remote_app: AppContext, server, project: Path) -> None:
    server.create_status = "failed"
    with pytest.raises(NebiError, match="failed to build"):
        _push(remote_app, "demo", "v1", project)
    assert not sidecar_codec.exists(project)
    assert server.envs["demo"].versions == {}


def test_preview_push(remote_app: AppContext, server, project: Path, tmp_path) -> None:
    preview = ws_mgr.preview_push(remote_app, "demo", "v1", project)
    assert preview.origin_name is None
    assert preview.sizes == {"pixi.toml": len((project / "pixi.toml").read_bytes())}

    server.publish("ds", 1, DS_TOML, DS_LOCK, tag="v1")
    target = tmp_path / "pulled"
    _pull(remote_app, "ds", "v1", output_dir=target)
    assert ws_mgr.preview_push(remote_app, "ds", "v2", target).unchanged

    (target / "pixi.toml").write_bytes(DS_TOML + b'numpy = "*"\n')
    (target / "pixi.lock").write_bytes(b"version: 7\n")
    preview = ws_mgr.preview_push(remote_app, "ds", "v2", target)
    assert preview.origin_name == "ds:v1"
    assert not preview.unchanged
    assert '+numpy = "*"' in preview.diff
    assert "origin (ds:v1)/pixi.toml" in preview.diff
    assert preview.lock_changed
    assert len(server.envs["ds"].versions) == 1


def test_check_remote(remote_app: AppContext, server, tmp_path) -> None:
    server.publish("ds", 1, DS_TOML, tag="v1")
    target = tmp_path / "pulled"
    _pull(remote_app, "ds", "v1", output_dir=target)

    remote = ws_mgr.check_remote(remote_app, target)
    assert (remote.origin_version, remote.current_version, remote.tag_has_moved) == (1, 1, False)
    assert summarize(DriftStatus.CLEAN, remote) == "clean (local matches origin, tag unchanged)"

    server.publish("ds", 2, DS_TOML + b"# moved\n", tag="v1")
    remote = ws_mgr.check_remote(remote_app, target)
    assert remote.tag_has_moved
    assert remote.current_version == 2
    assert summarize(DriftStatus.MODIFIED, remote) == "modified locally AND remote tag has moved"

    # The index entry stands in for a deleted sidecar.
    (target / ".nebi.toml").unlink()
    assert ws_mgr.check_remote(remote_app, target).tag_has_moved

    del server.envs["ds"]
    remote = ws_mgr.check_remote(remote_app, target)
    assert remote.error is not None
    assert summarize(DriftStatus.CLEAN, remote) == "clean locally (remote check failed)"


def test_check_remote_requires_origin(remote_app: AppContext, project: Path) -> None:
    ws_mgr.init_workspace(remote_app, project)
    with pytest.raises(NotFound, match="not pulled"):
        ws_mgr.check_remote(remote_app, project)


# ---------------------------------------------------------------------------
# Diff sources
# ---------------------------------------------------------------------------


def test_spec_sources(remote_app: AppContext, server, project: Path) -> None:
    ws_mgr.init_workspace(remote_app, project)
    with pytest.raises(NotFound, match="nebi commit"):
        ws_mgr.load_spec_source(remote_app, "@snapshot", cwd=project)
    ws_mgr.commit_workspace(remote_app, project)

    snapshot = ws_mgr.load_spec_source(remote_app, "@snapshot", cwd=project)
    local = ws_mgr.load_spec_source(remote_app, ".", cwd=project)
    by_name = ws_mgr.load_spec_source(remote_app, "demo", cwd=project.parent)
    assert snapshot.files == local.files == by_name.files
    assert local.label == "local"
    assert by_name.label == "demo"

    server.publish("ds", 1, DS_TOML, tag="v1")
    remote = ws_mgr.load_spec_source(remote_app, "ds:v1", cwd=project)
    assert remote.label == "ds:v1"
    assert remote.files == {"pixi.toml": DS_TOML}


# ---------------------------------------------------------------------------
# Servers and credentials
# ---------------------------------------------------------------------------


def test_server_registry(app: AppContext) -> None:
    with pytest.raises(NotFound, match="no server specified"):
        server_mgr.resolve_server(app, None)

    assert server_mgr.add_server(app, "work", "https://nebi.example.com/") == "https://nebi.example.com"
    with pytest.raises(Malformed):
        server_mgr.add_server(app, "bad", "ftp://example.com")

    # A single registered server is the implicit default.
    assert server_mgr.resolve_server(app, None) == "https://nebi.example.com"
    server_mgr.add_server(app, "home", "http://localhost:8460")
    with pytest.raises(NotFound):
        server_mgr.resolve_server(app, None)

    server_mgr.set_default_server(app, "home")
    assert server_mgr.resolve_server(app, None) == "http://localhost:8460"
    assert server_mgr.resolve_server(app, "https://adhoc.example.com/") == "https://adhoc.example.com"
    with pytest.raises(NotFound):
        server_mgr.set_default_server(app, "ghost")

    server_mgr.remove_server(app, "home")
    assert server_mgr.get_default_server(app) is None
    assert server_mgr.list_servers(app) == {"work": "https://nebi.example.com"}


def test_login_with_token_and_logout(app: AppContext) -> None:
    server_mgr.add_server(app, "work", "https://nebi.example.com")
    with pytest.raises(AuthRequired):
        server_mgr.client_for(app, "work")

    url, credential = server_mgr.login(app, "work", token="abc")
    assert url == "https://nebi.example.com"
    assert app.credentials.get(url).token == "abc"

    assert server_mgr.logout(app, "work") == (url, True)
    assert server_mgr.logout(app, "work") == (url, False)


def test_login_with_password(transport) -> None:
    app = AppContext.create(transport=transport)
    server_mgr.add_server(app, "main", "https://nebi.test")

    _, credential = server_mgr.login(app, None, username="alice", password="secret")
    assert credential.token == "token-for-alice"
    assert credential.username == "alice"

    with pytest.raises(AuthRequired):
        server_mgr.login(app, None, username="alice", password="wrong")
    with pytest.raises(Malformed):
        server_mgr.login(app, None, username="alice")
