import json
import os
import re
from pathlib import Path

import click

from nebi.local.errors import Cancelled, Malformed, NebiError, NotFound


class NebiCommandError(click.ClickException):
    """A domain error surfaced to the user as ``Error: <message>`` with exit code 1."""

    exit_code = 1


class NebiGroup(click.Group):
    """Root group translating domain errors into one-line CLI errors."""

    def invoke(self, ctx: click.Context):
        try:
            return super().invoke(ctx)
        except NebiError as exc:
            raise NebiCommandError(str(exc)) from exc
        except KeyboardInterrupt:
            raise NebiCommandError(str(Cancelled("interrupted"))) from None


def _app():
    """The ``AppContext`` for this invocation, created on first use.

    Tests may pre-populate ``obj`` on the root context to inject one.
    """
    from nebi.local.context import AppContext

    root = click.get_current_context().find_root()
    if root.obj is None:
        root.obj = AppContext.create()
    return root.obj


def _cwd() -> str:
    return os.path.abspath(os.getcwd())


@click.group(cls=NebiGroup)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """Nebi - Track, diff and share pixi workspaces."""
    from nebi.local.log import setup_logging
    from nebi.local.settings import get_settings

    settings = get_settings()
    setup_logging("DEBUG" if verbose else settings.log_level, log_file=settings.log_file)


# ---------------------------------------------------------------------------
# Presentation helpers
# ---------------------------------------------------------------------------

_UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def format_path(path: str) -> str:
    """Abbreviate the home directory as ``~``."""
    home = str(Path.home())
    if home and (path == home or path.startswith(home + os.sep)):
        return "~" + path[len(home) :]
    return path


def format_location(path: str, is_global: bool) -> str:
    display = format_path(path)
    if not is_global:
        return f"{display} (local)"
    parts = [part[:8] if _UUID_RE.match(part) else part for part in display.split(os.sep)]
    return f"{os.sep.join(parts)} (global)"


def _echo_table(headers: list[str], rows: list[list[str]]) -> None:
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    for row in [headers, *rows]:
        click.echo("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())


def _echo_json(data: object) -> None:
    click.echo(json.dumps(data, indent=2))


def _sync_name(app, ws) -> None:
    from nebi.local.managers.workspaces import sync_name

    try:
        old = sync_name(app, ws)
    except Malformed as exc:
        click.echo(f"Warning: pixi.toml workspace name is invalid: {exc}", err=True)
        return
    if old is not None:
        click.echo(f"Workspace name updated: '{old}' -> '{ws.name}' (from pixi.toml)", err=True)


# ---------------------------------------------------------------------------
# Tracking
# ---------------------------------------------------------------------------


@main.command()
@click.option("--pixi-init", is_flag=True, default=False, help="Run 'pixi init' first if there is no pixi.toml.")
def init(pixi_init: bool) -> None:
    """Register the current directory as a tracked workspace."""
    from nebi.local.managers.workspaces import init_workspace

    ws = init_workspace(_app(), _cwd(), run_pixi_init=pixi_init)
    click.echo(f"Workspace '{ws.name}' initialized ({ws.path})", err=True)


@main.command()
def commit() -> None:
    """Snapshot the current spec files of this workspace."""
    from nebi.local.managers.workspaces import CommitOutcome, commit_workspace

    ws, outcome = commit_workspace(_app(), _cwd())
    if outcome == CommitOutcome.PULLED:
        click.echo("Warning: origin is authoritative; use push to publish changes", err=True)
    elif outcome == CommitOutcome.CLEAN:
        click.echo("Nothing to commit; workspace is clean.", err=True)
    else:
        click.echo(f"Committed snapshot for '{ws.name}'", err=True)


@main.command()
@click.argument("ref", required=False)
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
@click.option("--remote", is_flag=True, default=False, help="Also check whether the origin tag moved on the server.")
def status(ref: str | None, as_json: bool, remote: bool) -> None:
    """Show drift status of a workspace (default: the current directory)."""
    from nebi.local.managers.workspaces import check_remote, find_workspace, status_for_path, workspace_status
    from nebi.local.models.enums import OriginSource
    from nebi.local.tracking.drift import summarize
    from nebi.local.tracking.resolver import is_path, is_ref, parse_ref

    app = _app()
    if ref and is_ref(ref) and not is_path(ref):
        spec, tag = parse_ref(ref)
        entries = sorted(app.index.find_by_tag(spec, tag), key=lambda e: e.pulled_at)
        if not entries:
            msg = f"{spec}:{tag} has not been pulled"
            raise NotFound(msg)
        ws, result = status_for_path(app, entries[-1].path)
    elif ref:
        ws = find_workspace(app, ref)
        result = workspace_status(app, ws)
    else:
        ws, result = status_for_path(app, _cwd())

    if ws is not None:
        _sync_name(app, ws)
    remote_status = check_remote(app, result.path) if remote else None

    if as_json:
        data = result.model_dump(mode="json")
        data["workspace"] = ws.model_dump(mode="json") if ws is not None else None
        if remote_status is not None:
            data["remote"] = remote_status.model_dump(mode="json")
            data["summary"] = summarize(result.status, remote_status)
        _echo_json(data)
        return

    if ws is None and result.origin_source == OriginSource.NONE:
        click.echo("Not a tracked workspace. Run 'nebi init'.", err=True)
        return

    if ws is not None:
        click.echo(f"Workspace: {ws.name}")
        click.echo(f"Type:      {ws.kind}")
    click.echo(f"Path:      {result.path}")
    origin = result.origin_name or "-"
    click.echo(f"Origin:    {origin} ({result.origin_source})")
    click.echo(f"Status:    {result.status}")
    if remote_status is not None:
        if remote_status.error is not None:
            click.echo(f"Remote:    check failed: {remote_status.error}")
        elif remote_status.tag_has_moved:
            click.echo(
                f"Remote:    tag moved (pulled version {remote_status.origin_version}, "
                f"now {remote_status.current_version})"
            )
        else:
            click.echo(f"Remote:    tag unchanged (version {remote_status.current_version})")
        click.echo(f"Summary:   {summarize(result.status, remote_status)}")
    if result.files:
        click.echo("")
        for f in result.files:
            click.echo(f"  {f.name:<10} {f.status}")
    if result.origin_source == OriginSource.NONE and ws is not None:
        click.echo("\nNothing committed yet. Run 'nebi commit' to record a baseline.")


@main.command()
@click.argument("ref_a")
@click.argument("ref_b", required=False, default=".")
@click.option("--lock", is_flag=True, default=False, help="Also diff pixi.lock.")
@click.option("-s", "--server", default=None, help="Server name or URL for spec:tag references.")
def diff(ref_a: str, ref_b: str, lock: bool, server: str | None) -> None:
    """Compare pixi.toml (and pixi.lock with --lock) between two sources.

    A source is a directory, a tracked workspace name, '@snapshot' (the last
    commit of this workspace) or SPEC:TAG on a server.  REF_B defaults to the
    current directory.
    """
    from nebi.local.managers.workspaces import load_spec_source
    from nebi.local.tracking.diff import unified_diff

    app = _app()
    source_a = load_spec_source(app, ref_a, server=server)
    source_b = load_spec_source(app, ref_b, server=server)
    text = unified_diff(source_a, source_b, include_lock=lock)
    if text:
        click.echo(text, nl=False)
    else:
        click.echo("No differences.", err=True)


@main.command()
@click.option("--dry-run", is_flag=True, default=False, help="Show what would change without modifying.")
@click.option("--path", "scan_path", default=None, type=click.Path(file_okay=False), help="Scan this directory only.")
@click.option("-y", "--yes", is_flag=True, default=False, help="Apply changes without asking.")
def repair(dry_run: bool, scan_path: str | None, yes: bool) -> None:
    """Scan for .nebi.toml files and reconcile the local index."""
    from nebi.local.models.enums import RepairAction
    from nebi.local.tracking.repair import apply_repair, plan_repair, scan_roots

    app = _app()
    click.echo("Scanning for .nebi.toml files...\n")
    roots = scan_roots(app.index, scan_path)
    plan = plan_repair(app.index, roots, max_depth=app.settings.repair_max_depth)

    found = [r for r in plan.records if r.action != RepairAction.STALE]
    if found:
        click.echo("Found workspaces:\n")
        for r in found:
            where = format_path(r.path)
            if r.action == RepairAction.OK:
                click.echo(f"✓ {r.display_name} at {where}\n  Status: OK\n")
            elif r.action == RepairAction.PATH_MOVED:
                click.echo(f"⚠ {r.display_name} at {where}")
                click.echo(f"  Status: Path moved from {format_path(r.old_path or '')}")
                click.echo("  Action: Will update index path\n")
            else:
                click.echo(f"✗ {r.display_name} at {where}\n  Status: Not in index")
                click.echo(f"  Action: Run 'nebi pull {r.display_name}' to re-add\n")
    else:
        click.echo("No workspaces found in scanned directories.\n")

    stale = plan.by_action(RepairAction.STALE)
    if stale:
        click.echo("Stale index entries:\n")
        for r in stale:
            click.echo(f"✗ {r.display_name} at {format_path(r.path)}\n  Status: Path not found")
            click.echo("  Action: Will remove from index\n")

    counts = plan.counts
    click.echo("Summary:")
    _echo_table(
        ["", ""],
        [
            ["  OK:", str(counts[RepairAction.OK])],
            ["  Path updates:", str(counts[RepairAction.PATH_MOVED])],
            ["  Orphaned:", str(counts[RepairAction.ORPHANED])],
            ["  Stale (will remove):", str(counts[RepairAction.STALE])],
        ],
    )

    if not plan.has_changes:
        return
    if dry_run:
        click.echo("\nDry run - no changes made. Run without --dry-run to apply.")
        return
    if not yes and not click.confirm("\nApply these changes?", default=False):
        click.echo("Aborted.")
        return
    apply_repair(app.index, plan)
    click.echo("\nChanges applied successfully.")


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


@main.group()
def workspace() -> None:
    """List, promote, remove and prune tracked workspaces."""


@workspace.command("list")
@click.option("-s", "--server", default=None, help="List workspaces on this server instead.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Output as JSON.")
def workspace_list(server: str | None, as_json: bool) -> None:
    """List tracked workspaces with their drift status."""
    from nebi.local.managers.servers import client_for
    from nebi.local.managers.workspaces import list_workspaces
    from nebi.local.models.enums import DriftStatus

    app = _app()
    if server is not None:
        with client_for(app, server) as client:
            envs = client.list_environments()
        if as_json:
            _echo_json([env.model_dump(mode="json") for env in envs])
        elif not envs:
            click.echo("No workspaces found")
        else:
            _echo_table(["NAME", "STATUS", "OWNER"], [[e.name, e.status, e.owner_name] for e in envs])
        return

    listings = list_workspaces(app)
    if as_json:
        _echo_json([
            {
                "name": item.workspace.name,
                "id": item.workspace.id,
                "kind": str(item.workspace.kind),
                "path": item.workspace.path,
                "status": str(item.status.status),
                "origin": item.status.origin_name,
                "is_global": item.workspace.is_global,
            }
            for item in listings
        ])
        return
    if not listings:
        click.echo("No tracked workspaces.")
        click.echo("\nUse 'nebi init' to track the current directory or 'nebi pull <spec>:<tag>' to pull one.")
        return

    rows = [
        [
            item.workspace.name,
            item.status.origin_name or "-",
            str(item.status.status),
            format_location(item.workspace.path, item.workspace.is_global),
        ]
        for item in listings
    ]
    _echo_table(["WORKSPACE", "ORIGIN", "STATUS", "LOCATION"], rows)
    if any(item.status.status == DriftStatus.MISSING for item in listings):
        click.echo("\nRun 'nebi workspace prune' to remove stale entries.")


@workspace.command("promote")
@click.argument("name")
def workspace_promote(name: str) -> None:
    """Copy the current directory's spec files into a new global workspace NAME."""
    from nebi.local.managers.workspaces import promote_workspace

    ws = promote_workspace(_app(), name, _cwd())
    click.echo(f"Promoted to global workspace '{ws.name}' at {format_location(ws.path, True)}", err=True)


@workspace.command("remove")
@click.argument("name_or_path")
@click.option("-s", "--server", default=None, help="Delete the workspace on this server instead.")
def workspace_remove(name_or_path: str, server: str | None) -> None:
    """Stop tracking a workspace (global workspaces are deleted from disk)."""
    from nebi.local.managers.servers import client_for
    from nebi.local.managers.workspaces import remove_workspace

    app = _app()
    if server is not None:
        with client_for(app, server) as client:
            env = client.find_environment(name_or_path)
            client.delete_environment(env.id)
        click.echo(f"Deleted workspace '{env.name}' from {client.server_url}", err=True)
        return

    ws = remove_workspace(app, name_or_path)
    if ws.is_global:
        click.echo(f"Removed global workspace '{ws.name}' and deleted {format_path(ws.path)}", err=True)
    else:
        click.echo(f"Removed workspace '{ws.name}' from the index; files in {format_path(ws.path)} untouched", err=True)


@workspace.command("prune")
def workspace_prune() -> None:
    """Remove workspaces whose directory no longer exists.  Never deletes files."""
    from nebi.local.managers.workspaces import prune_workspaces

    removed = prune_workspaces(_app())
    if not removed:
        click.echo("No stale entries found")
        return
    click.echo(f"Removed {len(removed)} stale entries:")
    for ws in removed:
        click.echo(f"  - {ws.name} ({ws.path})")


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


@main.command()
@click.argument("ref")
@click.option("-s", "--server", default=None, help="Server name or URL (default server if omitted).")
@click.option("-o", "--output", default=None, type=click.Path(file_okay=False), help="Target directory.")
@click.option("-g", "--global", "global_name", default=None, help="Pull into a global workspace with this name.")
@click.option("-f", "--force", is_flag=True, default=False, help="Overwrite existing spec files.")
def pull(ref: str, server: str | None, output: str | None, global_name: str | None, force: bool) -> None:
    """Download SPEC[:TAG] from a server and track its origin."""
    from nebi.local.managers.servers import client_for
    from nebi.local.managers.workspaces import pull_workspace
    from nebi.local.tracking.resolver import is_ref, parse_ref

    spec, tag = parse_ref(ref) if is_ref(ref) else (ref, None)
    if output is not None and global_name is not None:
        msg = "--output and --global cannot be combined"
        raise Malformed(msg)

    app = _app()
    with client_for(app, server) as client:
        result = pull_workspace(app, client, spec, tag, output_dir=output, global_name=global_name, force=force)
    where = format_location(result.path, result.workspace.is_global)
    click.echo(f"Pulled {result.entry.display_name} (version {result.entry.version_id}) -> {where}", err=True)


@main.command()
@click.argument("ref", metavar="SPEC:TAG")
@click.option("-s", "--server", default=None, help="Server name or URL (default server if omitted).")
@click.option("--dry-run", is_flag=True, default=False, help="Show what would be pushed without pushing.")
@click.option("-f", "--force", is_flag=True, default=False, help="Overwrite the tag if it already exists.")
def push(ref: str, server: str | None, dry_run: bool, force: bool) -> None:
    """Publish the current directory's spec files as SPEC:TAG.

    The spec is created on the server if it does not exist yet.  Afterwards
    the pushed version is this workspace's origin.
    """
    from nebi.local.managers.servers import client_for
    from nebi.local.managers.workspaces import preview_push, push_workspace, status_for_path
    from nebi.local.models.enums import DriftStatus, OriginSource
    from nebi.local.tracking.resolver import is_ref, parse_ref

    if not is_ref(ref):
        msg = f"a tag is required; usage: nebi push {ref}:<tag>"
        raise Malformed(msg)
    spec, tag = parse_ref(ref)

    app = _app()
    cwd = _cwd()
    if (Path(cwd) / "pixi.toml").is_file() and not (Path(cwd) / "pixi.lock").is_file():
        click.echo("Warning: pixi.lock not found. Run 'pixi install' to generate it.", err=True)

    if dry_run:
        preview = preview_push(app, spec, tag, cwd)
        click.echo(f"Would push {spec}:{tag}\n")
        if preview.origin_name is None:
            click.echo("(No .nebi.toml metadata found - cannot show diff against origin)")
            click.echo("\nFiles to push:")
            for name, size in preview.sizes.items():
                click.echo(f"  {name}: {size} bytes")
        elif preview.unchanged:
            click.echo("No changes from origin")
        else:
            click.echo(preview.diff, nl=False)
            if preview.lock_changed:
                click.echo("\n@@ pixi.lock (changed) @@")
        click.echo("\nRun without --dry-run to push.")
        return

    _, before = status_for_path(app, cwd)
    if before.origin_source == OriginSource.SIDECAR and before.status == DriftStatus.MODIFIED:
        click.echo(f"Note: This workspace was originally pulled from {before.origin_name}", err=True)
        for f in before.files:
            if f.status == DriftStatus.MODIFIED:
                click.echo(f"  - {f.name} modified locally", err=True)
        if before.origin_name == f"{spec}:{tag}":
            click.echo(f"Warning: Pushing modified content back to the same tag '{tag}'", err=True)
            click.echo("  This will overwrite the existing version on the server.", err=True)
            click.echo(f"  Consider using a new tag (e.g., {tag}-1) to preserve the original.", err=True)

    with client_for(app, server) as client:
        click.echo(f"Pushing {spec}:{tag}...", err=True)
        result = push_workspace(app, client, spec, tag, cwd, force=force)
    if result.created:
        click.echo(f"Created '{spec}' on {result.entry.server_url}", err=True)
    click.echo(f"Pushed {result.entry.display_name} (version {result.entry.version_id})", err=True)


# ---------------------------------------------------------------------------
# Servers and credentials
# ---------------------------------------------------------------------------


@main.group()
def server() -> None:
    """Manage registered Nebi servers."""


@server.command("add")
@click.argument("name")
@click.argument("url")
def server_add(name: str, url: str) -> None:
    """Register a server URL under a short NAME."""
    from nebi.local.managers.servers import add_server

    url = add_server(_app(), name, url)
    click.echo(f"Server '{name}' added: {url}", err=True)


@server.command("list")
def server_list() -> None:
    """List registered servers."""
    from nebi.local.managers.servers import get_default_server, list_servers

    app = _app()
    servers = list_servers(app)
    if not servers:
        click.echo("No servers configured. Run 'nebi server add <name> <url>' to add one.", err=True)
        return
    default = get_default_server(app)
    rows = [[name, url, "*" if name == default else ""] for name, url in servers.items()]
    _echo_table(["NAME", "URL", "DEFAULT"], rows)


@server.command("remove")
@click.argument("name")
def server_remove(name: str) -> None:
    """Unregister a server."""
    from nebi.local.managers.servers import remove_server

    remove_server(_app(), name)
    click.echo(f"Server '{name}' removed", err=True)


@server.command("default")
@click.argument("name")
def server_default(name: str) -> None:
    """Use NAME when no -s/--server is given."""
    from nebi.local.managers.servers import set_default_server

    set_default_server(_app(), name)
    click.echo(f"Default server set to '{name}'", err=True)


@main.command()
@click.argument("server_ref", metavar="SERVER", required=False)
@click.option("--token", default=None, help="API token to store (skips the username/password prompt).")
@click.option("--username", default=None, help="Username for password login.")
def login(server_ref: str | None, token: str | None, username: str | None) -> None:
    """Store credentials for SERVER (name or URL; default server if omitted)."""
    from nebi.local.managers.servers import login as do_login

    password = None
    if not token:
        username = username or click.prompt("Username")
        password = click.prompt("Password", hide_input=True)
    url, credential = do_login(_app(), server_ref, token=token, username=username, password=password)
    who = f" as {credential.username}" if credential.username else ""
    click.echo(f"Logged in to {url}{who}")


@main.command()
@click.argument("server_ref", metavar="SERVER", required=False)
def logout(server_ref: str | None) -> None:
    """Forget stored credentials for SERVER."""
    from nebi.local.managers.servers import logout as do_logout

    url, removed = do_logout(_app(), server_ref)
    click.echo(f"Logged out of {url}" if removed else f"Not logged in to {url}")


# ---------------------------------------------------------------------------
# pixi delegation
# ---------------------------------------------------------------------------

_PASSTHROUGH = {"ignore_unknown_options": True, "allow_interspersed_args": False}


def _delegate(subcommand: str, args: tuple[str, ...]) -> None:
    """Resolve the workspace argument, then hand the remaining arguments to pixi."""
    from nebi.local import pixi
    from nebi.local.models.enums import ResolutionKind
    from nebi.local.models.workspace import Workspace
    from nebi.local.tracking.resolver import resolve

    app = _app()
    pixi.reject_manifest_path(args, subcommand)
    cwd = _cwd()

    directory, pixi_args, named = cwd, list(args), False
    if args and not args[0].startswith("-"):
        try:
            resolution = resolve(args[0], args[1:], store=app.index, cwd=cwd)
        except NotFound:
            resolution = None
        if resolution is None:
            pass
        elif resolution.kind == ResolutionKind.TAG_REF:
            entry = app.index.find_global(resolution.spec or "", resolution.tag or "")
            if entry is not None:
                directory, pixi_args, named = entry.path, resolution.rest_args, True
        elif resolution.kind == ResolutionKind.TRACKED_NAME:
            directory, pixi_args, named = resolution.dir or cwd, resolution.rest_args, True
        else:
            directory, pixi_args = resolution.dir or cwd, resolution.rest_args

    manifest = Path(directory) / "pixi.toml"
    if not manifest.is_file():
        msg = f"no pixi.toml found in {directory}"
        raise NotFound(msg)
    if not named and app.index.find_by_path(directory) is None:
        name = pixi.manifest_name(directory) or Path(directory).name
        app.index.add_workspace(Workspace(name=name, path=directory))
        click.echo(f"Tracking workspace '{name}' at {directory}", err=True)

    pixi.run_pixi(
        subcommand,
        pixi_args,
        cwd=cwd if named else directory,
        manifest_path=manifest if named else None,
        pixi_bin=app.settings.pixi_bin,
    )


@main.command(context_settings=_PASSTHROUGH)
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def shell(args: tuple[str, ...]) -> None:
    """Activate a workspace shell via 'pixi shell'.

    The first argument may name a tracked workspace or a path; everything
    else is passed to pixi.
    """
    _delegate("shell", args)


@main.command(context_settings=_PASSTHROUGH)
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
def run(args: tuple[str, ...]) -> None:
    """Run a task or command via 'pixi run'.

    The first argument may name a tracked workspace or a path; everything
    else is passed to pixi.
    """
    _delegate("run", args)


if __name__ == "__main__":
    main()
