"""Registered servers, the default-server pointer and stored credentials.

Server short names live in the index (``servers``); the default pointer in
``config.json``; tokens in ``credentials.json`` keyed by URL.
"""

from __future__ import annotations

from loguru import logger

from nebi.local.client import NebiClient
from nebi.local.context import AppContext
from nebi.local.errors import AuthRequired, Malformed, NotFound
from nebi.local.models.credentials import ServerCredential
from nebi.local.tracking.resolver import validate_name


def _is_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


def add_server(ctx: AppContext, name: str, url: str) -> str:
    """Register ``url`` under ``name``.  Raises ``AlreadyExists`` if the name is taken."""
    validate_name(name)
    if not _is_url(url):
        msg = f"server URL must start with http:// or https://, got '{url}'"
        raise Malformed(msg)
    url = url.rstrip("/")
    ctx.index.add_server(name, url)
    logger.debug("Registered server {} -> {}", name, url)
    return url


def list_servers(ctx: AppContext) -> dict[str, str]:
    return dict(sorted(ctx.index.servers().items()))


def remove_server(ctx: AppContext, name: str) -> str:
    """Unregister ``name``; clears the default pointer if it pointed there."""
    url = ctx.index.remove_server(name)
    config = ctx.config.load()
    if config.default_server == name:
        config.default_server = None
        ctx.config.save(config)
    return url


def get_default_server(ctx: AppContext) -> str | None:
    return ctx.config.load().default_server


def set_default_server(ctx: AppContext, name: str) -> None:
    if name not in ctx.index.servers():
        msg = f"server '{name}' not found"
        raise NotFound(msg)
    config = ctx.config.load()
    config.default_server = name
    ctx.config.save(config)


def resolve_server(ctx: AppContext, server: str | None) -> str:
    """Turn a ``-s`` value (short name or URL) into a server URL.

    Without a value the default server is used; if none is set and exactly
    one server is registered, that one is used.
    """
    servers = ctx.index.servers()
    if server is None:
        server = get_default_server(ctx)
        if server is None and len(servers) == 1:
            server = next(iter(servers))
        if server is None:
            msg = "no server specified; pass -s <server> or run 'nebi server default <name>'"
            raise NotFound(msg)
    if _is_url(server):
        return server.rstrip("/")
    if server not in servers:
        msg = f"server '{server}' not found; run 'nebi server add {server} <url>' first"
        raise NotFound(msg)
    return servers[server]


# -- Credentials ---------------------------------------------------------------


def login(
    ctx: AppContext,
    server: str | None,
    *,
    token: str | None = None,
    username: str | None = None,
    password: str | None = None,
) -> tuple[str, ServerCredential]:
    """Store a credential for ``server``.

    With ``token`` the token is stored as given.  Otherwise ``username`` and
    ``password`` are exchanged for a token through the server's login
    endpoint.
    """
    url = resolve_server(ctx, server)
    if token:
        credential = ServerCredential(token=token, username=username)
    else:
        if not username or password is None:
            msg = "either --token or a username and password are required"
            raise Malformed(msg)
        with NebiClient(url, timeout=ctx.settings.request_timeout, transport=ctx.transport) as client:
            response = client.login(username, password)
        credential = ServerCredential(token=response.token, username=response.username)
    ctx.credentials.set(url, credential)
    return url, credential


def logout(ctx: AppContext, server: str | None) -> tuple[str, bool]:
    url = resolve_server(ctx, server)
    return url, ctx.credentials.delete(url)


def client_for(ctx: AppContext, server: str | None) -> NebiClient:
    """An authenticated client for ``server``.  Raises ``AuthRequired`` without a credential."""
    url = resolve_server(ctx, server)
    credential = ctx.credentials.get(url)
    if credential is None:
        raise AuthRequired(url)
    return NebiClient(url, credential.token, timeout=ctx.settings.request_timeout, transport=ctx.transport)
