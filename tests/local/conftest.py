"""Fixtures for tests that talk to a Nebi server.

``FakeServer`` implements the handful of REST endpoints the client uses
and is wired in through ``httpx.MockTransport``.
"""

from __future__ import annotations

import json
import re
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx
import pytest

from nebi.local.client import NebiClient
from nebi.local.context import AppContext
from nebi.local.models.credentials import ServerCredential

SERVER_URL = "https://nebi.test"
TOKEN = "test-token"


@dataclass
class _Env:
    id: str
    name: str
    versions: dict[int, tuple[bytes, bytes | None]] = field(default_factory=dict)
    tags: dict[str, int] = field(default_factory=dict)
    status: str = "ready"
    polls_until_ready: int = 0

    def as_json(self) -> dict:
        return {"id": self.id, "name": self.name, "status": self.status, "owner": {"username": "alice"}}


class FakeServer:
    """In-memory server holding published environments."""

    def __init__(self) -> None:
        self.envs: dict[str, _Env] = {}
        self.requests: list[httpx.Request] = []
        self.fail_with: int | None = None
        self.create_status = "pending"
        self.polls_until_ready = 1
        self._lock = threading.Lock()

    def publish(
        self,
        name: str,
        version: int,
        toml: bytes,
        lock: bytes | None = None,
        *,
        tag: str | None = None,
    ) -> None:
        env = self.envs.get(name)
        if env is None:
            env = self.envs[name] = _Env(id=str(uuid.uuid4()), name=name)
        env.versions[version] = (toml, lock)
        if tag:
            env.tags[tag] = version

    def _env_by_id(self, env_id: str) -> _Env | None:
        for env in self.envs.values():
            if env.id == env_id:
                return env
        return None

    def _create(self, body: dict) -> httpx.Response:
        if body["name"] in self.envs:
            return httpx.Response(409, json={"error": "environment already exists"})
        env = _Env(
            id=str(uuid.uuid4()),
            name=body["name"],
            status=self.create_status,
            polls_until_ready=self.polls_until_ready,
        )
        self.envs[env.name] = env
        return httpx.Response(201, json=env.as_json())

    def _push(self, env: _Env, body: dict) -> httpx.Response:
        tag = body["tag"]
        if tag in env.tags and not body.get("force"):
            return httpx.Response(409, json={"error": f"tag '{tag}' already exists"})
        version = max(env.versions, default=0) + 1
        lock = body.get("pixi_lock")
        env.versions[version] = (body["pixi_toml"].encode(), lock.encode() if lock is not None else None)
        env.tags[tag] = version
        return httpx.Response(201, json={"version_number": version, "tag": tag})

    def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"error": "boom"})

        path = request.url.path.removeprefix("/api/v1")
        if path == "/auth/login" and request.method == "POST":
            body = json.loads(request.content)
            if body.get("password") != "secret":
                return httpx.Response(401, json={"error": "invalid credentials"})
            return httpx.Response(200, json={"token": f"token-for-{body['username']}", "username": body["username"]})

        if request.headers.get("Authorization") != f"Bearer {TOKEN}":
            return httpx.Response(401, json={"error": "unauthorized"})

        if path == "/environments" and request.method == "POST":
            return self._create(json.loads(request.content))
        if path == "/environments":
            return httpx.Response(200, json=[env.as_json() for env in self.envs.values()])

        m = re.fullmatch(r"/environments/([^/]+)(/.*)?", path)
        env = self._env_by_id(m.group(1)) if m else None
        if env is None:
            return httpx.Response(404, json={"error": "not found"})
        rest = m.group(2) or ""

        if rest == "" and request.method == "DELETE":
            del self.envs[env.name]
            return httpx.Response(204)
        if rest == "":
            if env.status == "pending":
                env.polls_until_ready -= 1
                if env.polls_until_ready < 0:
                    env.status = "ready"
            return httpx.Response(200, json=env.as_json())
        if rest == "/push" and request.method == "POST":
            return self._push(env, json.loads(request.content))
        if rest == "/tags":
            return httpx.Response(200, json=[{"tag": t, "version_number": v} for t, v in env.tags.items()])
        if rest == "/versions":
            return httpx.Response(200, json=[{"version_number": v} for v in sorted(env.versions)])

        m = re.fullmatch(r"/versions/(\d+)/(pixi-toml|pixi-lock)", rest)
        if m is None or int(m.group(1)) not in env.versions:
            return httpx.Response(404, json={"error": "not found"})
        toml, lock = env.versions[int(m.group(1))]
        content = toml if m.group(2) == "pixi-toml" else lock
        if content is None:
            return httpx.Response(404, json={"error": "no lock file"})
        return httpx.Response(200, content=content)


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def transport(server: FakeServer) -> httpx.MockTransport:
    return httpx.MockTransport(server.handler)


@pytest.fixture
def make_client(transport: httpx.MockTransport) -> Callable[..., NebiClient]:
    """Factory for clients bound to the fake server (pass ``token`` to override the credential)."""

    def _make(token: str | None = TOKEN) -> NebiClient:
        return NebiClient(SERVER_URL, token, transport=transport)

    return _make


@pytest.fixture
def remote_app(transport: httpx.MockTransport) -> AppContext:
    """An ``AppContext`` with server ``main`` (the only one, hence the default) and a stored token."""
    ctx = AppContext.create(transport=transport)
    ctx.index.add_server("main", SERVER_URL)
    ctx.credentials.set(SERVER_URL, ServerCredential(token=TOKEN, username="alice"))
    return ctx
