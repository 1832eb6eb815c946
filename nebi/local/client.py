"""Synchronous client for the Nebi server REST API.

Only the endpoints the CLI consumes are wrapped::

    GET    /api/v1/environments
    POST   /api/v1/environments
    GET    /api/v1/environments/{id}
    GET    /api/v1/environments/{id}/tags
    GET    /api/v1/environments/{id}/versions
    GET    /api/v1/environments/{id}/versions/{n}/pixi-toml
    GET    /api/v1/environments/{id}/versions/{n}/pixi-lock
    POST   /api/v1/environments/{id}/push
    DELETE /api/v1/environments/{id}
    POST   /api/v1/auth/login

Transport failures become ``Unavailable``, 401/403 become ``AuthRequired``,
404 becomes ``NotFound`` and 409 becomes ``AlreadyExists``; callers never
see ``httpx`` exceptions.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from functools import partial
from typing import Any, TypeVar

import httpx
from loguru import logger
from pydantic import TypeAdapter

from nebi.local.errors import AlreadyExists, AuthRequired, Malformed, NebiError, NotFound, Unavailable
from nebi.local.models.remote import LoginResponse, PushResponse, RemoteEnvironment, RemoteTag, RemoteVersion

API_PREFIX = "/api/v1"
DEFAULT_TIMEOUT = 30.0
DEFAULT_READY_TIMEOUT = 60.0
DEFAULT_POLL_INTERVAL = 0.5

ENV_READY = "ready"
ENV_FAILED = frozenset({"failed", "error"})

T = TypeVar("T")

_environments = TypeAdapter(list[RemoteEnvironment])
_tags = TypeAdapter(list[RemoteTag])
_versions = TypeAdapter(list[RemoteVersion])


class NebiClient:
    """Thin wrapper around ``httpx.Client`` bound to one server.

    Usable as a context manager; the underlying connection pool is closed on
    exit.  Pass ``transport`` to substitute ``httpx.MockTransport`` in tests.
    """

    def __init__(
        self,
        server_url: str,
        token: str | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=self.server_url + API_PREFIX,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> NebiClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- Transport -------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            msg = f"{self.server_url} timed out: {exc}"
            raise Unavailable(msg) from exc
        except httpx.TransportError as exc:
            msg = f"cannot reach {self.server_url}: {exc}"
            raise Unavailable(msg) from exc

        logger.debug("{} {} -> {}", method, path, response.status_code)
        if response.status_code in (401, 403):
            raise AuthRequired(self.server_url)
        if response.status_code == 404:
            msg = f"{path} not found on {self.server_url}"
            raise NotFound(msg)
        if response.status_code == 409:
            raise AlreadyExists(_error_detail(response))
        if response.status_code >= 500:
            msg = f"{self.server_url} returned {response.status_code}"
            raise Unavailable(msg)
        if response.is_error:
            msg = f"{method} {path} failed ({response.status_code}): {_error_detail(response)}"
            raise NebiError(msg)
        return response

    # -- Auth ------------------------------------------------------------------

    def login(self, username: str, password: str) -> LoginResponse:
        response = self._request("POST", "/auth/login", json={"username": username, "password": password})
        return LoginResponse.model_validate_json(response.content)

    # -- Environments ----------------------------------------------------------

    def list_environments(self) -> list[RemoteEnvironment]:
        return _environments.validate_json(self._request("GET", "/environments").content)

    def get_environment(self, env_id: str) -> RemoteEnvironment:
        return RemoteEnvironment.model_validate_json(self._request("GET", f"/environments/{env_id}").content)

    def find_environment(self, name: str) -> RemoteEnvironment:
        """Look up an environment by name.  Raises ``NotFound`` if absent."""
        for env in self.list_environments():
            if env.name == name:
                return env
        msg = f"workspace '{name}' not found on {self.server_url}"
        raise NotFound(msg)

    def create_environment(self, name: str, pixi_toml: bytes) -> RemoteEnvironment:
        body = {"name": name, "package_manager": "pixi", "pixi_toml": _text(pixi_toml, "pixi.toml")}
        return RemoteEnvironment.model_validate_json(self._request("POST", "/environments", json=body).content)

    def wait_until_ready(
        self,
        env_id: str,
        *,
        timeout: float = DEFAULT_READY_TIMEOUT,
        interval: float = DEFAULT_POLL_INTERVAL,
    ) -> RemoteEnvironment:
        """Poll a freshly created environment until the server reports it ready.

        Each poll is retried on ``Unavailable``.  A failed build raises
        ``NebiError``; running out of time raises ``Unavailable``.
        """
        deadline = time.monotonic() + timeout
        while True:
            env = with_retry(partial(self.get_environment, env_id))
            if env.status == ENV_READY:
                return env
            if env.status in ENV_FAILED:
                msg = f"environment '{env.name}' failed to build on {self.server_url}"
                raise NebiError(msg)
            if time.monotonic() >= deadline:
                msg = f"timed out waiting for '{env.name}' to become ready on {self.server_url}"
                raise Unavailable(msg)
            logger.debug("Environment {} is {}; polling again in {:.1f}s", env.name, env.status or "pending", interval)
            time.sleep(interval)

    def delete_environment(self, env_id: str) -> None:
        self._request("DELETE", f"/environments/{env_id}")

    def push_version(
        self,
        env_id: str,
        tag: str,
        pixi_toml: bytes,
        pixi_lock: bytes | None = None,
        *,
        force: bool = False,
    ) -> PushResponse:
        """Publish a new version tagged ``tag``.  The server refuses an existing tag unless ``force``."""
        body: dict[str, Any] = {"tag": tag, "pixi_toml": _text(pixi_toml, "pixi.toml")}
        if pixi_lock:
            body["pixi_lock"] = _text(pixi_lock, "pixi.lock")
        if force:
            body["force"] = True
        response = self._request("POST", f"/environments/{env_id}/push", json=body)
        return PushResponse.model_validate_json(response.content)

    def list_tags(self, env_id: str) -> list[RemoteTag]:
        return _tags.validate_json(self._request("GET", f"/environments/{env_id}/tags").content)

    def list_versions(self, env_id: str) -> list[RemoteVersion]:
        return _versions.validate_json(self._request("GET", f"/environments/{env_id}/versions").content)

    def resolve_version(self, env: RemoteEnvironment, tag: str | None) -> int:
        """Version number for ``tag``, or the latest version when no tag is given."""
        if tag:
            for t in self.list_tags(env.id):
                if t.tag == tag:
                    return t.version_number
            msg = f"tag '{tag}' not found for workspace '{env.name}'"
            raise NotFound(msg)

        versions = self.list_versions(env.id)
        if not versions:
            msg = f"workspace '{env.name}' has no versions"
            raise NotFound(msg)
        return max(v.version_number for v in versions)

    def get_pixi_toml(self, env_id: str, version: int) -> bytes:
        return self._request("GET", f"/environments/{env_id}/versions/{version}/pixi-toml").content

    def get_pixi_lock(self, env_id: str, version: int) -> bytes | None:
        """The lock file of a version, or ``None`` if the version has none."""
        try:
            return self._request("GET", f"/environments/{env_id}/versions/{version}/pixi-lock").content
        except NotFound:
            return None


def with_retry(fn: Callable[[], T], *, attempts: int = 3, base_delay: float = 0.5) -> T:
    """Call ``fn``, retrying on ``Unavailable`` with exponential backoff."""
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Unavailable as exc:
            if attempt == attempts:
                raise
            delay = base_delay * 2 ** (attempt - 1)
            logger.debug("Attempt {}/{} failed ({}); retrying in {:.1f}s", attempt, attempts, exc, delay)
            time.sleep(delay)
    msg = "attempts must be at least 1"
    raise ValueError(msg)


def _text(data: bytes, name: str) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        msg = f"{name} is not valid UTF-8"
        raise Malformed(msg) from None


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body)
    return str(body)
