"""Domain exceptions raised by the store, tracking and manager layers.

Each exception carries a human-readable message.  The CLI translates every
``NebiError`` into exit code 1 and a one-line ``Error: <message>`` on stderr;
nothing below the CLI layer prints or exits.
"""

from __future__ import annotations

from pathlib import Path


class NebiError(Exception):
    """Base class for all user-visible errors."""


class NotFound(NebiError, LookupError):
    """Workspace, server, entry or file is unknown."""


class AlreadyExists(NebiError):
    """Name or path collision at creation time."""


class Malformed(NebiError, ValueError):
    """Sidecar, index record or CLI reference cannot be parsed."""


class Corrupt(NebiError):
    """A persisted document exists but is not valid."""

    def __init__(self, path: str | Path, reason: str) -> None:
        self.path = Path(path)
        super().__init__(f"{self.path} is corrupt: {reason}")


class UnsupportedVersion(NebiError):
    """The index was written by a newer version of the tool."""

    def __init__(self, path: str | Path, found: int, supported: int) -> None:
        self.path = Path(path)
        self.found = found
        self.supported = supported
        super().__init__(
            f"{self.path} has schema version {found}, but this version of nebi only supports up to {supported}"
        )


class Unavailable(NebiError):
    """External server or registry is unreachable."""


class AuthRequired(NebiError):
    """No usable credential for the target server."""

    def __init__(self, server_url: str) -> None:
        self.server_url = server_url
        super().__init__(f"not logged in to {server_url}; run 'nebi login' first")


class Cancelled(NebiError):
    """User interrupt or timeout aborted the operation."""


class IOFailure(NebiError, OSError):
    """Any other filesystem failure."""

    @classmethod
    def wrap(cls, action: str, path: str | Path, exc: OSError) -> IOFailure:
        err = cls(f"{action} {path}: {exc.strerror or exc}")
        err.__cause__ = exc
        return err
