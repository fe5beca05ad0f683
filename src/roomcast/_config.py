from __future__ import annotations

import dataclasses
import os
from pathlib import Path
from typing import Mapping

_TRUE_STRINGS = ("1", "true", "yes", "on")
_FALSE_STRINGS = ("0", "false", "no", "off")


@dataclasses.dataclass
class RelayConfig:
    """Configuration for a relay server.

    The websocket endpoint and the page endpoint bind separate ports, and each
    can be set on its own."""

    host: str = "localhost"
    """Host to bind both endpoints to."""
    ws_port: int = 3001
    """Port for websocket connections. Use 0 for an ephemeral port."""
    http_port: int = 3000
    """Port for the page endpoint."""
    http_root: Path | None = None
    """Directory served on the page endpoint. The endpoint is disabled if unset."""
    verbose: bool = True
    """Print connection, presence and chat events."""

    def __post_init__(self) -> None:
        for name in ("ws_port", "http_port"):
            port = getattr(self, name)
            if not 0 <= port <= 65535:
                raise ValueError(f"{name} must be between 0 and 65535, got {port}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RelayConfig:
        """Build a config from environment variables, falling back to defaults.

        Reads `ROOMCAST_HOST`, `ROOMCAST_WS_PORT`, `PORT` (page endpoint),
        `ROOMCAST_HTTP_ROOT` and `ROOMCAST_VERBOSE`.

        Raises:
            ValueError: if a variable is set to a value we can't parse.
        """
        if environ is None:
            environ = os.environ
        defaults = cls()

        http_root = environ.get("ROOMCAST_HTTP_ROOT", "")
        return cls(
            host=environ.get("ROOMCAST_HOST", defaults.host),
            ws_port=_env_int(environ, "ROOMCAST_WS_PORT", defaults.ws_port),
            http_port=_env_int(environ, "PORT", defaults.http_port),
            http_root=Path(http_root) if http_root != "" else None,
            verbose=_env_bool(environ, "ROOMCAST_VERBOSE", defaults.verbose),
        )


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name, "").strip()
    if raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name, "").strip().lower()
    if raw == "":
        return default
    if raw in _TRUE_STRINGS:
        return True
    if raw in _FALSE_STRINGS:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")
