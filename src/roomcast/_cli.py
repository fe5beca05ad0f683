"""Command-line entry point. Flags default to values read from the environment;
see :meth:`RelayConfig.from_env`."""

from __future__ import annotations

from typing import Mapping, Sequence

import rich
import tyro

from ._config import RelayConfig
from ._server import RoomcastServer


def parse_config(
    args: Sequence[str] | None = None, environ: Mapping[str, str] | None = None
) -> RelayConfig:
    """Read the environment, then apply command-line flags on top."""
    return tyro.cli(
        RelayConfig,
        args=args,
        default=RelayConfig.from_env(environ),
        description="Run a single-room chat relay over websockets.",
    )


def main() -> None:
    server = RoomcastServer.from_config(parse_config())
    try:
        server.sleep_forever()
    except KeyboardInterrupt:
        rich.print("[bold](roomcast)[/bold] Shutting down")
        server.stop()
