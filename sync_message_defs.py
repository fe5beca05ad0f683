"""Generate TypeScript message definitions from the Python dataclasses, for web
clients that speak the relay protocol."""

import pathlib
import subprocess

import tyro

import roomcast.infra
from roomcast.infra import Message


def main(
    target_path: pathlib.Path = pathlib.Path("client/src/WebsocketMessages.ts"),
    prettier: bool = True,
) -> None:
    # Generate typescript source.
    defs = roomcast.infra.generate_typescript_interfaces(Message)

    # Write to file.
    target_path.parent.mkdir(parents=True, exist_ok=True)
    target_path.write_text(defs)
    print(f"Wrote to {target_path}")

    if prettier:
        try:
            subprocess.run(args=["npx", "prettier", "-w", str(target_path)], check=False)
        except FileNotFoundError:
            print("Warning: npx/prettier not found, skipping formatting")


if __name__ == "__main__":
    tyro.cli(main)
