from __future__ import annotations

import asyncio
import inspect
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Coroutine, TypeVar, Union

import rich
from rich import box, style
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.traceback import Traceback

from . import infra
from ._config import RelayConfig
from ._messages import ChatMessage, ServerMessage, UserJoinedMessage, UserLeftMessage
from ._registry import BroadcastRegistry

TMessage = TypeVar("TMessage", bound=ServerMessage)
NoneOrCoroutine = Union[None, Coroutine[Any, Any, None]]

_stderr_console = Console(stderr=True)


def _print_hook_errors(future: Future[Any]) -> None:
    """Print errors from a hook submitted to a thread pool. Use with
    `add_done_callback`."""
    if future.cancelled():
        _stderr_console.print("[bold](roomcast)[/bold] Hook was cancelled")
        return

    exc = future.exception()
    if exc is not None:
        _stderr_console.print("[bold](roomcast)[/bold] Hook failed with exception:")
        _stderr_console.print(
            Traceback.from_exception(type(exc), exc, exc.__traceback__)
        )


class RoomcastServer:
    """:class:`RoomcastServer` is the main class for running a chat relay. On
    instantiation, it launches a thread with a websocket server, attaches a
    :class:`BroadcastRegistry` to it, and (optionally) starts a page endpoint
    serving static files on a second port.

    Clients connect to the websocket endpoint, send a `join` frame, and then
    exchange `message` frames; see :mod:`roomcast._messages` for the protocol.

    Args:
        host: Host to bind both endpoints to.
        port: Port for the websocket endpoint. Use 0 for an ephemeral port.
        http_port: Port for the page endpoint.
        http_root: Directory served on the page endpoint. If None, no page
            endpoint is started.
        verbose: Toggle for print messages.

    Raises:
        OSError: if either port can't be bound.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 3001,
        http_port: int = 3000,
        http_root: Path | None = None,
        verbose: bool = True,
    ):
        server = infra.WebsockServer(host=host, port=port, verbose=verbose)
        self._websock_server = server

        self.registry = BroadcastRegistry(verbose=verbose)
        """Table of connected participants. Its coroutines must run on
        :meth:`get_event_loop`."""
        self.registry.attach(server)
        self.registry.add_listener(self._dispatch_event)

        self._thread_executor = ThreadPoolExecutor(max_workers=32)
        self._hooks: dict[
            type[ServerMessage], list[Callable[[Any], NoneOrCoroutine]]
        ] = {}

        # Start the server. This raises if the port is taken.
        server.start()
        self._event_loop = server.get_event_loop()

        self._static_server: infra.StaticFileServer | None = None
        if http_root is not None:
            static_server = infra.StaticFileServer(
                http_root, host=host, port=http_port, verbose=verbose
            )
            try:
                asyncio.run_coroutine_threadsafe(
                    static_server.start(), self._event_loop
                ).result()
            except OSError:
                server.stop()
                raise
            self._static_server = static_server

        if verbose:
            self._print_status(host)

    @classmethod
    def from_config(cls, config: RelayConfig) -> RoomcastServer:
        return cls(
            host=config.host,
            port=config.ws_port,
            http_port=config.http_port,
            http_root=config.http_root,
            verbose=config.verbose,
        )

    def _print_status(self, host: str) -> None:
        display_host = "localhost" if host == "0.0.0.0" else host
        table = Table(
            title=None,
            show_header=False,
            box=box.MINIMAL,
            title_style=style.Style(bold=True),
        )
        table.add_row("Websocket", f"ws://{display_host}:{self.get_port()}")
        if self._static_server is not None:
            table.add_row(
                "HTTP", f"http://{display_host}:{self._static_server.get_port()}"
            )
        rich.print(Panel(table, title="[bold]roomcast[/bold]", expand=False))

    def get_host(self) -> str:
        """Returns the host address of the server."""
        return self._websock_server._host

    def get_port(self) -> int:
        """Returns the websocket port. If the server was created with port 0,
        this is the port that was actually bound."""
        return self._websock_server.get_port()

    def get_http_port(self) -> int | None:
        """Returns the page endpoint port, or None if it wasn't started."""
        if self._static_server is None:
            return None
        return self._static_server.get_port()

    def get_event_loop(self) -> asyncio.AbstractEventLoop:
        """Get the asyncio event loop used by the background thread."""
        return self._event_loop

    def get_client_count(self) -> int:
        """Number of open websocket connections, joined or not."""
        return self._websock_server.get_client_count()

    def get_participants(self) -> dict[int, str | None]:
        """Creates and returns a snapshot of connected client IDs and their display
        names. Clients that haven't joined yet map to None.

        Must not be called from the server's event loop."""
        return dict(
            asyncio.run_coroutine_threadsafe(
                self.registry.participants(), self._event_loop
            ).result()
        )

    def post_message(self, body: str, username: str = "System") -> ChatMessage:
        """Broadcast a chat message to every connected client, as if sent by
        `username`. Returns the message as it was broadcast.

        Must not be called from the server's event loop."""
        return asyncio.run_coroutine_threadsafe(
            self.registry.post(body, username), self._event_loop
        ).result()

    def on_chat_message(
        self, cb: Callable[[ChatMessage], NoneOrCoroutine]
    ) -> Callable[[ChatMessage], NoneOrCoroutine]:
        """Attach a callback to run for every relayed chat message.

        The callback can be either a standard function or an async function:
        - Standard functions (def) will be executed in a threadpool.
        - Async functions (async def) will be executed in the event loop.
        """
        return self._add_hook(ChatMessage, cb)

    def on_user_joined(
        self, cb: Callable[[UserJoinedMessage], NoneOrCoroutine]
    ) -> Callable[[UserJoinedMessage], NoneOrCoroutine]:
        """Attach a callback to run when a participant joins. See
        :meth:`on_chat_message`."""
        return self._add_hook(UserJoinedMessage, cb)

    def on_user_left(
        self, cb: Callable[[UserLeftMessage], NoneOrCoroutine]
    ) -> Callable[[UserLeftMessage], NoneOrCoroutine]:
        """Attach a callback to run when a joined participant leaves. See
        :meth:`on_chat_message`."""
        return self._add_hook(UserLeftMessage, cb)

    def _add_hook(
        self, message_cls: type[TMessage], cb: Callable[[TMessage], NoneOrCoroutine]
    ) -> Callable[[TMessage], NoneOrCoroutine]:
        self._hooks.setdefault(message_cls, []).append(cb)
        return cb

    def _dispatch_event(self, message: ServerMessage) -> None:
        # Runs on the event loop, with the registry locked: never block here.
        for cb in self._hooks.get(type(message), []):
            if inspect.iscoroutinefunction(cb):
                self._event_loop.create_task(cb(message))
            else:
                self._thread_executor.submit(cb, message).add_done_callback(
                    _print_hook_errors
                )

    def stop(self) -> None:
        """Stop the server, close all connections, and free both ports."""
        if self._static_server is not None:
            asyncio.run_coroutine_threadsafe(
                self._static_server.stop(), self._event_loop
            ).result()
            self._static_server = None
        self._websock_server.stop()
        self._thread_executor.shutdown(wait=True)

    def sleep_forever(self) -> None:
        """Equivalent to:
        ```
        while True:
            time.sleep(3600)
        ```
        """
        while True:
            time.sleep(3600)
