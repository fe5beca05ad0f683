from __future__ import annotations

import asyncio
import dataclasses
import enum
import threading
import traceback
from asyncio.events import AbstractEventLoop
from typing import Any, Callable, Coroutine, Dict, List, NewType, Optional, Union

import rich
import websockets.asyncio.server
import websockets.exceptions
from rich.markup import escape
from websockets.asyncio.server import ServerConnection
from websockets.http11 import Request, Response

from ._async_message_buffer import AsyncMessageBuffer
from ._messages import Message

ClientId = NewType("ClientId", int)


class ConnectionState(enum.Enum):
    """Liveness of a client connection."""

    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclasses.dataclass
class _ClientHandleState:
    # Internal state for WebsockClientConnection objects.
    message_buffer: AsyncMessageBuffer
    event_loop: AbstractEventLoop
    remote_address: Optional[str] = None
    liveness: ConnectionState = ConnectionState.OPEN


@dataclasses.dataclass
class WebsockClientConnection:
    """Handle for interacting with a single connected client.

    Identities are assigned by the server from a process-wide counter and are
    never reused."""

    client_id: ClientId
    _state: _ClientHandleState

    @property
    def state(self) -> ConnectionState:
        return self._state.liveness

    @property
    def remote_address(self) -> Optional[str]:
        return self._state.remote_address

    def send(self, message: Message) -> bool:
        """Queue a message for this client. Never blocks.

        Returns `False`, without raising, if the connection is no longer open."""
        if self._state.liveness is not ConnectionState.OPEN:
            return False
        self._state.message_buffer.push(message)
        return True


ConnectionCallback = Callable[[WebsockClientConnection], Coroutine[Any, Any, None]]
FrameCallback = Callable[
    [WebsockClientConnection, Union[str, bytes]], Coroutine[Any, Any, None]
]


class WebsockServer:
    """Websocket server abstraction. Accepts client connections on a background
    thread and hands each one, and every frame it receives, to the registered
    callbacks.

    All callbacks are coroutines that run on the server's event loop. Frames from
    one connection are handed over one at a time, in the order they arrived.

    Args:
        host: Host to bind server to.
        port: Port to bind server to. Use 0 for an ephemeral port.
        verbose: Toggle for print messages.
    """

    def __init__(self, host: str, port: int, verbose: bool = True):
        self._client_connect_cb: List[ConnectionCallback] = []
        self._client_disconnect_cb: List[ConnectionCallback] = []
        self._frame_cb: List[FrameCallback] = []

        self._host = host
        self._port = port
        self._verbose = verbose

        self._event_loop: Optional[AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._listener: Optional[websockets.asyncio.server.Server] = None
        self._startup_error: Optional[OSError] = None

        self._client_state_from_id: Dict[ClientId, _ClientHandleState] = {}

    def start(self) -> None:
        """Start the server. Blocks until the port is bound.

        Raises:
            OSError: if the port can't be bound. We don't retry on other ports.
        """

        # Start server thread.
        ready_sem = threading.Semaphore(value=1)
        ready_sem.acquire()
        self._thread = threading.Thread(
            target=lambda: self._background_worker(ready_sem),
            daemon=True,
        )
        self._thread.start()

        # Wait for the thread to bind the port and set self._event_loop...
        ready_sem.acquire()

        if self._startup_error is not None:
            self._thread.join()
            raise self._startup_error

    def stop(self) -> None:
        """Stop the server, close all connections, and free the port."""
        event_loop = self._event_loop
        if event_loop is None or not event_loop.is_running():
            return
        asyncio.run_coroutine_threadsafe(self._close_listener(), event_loop).result()
        event_loop.call_soon_threadsafe(event_loop.stop)
        assert self._thread is not None
        self._thread.join()

    def on_client_connect(self, cb: ConnectionCallback) -> ConnectionCallback:
        """Attach a callback to run for newly connected clients."""
        self._client_connect_cb.append(cb)
        return cb

    def on_client_disconnect(self, cb: ConnectionCallback) -> ConnectionCallback:
        """Attach a callback to run when clients disconnect."""
        self._client_disconnect_cb.append(cb)
        return cb

    def on_frame(self, cb: FrameCallback) -> FrameCallback:
        """Attach a callback to run for each incoming frame."""
        self._frame_cb.append(cb)
        return cb

    def get_event_loop(self) -> AbstractEventLoop:
        """Event loop that connections and callbacks run on."""
        assert self._event_loop is not None, "Server hasn't been started."
        return self._event_loop

    def get_port(self) -> int:
        """Bound port. Differs from the requested one when we asked for port 0."""
        return self._port

    def get_client_count(self) -> int:
        return len(self._client_state_from_id)

    async def _close_listener(self) -> None:
        assert self._listener is not None
        self._listener.close()
        await self._listener.wait_closed()

    def _background_worker(self, ready_sem: threading.Semaphore) -> None:
        host = self._host
        port = self._port

        event_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(event_loop)

        connection_count = 0
        total_connections = 0

        async def serve(websocket: ServerConnection) -> None:
            """Server loop, run once per connection."""
            nonlocal connection_count
            nonlocal total_connections

            client_id = ClientId(connection_count)
            connection_count += 1
            total_connections += 1

            remote_address = _format_address(websocket.remote_address)
            if self._verbose:
                rich.print(
                    f"[bold](roomcast)[/bold] Connection opened ({client_id},"
                    f" {total_connections} total) from {escape(str(remote_address))}"
                )

            client_state = _ClientHandleState(
                AsyncMessageBuffer(event_loop), event_loop, remote_address
            )
            client_connection = WebsockClientConnection(client_id, client_state)
            self._client_state_from_id[client_id] = client_state

            producer = event_loop.create_task(
                _message_producer(websocket, client_connection)
            )
            try:
                # New connection callbacks.
                for cb in self._client_connect_cb:
                    await cb(client_connection)

                await _message_consumer(
                    websocket, client_connection, self._handle_frame
                )
            except websockets.exceptions.ConnectionClosedError as e:
                if self._verbose:
                    rich.print(
                        f"[bold](roomcast)[/bold] Connection {client_id} closed"
                        f" abnormally: {escape(str(e))}"
                    )
            finally:
                # Nothing may be queued for this client from here on.
                client_state.liveness = ConnectionState.CLOSING
                client_state.message_buffer.set_done()
                producer.cancel()
                await asyncio.gather(producer, return_exceptions=True)

                # Disconnection callbacks.
                for cb in self._client_disconnect_cb:
                    await cb(client_connection)

                # Cleanup.
                client_state.liveness = ConnectionState.CLOSED
                self._client_state_from_id.pop(client_id)
                total_connections -= 1
                if self._verbose:
                    rich.print(
                        f"[bold](roomcast)[/bold] Connection closed ({client_id},"
                        f" {total_connections} total)"
                    )

        def process_response(
            websocket: ServerConnection, request: Request, response: Response
        ) -> None:
            """Report handshakes that were answered with anything but an upgrade."""
            if response.status_code != 101:
                self._report_rejection(
                    websocket, f"{response.status_code} {response.reason_phrase}"
                )

        server = self

        class _Connection(ServerConnection):
            async def handshake(self, *args: Any, **kwargs: Any) -> None:
                try:
                    await super().handshake(*args, **kwargs)
                finally:
                    # Requests that never parsed don't reach process_response.
                    exc = self.protocol.handshake_exc
                    if self.request is None and exc is not None:
                        server._report_rejection(self, str(exc))

        async def listen() -> websockets.asyncio.server.Server:
            return await websockets.asyncio.server.serve(
                serve,
                host,
                port,
                compression=None,
                process_response=process_response,
                create_connection=_Connection,
            )

        try:
            self._listener = event_loop.run_until_complete(listen())
        except OSError as e:  # Port not available.
            rich.print(
                f"[bold](roomcast)[/bold] [red]Could not bind {host}:{port}:[/red] {e}"
            )
            self._startup_error = e
            event_loop.close()
            ready_sem.release()
            return

        sockets = list(self._listener.sockets)
        if len(sockets) > 0:
            self._port = sockets[0].getsockname()[1]
        self._event_loop = event_loop
        ready_sem.release()

        event_loop.run_forever()
        event_loop.close()
        if self._verbose:
            rich.print("[bold](roomcast)[/bold] Server stopped")

    def _report_rejection(self, websocket: ServerConnection, reason: str) -> None:
        if not self._verbose:
            return
        remote_address = _format_address(websocket.remote_address)
        rich.print(
            f"[bold](roomcast)[/bold] [yellow]Rejected connection[/yellow] from"
            f" {escape(str(remote_address))}: {escape(reason)}"
        )

    async def _handle_frame(
        self, connection: WebsockClientConnection, raw: Union[str, bytes]
    ) -> None:
        for cb in self._frame_cb:
            try:
                await cb(connection, raw)
            except Exception as e:
                # A failing handler must not take down the connection's read loop.
                traceback.print_exception(type(e), e, e.__traceback__, limit=100)


async def _message_producer(
    websocket: ServerConnection, connection: WebsockClientConnection
) -> None:
    """Loop that drains a client's outgoing buffer onto its socket."""
    buffer = connection._state.message_buffer
    try:
        async for outgoing in buffer.window_generator():
            for message in outgoing:
                await websocket.send(message.serialize())
    except websockets.exceptions.ConnectionClosed:
        # The consumer sees the same close and runs the disconnect path.
        connection._state.liveness = ConnectionState.CLOSING


async def _message_consumer(
    websocket: ServerConnection,
    connection: WebsockClientConnection,
    handle_frame: FrameCallback,
) -> None:
    """Loop waiting for and then handling incoming frames, until the client
    closes the connection."""
    async for raw in websocket:
        await handle_frame(connection, raw)


def _format_address(address: Any) -> Optional[str]:
    if address is None:
        return None
    if isinstance(address, tuple) and len(address) >= 2:
        return f"{address[0]}:{address[1]}"
    return str(address)
