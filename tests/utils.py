import asyncio
import json
import time
from typing import Any, Callable, Dict, List

from roomcast.infra import (
    AsyncMessageBuffer,
    ClientId,
    ConnectionState,
    WebsockClientConnection,
)
from roomcast.infra._infra import _ClientHandleState


def make_connection(client_id: int) -> WebsockClientConnection:
    """Create an open connection whose outgoing messages stay in its buffer. Must be
    called from a running event loop."""
    event_loop = asyncio.get_running_loop()
    state = _ClientHandleState(AsyncMessageBuffer(event_loop), event_loop)
    return WebsockClientConnection(ClientId(client_id), state)


def sent(connection: WebsockClientConnection) -> List[Dict[str, Any]]:
    """Messages queued for a connection, as they would appear on the wire."""
    return [
        json.loads(message.serialize())
        for message in connection._state.message_buffer.pending()
    ]


def mark_closed(connection: WebsockClientConnection) -> None:
    """Simulate a peer that vanished before the transport reported it."""
    connection._state.liveness = ConnectionState.CLOSED


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "Timed out waiting for condition."
        time.sleep(0.01)
