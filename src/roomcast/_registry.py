from __future__ import annotations

import asyncio
import dataclasses
import time
from datetime import datetime, timezone
from typing import Callable

import rich
from rich.markup import escape

from . import infra
from ._messages import (
    ChatMessage,
    ChatSubmitMessage,
    ClientMessage,
    JoinMessage,
    ServerMessage,
    UserJoinedMessage,
    UserLeftMessage,
)

ANONYMOUS = "Anonymous"
"""Display name used for participants that never sent a `join`."""

EventListener = Callable[[ServerMessage], None]


@dataclasses.dataclass
class Participant:
    """A live connection and the display name it announced, if any."""

    connection: infra.WebsockClientConnection
    display_name: str | None = None

    @property
    def client_id(self) -> infra.ClientId:
        return self.connection.client_id

    @property
    def announced(self) -> bool:
        return self.display_name is not None

    def resolved_name(self) -> str:
        return self.display_name or ANONYMOUS


def format_timestamp(seconds: float) -> str:
    """Format a unix time as UTC ISO-8601 with milliseconds and a `Z` suffix."""
    moment = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


class BroadcastRegistry:
    """Authoritative table of connected participants, and the relay that fans
    events out to them.

    All entry points are coroutines meant to run on the websocket server's event
    loop. A single lock serializes them: the table mutation and broadcast for one
    frame complete before the next frame, from any connection, is processed.
    Broadcasting only queues messages on each connection, so no entry point ever
    waits on a peer's socket.

    Args:
        verbose: Toggle for print messages.
        clock: Source of unix time, used for message ids and timestamps.
    """

    def __init__(
        self, verbose: bool = True, clock: Callable[[], float] = time.time
    ) -> None:
        self._participant_from_id: dict[infra.ClientId, Participant] = {}
        self._lock = asyncio.Lock()
        self._listeners: list[EventListener] = []
        self._verbose = verbose
        self._clock = clock
        self._last_message_id = 0

    def attach(self, server: infra.WebsockServer) -> None:
        """Receive connection events and frames from a websocket server."""
        server.on_client_connect(self.on_connect)
        server.on_frame(self.on_frame)
        server.on_client_disconnect(self.on_disconnect)

    def add_listener(self, listener: EventListener) -> None:
        """Call `listener` with every broadcast event, after it has been queued
        for all recipients. Listeners run while the registry is locked and must
        not block."""
        self._listeners.append(listener)

    async def participants(self) -> dict[infra.ClientId, str | None]:
        """Snapshot of connected clients and their display names."""
        async with self._lock:
            return {
                client_id: participant.display_name
                for client_id, participant in self._participant_from_id.items()
            }

    async def on_connect(self, connection: infra.WebsockClientConnection) -> None:
        """Register a new connection. Participants stay silent until they join."""
        async with self._lock:
            assert (
                connection.client_id not in self._participant_from_id
            ), f"Client {connection.client_id} was registered twice."
            self._participant_from_id[connection.client_id] = Participant(connection)

    async def on_frame(
        self, connection: infra.WebsockClientConnection, raw: str | bytes
    ) -> None:
        """Handle one incoming frame. Malformed frames are discarded; they never
        close the connection."""
        try:
            message = ClientMessage.deserialize(raw)
        except infra.MessageDecodeError as e:
            if self._verbose:
                rich.print(
                    f"[bold](roomcast)[/bold] [yellow]Discarded frame from client"
                    f" {connection.client_id}:[/yellow] {escape(str(e))}"
                )
            return

        async with self._lock:
            participant = self._participant_from_id.get(connection.client_id, None)
            if (
                participant is None
                or connection.state is not infra.ConnectionState.OPEN
            ):
                return

            if isinstance(message, JoinMessage):
                self._handle_join(participant, message)
            elif isinstance(message, ChatSubmitMessage):
                self._handle_chat_submit(participant, message)
            elif self._verbose:
                rich.print(
                    f"[bold](roomcast)[/bold] [yellow]No handler for"
                    f" {type(message).__name__}[/yellow]"
                )

    async def on_disconnect(self, connection: infra.WebsockClientConnection) -> None:
        """Remove a closed connection. No-op if it was already removed, for
        example after a failed delivery."""
        async with self._lock:
            participant = self._participant_from_id.get(connection.client_id, None)
            if participant is not None:
                self._remove(participant)

    async def post(self, body: str, username: str) -> ChatMessage:
        """Broadcast a chat message that didn't come from a connection."""
        async with self._lock:
            message = self._make_chat_message(username, body)
            self._broadcast(message)
            return message

    def _handle_join(self, participant: Participant, message: JoinMessage) -> None:
        participant.display_name = message.username
        if self._verbose:
            remote_address = participant.connection.remote_address
            rich.print(
                f"[bold](roomcast)[/bold] {escape(participant.resolved_name())} joined"
                " the chat"
                + ("" if remote_address is None else f" from {escape(remote_address)}")
            )
        self._broadcast(
            UserJoinedMessage(participant.resolved_name()),
            exclude=participant.client_id,
        )

    def _handle_chat_submit(
        self, participant: Participant, message: ChatSubmitMessage
    ) -> None:
        username = participant.resolved_name()
        if self._verbose:
            rich.print(
                f"[bold](roomcast)[/bold] {escape(username)}: {escape(message.message)}"
            )
        self._broadcast(self._make_chat_message(username, message.message))

    def _make_chat_message(self, username: str, body: str) -> ChatMessage:
        now = self._clock()

        # Millisecond timestamps, bumped so that ids stay unique and increasing.
        message_id = max(int(now * 1000), self._last_message_id + 1)
        self._last_message_id = message_id
        return ChatMessage(
            id=message_id,
            username=username,
            message=body,
            timestamp=format_timestamp(now),
        )

    def _broadcast(
        self, message: ServerMessage, exclude: infra.ClientId | None = None
    ) -> None:
        """Queue a message for every open connection. Must hold the lock.

        Connections that can't take the message anymore are removed afterwards,
        through the same path as a regular disconnect."""
        vanished: list[Participant] = []
        for participant in list(self._participant_from_id.values()):
            if participant.client_id == exclude:
                continue
            if not participant.connection.send(message):
                vanished.append(participant)

        for listener in self._listeners:
            listener(message)

        for participant in vanished:
            self._remove(participant)

    def _remove(self, participant: Participant) -> None:
        """Drop a participant and announce its departure. Must hold the lock."""
        if self._participant_from_id.pop(participant.client_id, None) is None:
            return
        if self._verbose:
            rich.print(
                f"[bold](roomcast)[/bold] {escape(participant.resolved_name())}"
                " disconnected"
            )
        if participant.announced:
            self._broadcast(UserLeftMessage(participant.resolved_name()))
