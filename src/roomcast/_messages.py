"""Wire message definitions. Every frame is a JSON object whose `type` key holds
the message's `type_tag`. For the TypeScript counterparts, see
`sync_message_defs.py`."""

from __future__ import annotations

import dataclasses
from typing import ClassVar

from . import infra


class ClientMessage(infra.Message):
    """Frames sent from clients to the server."""


class ServerMessage(infra.Message):
    """Frames broadcast from the server to clients."""


@dataclasses.dataclass
class JoinMessage(ClientMessage):
    """Announce the sender under a display name. Sending it again renames the
    sender."""

    type_tag: ClassVar[str] = "join"

    username: str


@dataclasses.dataclass
class ChatSubmitMessage(ClientMessage):
    """Chat text submitted by a client. Any `id`, `timestamp` or `username` keys
    in the frame are ignored."""

    type_tag: ClassVar[str] = "message"

    message: str


@dataclasses.dataclass
class ChatMessage(ServerMessage):
    """Chat message as relayed to every participant, with a server-assigned id and
    timestamp."""

    type_tag: ClassVar[str] = "message"

    id: int
    username: str
    message: str
    timestamp: str
    """UTC, ISO-8601 with millisecond precision, e.g. `2024-05-01T12:00:00.123Z`."""


@dataclasses.dataclass
class UserJoinedMessage(ServerMessage):
    """A participant announced themselves."""

    type_tag: ClassVar[str] = "userJoined"

    username: str


@dataclasses.dataclass
class UserLeftMessage(ServerMessage):
    """A previously announced participant disconnected."""

    type_tag: ClassVar[str] = "userLeft"

    username: str
