""":mod:`roomcast.infra` provides WebSocket-based communication infrastructure.

We implement abstractions for:
- Launching a WebSocket server on a background thread.
- Registering callbacks for connection events and incoming frames.
- Non-blocking, buffered message sending to individual clients.
- Defining dataclass-based message types with a JSON codec.
- Serving static files on a separate HTTP port.
- Translating Python message types to TypeScript interfaces.
"""

from ._async_message_buffer import AsyncMessageBuffer as AsyncMessageBuffer
from ._infra import ClientId as ClientId
from ._infra import ConnectionState as ConnectionState
from ._infra import WebsockClientConnection as WebsockClientConnection
from ._infra import WebsockServer as WebsockServer
from ._messages import Message as Message
from ._messages import MessageDecodeError as MessageDecodeError
from ._messages import UnknownMessageTypeError as UnknownMessageTypeError
from ._static_server import StaticFileServer as StaticFileServer
from ._typescript_interface_gen import (
    generate_typescript_interfaces as generate_typescript_interfaces,
)
