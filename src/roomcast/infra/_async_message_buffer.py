from __future__ import annotations

import asyncio
import dataclasses
import threading
from asyncio.events import AbstractEventLoop
from typing import AsyncGenerator, Dict, List, Sequence

from ._messages import Message


@dataclasses.dataclass
class AsyncMessageBuffer:
    """Async iterable for buffering outgoing messages to a single client.

    `push()` never blocks or awaits; a producer task consumes windows of
    messages with `window_generator()` and writes them to the socket. A slow
    client only ever slows down its own producer."""

    event_loop: AbstractEventLoop
    message_event: asyncio.Event = dataclasses.field(default_factory=asyncio.Event)

    message_counter: int = 0
    message_from_id: Dict[int, Message] = dataclasses.field(default_factory=dict)

    buffer_lock: threading.Lock = dataclasses.field(default_factory=threading.Lock)
    """Lock to prevent race conditions when pushing messages from different threads."""

    max_window_size: int = 1024
    done: bool = False

    def push(self, message: Message) -> None:
        """Push a new message to our buffer."""

        assert isinstance(message, Message)

        with self.buffer_lock:
            self.message_from_id[self.message_counter] = message
            self.message_counter += 1

        # Pulse message event to notify consumers that a new message is available.
        self.event_loop.call_soon_threadsafe(self.message_event.set)

    def pending(self) -> List[Message]:
        """Messages that have been pushed but not yet consumed, in push order."""
        with self.buffer_lock:
            return [self.message_from_id[k] for k in sorted(self.message_from_id)]

    def set_done(self) -> None:
        """Set the done flag. Kills the generator."""
        self.done = True

        # Pulse message event to make sure we aren't waiting for a new message.
        self.event_loop.call_soon_threadsafe(self.message_event.set)

    async def window_generator(self) -> AsyncGenerator[Sequence[Message], None]:
        """Async iterator over messages. Loops until `set_done()` is called, and
        waits when no messages are available."""

        last_sent_id = -1
        while not self.done:
            window: List[Message] = []
            most_recent_message_id = self.message_counter - 1
            while (
                last_sent_id < most_recent_message_id
                and len(window) < self.max_window_size
            ):
                last_sent_id += 1
                with self.buffer_lock:
                    message = self.message_from_id.pop(last_sent_id, None)
                if message is not None:
                    window.append(message)

            if len(window) > 0:
                yield window
            else:
                # Wait for a new message to come in.
                await self.message_event.wait()
                self.message_event.clear()
