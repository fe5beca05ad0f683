"""Chat room

Run a relay, print what happens in the room, and post a greeting whenever someone
joins. Connect with `01_terminal_client.py`, or any websocket client that speaks
the protocol.
"""

import roomcast

server = roomcast.RoomcastServer(port=3001)


@server.on_user_joined
def _(event: roomcast.UserJoinedMessage) -> None:
    server.post_message(f"Welcome, {event.username}!")


@server.on_user_left
async def _(event: roomcast.UserLeftMessage) -> None:
    participants = await server.registry.participants()
    print(f"{event.username} left; {len(participants)} still connected")


@server.on_chat_message
def _(event: roomcast.ChatMessage) -> None:
    print(f"[{event.timestamp}] #{event.id} {event.username}: {event.message}")


server.sleep_forever()
