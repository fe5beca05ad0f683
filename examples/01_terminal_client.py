"""Terminal client

Join a relay from the terminal. Every line typed is sent as a chat message;
incoming events are printed as they arrive.
"""

import json
import threading

import tyro
from websockets.exceptions import ConnectionClosed
from websockets.sync.client import ClientConnection, connect


def print_incoming(websocket: ClientConnection) -> None:
    try:
        for raw in websocket:
            event = json.loads(raw)
            if event["type"] == "message":
                print(f"{event['username']}: {event['message']}")
            elif event["type"] == "userJoined":
                print(f"* {event['username']} has joined the chat")
            elif event["type"] == "userLeft":
                print(f"* {event['username']} has left the chat")
    except ConnectionClosed:
        print("* disconnected")


def main(username: str, url: str = "ws://localhost:3001") -> None:
    """Join a chat room.

    Args:
        username: Display name to join with.
        url: Websocket endpoint of the relay.
    """
    with connect(url) as websocket:
        websocket.send(json.dumps({"type": "join", "username": username}))
        threading.Thread(target=print_incoming, args=(websocket,), daemon=True).start()

        try:
            while True:
                line = input()
                if line.strip() != "":
                    websocket.send(json.dumps({"type": "message", "message": line}))
        except (EOFError, KeyboardInterrupt):
            pass


if __name__ == "__main__":
    tyro.cli(main)
