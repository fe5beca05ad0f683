import asyncio
import json

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from utils import make_connection, mark_closed, sent

from roomcast import ANONYMOUS, BroadcastRegistry, ServerMessage
from roomcast.infra import ConnectionState

# 2024-05-01T12:00:00.500Z
FIXED_TIME = 1714564800.5


def join(username: str) -> str:
    return json.dumps({"type": "join", "username": username})


def chat(body: str) -> str:
    return json.dumps({"type": "message", "message": body})


def make_registry() -> BroadcastRegistry:
    return BroadcastRegistry(verbose=False, clock=lambda: FIXED_TIME)


def test_join_is_announced_to_others_only() -> None:
    async def main() -> None:
        registry = make_registry()
        alice, bob, carol = make_connection(0), make_connection(1), make_connection(2)
        for conn in (alice, bob, carol):
            await registry.on_connect(conn)

        await registry.on_frame(alice, join("alice"))

        assert sent(alice) == []
        assert sent(bob) == [{"type": "userJoined", "username": "alice"}]
        assert sent(carol) == [{"type": "userJoined", "username": "alice"}]

    asyncio.run(main())


def test_connect_alone_is_silent() -> None:
    async def main() -> None:
        registry = make_registry()
        alice, bob = make_connection(0), make_connection(1)
        await registry.on_connect(alice)
        await registry.on_connect(bob)

        assert sent(alice) == []
        assert sent(bob) == []
        assert await registry.participants() == {0: None, 1: None}

    asyncio.run(main())


def test_message_is_relayed_to_everyone_including_sender() -> None:
    async def main() -> None:
        registry = make_registry()
        alice, bob = make_connection(0), make_connection(1)
        await registry.on_connect(alice)
        await registry.on_connect(bob)
        await registry.on_frame(alice, join("alice"))

        await registry.on_frame(alice, chat("hi"))

        expected = {
            "type": "message",
            "id": 1714564800500,
            "username": "alice",
            "message": "hi",
            "timestamp": "2024-05-01T12:00:00.500Z",
        }
        assert sent(alice) == [expected]
        assert sent(bob)[-1] == expected

    asyncio.run(main())


def test_message_without_join_is_anonymous() -> None:
    async def main() -> None:
        registry = make_registry()
        bob = make_connection(1)
        await registry.on_connect(bob)

        await registry.on_frame(bob, chat("who am I?"))

        (message,) = sent(bob)
        assert message["username"] == ANONYMOUS == "Anonymous"

    asyncio.run(main())


def test_client_supplied_fields_are_not_trusted() -> None:
    async def main() -> None:
        registry = make_registry()
        alice = make_connection(0)
        await registry.on_connect(alice)
        await registry.on_frame(alice, join("alice"))

        await registry.on_frame(
            alice,
            json.dumps(
                {
                    "type": "message",
                    "message": "hi",
                    "id": 5,
                    "username": "mallory",
                    "timestamp": "1970-01-01T00:00:00.000Z",
                }
            ),
        )

        (message,) = sent(alice)
        assert message["username"] == "alice"
        assert message["id"] == 1714564800500
        assert message["timestamp"] == "2024-05-01T12:00:00.500Z"

    asyncio.run(main())


@pytest.mark.parametrize(
    "raw",
    [
        b"\xff\xfe\x00",
        "not json",
        "[]",
        "{}",
        '{"type": 3}',
        '{"type": "shout", "message": "x"}',
        '{"type": "userJoined", "username": "x"}',
        '{"type": "join"}',
        '{"type": "join", "username": 7}',
        '{"type": "message", "message": null}',
        '{"message": "no type"}',
        "[" * 200000 + "]" * 200000,
    ],
)
def test_malformed_frames_are_discarded(raw) -> None:
    async def main() -> None:
        registry = make_registry()
        alice, bob = make_connection(0), make_connection(1)
        await registry.on_connect(alice)
        await registry.on_connect(bob)

        await registry.on_frame(alice, raw)

        assert sent(alice) == []
        assert sent(bob) == []
        assert alice.state is ConnectionState.OPEN
        assert await registry.participants() == {0: None, 1: None}

        # The connection keeps working afterwards.
        await registry.on_frame(alice, join("alice"))
        assert sent(bob) == [{"type": "userJoined", "username": "alice"}]

    asyncio.run(main())


def test_disconnect_announces_joined_participant() -> None:
    async def main() -> None:
        registry = make_registry()
        alice, bob = make_connection(0), make_connection(1)
        await registry.on_connect(alice)
        await registry.on_connect(bob)
        await registry.on_frame(alice, join("alice"))

        mark_closed(alice)
        await registry.on_disconnect(alice)

        assert sent(bob) == [
            {"type": "userJoined", "username": "alice"},
            {"type": "userLeft", "username": "alice"},
        ]
        assert sent(alice) == []
        assert await registry.participants() == {1: None}

    asyncio.run(main())


def test_disconnect_of_unannounced_participant_is_silent() -> None:
    async def main() -> None:
        registry = make_registry()
        alice, bob = make_connection(0), make_connection(1)
        await registry.on_connect(alice)
        await registry.on_connect(bob)

        mark_closed(alice)
        await registry.on_disconnect(alice)

        assert sent(bob) == []
        assert await registry.participants() == {1: None}

    asyncio.run(main())


def test_repeated_disconnect_announces_once() -> None:
    async def main() -> None:
        registry = make_registry()
        alice, bob = make_connection(0), make_connection(1)
        await registry.on_connect(alice)
        await registry.on_connect(bob)
        await registry.on_frame(alice, join("alice"))

        mark_closed(alice)
        await registry.on_disconnect(alice)
        await registry.on_disconnect(alice)

        assert [m["type"] for m in sent(bob)] == ["userJoined", "userLeft"]

    asyncio.run(main())


def test_second_join_renames_and_announces_again() -> None:
    async def main() -> None:
        registry = make_registry()
        alice, bob = make_connection(0), make_connection(1)
        await registry.on_connect(alice)
        await registry.on_connect(bob)

        await registry.on_frame(alice, join("alice"))
        await registry.on_frame(alice, join("alicia"))
        await registry.on_frame(alice, chat("renamed"))

        assert sent(bob) == [
            {"type": "userJoined", "username": "alice"},
            {"type": "userJoined", "username": "alicia"},
            {
                "type": "message",
                "id": 1714564800500,
                "username": "alicia",
                "message": "renamed",
                "timestamp": "2024-05-01T12:00:00.500Z",
            },
        ]

    asyncio.run(main())


def test_empty_username_falls_back_to_anonymous() -> None:
    async def main() -> None:
        registry = make_registry()
        alice, bob = make_connection(0), make_connection(1)
        await registry.on_connect(alice)
        await registry.on_connect(bob)

        await registry.on_frame(alice, join(""))
        mark_closed(alice)
        await registry.on_disconnect(alice)

        assert sent(bob) == [
            {"type": "userJoined", "username": ANONYMOUS},
            {"type": "userLeft", "username": ANONYMOUS},
        ]

    asyncio.run(main())


def test_failed_delivery_is_handled_as_disconnect() -> None:
    async def main() -> None:
        registry = make_registry()
        alice, bob, carol = make_connection(0), make_connection(1), make_connection(2)
        for conn in (alice, bob, carol):
            await registry.on_connect(conn)
        await registry.on_frame(bob, join("bob"))
        alice_before = sent(alice)

        # Bob vanishes without the transport noticing yet.
        mark_closed(bob)
        await registry.on_frame(alice, chat("still there?"))

        assert [m["type"] for m in sent(alice)[len(alice_before) :]] == [
            "message",
            "userLeft",
        ]
        assert sent(carol)[-1] == {"type": "userLeft", "username": "bob"}
        assert await registry.participants() == {0: None, 2: None}

        # When the transport catches up, nothing is announced twice.
        await registry.on_disconnect(bob)
        assert [m["type"] for m in sent(carol)] == ["userJoined", "message", "userLeft"]

    asyncio.run(main())


def test_frames_from_closed_connection_are_ignored() -> None:
    async def main() -> None:
        registry = make_registry()
        alice, bob = make_connection(0), make_connection(1)
        await registry.on_connect(alice)
        await registry.on_connect(bob)

        mark_closed(alice)
        await registry.on_frame(alice, chat("ghost"))
        await registry.on_disconnect(alice)
        await registry.on_frame(alice, join("ghost"))

        assert sent(bob) == []

    asyncio.run(main())


def test_connecting_twice_is_an_error() -> None:
    async def main() -> None:
        registry = make_registry()
        alice = make_connection(0)
        await registry.on_connect(alice)
        with pytest.raises(AssertionError):
            await registry.on_connect(alice)

    asyncio.run(main())


def test_listeners_and_post() -> None:
    async def main() -> None:
        registry = make_registry()
        events: list[ServerMessage] = []
        registry.add_listener(events.append)

        alice = make_connection(0)
        await registry.on_connect(alice)
        await registry.on_frame(alice, join("alice"))
        posted = await registry.post("Welcome!", "System")

        assert [m.type_tag for m in events] == ["userJoined", "message"]
        assert events[-1] is posted
        assert sent(alice) == [posted.as_serializable_dict()]
        assert posted.username == "System"

    asyncio.run(main())


def test_concurrent_frames_are_serialized() -> None:
    """Every connection sees broadcasts in one shared order."""

    async def main() -> None:
        registry = make_registry()
        conns = [make_connection(i) for i in range(4)]
        for conn in conns:
            await registry.on_connect(conn)

        await asyncio.gather(
            *[
                registry.on_frame(conn, chat(f"{conn.client_id}-{i}"))
                for i in range(10)
                for conn in conns
            ]
        )

        first = sent(conns[0])
        assert len(first) == 40
        for conn in conns[1:]:
            assert sent(conn) == first
        ids = [m["id"] for m in first]
        assert ids == sorted(ids) and len(set(ids)) == len(ids)

    asyncio.run(main())


@settings(deadline=None, max_examples=25)
@given(
    bodies=st.lists(st.text(max_size=20), max_size=15),
    peer_count=st.integers(min_value=0, max_value=3),
)
def test_every_open_peer_receives_every_message(bodies, peer_count) -> None:
    async def main() -> None:
        registry = BroadcastRegistry(verbose=False)
        sender = make_connection(0)
        peers = [make_connection(i + 1) for i in range(peer_count)]
        for conn in [sender, *peers]:
            await registry.on_connect(conn)

        await registry.on_frame(sender, join("sender"))
        for body in bodies:
            await registry.on_frame(sender, chat(body))

        for conn in [sender, *peers]:
            messages = [m for m in sent(conn) if m["type"] == "message"]
            assert [m["message"] for m in messages] == bodies
            assert all(m["username"] == "sender" for m in messages)
            ids = [m["id"] for m in messages]
            assert all(a < b for a, b in zip(ids[:-1], ids[1:]))

    asyncio.run(main())
