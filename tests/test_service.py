from __future__ import annotations

from datetime import datetime, timezone

import pytest

from yoping.core.gate import RelationshipGate
from yoping.core.lifecycle import ConnectionLifecycle
from yoping.core.router import DeliveryRouter
from yoping.core.service import SendAttempt, YoService


@pytest.fixture
def service(registry, store, dispatcher, supervisor):
    router = DeliveryRouter(registry, store, dispatcher, supervisor)
    return YoService(RelationshipGate(store), router, store)


@pytest.fixture
def lifecycle(registry, store, supervisor):
    return ConnectionLifecycle(registry, store, supervisor)


@pytest.mark.asyncio
async def test_alice_yos_bob_while_both_online(service, lifecycle, store, push_transport, supervisor, make_handle, valid_token):
    await store.add_friend("alice", "bob")
    alice, bob = make_handle("alice"), make_handle("bob")
    await lifecycle.join(alice, "alice")
    await lifecycle.join(bob, {"username": "bob", "expoPushToken": valid_token})

    attempt = await service.send_yo("alice", "bob")
    await supervisor.drain()

    (received,) = bob.events("yoReceived")
    assert received["from"] == "alice"
    assert received["totalYos"] == 1
    assert attempt.reply() == {"to": "bob", "success": True}
    assert attempt.delivery_path == "live+push"
    # Bob's token also got a push attempt
    assert [m["to"] for m in push_transport.messages] == [valid_token]
    assert store.history["bob"][0][0] == "alice"


@pytest.mark.asyncio
async def test_block_wins_over_stale_friendship(service, lifecycle, store, push_transport, supervisor, make_handle, valid_token):
    await store.add_friend("carol", "dave")
    await store.block("carol", "dave")
    carol = make_handle("carol")
    await lifecycle.join(carol, {"username": "carol", "expoPushToken": valid_token})

    attempt = await service.send_yo("dave", "carol")
    await supervisor.drain()

    assert attempt.reason == "blocked_by_recipient"
    assert carol.events("yoReceived") == []
    assert push_transport.sent == []
    reply = attempt.reply()
    assert reply["success"] is False
    assert reply["blocked"] is True
    assert "blocked" in reply["error"]
    assert store.users["carol"].total_yos_received == 0


@pytest.mark.asyncio
async def test_not_friends_does_not_touch_counter(service, store):
    await store.add_user("alice")
    await store.add_user("bob")

    attempt = await service.send_yo("alice", "bob")

    assert attempt.reply() == {
        "to": "bob",
        "success": False,
        "reason": "not_friends",
        "error": "Can only send Yos to friends",
    }
    assert store.users["bob"].total_yos_received == 0


@pytest.mark.asyncio
async def test_offline_without_token_reports_unreachable(service, store):
    await store.add_friend("alice", "bob")

    attempt = await service.send_yo("alice", "bob")

    reply = attempt.reply()
    assert reply["success"] is False
    assert reply["reason"] == "recipient_unreachable"
    assert "blocked" not in reply
    # The Yo still counts as received even though nobody saw it live.
    assert store.users["bob"].total_yos_received == 1


@pytest.mark.asyncio
async def test_running_total_comes_from_store(service, lifecycle, store, supervisor, make_handle):
    await store.add_friend("alice", "bob")
    store.users["bob"].total_yos_received = 41
    bob = make_handle("bob")
    await lifecycle.join(bob, "bob")

    await service.send_yo("alice", "bob")
    await service.send_yo("alice", "bob")
    await supervisor.drain()

    assert [p["totalYos"] for p in bob.events("yoReceived")] == [42, 43]


@pytest.mark.asyncio
async def test_store_outage_propagates(service, store):
    async def down(_identity):
        raise ConnectionError("store unavailable")

    store.find_by_identity = down
    with pytest.raises(ConnectionError):
        await service.send_yo("alice", "bob")


def test_attempt_without_decision_is_not_success():
    attempt = SendAttempt("a", "b", datetime.now(timezone.utc))
    assert attempt.success is False
    assert attempt.delivery_path == "none"
