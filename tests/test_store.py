from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from yoping.core.store import MemoryUserStore, SQLiteUserStore


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def any_store(request, tmp_path):
    if request.param == "memory":
        yield MemoryUserStore()
        return
    store = SQLiteUserStore(str(tmp_path / "yoping.db"))
    await store.init()
    try:
        yield store
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_unknown_user_is_none(any_store):
    assert await any_store.find_by_identity("ghost") is None


@pytest.mark.asyncio
async def test_friendship_is_mutual_and_block_is_one_way(any_store):
    await any_store.add_friend("alice", "bob")
    await any_store.block("bob", "alice")

    assert await any_store.is_friend("alice", "bob")
    assert await any_store.is_friend("bob", "alice")
    assert await any_store.is_blocked_by("alice", "bob")
    assert not await any_store.is_blocked_by("bob", "alice")

    bob = await any_store.find_by_identity("bob")
    assert bob.friends == {"alice"}
    assert bob.blocked == {"alice"}


@pytest.mark.asyncio
async def test_online_flag_and_token(any_store):
    seen = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    await any_store.set_online("carol", True, seen)
    await any_store.set_delivery_token("carol", "ExpoPushToken[c]")

    carol = await any_store.find_by_identity("carol")
    assert carol.is_online is True
    assert carol.last_seen == seen
    assert carol.delivery_token == "ExpoPushToken[c]"

    await any_store.set_delivery_token("carol", None)
    await any_store.set_online("carol", False, seen)
    carol = await any_store.find_by_identity("carol")
    assert carol.delivery_token is None
    assert carol.is_online is False


@pytest.mark.asyncio
async def test_increment_counter_is_monotonic_under_concurrency(any_store):
    await any_store.add_user("bob")
    totals = await asyncio.gather(*(any_store.increment_received_counter("bob", f"s{i}") for i in range(20)))
    assert sorted(totals) == list(range(1, 21))
    assert (await any_store.find_by_identity("bob")).total_yos_received == 20


@pytest.mark.asyncio
async def test_sqlite_persists_across_reopen(tmp_path):
    path = str(tmp_path / "persist.db")
    store = SQLiteUserStore(path)
    await store.init()
    await store.add_friend("alice", "bob")
    await store.increment_received_counter("bob", "alice")
    await store.close()

    reopened = SQLiteUserStore(path)
    await reopened.init()
    try:
        bob = await reopened.find_by_identity("bob")
        assert bob.total_yos_received == 1
        assert bob.friends == {"alice"}
    finally:
        await reopened.close()


def test_sqlite_requires_init():
    with pytest.raises(RuntimeError):
        SQLiteUserStore(":memory:").db


@pytest.mark.asyncio
async def test_clear_delivery_token_compares_before_clearing(any_store):
    await any_store.add_user("bob", token="ExponentPushToken[new]")

    assert not await any_store.clear_delivery_token("bob", "ExponentPushToken[old]")
    assert (await any_store.find_by_identity("bob")).delivery_token == "ExponentPushToken[new]"

    assert await any_store.clear_delivery_token("bob", "ExponentPushToken[new]")
    assert (await any_store.find_by_identity("bob")).delivery_token is None
    assert not await any_store.clear_delivery_token("bob")
    assert not await any_store.clear_delivery_token("ghost", "ExponentPushToken[new]")


@pytest.mark.asyncio
async def test_clear_delivery_token_without_expected_clears_any(any_store):
    await any_store.add_user("bob", token="ExponentPushToken[x]")
    assert await any_store.clear_delivery_token("bob")
    assert (await any_store.find_by_identity("bob")).delivery_token is None
