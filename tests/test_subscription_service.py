import asyncio

import pytest

from chat_relay.errors import ValidationError
from chat_relay.models.conversation import LogKey
from chat_relay.repositories.message_repository import MessageRepository
from chat_relay.schemas.message import ErrorEvent, MessageEvent, RecentEntryEvent
from chat_relay.services.subscription_service import SubscriptionService, _Stream
from chat_relay.utils.realtime_bus import LocalBus, RedisBus

from conftest import BrokenCollection, DroppingRedis


pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


async def next_event(stream, timeout: float = 1.0):
    return await asyncio.wait_for(stream.__anext__(), timeout)


async def assert_quiet(stream, timeout: float = 0.05):
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(stream.__anext__(), timeout)


async def test_live_message_then_cancel(coordinator, subscriptions, bus):
    stream = await subscriptions.subscribe("alice", "bob")
    assert bus.subscriber_count(LogKey("alice", "bob").channel) == 1

    await coordinator.send("alice", "bob", "x")
    event = await next_event(stream)
    assert isinstance(event, MessageEvent)
    assert event.message.text == "x"

    await stream.cancel()
    assert bus.subscriber_count(LogKey("alice", "bob").channel) == 0

    await coordinator.send("alice", "bob", "y")
    with pytest.raises(StopAsyncIteration):
        await next_event(stream)


async def test_recipient_side_stream_sees_message(coordinator, subscriptions):
    stream = await subscriptions.subscribe("bob", "alice")

    receipt = await coordinator.send("alice", "bob", "for bob")

    event = await next_event(stream)
    assert event.message.id == receipt.message_id
    assert event.message.sender_id == "alice"
    await stream.cancel()


async def test_other_conversations_are_not_delivered(coordinator, subscriptions):
    stream = await subscriptions.subscribe("alice", "bob")

    await coordinator.send("alice", "carol", "not for this stream")

    await assert_quiet(stream)
    await stream.cancel()


async def test_backlog_is_replayed_before_live_events(coordinator, subscriptions):
    for text in ["a", "b", "c"]:
        await coordinator.send("alice", "bob", text)

    stream = await subscriptions.subscribe("bob", "alice")
    await coordinator.send("bob", "alice", "d")

    received = [(await next_event(stream)).message.text for _ in range(4)]
    assert received == ["a", "b", "c", "d"]
    await assert_quiet(stream)
    await stream.cancel()


async def test_resume_from_cursor_has_no_gaps_or_duplicates(coordinator, subscriptions):
    first = await subscriptions.subscribe("alice", "bob")
    await coordinator.send("alice", "bob", "one")
    await coordinator.send("bob", "alice", "two")
    seen = [await next_event(first), await next_event(first)]
    await first.cancel()

    # missed while disconnected
    await coordinator.send("alice", "bob", "three")
    await coordinator.send("bob", "alice", "four")

    resumed = await subscriptions.subscribe("alice", "bob", from_cursor=seen[-1].cursor)
    await coordinator.send("alice", "bob", "five")
    rest = [await next_event(resumed) for _ in range(3)]

    assert [e.message.text for e in seen + rest] == ["one", "two", "three", "four", "five"]
    await assert_quiet(resumed)
    await resumed.cancel()


async def test_invalid_cursor_is_rejected_without_registering(subscriptions, bus):
    with pytest.raises(ValidationError):
        await subscriptions.subscribe("alice", "bob", from_cursor="not-a-cursor")
    assert bus.subscriber_count(LogKey("alice", "bob").channel) == 0


async def test_slow_subscriber_gets_terminal_error(coordinator, message_repo, recent_repo):
    bus = LocalBus(queue_size=2)
    coordinator._bus = bus
    subscriptions = SubscriptionService(message_repo, recent_repo, bus)

    stream = await subscriptions.subscribe("alice", "bob")
    first = await coordinator.send("alice", "bob", "m0")
    event = await next_event(stream)
    assert event.message.id == first.message_id

    for i in range(1, 5):
        await coordinator.send("alice", "bob", f"m{i}")

    error = await next_event(stream)
    assert isinstance(error, ErrorEvent)
    assert error.detail == "subscriber_lagging"
    assert error.cursor == event.cursor
    with pytest.raises(StopAsyncIteration):
        await next_event(stream)
    assert bus.subscriber_count(LogKey("alice", "bob").channel) == 0

    resumed = await subscriptions.subscribe("alice", "bob", from_cursor=error.cursor)
    texts = [(await next_event(resumed)).message.text for _ in range(4)]
    assert texts == ["m1", "m2", "m3", "m4"]
    await resumed.cancel()


async def test_recents_stream_emits_snapshot_then_updates(coordinator, subscriptions):
    await coordinator.send("bob", "alice", "older")

    stream = await subscriptions.subscribe_recents("alice")
    snapshot = await next_event(stream)
    assert isinstance(snapshot, RecentEntryEvent)
    assert snapshot.entry.last_message_text == "older"

    await coordinator.send("carol", "alice", "hey")
    await coordinator.send("alice", "bob", "newer")

    updates = [await next_event(stream), await next_event(stream)]
    assert [(e.entry.peer_id, e.entry.last_message_text) for e in updates] == [("carol", "hey"), ("bob", "newer")]
    assert all(e.entry.owner_id == "alice" for e in updates)

    await stream.cancel()
    await coordinator.send("carol", "alice", "after cancel")
    with pytest.raises(StopAsyncIteration):
        await next_event(stream)


async def test_self_chat_produces_one_recent_event(coordinator, subscriptions):
    stream = await subscriptions.subscribe_recents("alice", include_snapshot=False)

    await coordinator.send("alice", "alice", "note")

    event = await next_event(stream)
    assert event.entry.peer_id == "alice"
    await assert_quiet(stream)
    await stream.cancel()


async def test_backfill_storage_failure_ends_stream_with_last_cursor(coordinator, subscriptions, bus, monkeypatch):
    for text in ["a", "b", "c"]:
        await coordinator.send("alice", "bob", text)

    stream = await subscriptions.subscribe("alice", "bob")
    delivered = [await next_event(stream), await next_event(stream)]
    assert [e.message.text for e in delivered] == ["a", "b"]

    monkeypatch.setattr(MessageRepository, "collection", property(lambda self: BrokenCollection()))
    error = await next_event(stream)
    assert isinstance(error, ErrorEvent)
    assert error.code == "read_failed"
    assert error.cursor == delivered[-1].cursor
    with pytest.raises(StopAsyncIteration):
        await next_event(stream)
    assert bus.subscriber_count(LogKey("alice", "bob").channel) == 0

    monkeypatch.undo()
    resumed = await subscriptions.subscribe("alice", "bob", from_cursor=error.cursor)
    assert (await next_event(resumed)).message.text == "c"
    await resumed.cancel()


async def test_bus_disconnect_ends_stream_with_last_cursor(coordinator, message_repo, recent_repo):
    await coordinator.send("alice", "bob", "stored")
    client = DroppingRedis()
    subscriptions = SubscriptionService(message_repo, recent_repo, RedisBus(client, queue_size=8))

    stream = await subscriptions.subscribe("alice", "bob")
    first = await next_event(stream)
    assert first.message.text == "stored"

    error = await next_event(stream)
    assert isinstance(error, ErrorEvent)
    assert error.detail == "bus_disconnected"
    assert error.cursor == first.cursor
    with pytest.raises(StopAsyncIteration):
        await next_event(stream)
    assert client.pubsubs[0].closed


async def test_base_stream_cannot_be_instantiated(bus):
    sub = await bus.subscribe("log:alice:bob")
    with pytest.raises(TypeError):
        _Stream(sub)
    await sub.cancel()
