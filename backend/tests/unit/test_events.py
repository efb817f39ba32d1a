import asyncio

import pytest

from celestia.domain.events.bus import EventBus, EventDeduplicator
from celestia.domain.events.models import MatchCreated, MessageCreated, event_id_for, parse_event
from celestia.infra.retry import BackoffPolicy


def _match_created(clock, a="alice", b="bob") -> MatchCreated:
    match_id = f"match:{a}:{b}"
    return MatchCreated(
        event_id=event_id_for("match.created", match_id),
        occurred_at=clock.now(),
        match_id=match_id,
        participant_ids=(a, b),
    )


def test_event_ids_are_deterministic():
    assert event_id_for("match.created", "match:a:b") == "match.created:match:a:b"
    assert event_id_for("message.created", "m1") == event_id_for("message.created", "m1")


def test_deduplicator_is_bounded():
    dedup = EventDeduplicator(capacity=2)
    assert dedup.first_seen("e1")
    assert not dedup.first_seen("e1")
    assert dedup.first_seen("e2")
    assert dedup.first_seen("e3")
    assert len(dedup) == 2
    assert dedup.first_seen("e2") is False
    assert dedup.first_seen("e1")


def test_parse_event_picks_the_right_variant(clock):
    event = _match_created(clock)
    parsed = parse_event(event.model_dump_json())
    assert isinstance(parsed, MatchCreated)
    assert parsed == event


@pytest.mark.asyncio
async def test_subscriptions_filter_by_audience_and_kind(clock, dispatcher):
    bus = EventBus(dispatcher, clock=clock)
    alice = bus.subscribe("alice")
    carol = bus.subscribe("carol")
    bob_messages = bus.subscribe("bob", kinds=("message.created",))

    await bus.publish(_match_created(clock))
    await bus.publish(
        MessageCreated(
            event_id=event_id_for("message.created", "m1"),
            occurred_at=clock.now(),
            match_id="match:alice:bob",
            message_id="m1",
            sender_id="alice",
            receiver_id="bob",
            seq=1,
        )
    )

    assert [e.kind for e in alice.drain_nowait()] == ["match.created"]
    assert carol.drain_nowait() == []
    assert [e.kind for e in bob_messages.drain_nowait()] == ["message.created"]


@pytest.mark.asyncio
async def test_redelivered_event_reaches_a_subscriber_once(clock, dispatcher):
    bus = EventBus(dispatcher, clock=clock)
    stream = bus.subscribe("alice")
    event = _match_created(clock)

    await bus.publish(event)
    await bus.publish(event)

    assert len(stream.drain_nowait()) == 1
    assert len(dispatcher.events) == 2


@pytest.mark.asyncio
async def test_failed_dispatch_is_kept_for_redelivery(clock, dispatcher):
    dispatcher.failures = 5
    bus = EventBus(dispatcher, policy=BackoffPolicy(base_delay=0.5, max_attempts=3), clock=clock)
    event = _match_created(clock)

    assert not await bus.publish(event)
    assert bus.undelivered == [event]
    assert clock.sleeps == [0.5, 1.0]

    dispatcher.failures = 0
    assert await bus.redeliver() == 1
    assert bus.undelivered == []
    assert dispatcher.events == [event]


@pytest.mark.asyncio
async def test_closing_a_subscription_ends_iteration(clock, dispatcher):
    bus = EventBus(dispatcher, clock=clock)
    stream = bus.subscribe("alice")
    await bus.publish(_match_created(clock))
    stream.close()

    received = [event async for event in stream]

    assert len(received) == 1
    with pytest.raises(asyncio.TimeoutError):
        await bus.subscribe("alice").get(timeout=0.01)
