import asyncio
from datetime import timedelta

import pytest

from celestia.domain.common.exceptions import Forbidden, NotFound, TransientError
from celestia.domain.common.results import ResultStatus
from celestia.domain.events.bus import EventBus
from celestia.domain.matches.detector import MatchDetector
from celestia.domain.matches.models import DeactivationReason, match_id_for
from celestia.domain.matches.repo import InMemoryMatchRepository
from celestia.domain.swipes.models import SwipeAction, SwipeDecision
from celestia.domain.swipes.repo import InMemorySwipeRepository
from celestia.domain.swipes.service import SwipeProcessor
from celestia.infra.clock import MonotonicTimestamps
from celestia.infra.retry import BackoffPolicy



class UnreachableReads:
    """Swipe reads for detection fail `failures` times before reaching the store."""

    def __init__(self, repo, failures: int) -> None:
        self._repo = repo
        self.failures = failures

    async def get_active(self, actor_id, target_id):
        if self.failures > 0:
            self.failures -= 1
            raise TransientError("swipes_unreachable")
        return await self._repo.get_active(actor_id, target_id)

    def __getattr__(self, name):
        return getattr(self._repo, name)

@pytest.fixture
def stores():
    return InMemorySwipeRepository(), InMemoryMatchRepository()


@pytest.fixture
def bus(dispatcher, clock):
    return EventBus(dispatcher, clock=clock)


@pytest.fixture
def detector(stores, bus, clock):
    swipes, matches = stores
    return MatchDetector(swipes=swipes, matches=matches, events=bus, clock=clock)


async def _decide(swipes, actor, target, action, clock):
    clock.advance(0.001)
    await swipes.upsert(SwipeDecision(actor, target, action, created_at=clock.now()))


def test_match_id_is_commutative():
    assert match_id_for("alice", "bob") == match_id_for("bob", "alice") == "match:alice:bob"


@pytest.mark.asyncio
async def test_mutual_likes_create_exactly_one_match(stores, detector, dispatcher, clock):
    swipes, matches = stores
    processor = SwipeProcessor(repo=swipes, detector=detector, clock=clock)

    await processor.record_decision("alice", "bob", "like")
    await processor.drain()
    assert await matches.count() == 0

    await processor.record_decision("bob", "alice", "superlike")
    await processor.drain()

    assert await matches.count() == 1
    assert await detector.has_matched("alice", "bob")
    assert dispatcher.kinds() == ["match.created"]
    assert dispatcher.events[0].participant_ids == ("alice", "bob")


@pytest.mark.asyncio
async def test_pass_never_creates_a_match(stores, detector, clock):
    swipes, matches = stores
    await _decide(swipes, "alice", "bob", SwipeAction.LIKE, clock)
    await _decide(swipes, "bob", "alice", SwipeAction.PASS, clock)

    outcome = await detector.on_decision("bob", "alice")

    assert outcome.ok
    assert outcome.match is None
    assert await matches.count() == 0


@pytest.mark.asyncio
async def test_concurrent_triggers_converge_on_one_match(stores, detector, dispatcher, clock):
    swipes, matches = stores
    await _decide(swipes, "alice", "bob", SwipeAction.LIKE, clock)
    await _decide(swipes, "bob", "alice", SwipeAction.LIKE, clock)

    outcomes = await asyncio.gather(
        detector.on_decision("alice", "bob"),
        detector.on_decision("bob", "alice"),
        detector.on_decision("alice", "bob"),
    )

    assert all(outcome.status is ResultStatus.SUCCESS for outcome in outcomes)
    assert sum(1 for outcome in outcomes if outcome.created) == 1
    assert len({outcome.match.match_id for outcome in outcomes}) == 1
    assert await matches.count() == 1
    assert dispatcher.kinds() == ["match.created"]


@pytest.mark.asyncio
async def test_unmatch_deactivates_and_is_not_recreated(stores, detector, dispatcher, clock):
    swipes, matches = stores
    await _decide(swipes, "alice", "bob", SwipeAction.LIKE, clock)
    await _decide(swipes, "bob", "alice", SwipeAction.LIKE, clock)
    created = await detector.on_decision("alice", "bob")

    result = await detector.unmatch("bob", created.match.match_id)

    assert result.ok
    stored = await detector.get_match(created.match.match_id)
    assert not stored.is_active
    assert stored.deactivated_by == "bob"
    assert stored.deactivation_reason is DeactivationReason.UNMATCH
    assert await detector.list_matches("alice") == []
    assert len(await detector.list_matches("alice", active_only=False)) == 1

    again = await detector.on_decision("alice", "bob")
    assert again.ok and not again.created
    assert not (await detector.get_match(created.match.match_id)).is_active
    assert dispatcher.kinds() == ["match.created", "match.deactivated"]


@pytest.mark.asyncio
async def test_unmatch_checks_membership(stores, detector, clock):
    swipes, _ = stores
    await _decide(swipes, "alice", "bob", SwipeAction.LIKE, clock)
    await _decide(swipes, "bob", "alice", SwipeAction.LIKE, clock)
    created = await detector.on_decision("alice", "bob")

    with pytest.raises(Forbidden):
        await detector.unmatch("mallory", created.match.match_id)
    with pytest.raises(NotFound):
        await detector.unmatch("alice", "match:nobody:else")


@pytest.mark.asyncio
async def test_block_records_pass_and_deactivates(stores, clock, bus):
    swipes, matches = stores
    timestamps = MonotonicTimestamps(clock)
    detector = MatchDetector(swipes=swipes, matches=matches, events=bus, clock=clock, timestamps=timestamps)
    processor = SwipeProcessor(repo=swipes, detector=detector, clock=clock, timestamps=timestamps)
    await processor.record_decision("alice", "bob", "like")
    await processor.record_decision("bob", "alice", "like")
    await processor.drain()

    result = await detector.block("alice", "bob")

    assert result.ok
    assert (await swipes.get_active("alice", "bob")).action is SwipeAction.PASS
    match = await detector.get_match(match_id_for("alice", "bob"))
    assert match.deactivation_reason is DeactivationReason.BLOCK
    assert not await detector.has_matched("alice", "bob")


@pytest.mark.asyncio
async def test_block_without_match_still_hides_user(stores, detector):
    swipes, matches = stores

    result = await detector.block("alice", "carol")

    assert result.ok
    assert "carol" in await swipes.decided_targets("alice")
    assert await matches.count() == 0


@pytest.mark.asyncio
async def test_record_message_keeps_latest_preview(stores, detector, clock):
    swipes, _ = stores
    await _decide(swipes, "alice", "bob", SwipeAction.LIKE, clock)
    await _decide(swipes, "bob", "alice", SwipeAction.LIKE, clock)
    created = await detector.on_decision("alice", "bob")
    match_id = created.match.match_id
    later = clock.now() + timedelta(minutes=5)

    await detector.record_message(match_id, body="see you at   the  library", at=later)
    await detector.record_message(match_id, body="older", at=later - timedelta(minutes=1))

    match = await detector.get_match(match_id)
    assert match.last_message_preview == "see you at the library"
    assert match.last_message_at == later


@pytest.mark.asyncio
async def test_failed_detection_is_rechecked_until_the_match_appears(stores, bus, dispatcher, clock):
    swipes, matches = stores
    reads = UnreachableReads(swipes, failures=3)
    detector = MatchDetector(
        swipes=reads,
        matches=matches,
        events=bus,
        clock=clock,
        policy=BackoffPolicy(base_delay=0.5, factor=2.0, max_delay=4.0, max_attempts=3),
    )
    processor = SwipeProcessor(
        repo=swipes,
        detector=detector,
        clock=clock,
        recheck_policy=BackoffPolicy(base_delay=5.0, factor=2.0, max_delay=60.0, max_attempts=3),
    )
    await _decide(swipes, "bob", "alice", SwipeAction.LIKE, clock)

    await processor.record_decision("alice", "bob", "like")
    await processor.drain()

    assert reads.failures == 0
    assert clock.sleeps == [0.5, 1.0, 5.0]
    assert await detector.has_matched("alice", "bob")
    assert dispatcher.kinds() == ["match.created"]


@pytest.mark.asyncio
async def test_rechecks_stop_once_the_budget_is_spent(stores, bus, clock):
    swipes, matches = stores
    reads = UnreachableReads(swipes, failures=100)
    detector = MatchDetector(
        swipes=reads,
        matches=matches,
        events=bus,
        clock=clock,
        policy=BackoffPolicy(base_delay=0.5, factor=2.0, max_delay=4.0, max_attempts=1),
    )
    processor = SwipeProcessor(
        repo=swipes,
        detector=detector,
        clock=clock,
        recheck_policy=BackoffPolicy(base_delay=5.0, factor=2.0, max_delay=60.0, max_attempts=2),
    )
    await _decide(swipes, "bob", "alice", SwipeAction.LIKE, clock)

    await processor.record_decision("alice", "bob", "like")
    await processor.drain()

    assert clock.sleeps == [5.0, 10.0]
    assert reads.failures == 97
    assert await matches.count() == 0
