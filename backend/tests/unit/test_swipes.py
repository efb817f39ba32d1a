import asyncio
from datetime import timedelta

import pytest

from celestia.domain.common.exceptions import TransientError, ValidationError
from celestia.domain.common.results import ResultStatus
from celestia.domain.quota.guard import RateLimitGuard
from celestia.domain.quota.models import QuotaPolicy
from celestia.domain.scoring.ratings import DEFAULT_RATING, RatingBook
from celestia.domain.swipes.models import SwipeAction, SwipeDecision
from celestia.domain.swipes.repo import InMemorySwipeRepository
from celestia.domain.swipes.service import SwipeProcessor
from celestia.infra.retry import BackoffPolicy

FROZEN_TS = 1_767_614_400.0


class FlakyRepo(InMemorySwipeRepository):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.writes = 0

    async def swap(self, decision):
        self.writes += 1
        if self.failures > 0:
            self.failures -= 1
            raise TransientError("db_unavailable")
        return await super().swap(decision)


class StaleReadRepo(InMemorySwipeRepository):
    """Reads miss a decision another device committed a moment earlier."""

    async def get_active(self, actor_id, target_id):
        return None


class FakeRanking:
    def __init__(self) -> None:
        self.invalidated = []

    def on_decision(self, viewer_id: str) -> int:
        self.invalidated.append(viewer_id)
        return 1


class FakeDetector:
    def __init__(self) -> None:
        self.calls = []

    async def on_decision(self, actor_id, target_id):
        self.calls.append((actor_id, target_id))


def _guard(swipe_limit: int = 50) -> RateLimitGuard:
    return RateLimitGuard(
        remote=None,
        policies={
            "swipe": QuotaPolicy(limit=swipe_limit, window_seconds=86_400, premium_exempt=True),
            "superlike": QuotaPolicy(limit=1, window_seconds=86_400),
        },
        time_fn=lambda: FROZEN_TS,
    )


def _processor(clock, *, repo=None, guard=None, detector=None, ranking=None, ratings=None):
    return SwipeProcessor(
        repo=repo or InMemorySwipeRepository(),
        guard=guard or _guard(),
        detector=detector,
        ratings=ratings,
        ranking=ranking,
        clock=clock,
        policy=BackoffPolicy(base_delay=0.5, factor=2.0, max_delay=4.0, max_attempts=3),
    )


@pytest.mark.asyncio
async def test_like_is_recorded_and_side_effects_fire(clock):
    ranking = FakeRanking()
    detector = FakeDetector()
    ratings = RatingBook()
    processor = _processor(clock, ranking=ranking, detector=detector, ratings=ratings)

    result = await processor.record_decision("alice", "bob", "like")
    await processor.drain()

    assert result.ok and result.changed
    assert result.decision.action is SwipeAction.LIKE
    assert ranking.invalidated == ["alice"]
    assert detector.calls == [("alice", "bob")]
    assert ratings.rating("bob") > DEFAULT_RATING


@pytest.mark.asyncio
async def test_repeating_the_same_decision_is_a_noop(clock):
    guard = _guard()
    ranking = FakeRanking()
    processor = _processor(clock, guard=guard, ranking=ranking)

    first = await processor.record_decision("alice", "bob", SwipeAction.LIKE)
    second = await processor.record_decision("alice", "bob", SwipeAction.LIKE)

    assert second.ok
    assert not second.changed
    assert second.decision == first.decision
    assert await guard.remaining("alice", "swipe") == 49
    assert ranking.invalidated == ["alice"]


@pytest.mark.asyncio
async def test_new_decision_supersedes_previous(clock):
    repo = InMemorySwipeRepository()
    processor = _processor(clock, repo=repo)

    await processor.record_decision("alice", "bob", "like")
    clock.advance(1)
    result = await processor.record_decision("alice", "bob", "pass")

    assert result.ok and result.changed
    current = await processor.current_decision("alice", "bob")
    assert current.action is SwipeAction.PASS
    assert len(await repo.all_active()) == 1


@pytest.mark.asyncio
async def test_self_swipe_and_unknown_action_are_rejected(clock):
    processor = _processor(clock)
    with pytest.raises(ValidationError):
        await processor.record_decision("alice", "alice", "like")
    with pytest.raises(ValidationError):
        await processor.record_decision("alice", "bob", "maybe")


@pytest.mark.asyncio
async def test_quota_exhaustion_returns_quota_exceeded_without_writing(clock):
    repo = InMemorySwipeRepository()
    processor = _processor(clock, repo=repo, guard=_guard(swipe_limit=2))

    assert (await processor.record_decision("alice", "t1", "like")).ok
    assert (await processor.record_decision("alice", "t2", "pass")).ok
    denied = await processor.record_decision("alice", "t3", "like")

    assert denied.status is ResultStatus.QUOTA_EXCEEDED
    assert denied.retry_after is not None and denied.retry_after > 0
    assert await repo.get("alice", "t3") is None


@pytest.mark.asyncio
async def test_premium_users_are_exempt_from_swipe_quota_but_not_superlikes(clock):
    processor = _processor(clock, guard=_guard(swipe_limit=1))

    for target in ("t1", "t2", "t3"):
        assert (await processor.record_decision("alice", target, "like", premium=True)).ok

    assert (await processor.record_decision("alice", "t4", "superlike", premium=True)).ok
    denied = await processor.record_decision("alice", "t5", "superlike", premium=True)
    assert denied.status is ResultStatus.QUOTA_EXCEEDED


@pytest.mark.asyncio
async def test_transient_write_failures_are_retried_with_backoff(clock):
    repo = FlakyRepo(failures=2)
    processor = _processor(clock, repo=repo)

    result = await processor.record_decision("alice", "bob", "like")

    assert result.ok and result.changed
    assert repo.writes == 3
    assert clock.sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_exhausted_retries_surface_transient_failure(clock):
    repo = FlakyRepo(failures=10)
    processor = _processor(clock, repo=repo)

    result = await processor.record_decision("alice", "bob", "like")

    assert result.status is ResultStatus.TRANSIENT_FAILURE
    assert result.retryable
    assert await repo.get("alice", "bob") is None


@pytest.mark.asyncio
async def test_last_write_wins_on_server_timestamp(clock):
    repo = InMemorySwipeRepository()
    newer = SwipeDecision("alice", "bob", SwipeAction.PASS, created_at=clock.now())
    older = SwipeDecision("alice", "bob", SwipeAction.LIKE, created_at=clock.now() - timedelta(seconds=5))

    assert await repo.upsert(newer) == newer
    assert await repo.upsert(older) == newer
    assert (await repo.get_active("alice", "bob")).action is SwipeAction.PASS


@pytest.mark.asyncio
async def test_revoke_removes_active_decision(clock):
    repo = InMemorySwipeRepository()
    ranking = FakeRanking()
    processor = _processor(clock, repo=repo, ranking=ranking)

    await processor.record_decision("alice", "bob", "like")
    revoked = await processor.revoke_decision("alice", "bob")

    assert revoked.ok and revoked.changed
    assert await repo.get_active("alice", "bob") is None
    assert await repo.decided_targets("alice") == set()
    assert ranking.invalidated == ["alice", "alice"]

    again = await processor.revoke_decision("alice", "bob")
    assert again.ok and not again.changed


@pytest.mark.asyncio
async def test_concurrent_decisions_on_one_pair_leave_one_active_record(clock):
    repo = InMemorySwipeRepository()
    processor = _processor(clock, repo=repo)

    results = await asyncio.gather(
        processor.record_decision("alice", "bob", "like"),
        processor.record_decision("alice", "bob", "pass"),
        processor.record_decision("alice", "bob", "like"),
    )

    assert all(result.ok for result in results)
    active = await repo.all_active()
    assert len(active) == 1
    assert active[0] == await repo.get_active("alice", "bob")
    assert await repo.decided_targets("alice") == {"bob"}


@pytest.mark.asyncio
async def test_concurrent_identical_likes_apply_side_effects_once(clock):
    guard = _guard()
    ratings = RatingBook()
    ranking = FakeRanking()
    processor = _processor(clock, guard=guard, ratings=ratings, ranking=ranking)

    results = await asyncio.gather(
        processor.record_decision("alice", "bob", "like"),
        processor.record_decision("alice", "bob", "like"),
    )

    assert sorted(result.changed for result in results) == [False, True]
    assert await guard.remaining("alice", "swipe") == 49
    assert ranking.invalidated == ["alice"]
    single = RatingBook()
    single.record_outcome("alice", "bob", liked=True)
    assert ratings.snapshot() == single.snapshot()


@pytest.mark.asyncio
async def test_write_racing_an_identical_intent_is_not_counted_again(clock):
    repo = StaleReadRepo()
    ratings = RatingBook()
    ranking = FakeRanking()
    laptop = _processor(clock, repo=repo, ratings=ratings, ranking=ranking)
    await repo.upsert(SwipeDecision("alice", "bob", SwipeAction.LIKE, created_at=clock.now() - timedelta(seconds=1)))

    result = await laptop.record_decision("alice", "bob", "like")

    assert result.ok and not result.changed
    assert result.decision.created_at == clock.now()
    assert ratings.snapshot() == {}
    assert ranking.invalidated == []


@pytest.mark.asyncio
async def test_likes_sent_and_received_follow_active_positive_decisions(clock):
    processor = _processor(clock)

    await processor.record_decision("bob", "alice", "like")
    await processor.record_decision("carol", "alice", "superlike")
    await processor.record_decision("dave", "alice", "pass")
    await processor.record_decision("alice", "bob", "like")
    clock.advance(1)
    await processor.record_decision("carol", "alice", "pass")

    assert await processor.likes_received("alice") == ["bob"]
    assert await processor.likes_sent("alice") == ["bob"]
    assert await processor.likes_sent("dave") == []

    await processor.revoke_decision("bob", "alice")
    assert await processor.likes_received("alice") == []
