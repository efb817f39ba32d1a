from datetime import timedelta

import pytest

from celestia.domain.common.exceptions import NotFound
from celestia.domain.profiles.models import GeoPoint
from celestia.domain.profiles.source import InMemoryProfileStore
from celestia.domain.ranking.cache import RankingCache
from celestia.domain.ranking.service import RankingService
from celestia.domain.scoring.engine import ScoringEngine
from celestia.domain.scoring.geo import offset_north
from celestia.domain.scoring.ratings import RatingBook
from celestia.domain.swipes.models import SwipeAction, SwipeDecision
from celestia.domain.swipes.repo import InMemorySwipeRepository

ORIGIN = GeoPoint(lat=45.5048, lon=-73.5772)


class CountingProfileStore(InMemoryProfileStore):
    def __init__(self, profiles=()) -> None:
        super().__init__(profiles)
        self.batch_reads = 0

    async def get_profiles(self, user_ids):
        self.batch_reads += 1
        return await super().get_profiles(user_ids)


def _service(profiles, clock, *, decisions=None, ratings=None):
    return RankingService(
        profiles=profiles,
        engine=ScoringEngine(),
        cache=RankingCache(),
        ratings=ratings or RatingBook(),
        decisions=decisions,
        clock=clock,
        chunk_size=2,
    )


@pytest.fixture
def community(profile_factory):
    return [
        profile_factory("viewer", interests=("a", "b", "c")),
        profile_factory("close", interests=("a", "b", "c"), location=offset_north(ORIGIN, 1.0)),
        profile_factory("mid", interests=("a", "b"), location=offset_north(ORIGIN, 15.0)),
        profile_factory("far", interests=("a",), location=offset_north(ORIGIN, 40.0)),
        profile_factory("away", interests=("a", "b", "c"), location=offset_north(ORIGIN, 80.0)),
    ]


@pytest.mark.asyncio
async def test_ranked_candidates_are_ordered_and_exclude_out_of_range(community, clock):
    service = _service(CountingProfileStore(community), clock)

    ranked = await service.ranked_candidates("viewer")

    assert [item.candidate_id for item in ranked] == ["close", "mid", "far"]
    scores = [item.score for item in ranked]
    assert scores == sorted(scores, reverse=True)
    assert all(item.breakdown is None for item in ranked)


@pytest.mark.asyncio
async def test_breakdown_and_limit(community, clock):
    service = _service(CountingProfileStore(community), clock)

    ranked = await service.ranked_candidates("viewer", limit=2, include_breakdown=True)

    assert len(ranked) == 2
    assert ranked[0].breakdown is not None
    assert ranked[0].breakdown.total == ranked[0].score


@pytest.mark.asyncio
async def test_ties_break_on_candidate_id(profile_factory, clock):
    store = CountingProfileStore(
        [profile_factory("viewer"), profile_factory("zed"), profile_factory("amy"), profile_factory("kim")]
    )
    service = _service(store, clock)

    ranked = await service.ranked_candidates("viewer")

    assert [item.candidate_id for item in ranked] == ["amy", "kim", "zed"]
    assert len({item.score for item in ranked}) == 1


@pytest.mark.asyncio
async def test_missing_viewer_raises_not_found(clock):
    service = _service(CountingProfileStore(), clock)
    with pytest.raises(NotFound):
        await service.ranked_candidates("ghost")


@pytest.mark.asyncio
async def test_explicit_candidate_ids_skip_self_and_unknown(community, clock):
    service = _service(CountingProfileStore(community), clock)

    ranked = await service.ranked_candidates("viewer", ["viewer", "mid", "nobody", "close"])

    assert [item.candidate_id for item in ranked] == ["close", "mid"]


@pytest.mark.asyncio
async def test_decided_targets_are_filtered(community, clock):
    swipes = InMemorySwipeRepository()
    await swipes.upsert(
        SwipeDecision(actor_id="viewer", target_id="close", action=SwipeAction.PASS, created_at=clock.now())
    )
    service = _service(CountingProfileStore(community), clock, decisions=swipes)

    ranked = await service.ranked_candidates("viewer")

    assert "close" not in [item.candidate_id for item in ranked]


@pytest.mark.asyncio
async def test_repeated_reads_hit_the_cache_until_refresh(community, clock):
    store = CountingProfileStore(community)
    service = _service(store, clock)

    first = await service.ranked_candidates("viewer")
    second = await service.ranked_candidates("viewer")
    assert first == second
    assert store.batch_reads == 1

    service.refresh("viewer")
    await service.ranked_candidates("viewer")
    assert store.batch_reads == 2


@pytest.mark.asyncio
async def test_profile_edit_invalidates_and_reorders(community, clock, profile_factory):
    store = CountingProfileStore(community)
    service = _service(store, clock)
    unsubscribe = store.subscribe_edits(service.on_profile_edited)

    before = await service.ranked_candidates("viewer")
    assert before[-1].candidate_id == "far"

    await store.upsert(profile_factory("far", interests=("a", "b", "c"), location=ORIGIN))
    after = await service.ranked_candidates("viewer")

    assert after[0].candidate_id == "far"
    assert store.batch_reads == 2
    unsubscribe()


@pytest.mark.asyncio
async def test_stale_activity_lowers_rank(profile_factory, clock):
    now = clock.now()
    store = CountingProfileStore(
        [
            profile_factory("viewer"),
            profile_factory("idle", last_active_at=now - timedelta(days=14)),
            profile_factory("active", last_active_at=now - timedelta(minutes=5)),
        ]
    )
    service = _service(store, clock)

    ranked = await service.ranked_candidates("viewer")

    assert [item.candidate_id for item in ranked] == ["active", "idle"]
