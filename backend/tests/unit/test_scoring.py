import math
from datetime import timedelta

import pytest

from celestia.domain.profiles.models import BehavioralProfile, EngagementCounters, GeoPoint, VerificationFlags
from celestia.domain.scoring.engine import (
    ScoringEngine,
    behavioral_fit,
    interest_similarity,
    jaccard,
    proximity_score,
    recency_score,
)
from celestia.domain.scoring.geo import haversine_km, offset_north
from celestia.domain.scoring.models import ScoringConfig
from celestia.domain.scoring.ratings import DEFAULT_RATING, RatingBook, elo_update

ORIGIN = GeoPoint(lat=45.5048, lon=-73.5772)


def test_weights_sum_to_one():
    weights = ScoringConfig().weights.as_dict()
    assert sum(weights.values()) == pytest.approx(1.0)


def test_jaccard_bounds():
    tags = frozenset({"climbing", "jazz", "sushi"})
    assert jaccard(tags, tags) == 1.0
    assert jaccard(tags, frozenset({"chess"})) == 0.0
    assert jaccard(frozenset(), frozenset()) == 0.0


def test_interest_similarity_caps_at_one_and_is_zero_without_overlap():
    config = ScoringConfig()
    tags = frozenset({"a", "b", "c"})
    assert interest_similarity(tags, tags, config) == 1.0
    assert interest_similarity(tags, frozenset({"x", "y"}), config) == 0.0
    partial = interest_similarity(tags, frozenset({"a", "x"}), config)
    assert jaccard(tags, frozenset({"a", "x"})) < partial < 1.0


def test_proximity_decays_to_e_minus_three_at_max_distance():
    config = ScoringConfig(max_distance_km=50.0)
    assert proximity_score(0.0, config) == pytest.approx(1.0)
    assert proximity_score(50.0, config) == pytest.approx(math.exp(-3))
    assert proximity_score(None, config) == config.neutral
    assert proximity_score(5.0, config) > proximity_score(25.0, config)


def test_offset_north_matches_haversine():
    point = offset_north(ORIGIN, 12.5)
    assert haversine_km(ORIGIN, point) == pytest.approx(12.5, rel=1e-6)


def test_recency_buckets(profile_factory):
    now = profile_factory("x").last_active_at
    assert recency_score(now - timedelta(minutes=30), now) == 1.0
    assert recency_score(now - timedelta(hours=3), now) == 0.8
    assert recency_score(now - timedelta(days=2), now) == 0.4
    assert recency_score(now - timedelta(days=10), now) == 0.1


def test_total_stays_within_bounds(profile_factory):
    engine = ScoringEngine()
    viewer = profile_factory("viewer", interests=("a", "b"))
    best = profile_factory(
        "best",
        interests=("a", "b"),
        completeness=1.0,
        verification=VerificationFlags(photo_verified=True, id_verified=True),
        engagement=EngagementCounters(views=10, likes_received=10, response_rate=1.0, photo_count=6, photo_quality=1.0),
    )
    worst = profile_factory(
        "worst",
        interests=("z",),
        location=offset_north(ORIGIN, 49.0),
        last_active_at=viewer.last_active_at - timedelta(days=30),
        completeness=0.0,
        engagement=EngagementCounters(views=100, likes_received=0, response_rate=0.0, photo_count=0),
    )
    now = viewer.last_active_at
    top = engine.score(viewer, best, rating=2000.0, now=now)
    bottom = engine.score(viewer, worst, rating=0.0, now=now)
    assert 0.0 <= bottom.total < top.total <= 100.0
    for value in (*top.components().values(), *bottom.components().values()):
        assert 0.0 <= value <= 1.0


def test_closer_candidate_with_more_shared_interests_ranks_higher(profile_factory):
    engine = ScoringEngine(ScoringConfig(max_distance_km=50.0))
    viewer = profile_factory("viewer", interests=("a", "b", "c", "d", "e"))
    near = profile_factory("A", interests=("a", "b", "c"), location=offset_north(ORIGIN, 5.0))
    far = profile_factory("B", interests=("a", "w", "x", "y"), location=offset_north(ORIGIN, 48.0))
    now = viewer.last_active_at

    near_score = engine.score(viewer, near, now=now)
    far_score = engine.score(viewer, far, now=now)

    assert jaccard(viewer.interests, near.interests) == pytest.approx(3 / 5)
    assert jaccard(viewer.interests, far.interests) == pytest.approx(1 / 8)
    assert near_score.distance_km == pytest.approx(5.0, rel=1e-3)
    assert near_score.total > far_score.total


def test_score_is_monotonic_in_distance(profile_factory):
    engine = ScoringEngine()
    viewer = profile_factory("viewer")
    now = viewer.last_active_at
    totals = [
        engine.score(viewer, profile_factory("c", location=offset_north(ORIGIN, km)), now=now).total
        for km in (0.0, 10.0, 20.0, 40.0)
    ]
    assert totals == sorted(totals, reverse=True)


def _non_decreasing(values):
    return all(earlier <= later for earlier, later in zip(values, values[1:]))


def test_score_never_drops_when_one_factor_improves(profile_factory):
    engine = ScoringEngine()
    viewer = profile_factory("viewer", interests=("a", "b", "c", "d"))
    now = viewer.last_active_at

    def total(candidate, *, rating=DEFAULT_RATING, behavior=None):
        return engine.score(viewer, candidate, behavior, rating=rating, now=now).total

    by_interest = [
        total(profile_factory("c", interests=("a", "b", "c", "d")[:shared] + ("w", "x", "y", "z")[shared:]))
        for shared in range(5)
    ]
    by_activity = [
        total(profile_factory("c", last_active_at=now - timedelta(hours=hours)))
        for hours in (500, 100, 48, 12, 3, 0.5)
    ]
    by_rating = [total(profile_factory("c"), rating=rating) for rating in (800.0, 1000.0, 1200.0, 1600.0)]
    by_like_ratio = [
        total(profile_factory("c", engagement=EngagementCounters(views=10, likes_received=likes, photo_count=3)))
        for likes in (0, 2, 5, 10)
    ]
    night_owl = BehavioralProfile(active_hours=frozenset({20, 21, 22, 23}))
    by_fit = [
        total(profile_factory("c", active_hours=frozenset(hours)), behavior=night_owl)
        for hours in ({9}, {20}, {20, 21}, {20, 21, 22}, {20, 21, 22, 23})
    ]

    for totals in (by_interest, by_activity, by_rating, by_like_ratio, by_fit):
        assert _non_decreasing(totals)
        assert totals[0] < totals[-1]

def test_within_range_excludes_far_candidates_but_keeps_unknown_location(profile_factory):
    engine = ScoringEngine(ScoringConfig(max_distance_km=50.0))
    viewer = profile_factory("viewer")
    assert engine.within_range(viewer, profile_factory("near", location=offset_north(ORIGIN, 49.0)))
    assert not engine.within_range(viewer, profile_factory("far", location=offset_north(ORIGIN, 60.0)))
    assert engine.within_range(viewer, profile_factory("nowhere", location=None))


def test_missing_location_scores_neutral_proximity(profile_factory):
    engine = ScoringEngine()
    viewer = profile_factory("viewer")
    breakdown = engine.score(viewer, profile_factory("c", location=None), now=viewer.last_active_at)
    assert breakdown.distance_km is None
    assert breakdown.proximity == 0.5


def test_behavioral_fit_uses_available_signals(profile_factory):
    config = ScoringConfig()
    candidate = profile_factory("c", age=24, has_bio=True)
    assert behavioral_fit(None, candidate, config) == config.neutral
    assert behavioral_fit(BehavioralProfile(), candidate, config) == config.neutral
    assert behavioral_fit(BehavioralProfile(age_range=(21, 26), prefers_bio=True), candidate, config) == 1.0
    assert behavioral_fit(BehavioralProfile(age_range=(30, 35)), candidate, config) == 0.0


def test_elo_update_is_zero_sum():
    winner, loser = elo_update(1200.0, 1200.0, 1.0)
    assert winner == pytest.approx(1216.0)
    assert winner + loser == pytest.approx(2400.0)


def test_rating_book_rewards_liked_targets():
    book = RatingBook()
    change = book.record_outcome("viewer", "liked", liked=True)
    assert change.before == DEFAULT_RATING
    assert change.after > DEFAULT_RATING
    book.record_outcome("viewer", "passed", liked=False)
    assert book.rating("passed") < DEFAULT_RATING
    assert set(book.snapshot()) == {"viewer", "liked", "passed"}
