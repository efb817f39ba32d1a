from datetime import datetime, timezone

import pytest

from celestia.domain.common.exceptions import ValidationError
from celestia.domain.profiles.models import GeoPoint
from celestia.domain.profiles.source import InMemoryProfileStore


def _document(**overrides):
    document = {
        "user_id": "dana",
        "interests": "Jazz, hiking ,",
        "location": {"lat": 45.5048, "lon": -73.5772},
        "last_active_at": "2026-01-05T12:00:00",
        "completeness": 0.9,
        "photo_verified": True,
        "engagement": {"views": 40, "likes_received": 12, "response_rate": 0.6, "photo_count": 4},
        "age": 24,
        "bio": "  trail runner  ",
        "active_hours": [20, 21],
    }
    document.update(overrides)
    return document


@pytest.mark.asyncio
async def test_profile_edit_is_validated_and_converted_once():
    store = InMemoryProfileStore()
    edited = []

    async def listener(user_id):
        edited.append(user_id)

    store.subscribe_edits(listener)
    profile = await store.apply_edit(_document())

    assert profile.interests == frozenset({"jazz", "hiking"})
    assert profile.location == GeoPoint(lat=45.5048, lon=-73.5772)
    assert profile.last_active_at == datetime(2026, 1, 5, 12, tzinfo=timezone.utc)
    assert profile.has_bio
    assert profile.verification.any
    assert profile.engagement.likes_received == 12
    assert await store.get_profile("dana") == profile
    assert edited == ["dana"]


@pytest.mark.asyncio
async def test_malformed_profile_edit_is_rejected_without_touching_the_store():
    store = InMemoryProfileStore()

    with pytest.raises(ValidationError):
        await store.apply_edit(_document(location={"lat": 123.0, "lon": 0.0}))
    with pytest.raises(ValidationError):
        await store.apply_edit(_document(active_hours=[25]))

    assert await store.get_profile("dana") is None


@pytest.mark.asyncio
async def test_behavior_payload_orders_the_age_range():
    store = InMemoryProfileStore()

    behavior = await store.apply_behavior("dana", {"age_min": 30, "age_max": 25, "active_hours": [22]})

    assert behavior.age_range == (25, 30)
    assert behavior.active_hours == frozenset({22})
    assert await store.get_behavior("dana") == behavior
    with pytest.raises(ValidationError):
        await store.apply_behavior("dana", {"min_photos": -1})
