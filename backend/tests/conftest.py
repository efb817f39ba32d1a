import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from celestia.domain.common.exceptions import TransientError
from celestia.domain.profiles.models import EngagementCounters, GeoPoint, Profile

BASE_TIME = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
CAMPUS = GeoPoint(lat=45.5048, lon=-73.5772)


class ManualClock:
	"""Clock whose time only moves when a test (or a backoff sleep) advances it."""

	def __init__(self, start: datetime = BASE_TIME) -> None:
		self.current = start
		self.sleeps: List[float] = []

	def now(self) -> datetime:
		return self.current

	def advance(self, seconds: float) -> None:
		self.current = self.current + timedelta(seconds=seconds)

	async def sleep(self, seconds: float) -> None:
		self.sleeps.append(seconds)
		self.advance(max(0.0, seconds))
		await asyncio.sleep(0)


class RecordingDispatcher:
	def __init__(self, failures: int = 0) -> None:
		self.failures = failures
		self.events: list = []

	async def dispatch(self, event) -> None:
		if self.failures > 0:
			self.failures -= 1
			raise TransientError("push_unavailable")
		self.events.append(event)

	def kinds(self) -> List[str]:
		return [event.kind for event in self.events]


def build_profile(
	user_id: str,
	*,
	interests: Iterable[str] = ("hiking", "jazz"),
	location: GeoPoint | None = CAMPUS,
	last_active_at: datetime = BASE_TIME,
	**overrides,
) -> Profile:
	overrides.setdefault("completeness", 0.8)
	overrides.setdefault("engagement", EngagementCounters(views=10, likes_received=5, response_rate=0.5, photo_count=3))
	return Profile(
		user_id=user_id,
		interests=frozenset(interests),
		location=location,
		last_active_at=last_active_at,
		**overrides,
	)


async def settle(rounds: int = 25) -> None:
	"""Let background tasks run until they block again."""
	for _ in range(rounds):
		await asyncio.sleep(0)


@pytest.fixture
def clock() -> ManualClock:
	return ManualClock()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
	return RecordingDispatcher()


@pytest.fixture
def profile_factory():
	return build_profile


@pytest.fixture
def settle_tasks():
	return settle


@pytest_asyncio.fixture
async def fake_redis():
	client = FakeRedis(decode_responses=True)
	try:
		yield client
	finally:
		await client.flushall()
