"""Profile Source collaborator: attribute reads plus edit notifications."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from .models import BehavioralProfile, Profile
from .schemas import BehavioralPayload, ProfilePayload, parse_behavior, parse_profile

logger = logging.getLogger(__name__)

ProfileEditListener = Callable[[str], Awaitable[None]]


class ProfileSource(Protocol):
	async def get_profile(self, user_id: str) -> Optional[Profile]:
		...

	async def get_profiles(self, user_ids: Iterable[str]) -> List[Profile]:
		...

	async def list_candidate_ids(self, viewer_id: str) -> List[str]:
		...

	async def get_behavior(self, user_id: str) -> Optional[BehavioralProfile]:
		...

	def subscribe_edits(self, listener: ProfileEditListener) -> Callable[[], None]:
		...


class InMemoryProfileStore:
	"""Profile source used by tests and local sessions."""

	def __init__(self, profiles: Iterable[Profile] = ()) -> None:
		self._lock = asyncio.Lock()
		self._profiles: Dict[str, Profile] = {profile.user_id: profile for profile in profiles}
		self._behavior: Dict[str, BehavioralProfile] = {}
		self._listeners: List[ProfileEditListener] = []

	async def get_profile(self, user_id: str) -> Optional[Profile]:
		async with self._lock:
			return self._profiles.get(user_id)

	async def get_profiles(self, user_ids: Iterable[str]) -> List[Profile]:
		async with self._lock:
			return [self._profiles[uid] for uid in user_ids if uid in self._profiles]

	async def list_candidate_ids(self, viewer_id: str) -> List[str]:
		async with self._lock:
			return [uid for uid in self._profiles if uid != viewer_id]

	async def get_behavior(self, user_id: str) -> Optional[BehavioralProfile]:
		async with self._lock:
			return self._behavior.get(user_id)

	async def set_behavior(self, user_id: str, behavior: BehavioralProfile) -> None:
		async with self._lock:
			self._behavior[user_id] = behavior

	async def upsert(self, profile: Profile) -> None:
		"""Apply an edit from the profile collaborator and notify listeners."""
		async with self._lock:
			self._profiles[profile.user_id] = profile
		await self._notify(profile.user_id)

	async def apply_edit(self, payload: ProfilePayload | Mapping[str, Any]) -> Profile:
		"""Validate a raw profile document from the editing collaborator, then upsert it."""
		profile = parse_profile(payload)
		await self.upsert(profile)
		return profile

	async def apply_behavior(self, user_id: str, payload: BehavioralPayload | Mapping[str, Any]) -> BehavioralProfile:
		behavior = parse_behavior(payload)
		await self.set_behavior(user_id, behavior)
		return behavior

	async def remove(self, user_id: str) -> None:
		async with self._lock:
			self._profiles.pop(user_id, None)
			self._behavior.pop(user_id, None)
		await self._notify(user_id)

	def subscribe_edits(self, listener: ProfileEditListener) -> Callable[[], None]:
		self._listeners.append(listener)

		def _unsubscribe() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return _unsubscribe

	async def _notify(self, user_id: str) -> None:
		for listener in list(self._listeners):
			try:
				await listener(user_id)
			except Exception:
				logger.exception("profiles.edit_listener_failed", extra={"edited_user": user_id})
