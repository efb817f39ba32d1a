"""Identity collaborator interface.

Authentication itself happens outside the core; the session only needs to
know who the current user is.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	display_name: Optional[str] = None
	session_id: Optional[str] = None
	is_premium: bool = False


class IdentityProvider(Protocol):
	async def current_user(self) -> AuthenticatedUser:
		...


class StaticIdentity:
	"""Identity provider for a session that is already authenticated."""

	def __init__(self, user: AuthenticatedUser) -> None:
		self._user = user

	async def current_user(self) -> AuthenticatedUser:
		return self._user
