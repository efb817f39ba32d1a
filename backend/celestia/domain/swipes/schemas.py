"""Pydantic schemas for swipe input and stored swipe records."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from .models import SwipeAction, SwipeDecision


class SwipeRequest(BaseModel):
	actor_id: str = Field(..., min_length=1)
	target_id: str = Field(..., min_length=1)
	action: SwipeAction

	@model_validator(mode="after")
	def _not_self(self) -> "SwipeRequest":
		if self.actor_id == self.target_id:
			raise ValueError("cannot swipe on yourself")
		return self


class SwipeRecord(BaseModel):
	actor_id: str
	target_id: str
	action: SwipeAction
	created_at: datetime
	active: bool = True

	@classmethod
	def from_model(cls, decision: SwipeDecision) -> "SwipeRecord":
		return cls(
			actor_id=decision.actor_id,
			target_id=decision.target_id,
			action=decision.action,
			created_at=decision.created_at,
			active=decision.active,
		)

	def to_model(self) -> SwipeDecision:
		return SwipeDecision(
			actor_id=self.actor_id,
			target_id=self.target_id,
			action=self.action,
			created_at=self.created_at,
			active=self.active,
		)
