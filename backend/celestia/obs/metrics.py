"""Central registry for Prometheus metrics used across the matching core."""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram

log = logging.getLogger(__name__)


SCORE_DURATION = Histogram(
	"celestia_ranking_score_duration_ms",
	"Time spent scoring one candidate set (milliseconds)",
	buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 2500),
)

RANKING_CANDIDATES = Counter(
	"celestia_ranking_candidates_total",
	"Candidates scored by the ranking service",
)

RANKING_EXCLUDED = Counter(
	"celestia_ranking_candidates_excluded_total",
	"Candidates dropped before scoring",
	["reason"],
)

RANKING_CACHE = Counter(
	"celestia_ranking_cache_total",
	"Ranking cache lookups",
	["tier", "result"],
)

RANKING_CACHE_SIZE = Gauge(
	"celestia_ranking_cache_entries",
	"Entries currently held per ranking cache tier",
	["tier"],
)

SWIPES = Counter(
	"celestia_swipes_total",
	"Swipe decisions processed",
	["action", "result"],
)

MATCHES = Counter(
	"celestia_matches_total",
	"Match creation attempts",
	["result"],
)

MATCH_DEACTIVATIONS = Counter(
	"celestia_match_deactivations_total",
	"Matches deactivated",
	["reason"],
)

QUOTA_CHECKS = Counter(
	"celestia_quota_checks_total",
	"Quota checks by action, deciding source and outcome",
	["action", "source", "result"],
)

QUOTA_FALLBACKS = Counter(
	"celestia_quota_fallbacks_total",
	"Remote quota checks that fell back to local counters",
	["reason"],
)

CHAT_SEND = Counter(
	"celestia_chat_send_total",
	"Outbound chat messages by outcome",
	["result"],
)

CHAT_INBOUND = Counter(
	"celestia_chat_inbound_total",
	"Inbound chat messages handled by the sync engine",
	["source", "result"],
)

CHAT_STALE_CALLBACKS = Counter(
	"celestia_chat_stale_callbacks_total",
	"Live callbacks discarded because their match context was stale",
)

CHAT_READ_BATCHES = Counter(
	"celestia_chat_read_batches_total",
	"Batched read-state updates issued",
)

CHAT_GAP_FILLS = Counter(
	"celestia_chat_gap_fills_total",
	"Backfills triggered by ordering-key gaps on the live tail",
)

OUTBOX_ATTEMPTS = Counter(
	"celestia_outbox_attempts_total",
	"Outbox delivery attempts by outcome",
	["result"],
)

OUTBOX_PENDING = Gauge(
	"celestia_outbox_pending",
	"Outbox entries awaiting delivery",
)

EVENTS_PUBLISHED = Counter(
	"celestia_events_published_total",
	"Domain events handed to the notification dispatcher",
	["kind", "result"],
)

JOB_RUNS = Counter(
	"celestia_job_runs_total",
	"Background job iterations",
	["job", "result"],
)


def inc_ranking_cache(tier: str, result: str) -> None:
	RANKING_CACHE.labels(tier=tier, result=result).inc()


def set_ranking_cache_size(tier: str, size: int) -> None:
	RANKING_CACHE_SIZE.labels(tier=tier).set(size)


def inc_ranking_excluded(reason: str, count: int = 1) -> None:
	if count > 0:
		RANKING_EXCLUDED.labels(reason=reason).inc(count)


def inc_swipe(action: str, result: str) -> None:
	SWIPES.labels(action=action, result=result).inc()


def inc_match(result: str) -> None:
	MATCHES.labels(result=result).inc()


def inc_match_deactivated(reason: str) -> None:
	MATCH_DEACTIVATIONS.labels(reason=reason).inc()


def inc_quota_check(action: str, source: str, result: str) -> None:
	QUOTA_CHECKS.labels(action=action, source=source, result=result).inc()


def inc_quota_fallback(reason: str) -> None:
	QUOTA_FALLBACKS.labels(reason=reason).inc()


def inc_chat_send(result: str) -> None:
	CHAT_SEND.labels(result=result).inc()


def inc_chat_inbound(source: str, result: str) -> None:
	CHAT_INBOUND.labels(source=source, result=result).inc()


def inc_chat_stale_callback() -> None:
	CHAT_STALE_CALLBACKS.inc()


def inc_chat_read_batch() -> None:
	CHAT_READ_BATCHES.inc()


def inc_chat_gap_fill() -> None:
	CHAT_GAP_FILLS.inc()


def inc_outbox_attempt(result: str) -> None:
	OUTBOX_ATTEMPTS.labels(result=result).inc()


def set_outbox_pending(count: int) -> None:
	OUTBOX_PENDING.set(max(0, count))


def inc_event(kind: str, result: str) -> None:
	EVENTS_PUBLISHED.labels(kind=kind, result=result).inc()


def record_job_run(job: str, *, result: str) -> None:
	JOB_RUNS.labels(job=job, result=result).inc()
