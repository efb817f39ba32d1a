"""Background delivery of queued outbound messages."""

from __future__ import annotations

import logging

from celestia.infra.clock import Clock, SystemClock
from celestia.obs import metrics as obs_metrics

from .queue import OfflineQueue

_LOG = logging.getLogger(__name__)
_JOB_NAME = "outbox-delivery"


class OutboxWorker:
	"""Flushes the offline queue whenever entries become due."""

	def __init__(self, queue: OfflineQueue, *, clock: Clock | None = None, poll_interval: float = 1.0) -> None:
		self.queue = queue
		self.poll_interval = poll_interval
		self._clock = clock or SystemClock()
		self._running = False

	@property
	def running(self) -> bool:
		return self._running

	async def run_forever(self) -> None:
		"""Continuously deliver due entries until :meth:`stop` is called."""
		self._running = True
		while self._running:
			try:
				await self.process_once()
				obs_metrics.record_job_run(_JOB_NAME, result="success")
			except Exception:
				obs_metrics.record_job_run(_JOB_NAME, result="error")
				_LOG.exception("outbox_worker.run_failed")
			await self._clock.sleep(self._sleep_for())

	def stop(self) -> None:
		self._running = False

	async def process_once(self) -> int:
		"""Flush due entries; returns the number delivered."""
		delivered = await self.queue.flush()
		if delivered:
			_LOG.debug("outbox_worker.delivered", extra={"count": len(delivered)})
		return len(delivered)

	def _sleep_for(self) -> float:
		due = self.queue.next_due_at()
		if due is None or not self.queue.online:
			return self.poll_interval
		wait = (due - self._clock.now()).total_seconds()
		return max(0.0, min(self.poll_interval, wait))


__all__ = ["OutboxWorker"]
