import asyncio
from collections import defaultdict

import pytest

from celestia.domain.common.exceptions import QuotaExceeded, TransientError, ValidationError
from celestia.domain.quota.guard import RateLimitGuard
from celestia.domain.quota.local import LocalQuotaCounter
from celestia.domain.quota.models import DEFAULT_POLICIES, QuotaPolicy, policies_from_settings
from celestia.infra.rate_limit import QuotaWindow, window_start
from celestia.settings import Settings

NOW = 1_767_614_400.0
POLICIES = {
    "swipe": QuotaPolicy(limit=3, window_seconds=86_400, premium_exempt=True),
    "superlike": QuotaPolicy(limit=1, window_seconds=86_400),
    "message": QuotaPolicy(limit=5, window_seconds=3_600),
}


class FakeRemote:
    def __init__(self) -> None:
        self.counts = defaultdict(int)
        self.down = False
        self.delay = 0.0
        self.calls = 0

    async def _maybe_fail(self) -> None:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.down:
            raise TransientError("redis:ConnectionError")

    async def increment(self, kind, actor_id, *, window_seconds, now=None):
        await self._maybe_fail()
        self.counts[(kind, actor_id)] += 1
        return QuotaWindow(self.counts[(kind, actor_id)], window_start(now, window_seconds), window_seconds)

    async def peek(self, kind, actor_id, *, window_seconds, now=None):
        await self._maybe_fail()
        return QuotaWindow(self.counts[(kind, actor_id)], window_start(now, window_seconds), window_seconds)


def _guard(remote=None, **kwargs) -> RateLimitGuard:
    return RateLimitGuard(remote=remote, policies=POLICIES, time_fn=lambda: NOW, **kwargs)


@pytest.mark.asyncio
async def test_remote_enforces_limit():
    guard = _guard(FakeRemote())

    for _ in range(3):
        decision = await guard.enforce("alice", "swipe")
        assert decision.source == "remote"

    with pytest.raises(QuotaExceeded) as excinfo:
        await guard.enforce("alice", "swipe")
    assert excinfo.value.limit == 3
    assert excinfo.value.retry_after > 0


@pytest.mark.asyncio
async def test_outage_falls_back_to_the_same_local_limit():
    remote = FakeRemote()
    remote.down = True
    guard = _guard(remote)

    decisions = [await guard.check("alice", "swipe") for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert {d.source for d in decisions} == {"local"}
    assert decisions[-1].limit == POLICIES["swipe"].limit


@pytest.mark.asyncio
async def test_fallback_continues_from_last_server_count():
    remote = FakeRemote()
    guard = _guard(remote)
    await guard.enforce("alice", "swipe")
    await guard.enforce("alice", "swipe")

    remote.down = True
    third = await guard.check("alice", "swipe")
    fourth = await guard.check("alice", "swipe")

    assert third.allowed and third.source == "local" and third.used == 3
    assert not fourth.allowed


@pytest.mark.asyncio
async def test_slow_remote_times_out_to_local():
    remote = FakeRemote()
    remote.delay = 0.5
    guard = _guard(remote, timeout_seconds=0.01)

    decision = await guard.check("alice", "message")

    assert decision.allowed
    assert decision.source == "local"


@pytest.mark.asyncio
async def test_reconcile_pulls_server_counts_into_local_mirror():
    remote = FakeRemote()
    remote.counts[("message", "alice")] = 4
    guard = _guard(remote)

    synced = await guard.reconcile("alice", ["message"])
    assert synced == {"message": 4}

    remote.down = True
    assert await guard.remaining("alice", "message") == 1
    assert (await guard.check("alice", "message")).allowed
    assert not (await guard.check("alice", "message")).allowed


@pytest.mark.asyncio
async def test_reconcile_skips_actions_while_remote_is_down():
    remote = FakeRemote()
    remote.down = True
    guard = _guard(remote)

    assert await guard.reconcile("alice") == {}


@pytest.mark.asyncio
async def test_premium_exemption_only_applies_to_exempt_actions():
    remote = FakeRemote()
    guard = _guard(remote)

    for _ in range(10):
        decision = await guard.enforce("vip", "swipe", premium=True)
        assert decision.source == "exempt"
    assert remote.calls == 0

    await guard.enforce("vip", "superlike", premium=True)
    with pytest.raises(QuotaExceeded):
        await guard.enforce("vip", "superlike", premium=True)


@pytest.mark.asyncio
async def test_unknown_action_is_rejected():
    guard = _guard()
    with pytest.raises(ValidationError):
        await guard.check("alice", "poke")


def test_local_counter_resets_each_window():
    counter = LocalQuotaCounter()
    first = counter.increment("alice", "message", now=NOW, window_seconds=3_600)
    counter.increment("alice", "message", now=NOW + 10, window_seconds=3_600)
    next_window = counter.increment("alice", "message", now=NOW + 3_600, window_seconds=3_600)

    assert first.count == 1
    assert next_window.count == 1
    assert next_window.window_start == first.window_start + 3_600


def test_default_policies_match_settings():
    assert policies_from_settings(Settings()) == DEFAULT_POLICIES
