"""Tests for per-identity concurrency, rate and quota admission."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from steamdl.errors import AdmissionDenied
from steamdl.jobs.admission import AdmissionController
from steamdl.jobs.models import DenialReason, Limits


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start
        self.mono = 1000.0

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
        self.mono += seconds


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 31, 23, 59, 0, tzinfo=timezone.utc))


@pytest.fixture
def controller(clock):
    return AdmissionController(clock=clock, monotonic=clock.monotonic)


async def test_unbounded_limits_always_admit(controller):
    for _ in range(20):
        await controller.try_acquire("alice", Limits())
    assert controller.in_flight("alice") == 20


async def test_concurrency_limit(controller):
    limits = Limits(max_concurrent=1)
    ticket = await controller.try_acquire("alice", limits)
    with pytest.raises(AdmissionDenied) as exc_info:
        await controller.try_acquire("alice", limits)
    assert exc_info.value.reason is DenialReason.concurrency_exceeded

    await controller.release(ticket)
    await controller.try_acquire("alice", limits)


async def test_identities_are_independent(controller):
    limits = Limits(max_concurrent=1)
    await controller.try_acquire("alice", limits)
    await controller.try_acquire("bob", limits)
    assert controller.in_flight("alice") == 1
    assert controller.in_flight("bob") == 1


async def test_double_release_is_noop(controller):
    ticket_a = await controller.try_acquire("alice", Limits())
    await controller.try_acquire("alice", Limits())
    assert await controller.release(ticket_a) is True
    assert await controller.release(ticket_a) is False
    assert controller.in_flight("alice") == 1


async def test_rate_limit_sliding_window(controller, clock):
    limits = Limits(rate_per_minute=2)
    for _ in range(2):
        await controller.release(await controller.try_acquire("alice", limits))
    with pytest.raises(AdmissionDenied) as exc_info:
        await controller.try_acquire("alice", limits)
    assert exc_info.value.reason is DenialReason.rate_exceeded

    clock.advance(30)
    with pytest.raises(AdmissionDenied):
        await controller.try_acquire("alice", limits)

    clock.advance(31)
    await controller.try_acquire("alice", limits)


async def test_daily_quota_resets_at_utc_midnight(controller, clock):
    limits = Limits(quota_daily=1)
    await controller.release(await controller.try_acquire("alice", limits))
    with pytest.raises(AdmissionDenied) as exc_info:
        await controller.try_acquire("alice", limits)
    assert exc_info.value.reason is DenialReason.quota_daily_exceeded

    clock.advance(120)  # 2026-04-01 00:01 UTC
    await controller.try_acquire("alice", limits)


async def test_monthly_quota(controller, clock):
    clock.now = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)
    limits = Limits(quota_monthly=2)
    await controller.release(await controller.try_acquire("alice", limits))
    clock.advance(3600 * 24)
    await controller.release(await controller.try_acquire("alice", limits))
    clock.advance(3600 * 24)
    with pytest.raises(AdmissionDenied) as exc_info:
        await controller.try_acquire("alice", limits)
    assert exc_info.value.reason is DenialReason.quota_monthly_exceeded


async def test_quota_not_decremented_by_release(controller):
    limits = Limits(quota_daily=2)
    ticket = await controller.try_acquire("alice", limits)
    await controller.release(ticket)
    await controller.release(ticket)
    await controller.try_acquire("alice", limits)
    with pytest.raises(AdmissionDenied):
        await controller.try_acquire("alice", limits)
    assert controller.usage("alice")["today"] == 2


async def test_denied_acquisition_consumes_nothing(controller):
    limits = Limits(max_concurrent=1, quota_daily=5)
    await controller.try_acquire("alice", limits)
    for _ in range(3):
        with pytest.raises(AdmissionDenied):
            await controller.try_acquire("alice", limits)
    usage = controller.usage("alice")
    assert usage == {"in_flight": 1, "last_minute": 1, "today": 1, "this_month": 1}


async def test_concurrent_submissions_respect_limit(controller):
    limits = Limits(max_concurrent=3)

    async def attempt():
        try:
            return await controller.try_acquire("alice", limits)
        except AdmissionDenied:
            return None

    results = await asyncio.gather(*(attempt() for _ in range(10)))
    assert sum(r is not None for r in results) == 3
    assert controller.in_flight("alice") == 3


def test_usage_for_unknown_identity(controller):
    assert controller.usage("nobody")["in_flight"] == 0
