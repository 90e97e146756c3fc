"""Per-identity concurrency, rate and quota admission."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Optional

from ..errors import AdmissionDenied
from .models import DenialReason, Limits

logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 60.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AdmissionTicket:
    """Proof that one job of *identity_id* was admitted. Released exactly once."""

    identity_id: str
    limits: Limits
    acquired_at: datetime
    ticket_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class _IdentityCounters:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    in_flight: int = 0
    recent: Deque[float] = field(default_factory=deque)
    day_key: str = ""
    day_count: int = 0
    month_key: str = ""
    month_count: int = 0
    live_tickets: set = field(default_factory=set)


class AdmissionController:
    """Decides whether an identity may start another job right now.

    Quota windows roll over at the UTC day and month boundary.  Rate limiting
    is a sliding 60 s window over acquisition instants.  Quotas count
    admissions and are never decremented by ``release``.

    Parameters
    ----------
    clock : callable returning an aware UTC ``datetime`` (quota windows).
    monotonic : callable returning seconds (rate window).
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._monotonic = monotonic
        self._identities: Dict[str, _IdentityCounters] = {}

    def _counters(self, identity_id: str) -> _IdentityCounters:
        counters = self._identities.get(identity_id)
        if counters is None:
            counters = self._identities[identity_id] = _IdentityCounters()
        return counters

    async def try_acquire(self, identity_id: str, limits: Limits) -> AdmissionTicket:
        """Admit one job or raise ``AdmissionDenied``.

        Checks run in order: concurrency, rate, daily quota, monthly quota.
        """
        counters = self._counters(identity_id)
        async with counters.lock:
            now = self._clock()
            mono = self._monotonic()
            self._roll_windows(counters, now, mono)

            reason = self._check(counters, limits)
            if reason is not None:
                logger.info("Admission denied for %s: %s", identity_id, reason.value)
                raise AdmissionDenied(reason)

            counters.in_flight += 1
            counters.recent.append(mono)
            counters.day_count += 1
            counters.month_count += 1
            ticket = AdmissionTicket(identity_id=identity_id, limits=limits, acquired_at=now)
            counters.live_tickets.add(ticket.ticket_id)
            logger.debug(
                "Admitted %s (in_flight=%d, day=%d, month=%d)",
                identity_id, counters.in_flight, counters.day_count, counters.month_count,
            )
            return ticket

    async def release(self, ticket: AdmissionTicket) -> bool:
        """Return the concurrency slot held by *ticket*.

        Idempotent: releasing an already-released ticket is a no-op and
        returns ``False``.
        """
        counters = self._counters(ticket.identity_id)
        async with counters.lock:
            if ticket.ticket_id not in counters.live_tickets:
                return False
            counters.live_tickets.discard(ticket.ticket_id)
            counters.in_flight = max(0, counters.in_flight - 1)
            return True

    def in_flight(self, identity_id: str) -> int:
        counters = self._identities.get(identity_id)
        return counters.in_flight if counters else 0

    def usage(self, identity_id: str) -> Dict[str, int]:
        """Snapshot of the identity's counters in the current windows."""
        counters = self._identities.get(identity_id)
        if counters is None:
            return {"in_flight": 0, "last_minute": 0, "today": 0, "this_month": 0}
        self._roll_windows(counters, self._clock(), self._monotonic())
        return {
            "in_flight": counters.in_flight,
            "last_minute": len(counters.recent),
            "today": counters.day_count,
            "this_month": counters.month_count,
        }

    @staticmethod
    def _check(counters: _IdentityCounters, limits: Limits) -> Optional[DenialReason]:
        if limits.max_concurrent is not None and counters.in_flight >= limits.max_concurrent:
            return DenialReason.concurrency_exceeded
        if limits.rate_per_minute is not None and len(counters.recent) >= limits.rate_per_minute:
            return DenialReason.rate_exceeded
        if limits.quota_daily is not None and counters.day_count >= limits.quota_daily:
            return DenialReason.quota_daily_exceeded
        if limits.quota_monthly is not None and counters.month_count >= limits.quota_monthly:
            return DenialReason.quota_monthly_exceeded
        return None

    @staticmethod
    def _roll_windows(counters: _IdentityCounters, now: datetime, mono: float) -> None:
        utc = now.astimezone(timezone.utc)
        day_key = utc.strftime("%Y-%m-%d")
        month_key = utc.strftime("%Y-%m")
        if counters.day_key != day_key:
            counters.day_key = day_key
            counters.day_count = 0
        if counters.month_key != month_key:
            counters.month_key = month_key
            counters.month_count = 0
        cutoff = mono - RATE_WINDOW_SECONDS
        while counters.recent and counters.recent[0] <= cutoff:
            counters.recent.popleft()
