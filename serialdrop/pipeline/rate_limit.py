"""Per-domain request budgets for polite polling.

Every outbound request to a source domain first acquires a permit from the
:class:`DomainRateLimiter`. Each registrable domain has an independent token
bucket, so a slow or heavily used domain never delays requests to another.

Usage:
    limiter = DomainRateLimiter(politeness)
    permit = await limiter.permit_for_url("https://www.royalroad.com/fiction/1")
    response = await client.get(...)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from serialdrop.parsing.urls import registrable_domain

from .config import PipelinePoliteness, RateBudget

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class DomainPermit:
    """Proof that a request to ``domain`` was admitted at ``granted_at``.

    ``granted_at`` is a reading of the limiter's clock (monotonic seconds).
    """

    domain: str
    granted_at: float


class TokenBucket:
    """Token bucket holding at most ``budget.burst`` tokens, refilled at ``budget.rate`` per second.

    Waiters on the same bucket are admitted one at a time in lock order.
    """

    def __init__(self, budget: RateBudget, clock: Clock, sleep: Sleep) -> None:
        self.budget = budget
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(budget.burst)
        self._updated_at = clock()
        self._lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        elapsed = max(now - self._updated_at, 0.0)
        self._tokens = min(float(self.budget.burst), self._tokens + elapsed * self.budget.rate)
        self._updated_at = now

    async def take(self) -> float:
        """Wait for a token and consume it. Returns the clock reading at admission."""
        async with self._lock:
            while True:
                now = self._clock()
                self._refill(now)
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return now
                await self._sleep((1.0 - self._tokens) / self.budget.rate)


class DomainRateLimiter:
    """Admits requests per registrable domain according to its budget.

    Buckets are created on first use and kept for the lifetime of the limiter.
    The clock and sleep functions are injectable for tests.
    """

    def __init__(
        self,
        politeness: PipelinePoliteness | None = None,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.politeness = politeness or PipelinePoliteness()
        self._clock = clock
        self._sleep = sleep
        self._buckets: dict[str, TokenBucket] = {}

    def bucket_for(self, domain: str) -> TokenBucket:
        # No await between lookup and insert, so concurrent tasks share one bucket
        bucket = self._buckets.get(domain)
        if bucket is None:
            bucket = TokenBucket(self.politeness.budget_for(domain), self._clock, self._sleep)
            self._buckets[domain] = bucket
        return bucket

    async def acquire(self, domain: str) -> DomainPermit:
        """Suspend until ``domain`` has budget for one request."""
        domain = domain.lower()
        bucket = self.bucket_for(domain)
        requested_at = self._clock()
        granted_at = await bucket.take()
        waited = granted_at - requested_at
        if waited > 0:
            logger.debug("Rate limit delayed %s by %.2fs", domain, waited)
        return DomainPermit(domain=domain, granted_at=granted_at)

    async def permit_for_url(self, url: str) -> DomainPermit:
        """Acquire a permit for the registrable domain of ``url``."""
        return await self.acquire(registrable_domain(url))

    @property
    def domains(self) -> list[str]:
        """Domains with a bucket, in creation order."""
        return list(self._buckets)


__all__ = ["DomainPermit", "DomainRateLimiter", "TokenBucket"]
