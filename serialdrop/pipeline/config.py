"""Configuration for the ingestion and delivery pipeline.

This module defines configuration dataclasses for pipeline execution,
including politeness settings that control per-domain rate budgets.
"""

from __future__ import annotations

import os
import socket
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from serialdrop.config import ProjectConfig


@dataclass(frozen=True)
class RateBudget:
    """Token bucket parameters for one registrable domain.

    Attributes:
        rate: Tokens added per second (steady-state requests per second).
        burst: Bucket capacity, the number of requests allowed back to back.
    """

    rate: float = 0.5
    burst: int = 3

    def __post_init__(self) -> None:
        if self.rate <= 0:
            raise ValueError(f"Invalid rate: {self.rate}. Must be positive")
        if self.burst < 1:
            raise ValueError(f"Invalid burst: {self.burst}. Must be at least 1")


@dataclass(frozen=True)
class PipelinePoliteness:
    """Rate limiting and politeness configuration.

    Attributes:
        default_budget: Budget applied to every domain without an override.
        domain_budgets: Per-domain overrides keyed by registrable domain.
        request_timeout_seconds: Bound on every source fetch.
        user_agent: User agent sent with every source fetch.
    """

    default_budget: RateBudget = field(default_factory=RateBudget)
    domain_budgets: Mapping[str, RateBudget] = field(default_factory=dict)
    request_timeout_seconds: float = 30.0
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/131.0.0.0 Safari/537.36"
    )

    def budget_for(self, domain: str) -> RateBudget:
        """Get the budget for a domain, falling back to the default."""
        return self.domain_budgets.get(domain, self.default_budget)


@dataclass
class PipelineConfig:
    """Configuration for the poll and delivery loops.

    Attributes:
        politeness: Rate limiting and fetch settings.
        poll_interval: Time between poll cycles.
        delivery_interval: Time between delivery cycles.
        backoff_base: First backoff applied after a failed poll.
        backoff_max: Cap on the poll backoff.
        lease_ttl: Lifetime of a book ingestion lease before others may take it.
        claim_ttl: Lifetime of a subscription claim before others may take it.
        verification_window: How long an e-mail verification code stays valid.
        failure_alert_threshold: Consecutive delivery failures that escalate
            the log level from WARNING to ERROR.
        max_concurrent_deliveries: Subscriptions processed at once per cycle.
        conversion_timeout_seconds: Bound on one converter run.
        transport_timeout_seconds: Bound on one e-mail or push send.
        bucket: Bucket recorded in object store pointers.
    """

    politeness: PipelinePoliteness = field(default_factory=PipelinePoliteness)
    poll_interval: timedelta = field(default_factory=lambda: timedelta(minutes=5))
    delivery_interval: timedelta = field(default_factory=lambda: timedelta(seconds=5))
    backoff_base: timedelta = field(default_factory=lambda: timedelta(minutes=5))
    backoff_max: timedelta = field(default_factory=lambda: timedelta(hours=6))
    lease_ttl: timedelta = field(default_factory=lambda: timedelta(minutes=10))
    claim_ttl: timedelta = field(default_factory=lambda: timedelta(minutes=10))
    verification_window: timedelta = field(default_factory=lambda: timedelta(minutes=5))
    failure_alert_threshold: int = 3
    max_concurrent_deliveries: int = 4
    conversion_timeout_seconds: float = 120.0
    transport_timeout_seconds: float = 30.0
    bucket: str = "serialdrop"

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.poll_interval <= timedelta(0):
            raise ValueError("poll_interval must be positive")
        if self.delivery_interval <= timedelta(0):
            raise ValueError("delivery_interval must be positive")
        if self.backoff_max < self.backoff_base:
            raise ValueError("backoff_max must not be shorter than backoff_base")
        if self.max_concurrent_deliveries < 1:
            raise ValueError("max_concurrent_deliveries must be at least 1")

    @classmethod
    def from_project_config(cls, project: "ProjectConfig") -> "PipelineConfig":
        """Build a pipeline configuration from project settings.

        Recognized keys (all optional): ``poll_interval_seconds``,
        ``delivery_interval_seconds``, ``backoff_base_seconds``,
        ``backoff_max_seconds``, ``request_timeout_seconds``,
        ``default_rate``, ``default_burst`` and ``domain_budgets`` (a mapping
        of domain to ``{"rate": ..., "burst": ...}``).
        """
        default_budget = RateBudget(
            rate=float(project.get("default_rate", RateBudget.rate)),
            burst=int(project.get("default_burst", RateBudget.burst)),
        )
        domain_budgets = {
            domain: RateBudget(
                rate=float(values.get("rate", default_budget.rate)),
                burst=int(values.get("burst", default_budget.burst)),
            )
            for domain, values in _as_mapping(project.get("domain_budgets", {})).items()
        }
        politeness = PipelinePoliteness(
            default_budget=default_budget,
            domain_budgets=domain_budgets,
            request_timeout_seconds=float(project.get("request_timeout_seconds", 30.0)),
        )
        return cls(
            politeness=politeness,
            poll_interval=_seconds(project.get("poll_interval_seconds"), timedelta(minutes=5)),
            delivery_interval=_seconds(project.get("delivery_interval_seconds"), timedelta(seconds=5)),
            backoff_base=_seconds(project.get("backoff_base_seconds"), timedelta(minutes=5)),
            backoff_max=_seconds(project.get("backoff_max_seconds"), timedelta(hours=6)),
            bucket=project.bucket,
        )


def _seconds(value: Any, default: timedelta) -> timedelta:
    if value is None:
        return default
    return timedelta(seconds=float(value))


def _as_mapping(value: Any) -> Mapping[str, Any]:
    if isinstance(value, str):
        import json

        return json.loads(value)
    return value or {}


def calculate_backoff_interval(
    failures: int,
    base_interval: timedelta = timedelta(minutes=5),
    max_interval: timedelta = timedelta(hours=6),
) -> timedelta:
    """Calculate the wait before polling a failing source again.

    Uses exponential backoff with a maximum cap.

    Args:
        failures: Number of consecutive failures.
        base_interval: Backoff after the first failure.
        max_interval: Maximum backoff interval.

    Returns:
        timedelta: How long to wait before the next attempt.
    """
    if failures <= 0:
        return timedelta(0)

    # Cap the exponent; max_interval provides the actual cap
    capped_failures = min(failures - 1, 20)
    backoff = base_interval * (2 ** capped_failures)

    return min(backoff, max_interval)


def default_worker_id() -> str:
    """Identity recorded on leases and claims taken by this process."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
