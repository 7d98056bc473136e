"""Scrape backoff: cooldown and phone_only suppression for failing suppliers.

Rules:
- 2 consecutive failures -> 7 day cooldown
- 3 failures within 30 days -> phone_only (takes priority over cooldown)
- phone_only suppliers are retried after the monthly reset (1st of month)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .db import SupplierDatabase

from .clock import Clock, SystemClock
from .models import Source, SourceStatus

logger = logging.getLogger(__name__)

COOLDOWN_DAYS = 7
MAX_CONSECUTIVE_FAILURES = 2
MAX_FAILURES_IN_30_DAYS = 3
FAILURE_WINDOW = timedelta(days=30)


class BackoffAction(str, Enum):
    NONE = "none"
    COOLDOWN = "cooldown"
    PHONE_ONLY = "phone_only"


@dataclass(frozen=True)
class ScrapeDecision:
    allow: bool
    reason: str | None = None


@dataclass(frozen=True)
class FailureResult:
    action: BackoffAction
    consecutive_failures: int
    failures_last_30_days: int


def should_scrape(source: Source, now: datetime) -> ScrapeDecision:
    """Decide whether a supplier may be scraped right now."""
    if source.status == SourceStatus.PHONE_ONLY:
        return ScrapeDecision(False, "phone_only - blocked too often")

    if source.status == SourceStatus.COOLDOWN and source.cooldown_until is not None:
        if now < source.cooldown_until:
            days_left = math.ceil((source.cooldown_until - now) / timedelta(days=1))
            return ScrapeDecision(False, f"cooldown - {days_left}d remaining")
        # Cooldown expired

    return ScrapeDecision(True)


def success_fields(source: Source) -> dict:
    """Backoff fields to write after a successful scrape."""
    fields = {"consecutive_failures": 0, "cooldown_until": None}
    # phone_only is only lifted by the monthly reset or a manual override
    if source.status != SourceStatus.PHONE_ONLY:
        fields["status"] = SourceStatus.ACTIVE
    return fields


def failure_fields(source: Source, now: datetime) -> tuple[dict, FailureResult]:
    """Backoff fields to write after a failed scrape, and the resulting action."""
    consecutive = source.consecutive_failures + 1

    cutoff = now - FAILURE_WINDOW
    timestamps = [ts for ts in [*source.failure_timestamps, now] if ts > cutoff]
    timestamps.sort()

    fields = {
        "consecutive_failures": consecutive,
        "failure_timestamps": timestamps,
        "last_failure_at": now,
    }

    if len(timestamps) >= MAX_FAILURES_IN_30_DAYS:
        action = BackoffAction.PHONE_ONLY
        fields["status"] = SourceStatus.PHONE_ONLY
        fields["cooldown_until"] = None
    elif consecutive >= MAX_CONSECUTIVE_FAILURES:
        action = BackoffAction.COOLDOWN
        fields["status"] = SourceStatus.COOLDOWN
        fields["cooldown_until"] = now + timedelta(days=COOLDOWN_DAYS)
    else:
        action = BackoffAction.NONE

    return fields, FailureResult(action, consecutive, len(timestamps))


class BackoffManager:
    """Applies the backoff policy to suppliers in the database."""

    def __init__(self, db: SupplierDatabase, clock: Clock | None = None):
        self.db = db
        self.clock = clock or SystemClock()
        self._last_reset_month: tuple[int, int] | None = None

    def should_scrape(self, source: Source) -> ScrapeDecision:
        return should_scrape(source, self.clock.now())

    def record_success(self, source_id: str) -> Source | None:
        """Reset failure counters after a successful scrape."""
        return self.db.modify_source_backoff(source_id, success_fields)

    def record_failure(self, source_id: str) -> FailureResult:
        """Count a failure and escalate to cooldown or phone_only if needed."""
        now = self.clock.now()
        results: list[FailureResult] = []

        def mutate(source: Source) -> dict:
            fields, result = failure_fields(source, now)
            results.append(result)
            return fields

        updated = self.db.modify_source_backoff(source_id, mutate)
        if updated is None:
            logger.warning(f"Cannot record failure: supplier {source_id} not found")
            return FailureResult(BackoffAction.NONE, 0, 0)

        result = results[-1]
        if result.action == BackoffAction.PHONE_ONLY:
            logger.warning(
                f"{updated.name} marked as PHONE_ONLY "
                f"({result.failures_last_30_days} failures in 30 days)"
            )
        elif result.action == BackoffAction.COOLDOWN:
            logger.warning(
                f"{updated.name} entering {COOLDOWN_DAYS}-day cooldown "
                f"({result.consecutive_failures} consecutive failures)"
            )
        return result

    def monthly_reset(self) -> int:
        """Move every phone_only supplier back to active. Returns the count."""
        names = self.db.reset_phone_only_sources()
        if names:
            logger.info(f"Monthly reset: {len(names)} phone_only suppliers reset to active")
            for name in names:
                logger.info(f"   - {name}")
        return len(names)

    def run_monthly_reset_if_due(self) -> int | None:
        """Run the monthly reset once, on the first day of the month.

        Returns:
            Number of suppliers reset, or None if no reset is due
        """
        now = self.clock.now()
        month = (now.year, now.month)
        if now.day != 1 or self._last_reset_month == month:
            return None
        self._last_reset_month = month
        return self.monthly_reset()

    def get_backoff_stats(self) -> dict:
        """Supplier counts per scrape status."""
        return self.db.get_backoff_counts()
