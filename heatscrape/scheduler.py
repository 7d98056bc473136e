"""Distributed scheduler: spreads supplier scrapes across a daily window.

Each supplier gets a stable offset inside the window (hash of its ID) plus a
fresh random jitter every time it is scheduled. A single ticker checks for
due suppliers every ``check_interval_seconds`` and fires them as independent
tasks, so one slow supplier never delays another.

In shadow mode nothing is fetched: firings are only logged and counted per
hour so the time distribution can be reviewed before going active.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import random
import statistics
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, UTC
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .db import SupplierDatabase

from .backoff import BackoffManager
from .clock import Clock, SystemClock
from .config import Settings
from .fetcher import PriceFetcher
from .models import ExtractionRule, Source
from .notify import Notifier
from .rules import get_rule_for_source, load_scrape_config

logger = logging.getLogger(__name__)

# Hours of data needed before the distribution is graded
MIN_HOURS_FOR_QUALITY = 5
NEXT_FEW = 5


class ScheduleMode(str, Enum):
    SHADOW = "shadow"
    ACTIVE = "active"


def stable_offset(source_id: str, window_minutes: int) -> int:
    """Minutes from window start for a supplier; the same across restarts."""
    digest = hashlib.sha256(source_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") % window_minutes


def classify_distribution(by_hour: dict[int, int]) -> str:
    """Grade how evenly firings are spread over the hours of the day.

    Uses the coefficient of variation of the per-hour counts.
    """
    counts = list(by_hour.values())
    if len(counts) < MIN_HOURS_FOR_QUALITY:
        return "unknown"

    mean = statistics.fmean(counts)
    cv = statistics.pstdev(counts) / mean if mean > 0 else 0.0
    if cv < 0.3:
        return "excellent"
    if cv < 0.5:
        return "good"
    if cv < 0.7:
        return "fair"
    return "poor"


@dataclass
class ScheduleEntry:
    """In-memory schedule slot for one supplier."""

    source_id: str
    source_name: str
    offset_minutes: int
    next_run: datetime
    window_day: date
    task: asyncio.Task | None = None

    @property
    def firing(self) -> bool:
        return self.task is not None and not self.task.done()


@dataclass
class ShadowStatistics:
    started_at: datetime | None = None
    executed: int = 0
    by_hour: dict[int, int] = field(default_factory=dict)
    notification_sent: bool = False

    def record(self, hour: int) -> None:
        self.executed += 1
        self.by_hour[hour] = self.by_hour.get(hour, 0) + 1


class DistributedScheduler:
    """Fires one scrape per supplier per day at a spread-out time."""

    def __init__(
        self,
        db: SupplierDatabase,
        fetcher: PriceFetcher,
        backoff: BackoffManager,
        settings: Settings,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        rules: dict[str, ExtractionRule] | None = None,
    ):
        """
        Args:
            db: Supplier and price store
            fetcher: Fetch executor used in active mode
            backoff: Backoff policy consulted before each active scrape
            settings: Window, jitter, mode and retry settings
            notifier: Receives the one-time "ready to promote" message
            clock: Time source
            rng: Random source for jitter
            rules: Extraction rules by domain; loaded from the scrape config on start if omitted
        """
        self.db = db
        self.fetcher = fetcher
        self.backoff = backoff
        self.settings = settings
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()
        self.rules = rules
        self.check_interval = settings.check_interval_seconds

        self.mode = ScheduleMode.SHADOW if settings.shadow_mode else ScheduleMode.ACTIVE
        self.shadow_stats = ShadowStatistics()
        if self.mode == ScheduleMode.SHADOW:
            self.shadow_stats.started_at = self.clock.now()

        self.counters = {"succeeded": 0, "failed": 0, "skipped": 0, "not_configured": 0}

        self._entries: dict[str, ScheduleEntry] = {}
        self._firing: set[asyncio.Task] = set()
        self._tasks: list[asyncio.Task] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def window_minutes(self) -> int:
        return self.settings.window_minutes

    # --- Schedule computation ---

    def draw_jitter(self) -> int:
        limit = self.settings.jitter_minutes
        return self.rng.randint(-limit, limit)

    def next_slot(
        self,
        source_id: str,
        now: datetime | None = None,
        earliest_day: date | None = None,
    ) -> tuple[date, datetime]:
        """
        Compute the next run for a supplier with a freshly drawn jitter.

        Offset plus jitter may push a slot past midnight (or before it), so
        the window day a slot belongs to is returned alongside the run time.

        Args:
            source_id: Supplier ID (determines the stable offset)
            now: Reference time (defaults to the clock)
            earliest_day: First window day (window timezone) the run may belong to

        Returns:
            (window day, next run time in UTC), the run strictly after ``now``
        """
        now = now or self.clock.now()
        tz = self.settings.tz

        # Yesterday's window may still have a slot ahead of now
        day = now.astimezone(tz).date() - timedelta(days=1)
        if earliest_day is not None and earliest_day > day:
            day = earliest_day

        minutes = stable_offset(source_id, self.window_minutes) + self.draw_jitter()
        while True:
            window_start = datetime.combine(day, time(self.settings.window_start_hour), tzinfo=tz)
            candidate = (window_start + timedelta(minutes=minutes)).astimezone(UTC)
            if candidate > now:
                return day, candidate
            day += timedelta(days=1)

    def next_run_time(
        self,
        source_id: str,
        now: datetime | None = None,
        earliest_day: date | None = None,
    ) -> datetime:
        """Next run time in UTC for a supplier, strictly after ``now``."""
        return self.next_slot(source_id, now=now, earliest_day=earliest_day)[1]

    def preview_schedule(self, sources: list[Source]) -> list[dict]:
        """Next run times for the given suppliers, soonest first."""
        now = self.clock.now()
        preview = [
            {
                "source_id": s.id,
                "source_name": s.name,
                "base_offset": stable_offset(s.id, self.window_minutes),
                "next_run": self.next_run_time(s.id, now=now),
            }
            for s in sources
        ]
        preview.sort(key=lambda item: item["next_run"])
        return preview

    def is_within_window(self, now: datetime | None = None) -> bool:
        local = (now or self.clock.now()).astimezone(self.settings.tz)
        return self.settings.window_start_hour <= local.hour < self.settings.window_end_hour

    def schedule_sources(self, sources: list[Source]) -> None:
        """Arm a schedule entry for every supplier."""
        now = self.clock.now()
        for source in sources:
            window_day, next_run = self.next_slot(source.id, now=now)
            self._entries[source.id] = ScheduleEntry(
                source_id=source.id,
                source_name=source.name,
                offset_minutes=stable_offset(source.id, self.window_minutes),
                next_run=next_run,
                window_day=window_day,
            )

    def _reschedule(self, entry: ScheduleEntry) -> None:
        # stop() may have dropped the entry while it was firing
        if self._entries.get(entry.source_id) is not entry:
            return
        entry.window_day, entry.next_run = self.next_slot(
            entry.source_id, earliest_day=entry.window_day + timedelta(days=1)
        )
        logger.debug(f"{entry.source_name} rescheduled for {entry.next_run.isoformat()}")

    # --- Lifecycle ---

    def start(self) -> None:
        """Load suppliers, arm their schedule and start the ticker."""
        if self._running:
            logger.warning("Scheduler is already running")
            return

        if self.rules is None:
            self.rules = load_scrape_config(self.settings.scrape_config_path)

        sources = self.db.get_scrapable_sources()
        logger.info(f"Loaded {len(sources)} suppliers for scheduling")
        self.schedule_sources(sources)

        self._running = True
        self._tasks = [
            asyncio.create_task(self._run_loop()),
            asyncio.create_task(self._monthly_reset_loop()),
        ]

        settings = self.settings
        logger.info(
            f"Distributed scheduler started: mode={self.mode.value}, "
            f"window={settings.window_start_hour}:00-{settings.window_end_hour}:00 "
            f"{settings.window_timezone}"
        )
        upcoming = self._upcoming()
        for entry in upcoming[:NEXT_FEW]:
            local = entry.next_run.astimezone(settings.tz)
            logger.info(f"   {local:%H:%M} - {entry.source_name}")
        logger.info(f"   ... and {max(0, len(upcoming) - NEXT_FEW)} more")

    def stop(self) -> None:
        """Cancel the ticker and drop every schedule entry.

        Fetches already in flight are allowed to finish.
        """
        if not self._running:
            logger.info("Scheduler not running")
            return

        self._running = False
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        self._entries.clear()
        logger.info("Scheduler stopped")

    async def _run_loop(self) -> None:
        """Main scheduler loop - fires due suppliers."""
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Scheduler error: {e}")

            await asyncio.sleep(self.check_interval)

    async def _monthly_reset_loop(self) -> None:
        """Periodically run the phone_only monthly reset when due."""
        while self._running:
            try:
                self.backoff.run_monthly_reset_if_due()
            except Exception as e:
                logger.error(f"Monthly reset error: {e}")

            await asyncio.sleep(self.check_interval)

    async def tick(self) -> list[str]:
        """Fire every supplier whose next run is due. Returns the fired IDs."""
        now = self.clock.now()
        fired = []

        for entry in self._upcoming():
            if entry.next_run > now:
                break
            if entry.firing:
                continue

            task = asyncio.create_task(self._fire(entry))
            entry.task = task
            self._firing.add(task)
            task.add_done_callback(self._firing.discard)
            fired.append(entry.source_id)

        if self.mode == ScheduleMode.SHADOW:
            await self._check_promotion()

        return fired

    async def wait_for_firings(self) -> None:
        """Wait until every in-flight firing has finished."""
        while self._firing:
            await asyncio.gather(*list(self._firing), return_exceptions=True)

    # --- Firing ---

    async def _fire(self, entry: ScheduleEntry) -> None:
        try:
            if self.mode == ScheduleMode.SHADOW:
                self._record_shadow(entry)
            else:
                await self._execute(entry)
        except Exception as e:
            logger.error(f"Scrape error for {entry.source_name}: {e}")
        finally:
            self._reschedule(entry)

    def _record_shadow(self, entry: ScheduleEntry) -> None:
        local = self.clock.now().astimezone(self.settings.tz)
        logger.info(f"[SHADOW] Would scrape {entry.source_name} at {local:%H:%M}")
        self.shadow_stats.record(local.hour)

    async def _execute(self, entry: ScheduleEntry) -> None:
        local = self.clock.now().astimezone(self.settings.tz)
        logger.info(f"[ACTIVE] Scraping {entry.source_name} at {local:%H:%M}...")

        source = self.db.get_source(entry.source_id)
        if source is None:
            logger.warning(f"Supplier {entry.source_id} not found")
            return

        decision = self.backoff.should_scrape(source)
        if not decision.allow:
            logger.info(f"   Skipped {source.name} ({decision.reason})")
            self.counters["skipped"] += 1
            return

        rule = get_rule_for_source(source.website, self.rules or {})
        if rule is None or not rule.enabled:
            logger.info(f"   Skipped {source.name} (not configured)")
            self.counters["not_configured"] += 1
            return

        outcome = await self.fetcher.fetch_with_retry(
            source,
            rule,
            max_retries=self.settings.max_retries,
            retry_delay=self.settings.retry_delay_seconds,
        )

        if not outcome.success:
            self.counters["failed"] += 1
            retry_label = (
                f" [after {outcome.retried_attempts} retries]" if outcome.retried_attempts else ""
            )
            logger.info(f"   {source.name}: {outcome.error}{retry_label}")
            self.backoff.record_failure(source.id)
            return

        self.counters["succeeded"] += 1
        logger.info(f"   {source.name}: ${outcome.price:.2f}/gal ({outcome.duration_ms}ms)")
        try:
            self.db.insert_price_observation(
                source_id=source.id,
                price=outcome.price,
                min_gallons=outcome.min_gallons,
                source_type=outcome.source_type,
                source_url=outcome.source_url,
                scraped_at=outcome.scraped_at,
                expires_at=outcome.expires_at,
            )
        except Exception as e:
            # Not counted as a supplier failure
            logger.error(f"   Failed to save price for {source.name}: {e}")
        self.backoff.record_success(source.id)

    # --- Mode and shadow statistics ---

    def set_mode(self, mode: ScheduleMode | str) -> ScheduleMode:
        mode = ScheduleMode(mode)
        if mode == ScheduleMode.SHADOW and self.shadow_stats.started_at is None:
            self.shadow_stats.started_at = self.clock.now()
        if mode != self.mode:
            logger.info(f"Scheduler mode changed: {self.mode.value} -> {mode.value}")
        self.mode = mode
        return mode

    def get_shadow_stats(self) -> dict:
        """Shadow mode execution counts and distribution quality."""
        stats = self.shadow_stats
        now = self.clock.now()
        days_in_shadow = (
            math.floor((now - stats.started_at) / timedelta(days=1)) if stats.started_at else 0
        )

        hours = sorted(stats.by_hour)
        counts = [stats.by_hour[h] for h in hours]
        min_hour = hours[0] if hours else self.settings.window_start_hour
        max_hour = hours[-1] if hours else self.settings.window_end_hour
        avg_per_hour = statistics.fmean(counts) if counts else 0.0
        quality = classify_distribution(stats.by_hour)

        return {
            "days_in_shadow": days_in_shadow,
            "executed": stats.executed,
            "by_hour": {h: stats.by_hour[h] for h in hours},
            "distribution": {
                "min_hour": min_hour,
                "max_hour": max_hour,
                "avg_per_hour": round(avg_per_hour, 1),
                "max_count": max(counts) if counts else 0,
                "quality": quality,
            },
            "distribution_summary": f"{min_hour}:00-{max_hour}:00, quality: {quality}",
            "ready_to_promote": (
                days_in_shadow >= self.settings.shadow_observation_days and quality != "poor"
            ),
            "start_date": stats.started_at.isoformat() if stats.started_at else None,
            "notification_sent": stats.notification_sent,
        }

    async def _check_promotion(self) -> None:
        """Send the one-time "ready to promote" notification when due."""
        stats = self.get_shadow_stats()
        if not stats["ready_to_promote"] or self.shadow_stats.notification_sent:
            return

        logger.warning(
            f"Shadow mode has run for {stats['days_in_shadow']} days "
            f"({stats['executed']} executions, {stats['distribution_summary']}); "
            "review shadow stats and consider switching to active mode"
        )

        # Re-armed below if delivery fails
        self.shadow_stats.notification_sent = True
        if self.notifier is None:
            return

        subject, body = _promotion_message(stats)
        try:
            await asyncio.to_thread(self.notifier.send_once, subject, body)
        except Exception as e:
            logger.error(f"Failed to send promotion notification: {e}")
            self.shadow_stats.notification_sent = False

    # --- Status ---

    def _upcoming(self) -> list[ScheduleEntry]:
        return sorted(self._entries.values(), key=lambda e: e.next_run)

    def get_status(self) -> dict:
        """Get current scheduler status."""
        return {
            "is_running": self._running,
            "mode": self.mode.value,
            "scheduled_count": len(self._entries),
            "next_few": [
                {
                    "source_id": e.source_id,
                    "source_name": e.source_name,
                    "scheduled_for": e.next_run.isoformat(),
                }
                for e in self._upcoming()[:NEXT_FEW]
            ],
            "window_start": f"{self.settings.window_start_hour}:00",
            "window_end": f"{self.settings.window_end_hour}:00",
            "is_within_window": self.is_within_window(),
            "counters": dict(self.counters),
        }


def _promotion_message(stats: dict) -> tuple[str, str]:
    distribution = stats["distribution"]
    hourly = "\n".join(
        f"  {hour:02d}:00 - {count} scrapes" for hour, count in stats["by_hour"].items()
    )
    subject = "Distributed scheduler ready for review"
    body = f"""The distributed scheduler has been running in SHADOW MODE for {stats['days_in_shadow']} days.

Total shadow executions: {stats['executed']}
Distribution window: {distribution['min_hour']}:00 - {distribution['max_hour']}:00
Average per hour: {distribution['avg_per_hour']}
Distribution quality: {distribution['quality'].upper()}

Hourly breakdown:
{hourly or '  No data yet'}

Set HEATSCRAPE_SHADOW_MODE=false (or POST /api/scheduler/mode) to start scraping
on the distributed schedule, then disable the fixed-time batch sweep.

You will not receive this message again unless the scheduler restarts in shadow mode.
"""
    return subject, body


def build_scheduler(
    settings: Settings,
    db: SupplierDatabase,
    clock: Clock | None = None,
) -> DistributedScheduler:
    """Wire a scheduler with the default fetcher, backoff and email notifier."""
    from .notify import EmailNotifier

    clock = clock or SystemClock()
    fetcher = PriceFetcher(
        timeout=settings.fetch_timeout_seconds,
        user_agent=settings.user_agent,
        clock=clock,
    )
    return DistributedScheduler(
        db=db,
        fetcher=fetcher,
        backoff=BackoffManager(db, clock=clock),
        settings=settings,
        notifier=EmailNotifier.from_settings(settings),
        clock=clock,
    )
