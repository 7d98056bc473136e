"""One-shot sequential sweep over all configured suppliers.

Used for on-demand and cron-triggered runs. Suppliers are scraped one at a
time with a fixed delay between requests.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from time import perf_counter
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .db import SupplierDatabase

from .backoff import BackoffManager
from .fetcher import MAX_RETRIES, RETRY_DELAY_SECONDS, PriceFetcher
from .models import ExtractionRule, RunSummary
from .rules import get_rule_for_source

logger = logging.getLogger(__name__)

BATCH_DELAY_SECONDS = 2.0


async def run_sweep(
    db: SupplierDatabase,
    fetcher: PriceFetcher,
    backoff: BackoffManager,
    rules: dict[str, ExtractionRule],
    dry_run: bool = False,
    name_filter: str | None = None,
    delay: float = BATCH_DELAY_SECONDS,
    max_retries: int = MAX_RETRIES,
    retry_delay: float = RETRY_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RunSummary:
    """
    Scrape every configured supplier sequentially.

    Args:
        db: Supplier and price store
        fetcher: Fetch executor
        backoff: Backoff policy; suppressed suppliers are skipped
        rules: Extraction rules by domain, loaded once for the run
        dry_run: Don't save prices, backoff state or the run log
        name_filter: Only suppliers whose name contains this text
        delay: Seconds to wait between suppliers
        max_retries: Retries per supplier for transient failures
        retry_delay: Seconds between retries
        sleep: Coroutine used for the delays

    Returns:
        Run summary with success/failure/skip counts
    """
    start = perf_counter()
    summary = RunSummary()

    if dry_run:
        logger.info("DRY RUN - no prices will be saved")

    sources = db.get_scrapable_sources(name_filter=name_filter)
    logger.info(f"Found {len(sources)} suppliers with websites")

    configured = []
    for source in sources:
        rule = get_rule_for_source(source.website, rules)
        if rule is None or not rule.enabled:
            summary.skipped_unconfigured += 1
            continue
        configured.append((source, rule))
    logger.info(f"{len(configured)} have scrape config")

    if not configured:
        logger.warning("No suppliers configured for scraping")

    for i, (source, rule) in enumerate(configured, 1):
        decision = backoff.should_scrape(source)
        if not decision.allow:
            logger.info(f"[{i}/{len(configured)}] Skipping {source.name} ({decision.reason})")
            summary.skipped_backoff += 1
            continue

        logger.info(f"[{i}/{len(configured)}] Scraping {source.name}...")
        outcome = await fetcher.fetch_with_retry(
            source, rule, max_retries=max_retries, retry_delay=retry_delay
        )

        if outcome.success:
            summary.success += 1
            agg_label = " [AGGREGATOR]" if not rule.displayable else ""
            retry_label = (
                f" [RETRIED {outcome.retried_attempts}x]" if outcome.retried_attempts else ""
            )
            logger.info(
                f"   ${outcome.price:.2f}/gal ({outcome.duration_ms}ms){agg_label}{retry_label}"
            )
            if not dry_run:
                try:
                    db.insert_price_observation(
                        source_id=source.id,
                        price=outcome.price,
                        min_gallons=outcome.min_gallons,
                        source_type=outcome.source_type,
                        source_url=outcome.source_url,
                        scraped_at=outcome.scraped_at,
                        expires_at=outcome.expires_at,
                    )
                except Exception as e:
                    logger.error(f"   Failed to save price for {source.name}: {e}")
                backoff.record_success(source.id)
        else:
            summary.failed += 1
            summary.failures.append(
                {
                    "source_name": source.name,
                    "error": outcome.error,
                    "error_kind": outcome.error_kind.value if outcome.error_kind else None,
                    "retried_attempts": outcome.retried_attempts,
                }
            )
            retry_label = (
                f" [after {outcome.retried_attempts} retries]" if outcome.retried_attempts else ""
            )
            logger.info(f"   {outcome.error} ({outcome.duration_ms}ms){retry_label}")
            if not dry_run:
                backoff.record_failure(source.id)

        # Rate limiting - don't hammer servers
        if i < len(configured):
            await sleep(delay)

    summary.duration_ms = int((perf_counter() - start) * 1000)
    log_summary(summary)

    if not dry_run:
        try:
            db.record_scrape_run(summary)
        except Exception as e:
            logger.warning(f"Failed to log scrape run: {e}")

    return summary


def log_summary(summary: RunSummary) -> None:
    """Log run totals, the failure-rate alert and failed suppliers."""
    logger.info(f"Success: {summary.success}")
    logger.info(f"Failed:  {summary.failed}")
    logger.info(
        f"Skipped: {summary.skipped_unconfigured} (no config), "
        f"{summary.skipped_backoff} (backoff)"
    )

    if summary.alert:
        logger.warning(
            f"ALERT: {summary.failure_rate * 100:.0f}% failure rate exceeds "
            f"{RunSummary.ALERT_FAILURE_RATE * 100:.0f}% threshold - check supplier websites for changes"
        )

    if summary.failures:
        logger.info("Failed suppliers:")
        for failure in summary.failures:
            logger.info(f"  - {failure['source_name']}: {failure['error']}")
