"""Fetch supplier pages and turn them into scrape outcomes."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from time import perf_counter
from urllib.parse import urlsplit, urlunsplit

import httpx

from .clock import Clock, SystemClock
from .extraction import extract_price, is_plausible_price
from .models import ErrorKind, ExtractionRule, ScrapeOutcome, Source

logger = logging.getLogger(__name__)

USER_AGENT = "HomeHeatBot/1.0 (gethomeheat.com; published-price-aggregation)"
FETCH_TIMEOUT_SECONDS = 10.0
MAX_RETRIES = 2
RETRY_DELAY_SECONDS = 3.0


def build_url(website: str, price_path: str | None = None) -> str:
    """Normalize a supplier website and apply an optional price page path."""
    url = website.strip()
    if not url.lower().startswith("http"):
        url = "https://" + url

    if not price_path:
        return url

    parts = urlsplit(url)
    override = urlsplit(price_path)
    path = override.path if override.path.startswith("/") else "/" + override.path
    return urlunsplit((parts.scheme, parts.netloc, path, override.query, ""))


def classify_status(status_code: int) -> ErrorKind:
    """Map a non-OK HTTP status to an error kind."""
    if status_code >= 500:
        return ErrorKind.HTTP_SERVER
    if 400 <= status_code < 500:
        return ErrorKind.HTTP_CLIENT
    return ErrorKind.HTTP_OTHER


class PriceFetcher:
    """Performs timed page fetches for single suppliers."""

    def __init__(
        self,
        timeout: float = FETCH_TIMEOUT_SECONDS,
        user_agent: str = USER_AGENT,
        clock: Clock | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            timeout: Cap on the total time of one fetch in seconds
            user_agent: Identifying User-Agent sent with every request
            clock: Time source for scraped_at timestamps
            transport: Optional httpx transport (tests use httpx.MockTransport)
            sleep: Coroutine used between retry attempts
        """
        self.timeout = timeout
        self.user_agent = user_agent
        self.clock = clock or SystemClock()
        self.transport = transport
        self.sleep = sleep

    @property
    def headers(self) -> dict[str, str]:
        return {
            "user-agent": self.user_agent,
            "accept": "text/html,application/xhtml+xml",
            "accept-language": "en-US,en;q=0.9",
        }

    def _client(self, verify: bool) -> httpx.AsyncClient:
        # TLS verification is scoped to this client, never process-wide
        return httpx.AsyncClient(
            follow_redirects=True,
            headers=self.headers,
            timeout=httpx.Timeout(self.timeout),
            verify=verify,
            transport=self.transport,
        )

    async def fetch_once(self, source: Source, rule: ExtractionRule | None) -> ScrapeOutcome:
        """Fetch a supplier page once and extract its price."""
        start = perf_counter()

        def elapsed_ms() -> int:
            return int((perf_counter() - start) * 1000)

        if not source.website:
            return ScrapeOutcome.failed(source, ErrorKind.NO_WEBSITE, "No website configured")

        if rule is None or not rule.enabled:
            return ScrapeOutcome.failed(
                source, ErrorKind.NOT_CONFIGURED, "Not configured for scraping"
            )

        try:
            url = build_url(source.website, rule.price_path)
        except ValueError as e:
            return ScrapeOutcome.failed(source, ErrorKind.HTTP_OTHER, f"Invalid URL: {e}")

        try:
            async with self._client(verify=not rule.ignore_ssl) as client:
                async with asyncio.timeout(self.timeout):
                    response = await client.get(url)
                    html = response.text if response.is_success else None
        except (TimeoutError, httpx.TimeoutException):
            return ScrapeOutcome.failed(
                source, ErrorKind.TIMEOUT, "Timeout", source_url=url, duration_ms=elapsed_ms()
            )
        except httpx.TransportError as e:
            return ScrapeOutcome.failed(
                source,
                ErrorKind.NETWORK,
                f"{type(e).__name__}: {e}",
                source_url=url,
                duration_ms=elapsed_ms(),
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            # Redirect loops, bad content encodings, malformed URLs
            return ScrapeOutcome.failed(
                source,
                ErrorKind.HTTP_OTHER,
                f"{type(e).__name__}: {e}",
                source_url=url,
                duration_ms=elapsed_ms(),
            )

        if not response.is_success:
            return ScrapeOutcome.failed(
                source,
                classify_status(response.status_code),
                f"HTTP {response.status_code}",
                source_url=url,
                duration_ms=elapsed_ms(),
            )

        price = extract_price(html, rule)
        if price is None:
            return ScrapeOutcome.failed(
                source,
                ErrorKind.PRICE_NOT_FOUND,
                "Price not found in HTML",
                source_url=url,
                duration_ms=elapsed_ms(),
            )

        if not is_plausible_price(price):
            return ScrapeOutcome.failed(
                source,
                ErrorKind.OUT_OF_RANGE,
                f"Price ${price} outside valid range",
                source_url=url,
                duration_ms=elapsed_ms(),
            )

        return ScrapeOutcome.succeeded(
            source,
            price,
            rule,
            source_url=url,
            scraped_at=self.clock.now(),
            duration_ms=elapsed_ms(),
        )

    async def fetch_with_retry(
        self,
        source: Source,
        rule: ExtractionRule | None,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY_SECONDS,
    ) -> ScrapeOutcome:
        """Fetch with bounded retries for transient failures."""
        retries = 0
        while True:
            outcome = await self.fetch_once(source, rule)
            if outcome.success or not outcome.retryable or retries >= max_retries:
                break

            retries += 1
            logger.info(
                f"[{source.name}] {outcome.error}, retrying in {retry_delay:g}s "
                f"({retries}/{max_retries})"
            )
            await self.sleep(retry_delay)

        outcome.retried_attempts = retries
        return outcome
