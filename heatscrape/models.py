"""Data models for the price scraper."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

# Scraped prices are valid for one day
PRICE_VALIDITY = timedelta(hours=24)

# Plausible heating-oil price band (USD per gallon)
MIN_PRICE = 2.00
MAX_PRICE = 5.00

DEFAULT_MIN_GALLONS = 150


class SourceStatus(str, Enum):
    ACTIVE = "active"
    COOLDOWN = "cooldown"
    PHONE_ONLY = "phone_only"


class ExtractionPattern(str, Enum):
    DIRECT = "direct"
    TABLE = "table"
    SPLIT = "split"


class SourceType(str, Enum):
    SCRAPED = "scraped"
    # Internal market signal, never shown to end users
    AGGREGATOR_SIGNAL = "aggregator_signal"


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    HTTP_SERVER = "http_server"
    HTTP_CLIENT = "http_client"
    HTTP_OTHER = "http_other"
    PRICE_NOT_FOUND = "price_not_found"
    OUT_OF_RANGE = "out_of_range"
    NO_WEBSITE = "no_website"
    NOT_CONFIGURED = "not_configured"


RETRYABLE_ERRORS = frozenset({ErrorKind.TIMEOUT, ErrorKind.NETWORK, ErrorKind.HTTP_SERVER})


@dataclass
class Source:
    """A supplier website prices are scraped from."""

    id: str
    name: str
    website: str | None
    status: SourceStatus = SourceStatus.ACTIVE
    consecutive_failures: int = 0
    failure_timestamps: list[datetime] = field(default_factory=list)
    cooldown_until: datetime | None = None
    last_failure_at: datetime | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "website": self.website,
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "failure_timestamps": [ts.isoformat() for ts in self.failure_timestamps],
            "cooldown_until": self.cooldown_until.isoformat() if self.cooldown_until else None,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
        }


@dataclass(frozen=True)
class ExtractionRule:
    """Per-domain extraction settings from the scrape config."""

    pattern: ExtractionPattern = ExtractionPattern.DIRECT
    price_regex: str | None = None
    target_tier: int | None = None
    price_path: str | None = None
    ignore_ssl: bool = False
    displayable: bool = True
    enabled: bool = True
    min_gallons: int = DEFAULT_MIN_GALLONS

    @classmethod
    def from_dict(cls, data: dict) -> ExtractionRule:
        """Build a rule from a scrape-config entry (camelCase keys)."""
        pattern = data.get("pattern") or ExtractionPattern.DIRECT.value
        try:
            pattern = ExtractionPattern(pattern)
        except ValueError:
            # Unknown patterns behave like "direct"
            pattern = ExtractionPattern.DIRECT

        target_tier = data.get("targetTier")
        return cls(
            pattern=pattern,
            price_regex=data.get("priceRegex") or None,
            target_tier=int(target_tier) if target_tier is not None else None,
            price_path=data.get("pricePath") or None,
            ignore_ssl=bool(data.get("ignoreSSL", False)),
            # Only an explicit false marks a market-signal-only source
            displayable=data.get("displayable") is not False,
            enabled=bool(data.get("enabled", True)),
            min_gallons=int(data.get("minGallons", DEFAULT_MIN_GALLONS)),
        )


@dataclass
class ScrapeOutcome:
    """Result of scraping one source."""

    source_id: str
    source_name: str
    success: bool
    price: float | None = None
    min_gallons: int | None = None
    source_type: SourceType | None = None
    source_url: str | None = None
    scraped_at: datetime | None = None
    expires_at: datetime | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    retryable: bool = False
    duration_ms: int = 0
    retried_attempts: int = 0

    @classmethod
    def succeeded(
        cls,
        source: Source,
        price: float,
        rule: ExtractionRule,
        source_url: str,
        scraped_at: datetime,
        duration_ms: int = 0,
    ) -> ScrapeOutcome:
        source_type = SourceType.SCRAPED if rule.displayable else SourceType.AGGREGATOR_SIGNAL
        return cls(
            source_id=source.id,
            source_name=source.name,
            success=True,
            price=price,
            min_gallons=rule.min_gallons,
            source_type=source_type,
            source_url=source_url,
            scraped_at=scraped_at,
            expires_at=scraped_at + PRICE_VALIDITY,
            duration_ms=duration_ms,
        )

    @classmethod
    def failed(
        cls,
        source: Source,
        kind: ErrorKind,
        error: str,
        source_url: str | None = None,
        duration_ms: int = 0,
    ) -> ScrapeOutcome:
        return cls(
            source_id=source.id,
            source_name=source.name,
            success=False,
            source_url=source_url,
            error=error,
            error_kind=kind,
            retryable=kind in RETRYABLE_ERRORS,
            duration_ms=duration_ms,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "source_id": self.source_id,
            "source_name": self.source_name,
            "success": self.success,
            "price": self.price,
            "min_gallons": self.min_gallons,
            "source_type": self.source_type.value if self.source_type else None,
            "source_url": self.source_url,
            "scraped_at": self.scraped_at.isoformat() if self.scraped_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "retryable": self.retryable,
            "duration_ms": self.duration_ms,
            "retried_attempts": self.retried_attempts,
        }


@dataclass
class RunSummary:
    """Aggregate result of a batch sweep."""

    success: int = 0
    failed: int = 0
    skipped_unconfigured: int = 0
    skipped_backoff: int = 0
    failures: list[dict] = field(default_factory=list)
    duration_ms: int = 0

    # Alert when more than this share of attempted sources failed
    ALERT_FAILURE_RATE = 0.20

    @property
    def attempted(self) -> int:
        return self.success + self.failed

    @property
    def failure_rate(self) -> float:
        if self.attempted == 0:
            return 0.0
        return self.failed / self.attempted

    @property
    def alert(self) -> bool:
        return self.failure_rate > self.ALERT_FAILURE_RATE

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped_unconfigured + self.skipped_backoff,
            "skipped_unconfigured": self.skipped_unconfigured,
            "skipped_backoff": self.skipped_backoff,
            "failure_rate": round(self.failure_rate, 3),
            "alert": self.alert,
            "failures": self.failures,
            "duration_ms": self.duration_ms,
        }
