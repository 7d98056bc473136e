"""Scrape config loading.

The scrape config is a JSON object keyed by supplier domain. Keys starting
with ``_`` hold comments or metadata and are ignored.

    {
      "_comment": "...",
      "example-oil.com": {
        "enabled": true,
        "name": "Example Oil",
        "pattern": "table",
        "priceRegex": "\\$([0-9]\\.[0-9]{2,3})",
        "targetTier": 1
      }
    }
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

if TYPE_CHECKING:
    from .db import SupplierDatabase

from .models import ExtractionRule

logger = logging.getLogger(__name__)


class ScrapeConfigError(Exception):
    """The scrape config file exists but cannot be used."""


def normalize_domain(domain: str) -> str:
    """Strip scheme, ``www.`` prefix and trailing slash; lowercase."""
    domain = re.sub(r"^https?://", "", domain.strip(), flags=re.IGNORECASE)
    domain = re.sub(r"^www\.", "", domain, flags=re.IGNORECASE)
    return domain.rstrip("/").lower()


def domain_for_website(website: str | None) -> str | None:
    """Extract the bare host of a supplier website, or None."""
    if not website or not website.strip():
        return None
    url = website.strip()
    if not url.lower().startswith("http"):
        url = "https://" + url
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    return normalize_domain(host)


def domain_to_name(domain: str) -> str:
    """Turn a domain into a readable company name."""
    base = re.sub(r"\.(com|net|org|co|llc|inc)$", "", domain, flags=re.IGNORECASE)
    words = re.split(r"[-_\s]+", base)
    return " ".join(w[:1].upper() + w[1:] for w in words if w)


def _read_raw(path: Path) -> dict:
    if not path.exists():
        logger.warning(f"Scrape config {path} not found, using empty config")
        return {}

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ScrapeConfigError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ScrapeConfigError(f"Scrape config {path} must be a JSON object")
    return data


def load_scrape_config(path: Path) -> dict[str, ExtractionRule]:
    """Load extraction rules keyed by normalized domain."""
    rules: dict[str, ExtractionRule] = {}
    for key, entry in _read_raw(path).items():
        if key.startswith("_") or not isinstance(entry, dict):
            continue
        try:
            rules[normalize_domain(key)] = ExtractionRule.from_dict(entry)
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping invalid scrape config entry '{key}': {e}")
    logger.info(f"Loaded scrape config for {len(rules)} domains")
    return rules


def get_rule_for_source(
    website: str | None, config: dict[str, ExtractionRule]
) -> ExtractionRule | None:
    """Look up the rule for a supplier website by domain."""
    if (domain := domain_for_website(website)) is None:
        return None
    return config.get(domain)


def sync_sources_from_config(db: SupplierDatabase, path: Path) -> dict:
    """Upsert every configured domain into the supplier table.

    Existing suppliers are matched by website domain; their name is only
    replaced when the config provides one. Backoff state is never touched.
    """
    stats = {"processed": 0, "created": 0, "updated": 0, "errors": []}

    for key, entry in _read_raw(path).items():
        if key.startswith("_") or not isinstance(entry, dict):
            continue

        stats["processed"] += 1
        domain = normalize_domain(key)
        try:
            created = db.upsert_source(
                website=f"https://{domain}",
                name=entry.get("name") or domain_to_name(domain),
                keep_name=not entry.get("name"),
            )
        except Exception as e:
            logger.error(f"Error syncing {domain}: {e}")
            stats["errors"].append({"domain": domain, "error": str(e)})
            continue

        if created:
            stats["created"] += 1
        else:
            stats["updated"] += 1

    logger.info(
        f"Scrape config sync complete: {stats['processed']} processed, "
        f"{stats['created']} created, {stats['updated']} updated, {len(stats['errors'])} errors"
    )
    return stats
