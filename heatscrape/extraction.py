"""Price extraction from raw supplier HTML.

Rules come from the scrape config (see ``rules.py``):

- ``split``: price rendered as two fragments, e.g. a large "$3" and a small
  "199"; the regex captures both and they are joined as ``3.199``
- ``table``: tiered price table; matches are sorted ascending so tier 1 is
  the cheapest (highest volume) price
- ``direct``: first plausible price on the page
"""

from __future__ import annotations

import logging
import re

from .models import MAX_PRICE, MIN_PRICE, ExtractionPattern, ExtractionRule

logger = logging.getLogger(__name__)

DEFAULT_PRICE_REGEX = r"\$\s*([0-9]+\.[0-9]{2,3})"


def is_plausible_price(price: float | None) -> bool:
    """Check a price against the plausible heating-oil band."""
    return price is not None and MIN_PRICE <= price <= MAX_PRICE


def _compile(rule: ExtractionRule) -> re.Pattern | None:
    try:
        return re.compile(rule.price_regex or DEFAULT_PRICE_REGEX, re.IGNORECASE)
    except re.error as e:
        logger.warning(f"Invalid price regex {rule.price_regex!r}: {e}")
        return None


def _to_float(text: str | None) -> float | None:
    if not text:
        return None
    cleaned = text.replace("$", "").replace(",", "").strip()
    try:
        return float(cleaned)
    except ValueError:
        return None


def _extract_split(html: str, regex: re.Pattern) -> float | None:
    if regex.groups < 2:
        logger.warning("Split pattern needs a regex with two capture groups")
        return None

    if not (match := regex.search(html)):
        return None

    whole = (match.group(1) or "").replace("$", "").strip()
    fraction = (match.group(2) or "").strip()
    if not whole.isdigit() or not fraction.isdigit():
        return None

    price = float(f"{whole}.{fraction}")
    return price if is_plausible_price(price) else None


def _find_prices(html: str, regex: re.Pattern) -> list[float]:
    """All in-range prices in document order."""
    prices = []
    for match in regex.finditer(html):
        raw = match.group(1) if regex.groups else match.group(0)
        price = _to_float(raw)
        if is_plausible_price(price):
            prices.append(price)
    return prices


def extract_price(html: str | None, rule: ExtractionRule | None) -> float | None:
    """Extract a price from HTML according to the rule, or None."""
    if not html or rule is None:
        return None

    if (regex := _compile(rule)) is None:
        return None

    if rule.pattern == ExtractionPattern.SPLIT:
        return _extract_split(html, regex)

    prices = _find_prices(html, regex)
    if not prices:
        return None

    if rule.pattern == ExtractionPattern.TABLE:
        # Larger quantity tiers are cheaper
        prices.sort()
        tier = rule.target_tier
        if tier is not None and 1 <= tier <= len(prices):
            return prices[tier - 1]
        return prices[0]

    return prices[0]
