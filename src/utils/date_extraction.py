"""
Date parsing utilities for feed entries and scraped HTML fragments.
"""

import re
from datetime import datetime, timezone
from typing import Optional
import logging

from dateutil import parser as dateutil_parser

logger = logging.getLogger(__name__)


# "14:30 28/10/2025", "28.10.25", "2025-10-28" and similar scraped fragments
_NUMERIC_DATE_PATTERN = re.compile(r'\d{1,4}[./-]\d{1,2}[./-]\d{1,4}')
_ISO_DATE_PATTERN = re.compile(
    r"\d{4}-\d{2}-\d{2}(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}(?::?\d{2})?)?)?"
)
_TIME_PATTERN = re.compile(r"(?<![\d./-])\d{1,2}:\d{2}(?::\d{2})?(?![\d./-])")


def to_utc(dt: datetime) -> datetime:
    """Normalize to an aware UTC datetime; naive values are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_published_date(date_str: Optional[str]) -> Optional[datetime]:
    """
    Parse a feed publish date (RFC 822, ISO-8601 and friends).

    Args:
        date_str: Raw date string from the feed entry

    Returns:
        Aware UTC datetime, or None when missing or unparsable
    """
    if not date_str or not date_str.strip():
        return None

    try:
        return to_utc(dateutil_parser.parse(date_str.strip()))
    except (ValueError, TypeError, OverflowError) as e:
        logger.debug(f"Unparsable publish date '{date_str}': {e}")
        return None


def parse_scraped_date(text: Optional[str], default: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse date text scraped from an HTML page.

    Only text carrying a full calendar date is accepted: an ISO-8601 stamp, or
    a numeric day/month/year (day-first unless it starts with a 4-digit
    year) with an optional clock time anywhere around it. Relative text
    ("5 minutes ago"), time-only text and bare numbers yield None so the
    caller can fall back to the fetch time.

    Args:
        text: Text content (or datetime attribute) of the date element
        default: Supplies any fields the text leaves out, normally the fetch time

    Returns:
        Aware UTC datetime, or None when the text holds no calendar date
    """
    if not text or not text.strip():
        return None

    cleaned = " ".join(text.split())

    iso = _ISO_DATE_PATTERN.search(cleaned)
    if iso:
        try:
            return to_utc(dateutil_parser.isoparse(iso.group(0)))
        except (ValueError, OverflowError) as e:
            logger.debug(f"Unparsable ISO date '{iso.group(0)}': {e}")
            return None

    numeric = _NUMERIC_DATE_PATTERN.search(cleaned)
    if not numeric:
        return None

    date_part = numeric.group(0)
    clock = _TIME_PATTERN.search(cleaned)
    candidate = f"{date_part} {clock.group(0)}" if clock else date_part
    day_first = not re.match(r"\d{4}", date_part)

    try:
        dt = dateutil_parser.parse(candidate, dayfirst=day_first, default=default)
    except (ValueError, TypeError, OverflowError) as e:
        logger.debug(f"Unparsable scraped date '{cleaned[:60]}': {e}")
        return None

    return to_utc(dt)
