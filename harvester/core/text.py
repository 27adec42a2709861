from __future__ import annotations

import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

PLACEHOLDER_PHONE = "09000000000"

_DIGIT_TABLE = str.maketrans("۰۱۲۳۴۵۶۷۸۹٠١٢٣٤٥٦٧٨٩", "01234567890123456789")
_LISTING_LINK_RE = re.compile(r"/v/([^/?#]+)", re.IGNORECASE)
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


def normalize_digits(value: str) -> str:
    """Replace Persian and Arabic-Indic digits with ASCII ones."""
    return value.translate(_DIGIT_TABLE)


def normalize_phone(value: str | None) -> str | None:
    if not value:
        return None
    digits = re.sub(r"[^0-9]", "", normalize_digits(value))
    return digits or None


def is_real_phone(value: str | None) -> bool:
    return bool(value) and value != PLACEHOLDER_PHONE


def parse_external_id(link: str | None) -> str | None:
    if not link:
        return None
    match = _LISTING_LINK_RE.search(link)
    return match.group(1) if match else None


def parse_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    cleaned = normalize_digits(value).replace("٬", "").replace(",", "").replace("٫", ".")
    match = _NUMBER_RE.search(cleaned)
    if match is None:
        return None
    try:
        return float(match.group(0))
    except ValueError:
        return None


def as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def retry_after_seconds(raw: str | None, *, now: datetime | None = None) -> float | None:
    """Interpret a Retry-After header given either as seconds or as an HTTP date."""
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    return max(0.0, (when - current).total_seconds())


def snippet(value: Any, limit: int = 200) -> str:
    text = value if isinstance(value, str) else repr(value)
    return text[:limit]
