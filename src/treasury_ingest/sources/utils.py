"""Utility helpers for parsing source listings."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

from dateutil import parser


ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def parse_date(value: str | None, *, dayfirst: bool = True) -> Optional[datetime]:
    """Parse a listing date string using dateutil, ``None`` when unparseable.

    ISO strings are read as ISO; anything else (``15/01/2024``, ``5 Jan 2024``)
    is parsed day first. Aware values are converted to naive UTC.
    """

    if not value or not value.strip():
        return None
    text = value.strip()
    try:
        if ISO_DATE.match(text):
            parsed = parser.isoparse(text)
        else:
            parsed = parser.parse(text, dayfirst=dayfirst, fuzzy=True)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def absolute_url(link: str, base: str) -> str:
    """Prefix site-relative ``link`` with ``base``."""

    link = link.strip()
    if link.startswith("http://") or link.startswith("https://"):
        return link
    return f"{base.rstrip('/')}/{link.lstrip('/')}"


__all__ = ["parse_date", "absolute_url"]
