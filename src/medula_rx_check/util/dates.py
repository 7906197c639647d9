from __future__ import annotations

from datetime import date
from typing import Optional

from dateutil import parser as date_parser

from .text import normalize_text


def parse_portal_date(value: str) -> date:
    """
    Parse dates as the portal renders them (day first):
    - "07.03.2025"
    - "07/03/2025"
    - "7.3.2025 14:22"
    """
    if value is None:
        raise ValueError("parse_portal_date: value is None")
    s = normalize_text(value)
    if not s:
        raise ValueError("parse_portal_date: empty string")
    dt = date_parser.parse(s, dayfirst=True, yearfirst=False)
    return dt.date()


def parse_portal_date_or_none(value: Optional[str]) -> Optional[date]:
    if not normalize_text(value):
        return None
    try:
        return parse_portal_date(value or "")
    except (ValueError, OverflowError):
        return None
