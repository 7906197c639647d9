from __future__ import annotations

import re
from typing import Optional


_WS_RE = re.compile(r"\s+")


def normalize_text(value: Optional[str]) -> str:
    """
    Portal cells are padded with non-breaking spaces and stray newlines; collapse them to single spaces.
    """
    if not value:
        return ""
    s = str(value).replace("\u00a0", " ")
    return _WS_RE.sub(" ", s).strip()


def mask_secret(value: Optional[str], *, keep: int = 1) -> str:
    s = value or ""
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return s[:keep] + "*" * (len(s) - keep)
