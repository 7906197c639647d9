from .dates import parse_portal_date, parse_portal_date_or_none
from .text import mask_secret, normalize_text

__all__ = ["parse_portal_date", "parse_portal_date_or_none", "normalize_text", "mask_secret"]
