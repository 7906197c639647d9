from __future__ import annotations

import logging
from typing import Optional

from ..models import PageKind, PageState
from ..util.text import normalize_text
from . import page_scripts
from .driver import PageDriver
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)


def detect(driver: PageDriver, selectors: Optional[PortalSelectors] = None) -> PageState:
    """
    Classify the current page. Never raises: anything unexpected is reported as `OTHER`.
    """
    sel = selectors or PortalSelectors()
    try:
        raw = driver.evaluate(page_scripts.DETECT_PAGE, sel.detect_args())
    except Exception:
        logger.debug("Page detection script failed; treating page as OTHER.", exc_info=True)
        return PageState(kind=PageKind.OTHER)

    if not isinstance(raw, dict):
        return PageState(kind=PageKind.OTHER)

    kind = raw.get("kind")
    if kind == PageKind.PRESCRIPTION_DETAIL.value:
        recete_no = normalize_text(raw.get("receteNo"))
        if recete_no:
            return PageState(kind=PageKind.PRESCRIPTION_DETAIL, recete_no=recete_no)
        return PageState(kind=PageKind.OTHER)
    if kind == PageKind.LOGIN_FORM.value:
        return PageState(kind=PageKind.LOGIN_FORM)
    return PageState(kind=PageKind.OTHER)
