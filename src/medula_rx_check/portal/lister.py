from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from dateutil.relativedelta import relativedelta
from pydantic import ValidationError

from ..errors import DriverTimeoutError, ScrapeIncompleteError
from ..models import PrescriptionSummary
from ..util.dates import parse_portal_date_or_none
from ..util.text import normalize_text
from . import page_scripts
from .driver import PageDriver
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)


def month_periods(start: date, end: date) -> list[date]:
    """First day of every month from `start` to `end`, both inclusive."""
    if end < start:
        raise ValueError(f"Date range is reversed: {start.isoformat()} > {end.isoformat()}")
    current = start.replace(day=1)
    last = end.replace(day=1)
    out: list[date] = []
    while current <= last:
        out.append(current)
        current = current + relativedelta(months=1)
    return out


def period_value(period: date) -> str:
    # Option values of the period select look like "20250301".
    return period.strftime("%Y%m01")


def parse_page_count(label: Optional[str]) -> int:
    parts = [p.strip() for p in normalize_text(label).split("/")]
    if len(parts) == 2 and parts[1].isdigit():
        return max(int(parts[1]), 1)
    return 1


def parse_list_row(row: dict) -> Optional[PrescriptionSummary]:
    try:
        return PrescriptionSummary(
            recete_no=normalize_text(row.get("receteNo")),
            recete_date=parse_portal_date_or_none(row.get("receteTarihi")),
            last_transaction_date=parse_portal_date_or_none(row.get("sonIslemTarihi")),
            coverage=normalize_text(row.get("kapsam")),
        )
    except ValidationError:
        logger.debug("Skipping record list row without receteNo: %r", row)
        return None


class PrescriptionLister:
    """
    Reads the record list of one invoice period, following the pager to the last page.
    """

    def __init__(
        self,
        *,
        selectors: Optional[PortalSelectors] = None,
        element_timeout_ms: int = 10_000,
        navigation_timeout_ms: int = 15_000,
        max_pages: int = 100,
    ) -> None:
        self.selectors = selectors or PortalSelectors()
        self.element_timeout_ms = int(element_timeout_ms)
        self.navigation_timeout_ms = int(navigation_timeout_ms)
        self.max_pages = int(max_pages)

    def open_list(self, driver: PageDriver, period: date) -> None:
        sel = self.selectors
        value = period_value(period)
        try:
            driver.wait_for_selector(sel.left_menu, timeout_ms=self.element_timeout_ms)
        except DriverTimeoutError as e:
            driver.save_debug("left_menu_missing")
            raise ScrapeIncompleteError("Portal menu not found; cannot open record list") from e

        if not driver.evaluate(page_scripts.CLICK_NTH, {"selector": sel.left_menu_row, "index": sel.menu_index_record_list}):
            raise ScrapeIncompleteError("Record list menu entry not found")
        driver.wait_for_load(timeout_ms=self.navigation_timeout_ms)

        try:
            driver.wait_for_selector(sel.list_invoice_type_select, timeout_ms=self.element_timeout_ms)
        except DriverTimeoutError as e:
            driver.save_debug("record_list_form_missing")
            raise ScrapeIncompleteError("Record list form did not appear") from e

        if not driver.evaluate(
            page_scripts.SELECT_OPTION, {"selector": sel.list_invoice_type_select, "value": sel.list_invoice_type_value}
        ):
            raise ScrapeIncompleteError("Invoice type option not offered on the record list form")
        if not driver.evaluate(page_scripts.SELECT_OPTION, {"selector": sel.list_period_select, "value": value}):
            raise ScrapeIncompleteError(f"Invoice period {value} is not offered by the portal")
        driver.click_and_settle(sel.list_query_button, timeout_ms=self.navigation_timeout_ms)

    def list_period(self, driver: PageDriver, period: date) -> list[PrescriptionSummary]:
        """
        Query one invoice period and return its rows. A message instead of a table means the
        period has no records and yields an empty list.
        """
        sel = self.selectors
        value = period_value(period)
        self.open_list(driver, period)

        out: list[PrescriptionSummary] = []
        seen: set[str] = set()
        page = 1
        while True:
            raw = driver.evaluate(page_scripts.SCRAPE_LIST, sel.list_args())
            if not isinstance(raw, dict):
                raise ScrapeIncompleteError(f"Record list for period {value} did not render")
            message = normalize_text(raw.get("error"))
            if page == 1 and message:
                logger.info("No records for period %s: %s", value, message)
                return []
            rows = raw.get("rows")
            if rows is None:
                driver.save_debug(f"record_list_missing_{value}_{page}")
                raise ScrapeIncompleteError(f"Record list table not found for period {value} (page {page})")

            for row in rows:
                summary = parse_list_row(row) if isinstance(row, dict) else None
                if summary is not None and summary.recete_no not in seen:
                    seen.add(summary.recete_no)
                    out.append(summary)

            total = parse_page_count(raw.get("pageLabel"))
            if page >= total:
                break
            if page >= self.max_pages:
                logger.warning("Record list for period %s has %d pages; stopping at %d.", value, total, page)
                break
            driver.click_and_settle(sel.list_next_page, timeout_ms=self.navigation_timeout_ms)
            driver.wait_for_selector(sel.list_table, timeout_ms=self.element_timeout_ms)
            page += 1

        logger.info("Listed %d record(s) for period %s over %d page(s).", len(out), value, page)
        return out
