from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import date
from typing import Optional

from .cache import LocalCache
from .config import PortalConfig
from .errors import DriverTimeoutError, RecordNotFoundError
from .events import EventBus, RecordFetched, RecordsListed
from .models import CachedRecord, CredentialsProvider, PageKind, PageState, PrescriptionRecord, PrescriptionSummary
from .portal import page_scripts
from .portal.detector import detect
from .portal.driver import PageDriver
from .portal.lister import PrescriptionLister, month_periods, period_value
from .portal.scraper import PrescriptionScraper
from .portal.selectors import PortalSelectors
from .portal.session import SessionController
from .portal.worker import BrowserWorker
from .util.text import normalize_text


logger = logging.getLogger(__name__)


class FetchOrchestrator:
    """
    Cache-first access to prescription records.

    A cached record is always considered fresh; `force=True` is the only way to re-scrape. Live
    fetches run as a single job on the browser worker so login, search and scrape never interleave
    with other page operations.
    """

    def __init__(
        self,
        *,
        cache: LocalCache,
        worker: BrowserWorker,
        session: SessionController,
        scraper: PrescriptionScraper,
        config: PortalConfig,
        credentials: CredentialsProvider,
        selectors: Optional[PortalSelectors] = None,
        events: Optional[EventBus] = None,
        lister: Optional[PrescriptionLister] = None,
    ) -> None:
        self.cache = cache
        self.worker = worker
        self.session = session
        self.scraper = scraper
        self.config = config
        self.credentials = credentials
        self.selectors = selectors or PortalSelectors()
        self.events = events or EventBus()
        self.lister = lister or PrescriptionLister(
            selectors=self.selectors,
            element_timeout_ms=config.element_timeout_ms,
            navigation_timeout_ms=config.navigation_timeout_ms,
        )

    def cached(self, recete_no: str) -> Optional[CachedRecord]:
        return self.cache.get_record(normalize_text(recete_no))

    def fetch(self, recete_no: str, *, force: bool = False) -> PrescriptionRecord:
        recete_no = normalize_text(recete_no)
        if not recete_no:
            raise ValueError("recete_no is required")

        if not force:
            hit = self._from_cache(recete_no)
            if hit is not None:
                return hit

        record = self.worker.call(
            lambda driver: self._fetch_live(driver, recete_no),
            timeout_s=self.config.long_job_timeout_s,
            op=f"fetch {recete_no}",
        )
        return self._store(record)

    def fetch_observed(self, recete_no: str) -> PrescriptionRecord:
        """
        Cache a record the user has open in the live page.

        If the page still shows that record it is scraped where it is; the menu search (which
        navigates away) is used only when the user has already moved on.
        """
        recete_no = normalize_text(recete_no)
        if not recete_no:
            raise ValueError("recete_no is required")
        hit = self._from_cache(recete_no)
        if hit is not None:
            return hit

        def _job(driver: PageDriver) -> PrescriptionRecord:
            state = detect(driver, self.selectors)
            if state.kind == PageKind.PRESCRIPTION_DETAIL and state.recete_no == recete_no:
                logger.info("Scraping recete %s in place.", recete_no)
                return self.scraper.scrape_detail(driver)
            return self._fetch_live(driver, recete_no)

        record = self.worker.call(_job, timeout_s=self.config.long_job_timeout_s, op=f"auto-fetch {recete_no}")
        return self._store(record)

    def _from_cache(self, recete_no: str) -> Optional[PrescriptionRecord]:
        cached = self.cache.get_record(recete_no)
        if cached is None:
            return None
        logger.info("Recete %s served from cache (cached_at=%s).", recete_no, cached.cached_at.isoformat())
        self.events.publish(
            RecordFetched(recete_no=recete_no, from_cache=True, medicine_count=len(cached.record.medicines))
        )
        return cached.record

    def _store(self, record: PrescriptionRecord) -> PrescriptionRecord:
        if not record.has_dates:
            summary = self.cache.get_summary(record.recete_no)
            if summary is not None:
                record = record.with_summary_dates(summary)
        self.cache.put_record(record)
        self.events.publish(
            RecordFetched(recete_no=record.recete_no, from_cache=False, medicine_count=len(record.medicines))
        )
        return record

    def _fetch_live(self, driver: PageDriver, recete_no: str) -> PrescriptionRecord:
        logger.info("Fetching recete %s from portal.", recete_no)
        self.session.ensure_logged_in(driver, self.credentials)
        state = self.search(driver, recete_no)
        if not (state.kind == PageKind.PRESCRIPTION_DETAIL and state.recete_no == recete_no):
            driver.save_debug(f"record_not_found_{recete_no}")
            raise RecordNotFoundError(f"Recete {recete_no} not found (page={state.kind.value}, shown={state.recete_no!r})")
        return self.scraper.scrape_detail(driver)

    def search(self, driver: PageDriver, recete_no: str) -> PageState:
        """
        Open the record-search page from the left menu and submit the identifier.
        """
        sel = self.selectors
        cfg = self.config
        try:
            driver.wait_for_selector(sel.left_menu, timeout_ms=cfg.element_timeout_ms)
        except DriverTimeoutError as e:
            driver.save_debug("left_menu_missing")
            raise RecordNotFoundError("Portal menu not found; cannot open record search") from e

        if not driver.evaluate(page_scripts.CLICK_NTH, {"selector": sel.left_menu_row, "index": sel.menu_index_record_search}):
            raise RecordNotFoundError("Record search menu entry not found")
        driver.wait_for_load(timeout_ms=cfg.navigation_timeout_ms)

        try:
            driver.wait_for_selector(sel.search_input, timeout_ms=cfg.element_timeout_ms)
        except DriverTimeoutError as e:
            driver.save_debug("search_form_missing")
            raise RecordNotFoundError("Record search form did not appear") from e

        if not driver.evaluate(page_scripts.FILL_INPUT, {"selector": sel.search_input, "value": recete_no}):
            driver.save_debug("search_input_unfillable")
            raise RecordNotFoundError("Record search field could not be filled")
        driver.click_and_settle(sel.search_button, timeout_ms=cfg.navigation_timeout_ms)
        return detect(driver, sel)

    def list_records(self, start: date, end: date) -> list[PrescriptionSummary]:
        """
        List every record of the invoice periods (months) from `start` to `end`, inclusive.

        Rows are stored as summaries; cached records that lack dates get them filled in.
        """
        periods = month_periods(start, end)
        summaries = self.worker.call(
            lambda driver: self._list_live(driver, periods),
            timeout_s=self.config.long_job_timeout_s * len(periods),
            op=f"list {period_value(periods[0])}..{period_value(periods[-1])}",
        )
        self.cache.put_summaries(summaries)

        by_no = {s.recete_no: s for s in summaries}
        for recete_no, cached in self.cache.get_records(by_no).items():
            if not cached.record.has_dates:
                self.cache.put_record(cached.record.with_summary_dates(by_no[recete_no]))
        return summaries

    def _list_live(self, driver: PageDriver, periods: list[date]) -> list[PrescriptionSummary]:
        out: list[PrescriptionSummary] = []
        for period in periods:
            self.session.ensure_logged_in(driver, self.credentials)
            rows = self.lister.list_period(driver, period)
            self.events.publish(RecordsListed(period=period_value(period), count=len(rows)))
            out.extend(rows)
        return out


class AutoFetcher:
    """
    Opportunistically caches records the user opens by hand in the live portal.

    `observe()` is fed every detected page state; each distinct record identifier is fetched once
    (tracked by the last auto-fetched identifier), in the background, without blocking the caller.
    A record still on screen is scraped in place instead of being searched for again.
    """

    def __init__(self, orchestrator: FetchOrchestrator) -> None:
        self.orchestrator = orchestrator
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="autofetch")
        self._lock = threading.Lock()
        self._last_recete_no: Optional[str] = None

    @property
    def last_recete_no(self) -> Optional[str]:
        with self._lock:
            return self._last_recete_no

    def observe(self, state: PageState) -> Optional["Future[PrescriptionRecord]"]:
        if not state.is_detail or not state.recete_no:
            return None
        with self._lock:
            if state.recete_no == self._last_recete_no:
                return None
            self._last_recete_no = state.recete_no

        recete_no = state.recete_no
        logger.info("Auto-fetching recete %s observed in the portal.", recete_no)
        future = self._executor.submit(self.orchestrator.fetch_observed, recete_no)
        future.add_done_callback(lambda f: self._on_done(recete_no, f))
        return future

    def _on_done(self, recete_no: str, future: "Future[PrescriptionRecord]") -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning("Auto-fetch of recete %s failed: %s", recete_no, exc)
            with self._lock:
                # Allow a later observation of the same record to try again.
                if self._last_recete_no == recete_no:
                    self._last_recete_no = None

    def close(self, *, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
