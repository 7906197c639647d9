from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Optional, TypeVar

from .analysis import AnalysisOrchestrator
from .cache import LocalCache
from .config import AppConfig
from .errors import DriverUnavailableError, PortalError
from .events import EventBus
from .fetch import AutoFetcher, FetchOrchestrator
from .models import PageState, PortalCredentials
from .portal.captcha import CaptchaSolver
from .portal.detector import detect
from .portal.driver import PageDriver, PlaywrightDriver
from .portal.ip import PublicIpLookup
from .portal.scraper import PrescriptionScraper
from .portal.selectors import PortalSelectors
from .portal.session import SessionController
from .portal.worker import BrowserWorker, DriverFactory
from .scoring.client import ScoringClient


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Envelope:
    success: bool
    data: Any = None
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "Envelope":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, exc: BaseException) -> "Envelope":
        code = exc.code if isinstance(exc, PortalError) else type(exc).__name__
        return cls(success=False, error=str(exc) or type(exc).__name__, code=code)


class AutomationService:
    """
    Process-wide owner of the portal session: browser worker, session controller, cache and the
    orchestrators built on top of them.

    Create one per process, `initialize()` it, and pass it to whatever drives the UI or CLI. Every
    public operation returns an `Envelope` instead of raising.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        events: Optional[EventBus] = None,
        selectors: Optional[PortalSelectors] = None,
        driver_factory: Optional[DriverFactory] = None,
        captcha: Optional[CaptchaSolver] = None,
        cache: Optional[LocalCache] = None,
        ip_lookup: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        self.config = config
        self.events = events or EventBus()
        self.selectors = selectors or PortalSelectors()
        self._custom_driver_factory = driver_factory
        self._debug_mode = not config.portal.headless
        self._credentials: Optional[PortalCredentials] = config.portal.credentials()

        pc = config.portal
        self.cache = cache or LocalCache(config.cache.db_path)
        self.worker = BrowserWorker(self._driver_factory(), default_timeout_s=pc.worker_timeout_s)
        self.session = SessionController(
            config=pc,
            captcha=captcha or CaptchaSolver(config.captcha.url, timeout_s=config.captcha.timeout_s, selectors=self.selectors),
            selectors=self.selectors,
            events=self.events,
            ip_lookup=ip_lookup or PublicIpLookup(pc.ip_check_url),
        )
        self.scraper = PrescriptionScraper(
            selectors=self.selectors,
            element_timeout_ms=pc.element_timeout_ms,
            navigation_timeout_ms=pc.navigation_timeout_ms,
            report_retries=pc.report_retries,
            report_retry_delay_s=pc.report_retry_delay_s,
        )
        self.fetcher = FetchOrchestrator(
            cache=self.cache,
            worker=self.worker,
            session=self.session,
            scraper=self.scraper,
            config=pc,
            credentials=self.credentials,
            selectors=self.selectors,
            events=self.events,
        )
        self.auto_fetcher = AutoFetcher(self.fetcher)

    # -- lifecycle ------------------------------------------------------------------------------

    def __enter__(self) -> "AutomationService":
        env = self.initialize()
        if not env.success:
            raise DriverUnavailableError(f"Browser initialisation failed: {env.error}")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _driver_factory(self) -> DriverFactory:
        if self._custom_driver_factory is not None:
            return self._custom_driver_factory
        pc = self.config.portal
        debug = self._debug_mode
        return lambda: PlaywrightDriver.launch(
            headless=not debug,
            slow_mo_ms=pc.slow_mo_ms,
            devtools=debug,
            debug_dir=pc.debug_dir,
        )

    def credentials(self) -> Optional[PortalCredentials]:
        return self._credentials

    def _guard(self, op: str, fn: Callable[[], T]) -> Envelope:
        try:
            return Envelope.ok(fn())
        except (PortalError, ValueError) as e:
            logger.warning("%s failed: %s", op, e)
            return Envelope.fail(e)
        except Exception as e:
            logger.exception("%s failed unexpectedly.", op)
            return Envelope.fail(e)

    def initialize(self) -> Envelope:
        return self._guard("initialize", lambda: self.worker.start(timeout_s=self.config.portal.long_job_timeout_s))

    def is_ready(self) -> bool:
        return self.worker.is_ready

    def current_url(self) -> Optional[str]:
        if not self.worker.is_ready:
            return None
        try:
            return self.worker.call(lambda d: d.url or None, op="current_url")
        except PortalError:
            return None

    def set_debug_mode(self, enabled: bool) -> Envelope:
        """
        Toggle visible (debug, with devtools) vs headless browser. Applied by restarting the browser.
        """
        enabled = bool(enabled)
        if enabled == self._debug_mode:
            return Envelope.ok({"debug": enabled, "restarted": False})
        self._debug_mode = enabled
        if not self.worker.is_ready:
            return Envelope.ok({"debug": enabled, "restarted": False})
        env = self.restart()
        if not env.success:
            return env
        return Envelope.ok({"debug": enabled, "restarted": True})

    def restart(self) -> Envelope:
        def _restart() -> None:
            self.session.restart()
            self.worker.restart(self._driver_factory())

        return self._guard("restart", _restart)

    def close(self) -> Envelope:
        def _close() -> None:
            self.auto_fetcher.close()
            self.worker.stop()
            self.session.restart()
            self.cache.close()

        return self._guard("close", _close)

    # -- portal operations ----------------------------------------------------------------------

    def navigate_to_portal_home(self) -> Envelope:
        pc = self.config.portal

        def _job(driver: PageDriver) -> dict:
            driver.goto(pc.home_url, timeout_ms=pc.navigation_timeout_ms)
            driver.wait_for_load(timeout_ms=pc.navigation_timeout_ms)
            state = detect(driver, self.selectors)
            return {"url": driver.url, "page": state.kind.value}

        return self._guard("navigate_to_portal_home", lambda: self.worker.call(_job, op="navigate"))

    def login(self, credentials: Optional[PortalCredentials] = None) -> Envelope:
        if credentials is not None:
            self._credentials = credentials
        creds = self._credentials

        def _job(driver: PageDriver) -> dict:
            s = self.session.login(driver, creds)
            return {"status": s.status.value, "attempts": s.attempt_count, "url": driver.url}

        return self._guard(
            "login",
            lambda: self.worker.call(_job, timeout_s=self.config.portal.long_job_timeout_s, op="login"),
        )

    def search_record(self, recete_no: str, *, force: bool = False) -> Envelope:
        return self._guard("search_record", lambda: self.fetcher.fetch(recete_no, force=force).to_wire())

    def list_records(self, start: date, end: date) -> Envelope:
        """
        List the records of every invoice period (month) from `start` to `end` as summaries.
        """
        return self._guard(
            "list_records",
            lambda: [s.to_wire() for s in self.fetcher.list_records(start, end)],
        )

    def detect_page(self) -> PageState:
        return self.worker.call(lambda d: detect(d, self.selectors), op="detect")

    def poll_auto_fetch(self) -> Envelope:
        """
        Detect the live page and, if it shows a record not fetched yet, cache it in the background.
        """

        def _poll() -> Optional[str]:
            state = self.detect_page()
            return state.recete_no if self.auto_fetcher.observe(state) is not None else None

        return self._guard("poll_auto_fetch", _poll)

    def analysis(self, scorer: Optional[Any] = None) -> AnalysisOrchestrator:
        sc = self.config.scoring
        if scorer is None:
            if not sc.base_url:
                raise ValueError("scoring.base_url is not configured (set SCORING_API_URL)")
            scorer = ScoringClient(sc.base_url, token=sc.token, timeout_s=sc.timeout_s)
        return AnalysisOrchestrator(
            cache=self.cache,
            scorer=scorer,
            events=self.events,
            concurrency=sc.concurrency,
            fetcher=self._fetch_for_analysis,
        )

    def _fetch_for_analysis(self, recete_no: str):
        # Cached records never need the browser; start it only for a live fetch.
        if not self.worker.is_ready and self.fetcher.cached(recete_no) is None:
            self.worker.start(timeout_s=self.config.portal.long_job_timeout_s)
        return self.fetcher.fetch(recete_no)
