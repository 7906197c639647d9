from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from ..config import PortalConfig
from ..errors import (
    DriverTimeoutError,
    DriverUnavailableError,
    FormNotFoundError,
    InvalidSecurityCodeError,
    IpNotAuthorizedError,
    LoginRejectedError,
    MaxAttemptsExceededError,
    MissingCredentialsError,
    PortalError,
)
from ..events import EventBus, LoginAttemptStarted, SessionStatusChanged
from ..models import CredentialsProvider, PageKind, PageState, PortalCredentials, Session, SessionStatus
from ..util.text import normalize_text
from . import page_scripts
from .captcha import CaptchaSolver
from .detector import detect
from .driver import PageDriver
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)


def _matches(banner: str, needle: str) -> bool:
    return normalize_text(needle).casefold() in normalize_text(banner).casefold()


class SessionController:
    """
    Drives the portal login to `LOGGED_IN` or a terminal `ERROR`.

    Only a rejected security code (stale CAPTCHA image) or an ambiguous result (no banner, but no
    portal menu either) is retried, after reloading the page. IP refusals, unknown banners and
    CAPTCHA service failures are terminal.
    """

    def __init__(
        self,
        *,
        config: PortalConfig,
        captcha: CaptchaSolver,
        selectors: Optional[PortalSelectors] = None,
        events: Optional[EventBus] = None,
        sleep: Callable[[float], None] = time.sleep,
        ip_lookup: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        self.config = config
        self.captcha = captcha
        self.selectors = selectors or PortalSelectors()
        self.events = events or EventBus()
        self.session = Session()
        self._sleep = sleep
        self._ip_lookup = ip_lookup

    # -- state helpers --------------------------------------------------------------------------

    def _set_status(self, status: SessionStatus, *, error: Optional[str] = None) -> None:
        self.session.status = status
        self.session.last_error = error
        self.events.publish(
            SessionStatusChanged(status=status, attempt_count=self.session.attempt_count, error=error)
        )

    def _fail(self, exc: PortalError) -> PortalError:
        logger.warning("Login failed after %d attempt(s): %s", self.session.attempt_count, exc)
        self._set_status(SessionStatus.ERROR, error=exc.code)
        return exc

    def restart(self) -> None:
        self.session.reset()
        self.events.publish(SessionStatusChanged(status=SessionStatus.IDLE))

    @property
    def is_logged_in(self) -> bool:
        return self.session.status == SessionStatus.LOGGED_IN

    # -- page helpers ---------------------------------------------------------------------------

    def _fill(self, driver: PageDriver, selector: str, value: str, *, what: str) -> None:
        ok = driver.evaluate(page_scripts.FILL_INPUT, {"selector": selector, "value": value})
        if not ok:
            raise FormNotFoundError(f"Login form field missing: {what}")

    def _reload_login(self, driver: PageDriver) -> None:
        if self.config.retry_delay_s > 0:
            self._sleep(self.config.retry_delay_s)
        driver.goto(self.config.home_url, timeout_ms=self.config.navigation_timeout_ms)
        driver.wait_for_load(timeout_ms=self.config.navigation_timeout_ms)

    def _read_banner(self, driver: PageDriver) -> str:
        text = driver.evaluate(page_scripts.READ_TEXT, {"selector": self.selectors.error_banner})
        return normalize_text(text) if isinstance(text, str) else ""

    # -- login ----------------------------------------------------------------------------------

    def login(
        self,
        driver: PageDriver,
        credentials: Optional[PortalCredentials],
        *,
        navigate: bool = True,
    ) -> Session:
        """
        Run one login cycle (up to `max_login_attempts` page attempts).

        Raises a `PortalError` subclass on terminal failure; the session is left in `ERROR` with
        `last_error` set to the error code. Unexpected driver failures surface as
        `DriverUnavailableError` chained to the original exception.
        """
        s = self.session
        s.attempt_count = 0
        s.last_error = None

        if credentials is None or not credentials.username or not credentials.password:
            raise self._fail(MissingCredentialsError("Portal username/password are not configured"))

        self._set_status(SessionStatus.LOGGING_IN)
        try:
            return self._attempt_login(driver, credentials, navigate=navigate)
        except PortalError as e:
            raise self._fail(e)
        except Exception as e:
            raise self._fail(DriverUnavailableError(f"Browser failed during login: {e}")) from e

    def _attempt_login(self, driver: PageDriver, credentials: PortalCredentials, *, navigate: bool) -> Session:
        sel = self.selectors
        cfg = self.config
        s = self.session
        if navigate:
            driver.goto(cfg.home_url, timeout_ms=cfg.navigation_timeout_ms)
            driver.wait_for_load(timeout_ms=cfg.navigation_timeout_ms)

        last_cause: Optional[PortalError] = None
        while s.attempt_count < cfg.max_login_attempts:
            s.attempt_count += 1
            self.events.publish(LoginAttemptStarted(attempt=s.attempt_count, max_attempts=cfg.max_login_attempts))
            logger.info("Login attempt %d/%d", s.attempt_count, cfg.max_login_attempts)

            try:
                driver.wait_for_selector(sel.username_input, timeout_ms=cfg.element_timeout_ms)
                driver.wait_for_selector(sel.password_input, timeout_ms=cfg.element_timeout_ms)
            except DriverTimeoutError as e:
                driver.save_debug(f"login_form_not_found_{s.attempt_count}")
                raise FormNotFoundError(f"Login form did not appear (url={driver.url!r})") from e

            self._fill(driver, sel.username_input, credentials.username, what="username")
            self._fill(driver, sel.password_input, credentials.password, what="password")
            code = self.captcha.resolve(driver)
            self._fill(driver, sel.captcha_input, code, what="security code")
            driver.evaluate(page_scripts.CHECK_BOX, {"selector": sel.consent_checkbox})
            driver.click_and_settle(sel.login_submit, timeout_ms=cfg.navigation_timeout_ms)

            banner = self._read_banner(driver)
            if banner:
                if _matches(banner, sel.banner_ip_not_authorized):
                    raise self._ip_refused()
                if _matches(banner, sel.banner_invalid_security_code):
                    logger.info("Portal rejected the security code; reloading for a fresh CAPTCHA.")
                    last_cause = InvalidSecurityCodeError(banner)
                    self._reload_login(driver)
                    continue
                driver.save_debug(f"login_rejected_{s.attempt_count}")
                raise LoginRejectedError(banner)

            if self._landed(driver):
                self._set_status(SessionStatus.LOGGED_IN)
                logger.info("Logged in to portal after %d attempt(s).", s.attempt_count)
                return s

            logger.info("No error banner but no portal menu either; retrying.")
            last_cause = LoginRejectedError("portal menu not shown after submit")
            self._reload_login(driver)

        raise MaxAttemptsExceededError(
            f"Login did not succeed within {cfg.max_login_attempts} attempts"
        ) from last_cause

    def _landed(self, driver: PageDriver) -> bool:
        if detect(driver, self.selectors).kind == PageKind.LOGIN_FORM:
            return False
        try:
            driver.wait_for_selector(self.selectors.left_menu, timeout_ms=self.config.element_timeout_ms)
        except DriverTimeoutError:
            return False
        return True

    def _ip_refused(self) -> IpNotAuthorizedError:
        ip = self._ip_lookup() if self._ip_lookup is not None else None
        if ip:
            return IpNotAuthorizedError(f"IP {ip} is not authorised to log in for this pharmacy", ip=ip)
        return IpNotAuthorizedError("This IP is not authorised to log in for this pharmacy")

    def ensure_logged_in(
        self,
        driver: PageDriver,
        credentials_provider: CredentialsProvider,
    ) -> PageState:
        """
        Bring the page to a logged-in portal page, logging in only when the login form is showing.

        The page is always re-detected; `session.status` alone is not enough because the portal
        expires sessions on its own.
        """
        cfg = self.config
        driver.goto(cfg.home_url, timeout_ms=cfg.navigation_timeout_ms)
        driver.wait_for_load(timeout_ms=cfg.navigation_timeout_ms)

        banner = self._read_banner(driver)
        if banner and _matches(banner, self.selectors.banner_relogin):
            logger.info("Portal asks for a fresh login; clearing cookies.")
            driver.clear_cookies()
            driver.goto(cfg.home_url, timeout_ms=cfg.navigation_timeout_ms)
            driver.wait_for_load(timeout_ms=cfg.navigation_timeout_ms)

        state = detect(driver, self.selectors)
        if state.kind != PageKind.LOGIN_FORM:
            if self.session.status != SessionStatus.LOGGED_IN:
                self._set_status(SessionStatus.LOGGED_IN)
            return state

        self.login(driver, credentials_provider(), navigate=False)
        return detect(driver, self.selectors)
