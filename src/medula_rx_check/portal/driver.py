from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Optional, Protocol

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from ..errors import DriverTimeoutError, DriverUnavailableError, PageActionError, PortalError


logger = logging.getLogger(__name__)


# Playwright reports a dead page/browser only through the error text.
_CLOSED_MARKERS = ("Target closed", "has been closed", "Browser closed", "Connection closed")


def _driver_error(e: PlaywrightError, what: str, timeout_ms: Optional[int]) -> PortalError:
    if isinstance(e, PlaywrightTimeoutError):
        limit = f" after {timeout_ms}ms" if timeout_ms is not None else ""
        return DriverTimeoutError(f"Timed out{limit}: {what}")
    msg = str(e).strip().splitlines()[0] if str(e).strip() else type(e).__name__
    if any(marker in msg for marker in _CLOSED_MARKERS):
        return DriverUnavailableError(f"Browser is gone ({what}): {msg}")
    return PageActionError(f"Page action failed ({what}): {msg}")


class PageDriver(Protocol):
    """
    The primitives the pipeline needs from a browser page.

    Implementations are not thread-safe; all calls must come from the thread that owns the driver
    (see `BrowserWorker`).
    """

    @property
    def url(self) -> str: ...

    def goto(self, url: str, *, timeout_ms: int) -> None: ...

    def evaluate(self, script: str, arg: Any = None) -> Any: ...

    def wait_for_selector(self, selector: str, *, timeout_ms: int) -> None: ...

    def wait_for_load(self, *, timeout_ms: int) -> None: ...

    def click_and_settle(self, selector: str, *, timeout_ms: int) -> bool: ...

    def element_screenshot(self, selector: str) -> Optional[bytes]: ...

    def clear_cookies(self) -> None: ...

    def save_debug(self, name_prefix: str) -> None: ...

    def close(self) -> None: ...


class PlaywrightDriver:
    """
    `PageDriver` backed by a single Chromium page from Playwright's sync API.
    """

    def __init__(self, *, playwright, browser, context, page, debug_dir: str = "data/debug") -> None:
        self._pw = playwright
        self._browser = browser
        self._context = context
        self._page = page
        self._debug_dir = debug_dir
        self._closed = False

    @classmethod
    def launch(
        cls,
        *,
        headless: bool = True,
        slow_mo_ms: int = 0,
        devtools: bool = False,
        debug_dir: str = "data/debug",
    ) -> "PlaywrightDriver":
        pw = sync_playwright().start()
        try:
            browser = cls._launch_browser(pw, headless=headless, slow_mo_ms=slow_mo_ms, devtools=devtools)
            context = browser.new_context(color_scheme="light", locale="tr-TR")
            page = context.new_page()
        except Exception:
            pw.stop()
            raise
        logger.info("Browser launched (headless=%s, slow_mo_ms=%s).", headless, slow_mo_ms)
        return cls(playwright=pw, browser=browser, context=context, page=page, debug_dir=debug_dir)

    @staticmethod
    def _launch_browser(pw, *, headless: bool, slow_mo_ms: int, devtools: bool):
        # Prefer Playwright's bundled Chromium, but fall back to a system-installed browser if the
        # bundled browsers were never downloaded.
        slow_mo = int(slow_mo_ms or 0)
        kwargs: dict = {"headless": headless, "slow_mo": slow_mo}
        if devtools and not headless:
            kwargs["args"] = ["--auto-open-devtools-for-tabs"]
        try:
            return pw.chromium.launch(**kwargs)
        except PlaywrightError as e:
            msg = str(e)
            if "Executable doesn't exist" not in msg:
                raise

            logger.warning(
                "Playwright Chromium executable missing; falling back to system browser channel. (%s)",
                msg,
            )

            # Try Chrome first, then Edge.
            try:
                return pw.chromium.launch(channel="chrome", **kwargs)
            except PlaywrightError:
                return pw.chromium.launch(channel="msedge", **kwargs)

    def _require_page(self):
        if self._closed or self._page is None:
            raise DriverUnavailableError("Browser page is closed")
        return self._page

    @property
    def url(self) -> str:
        if self._closed or self._page is None:
            return ""
        return self._page.url

    def goto(self, url: str, *, timeout_ms: int) -> None:
        page = self._require_page()
        try:
            page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        except PlaywrightError as e:
            raise _driver_error(e, f"navigation to {url}", timeout_ms) from e

    def evaluate(self, script: str, arg: Any = None) -> Any:
        page = self._require_page()
        try:
            return page.evaluate(script, arg)
        except PlaywrightError as e:
            raise _driver_error(e, "page script", None) from e

    def wait_for_selector(self, selector: str, *, timeout_ms: int) -> None:
        page = self._require_page()
        try:
            page.wait_for_selector(selector, state="attached", timeout=timeout_ms)
        except PlaywrightError as e:
            raise _driver_error(e, f"waiting for {selector!r}", timeout_ms) from e

    def wait_for_load(self, *, timeout_ms: int) -> None:
        """
        Avoid `networkidle`; the portal keeps session keep-alive requests running.
        """
        page = self._require_page()
        try:
            page.wait_for_load_state("domcontentloaded", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            logger.debug("domcontentloaded not reached within %sms; continuing.", timeout_ms)
        except PlaywrightError as e:
            raise _driver_error(e, "waiting for page load", timeout_ms) from e
        page.wait_for_timeout(500)

    def click_and_settle(self, selector: str, *, timeout_ms: int) -> bool:
        """
        Click and wait for either a navigation or an in-place update.

        Returns True if a navigation happened. JSF postbacks sometimes re-render in place, so a
        navigation timeout is not an error.
        """
        page = self._require_page()
        locator = page.locator(selector).first
        navigated = True
        try:
            locator.wait_for(state="visible", timeout=timeout_ms)
            try:
                with page.expect_navigation(timeout=timeout_ms, wait_until="domcontentloaded"):
                    locator.click()
            except PlaywrightTimeoutError:
                navigated = False
                logger.debug("No navigation after clicking %r; assuming in-place update.", selector)
        except PlaywrightError as e:
            raise _driver_error(e, f"clicking {selector!r}", timeout_ms) from e
        self.wait_for_load(timeout_ms=timeout_ms)
        return navigated

    def element_screenshot(self, selector: str) -> Optional[bytes]:
        page = self._require_page()
        try:
            handle = page.query_selector(selector)
            if handle is None:
                return None
            return handle.screenshot(type="png")
        except PlaywrightError as e:
            raise _driver_error(e, f"screenshot of {selector!r}", None) from e

    def clear_cookies(self) -> None:
        if self._context is None:
            return
        try:
            self._context.clear_cookies()
        except PlaywrightError as e:
            raise _driver_error(e, "clearing cookies", None) from e

    def save_debug(self, name_prefix: str) -> None:
        if self._closed or self._page is None:
            return
        page = self._page
        safe = re.sub(r"[^a-zA-Z0-9_-]+", "_", name_prefix).strip("_")[:80] or "debug"
        try:
            out_dir = Path(self._debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            page.screenshot(path=str(out_dir / f"{safe}.png"), full_page=True)
            (out_dir / f"{safe}.html").write_text(page.content(), encoding="utf-8")
            # Also save the rendered body text so scraping can be debugged offline without DOM tooling.
            try:
                (out_dir / f"{safe}.txt").write_text(page.inner_text("body"), encoding="utf-8")
            except PlaywrightError:
                logger.debug("No body text to save for %s.", safe, exc_info=True)
        except Exception:
            logger.debug("Failed to save debug artifacts.", exc_info=True)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self._context is not None:
                self._context.close()
            if self._browser is not None:
                self._browser.close()
        except PlaywrightError:
            logger.debug("Error while closing browser.", exc_info=True)
        finally:
            try:
                self._pw.stop()
            except Exception:
                logger.debug("Error while stopping Playwright.", exc_info=True)
            self._page = None
