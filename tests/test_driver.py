from __future__ import annotations

from typing import Optional

import pytest
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from medula_rx_check.errors import DriverTimeoutError, DriverUnavailableError, PageActionError
from medula_rx_check.portal.driver import PlaywrightDriver


class _Locator:
    def __init__(self, error: Optional[Exception]) -> None:
        self.error = error
        self.first = self

    def wait_for(self, **kwargs) -> None:
        if self.error is not None:
            raise self.error

    def click(self) -> None:
        return None


class _Page:
    """Just enough of a Playwright page to fail the way a live one does."""

    url = "https://medeczane.sgk.gov.tr/eczane/home"

    def __init__(self, error: Exception) -> None:
        self.error = error

    def locator(self, selector: str) -> _Locator:
        return _Locator(self.error)

    def goto(self, url: str, **kwargs) -> None:
        raise self.error

    def evaluate(self, script: str, arg=None):
        raise self.error

    def wait_for_selector(self, selector: str, **kwargs) -> None:
        raise self.error


def _driver(error: Exception) -> PlaywrightDriver:
    return PlaywrightDriver(playwright=None, browser=None, context=None, page=_Page(error))


def test_detached_element_click_is_page_action_error() -> None:
    cause = PlaywrightError("Element is not attached to the DOM")

    with pytest.raises(PageActionError) as excinfo:
        _driver(cause).click_and_settle("input#f\\:buttonRaporGoruntule", timeout_ms=100)

    assert excinfo.value.__cause__ is cause
    assert excinfo.value.code == "page_action_failed"


def test_closed_target_is_driver_unavailable() -> None:
    drv = _driver(PlaywrightError("Target page, context or browser has been closed"))

    with pytest.raises(DriverUnavailableError):
        drv.evaluate("() => 1")


@pytest.mark.parametrize("call", ["goto", "wait_for_selector"])
def test_playwright_timeouts_map_to_driver_timeout(call: str) -> None:
    drv = _driver(PlaywrightTimeoutError("Timeout 100ms exceeded."))

    with pytest.raises(DriverTimeoutError):
        if call == "goto":
            drv.goto("https://medeczane.sgk.gov.tr/eczane", timeout_ms=100)
        else:
            drv.wait_for_selector("#form1\\:menu", timeout_ms=100)


def test_closed_driver_refuses_work() -> None:
    drv = PlaywrightDriver(playwright=None, browser=None, context=None, page=None)

    assert drv.url == ""
    with pytest.raises(DriverUnavailableError):
        drv.evaluate("() => 1")
