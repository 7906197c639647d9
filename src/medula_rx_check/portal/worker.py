from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional, TypeVar

from ..errors import DriverUnavailableError, WorkerTimeoutError
from .driver import PageDriver


logger = logging.getLogger(__name__)

T = TypeVar("T")

DriverFactory = Callable[[], PageDriver]


class BrowserWorker:
    """
    Owns the one browser page and runs every browser job on a single dedicated thread.

    Playwright's sync objects are bound to the thread that created them, and the portal session is a
    single page, so jobs are strictly serialized. `call()` bounds the round trip of a job
    independently of the element/navigation timeouts used inside it.
    """

    def __init__(self, driver_factory: DriverFactory, *, default_timeout_s: float = 30.0) -> None:
        self._driver_factory = driver_factory
        self._default_timeout_s = float(default_timeout_s)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._driver: Optional[PageDriver] = None

    @property
    def is_ready(self) -> bool:
        return self._executor is not None and self._driver is not None

    def start(self, *, timeout_s: Optional[float] = None) -> None:
        if self.is_ready:
            return
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="browser")

        def _launch() -> None:
            self._driver = self._driver_factory()

        self._wait(self._executor.submit(_launch), timeout_s=timeout_s, op="start")
        logger.info("Browser worker started.")

    def stop(self, *, timeout_s: Optional[float] = None) -> None:
        executor = self._executor
        if executor is None:
            return

        def _close() -> None:
            driver, self._driver = self._driver, None
            if driver is not None:
                driver.close()

        try:
            self._wait(executor.submit(_close), timeout_s=timeout_s, op="stop")
        finally:
            executor.shutdown(wait=False)
            self._executor = None
            self._driver = None
        logger.info("Browser worker stopped.")

    def restart(self, driver_factory: Optional[DriverFactory] = None) -> None:
        self.stop()
        if driver_factory is not None:
            self._driver_factory = driver_factory
        self.start()

    def submit(self, fn: Callable[[PageDriver], T]) -> "Future[T]":
        if self._executor is None:
            raise DriverUnavailableError("Browser worker is not running")

        def _job() -> T:
            driver = self._driver
            if driver is None:
                raise DriverUnavailableError("Browser page is not available")
            return fn(driver)

        return self._executor.submit(_job)

    def call(self, fn: Callable[[PageDriver], T], *, timeout_s: Optional[float] = None, op: str = "job") -> T:
        return self._wait(self.submit(fn), timeout_s=timeout_s, op=op)

    def _wait(self, future: "Future[T]", *, timeout_s: Optional[float], op: str) -> T:
        timeout = self._default_timeout_s if timeout_s is None else float(timeout_s)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as e:
            # The job keeps running on the browser thread; later jobs queue behind it.
            raise WorkerTimeoutError(f"Browser {op} did not finish within {timeout:.0f}s") from e
