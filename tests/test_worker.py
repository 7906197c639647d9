from __future__ import annotations

import threading
import time

import pytest

from fakes import FakeDriver
from medula_rx_check.errors import DriverUnavailableError, WorkerTimeoutError
from medula_rx_check.portal.worker import BrowserWorker


def test_jobs_run_on_one_browser_thread() -> None:
    worker = BrowserWorker(FakeDriver)
    worker.start()
    try:
        names = {worker.call(lambda d: threading.current_thread().name) for _ in range(5)}
        assert len(names) == 1
        name = names.pop()
        assert name.startswith("browser")
        assert name != threading.current_thread().name
    finally:
        worker.stop()


def test_call_before_start_is_unavailable() -> None:
    worker = BrowserWorker(FakeDriver)
    assert not worker.is_ready
    with pytest.raises(DriverUnavailableError):
        worker.call(lambda d: d.url)


def test_slow_job_times_out() -> None:
    worker = BrowserWorker(FakeDriver)
    worker.start()
    try:
        with pytest.raises(WorkerTimeoutError):
            worker.call(lambda d: time.sleep(0.5), timeout_s=0.05, op="slow")
        # The queue keeps working once the slow job finishes.
        assert worker.call(lambda d: d.url, timeout_s=5) == "about:blank"
    finally:
        worker.stop()


def test_restart_replaces_driver() -> None:
    drivers: list[FakeDriver] = []

    def factory() -> FakeDriver:
        drivers.append(FakeDriver())
        return drivers[-1]

    worker = BrowserWorker(factory)
    worker.start()
    worker.restart()
    try:
        assert len(drivers) == 2
        assert drivers[0].closed
        assert worker.call(lambda d: d) is drivers[1]
    finally:
        worker.stop()
    assert drivers[1].closed
    assert not worker.is_ready
