from __future__ import annotations

import asyncio
from datetime import date
from pathlib import Path

import pytest

from fakes import FakeCaptcha, FakeDriver, FakeScorer, detail_raw, list_row, sample_record
from medula_rx_check.cache import LocalCache
from medula_rx_check.config import AppConfig, PortalConfig
from medula_rx_check.errors import IpNotAuthorizedError
from medula_rx_check.models import PortalCredentials
from medula_rx_check.service import AutomationService, Envelope


CREDS = PortalCredentials(username="eczane1", password="s3cret")


class _Factory:
    def __init__(self, **driver_kwargs) -> None:
        self.driver_kwargs = driver_kwargs
        self.drivers: list[FakeDriver] = []

    def __call__(self) -> FakeDriver:
        d = FakeDriver(**self.driver_kwargs)
        self.drivers.append(d)
        return d


def _service(tmp_path: Path, factory: _Factory) -> AutomationService:
    cfg = AppConfig(portal=PortalConfig(retry_delay_s=0, username="eczane1", password="s3cret"))
    return AutomationService(
        cfg,
        driver_factory=factory,
        captcha=FakeCaptcha(),  # type: ignore[arg-type]
        cache=LocalCache(str(tmp_path / "cache.db")),
        ip_lookup=lambda: None,
    )


def test_envelope_from_portal_error_carries_code() -> None:
    env = Envelope.fail(IpNotAuthorizedError("IP not authorized"))
    assert env.success is False
    assert env.code == "ip_not_authorized"
    assert env.error == "IP not authorized"

    other = Envelope.fail(ValueError("bad input"))
    assert other.code == "ValueError"


def test_operations_before_initialize_fail_with_envelope(tmp_path: Path) -> None:
    svc = _service(tmp_path, _Factory())
    try:
        assert not svc.is_ready()
        assert svc.current_url() is None

        env = svc.search_record("12345")
        assert env.success is False
        assert env.code == "driver_unavailable"
    finally:
        svc.close()


def test_login_and_search_via_envelopes(tmp_path: Path) -> None:
    factory = _Factory(login_outcomes=["ok"], records={"12345": detail_raw("12345")})
    with _service(tmp_path, factory) as svc:
        assert svc.is_ready()

        home = svc.navigate_to_portal_home()
        assert home.success
        assert home.data["page"] == "login_form"

        login = svc.login()
        assert login.success, login.error
        assert login.data["status"] == "logged_in"
        assert login.data["attempts"] == 1

        found = svc.search_record("12345")
        assert found.success
        assert found.data["receteNo"] == "12345"
        assert len(found.data["ilaclar"]) == 3

        missing = svc.search_record("00000")
        assert missing.success is False
        assert missing.code == "record_not_found"

    assert factory.drivers[0].closed


def test_login_failure_is_reported_not_raised(tmp_path: Path) -> None:
    factory = _Factory(login_outcomes=["IP bu eczane için giriş yapmaya yetkili değildir."])
    with _service(tmp_path, factory) as svc:
        env = svc.login(CREDS)
        assert env.success is False
        assert env.code == "ip_not_authorized"


def test_set_debug_mode_restarts_running_browser(tmp_path: Path) -> None:
    factory = _Factory()
    with _service(tmp_path, factory) as svc:
        env = svc.set_debug_mode(True)
        assert env.success
        assert env.data == {"debug": True, "restarted": True}
        assert len(factory.drivers) == 2
        assert factory.drivers[0].closed

        again = svc.set_debug_mode(True)
        assert again.data == {"debug": True, "restarted": False}
        assert len(factory.drivers) == 2


def test_poll_auto_fetch_caches_record_shown_in_portal(tmp_path: Path) -> None:
    factory = _Factory(logged_in=True, records={"12345": detail_raw("12345")})
    with _service(tmp_path, factory) as svc:
        driver = factory.drivers[0]
        driver.page = "detail"
        driver.current_recete = "12345"

        env = svc.poll_auto_fetch()
        assert env.success
        assert env.data == "12345"
        svc.auto_fetcher.close(wait=True)

        assert svc.cache.get_record("12345") is not None


def test_analysis_requires_scoring_url(tmp_path: Path) -> None:
    with _service(tmp_path, _Factory()) as svc:
        with pytest.raises(ValueError):
            svc.analysis()
        orch = svc.analysis(FakeScorer())
        assert orch.concurrency == 3


def test_analysis_of_cached_record_never_starts_browser(tmp_path: Path) -> None:
    factory = _Factory()
    svc = _service(tmp_path, factory)
    try:
        svc.cache.put_record(sample_record("12345"))

        outcome = asyncio.run(svc.analysis(FakeScorer()).analyze("12345"))

        assert sorted(outcome.computed) == ["111", "222"]
        assert factory.drivers == []
        assert not svc.is_ready()
    finally:
        svc.close()


def test_analysis_of_uncached_record_starts_browser_to_fetch(tmp_path: Path) -> None:
    factory = _Factory(login_outcomes=["ok"], records={"12345": detail_raw("12345")})
    svc = _service(tmp_path, factory)
    try:
        outcome = asyncio.run(svc.analysis(FakeScorer()).analyze("12345"))

        assert sorted(outcome.computed) == ["111", "222"]
        assert len(factory.drivers) == 1
        assert factory.drivers[0].searches == ["12345"]
    finally:
        svc.close()
    assert factory.drivers[0].closed


def test_list_records_envelope(tmp_path: Path) -> None:
    factory = _Factory(logged_in=True, list_pages={"20250301": [[list_row("A1"), list_row("A2")]]})
    with _service(tmp_path, factory) as svc:
        env = svc.list_records(date(2025, 3, 1), date(2025, 3, 31))
        assert env.success, env.error
        assert [row["receteNo"] for row in env.data] == ["A1", "A2"]
        assert env.data[0]["receteTarihi"] == "2025-03-01"
        assert "ad" not in env.data[0]

        bad = svc.list_records(date(2025, 4, 1), date(2025, 3, 1))
        assert bad.success is False
        assert bad.code == "ValueError"


def test_ip_refusal_envelope_names_ip(tmp_path: Path) -> None:
    factory = _Factory(login_outcomes=["IP bu eczane için giriş yapmaya yetkili değildir."])
    cfg = AppConfig(portal=PortalConfig(retry_delay_s=0, username="eczane1", password="s3cret"))
    svc = AutomationService(
        cfg,
        driver_factory=factory,
        captcha=FakeCaptcha(),  # type: ignore[arg-type]
        cache=LocalCache(str(tmp_path / "cache.db")),
        ip_lookup=lambda: "192.0.2.44",
    )
    with svc:
        env = svc.login()
    assert env.code == "ip_not_authorized"
    assert "192.0.2.44" in (env.error or "")
