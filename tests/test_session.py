from __future__ import annotations

import pytest

from fakes import SEL, FakeCaptcha, FakeDriver
from medula_rx_check.config import PortalConfig
from medula_rx_check.errors import (
    CaptchaElementNotFoundError,
    CaptchaServiceError,
    DriverTimeoutError,
    DriverUnavailableError,
    FormNotFoundError,
    InvalidSecurityCodeError,
    IpNotAuthorizedError,
    LoginRejectedError,
    MaxAttemptsExceededError,
    MissingCredentialsError,
)
from medula_rx_check.events import EventBus, LoginAttemptStarted, SessionStatusChanged
from medula_rx_check.models import PortalCredentials, SessionStatus
from medula_rx_check.portal.captcha import CaptchaSolver
from medula_rx_check.portal.session import SessionController


CREDS = PortalCredentials(username="eczane1", password="s3cret")


def _controller(captcha: FakeCaptcha, *, max_attempts: int = 5, bus: EventBus | None = None):
    sleeps: list[float] = []
    cfg = PortalConfig(max_login_attempts=max_attempts, retry_delay_s=0.25)
    ctl = SessionController(config=cfg, captcha=captcha, events=bus or EventBus(), sleep=sleeps.append)
    return ctl, sleeps


def test_login_succeeds_on_first_attempt() -> None:
    driver = FakeDriver(login_outcomes=["ok"])
    captcha = FakeCaptcha(code="48213")
    ctl, sleeps = _controller(captcha)

    session = ctl.login(driver, CREDS)

    assert session.status == SessionStatus.LOGGED_IN
    assert session.attempt_count == 1
    assert captcha.calls == 1
    assert sleeps == []
    assert driver.fields[SEL.captcha_input] == "48213"


def test_ip_not_authorized_is_terminal_after_one_attempt() -> None:
    driver = FakeDriver(login_outcomes=["IP bu eczane için giriş yapmaya yetkili değildir."] * 5)
    captcha = FakeCaptcha()
    ctl, _ = _controller(captcha)

    with pytest.raises(IpNotAuthorizedError):
        ctl.login(driver, CREDS)

    assert ctl.session.attempt_count == 1
    assert ctl.session.status == SessionStatus.ERROR
    assert ctl.session.last_error == "ip_not_authorized"
    assert captcha.calls == 1
    assert driver.submits == 1


def test_invalid_security_code_reloads_once_and_retries() -> None:
    driver = FakeDriver(login_outcomes=["Geçersiz güvenlik kodu", "ok"])
    captcha = FakeCaptcha()
    ctl, sleeps = _controller(captcha)

    session = ctl.login(driver, CREDS)

    assert session.status == SessionStatus.LOGGED_IN
    assert session.attempt_count == 2
    # One initial navigation plus exactly one reload.
    assert driver.goto_count == 2
    # One CAPTCHA call per attempt, never more.
    assert captcha.calls == 2
    assert sleeps == [0.25]


def test_unknown_banner_is_terminal() -> None:
    driver = FakeDriver(login_outcomes=["Kullanıcı adı veya şifre hatalı"])
    ctl, _ = _controller(FakeCaptcha())

    with pytest.raises(LoginRejectedError) as excinfo:
        ctl.login(driver, CREDS)

    assert excinfo.value.banner == "Kullanıcı adı veya şifre hatalı"
    assert ctl.session.attempt_count == 1
    assert driver.debug_saved


def test_max_attempts_exceeded_chains_last_cause() -> None:
    driver = FakeDriver(login_outcomes=["Geçersiz güvenlik kodu"] * 10)
    captcha = FakeCaptcha()
    ctl, sleeps = _controller(captcha, max_attempts=3)

    with pytest.raises(MaxAttemptsExceededError) as excinfo:
        ctl.login(driver, CREDS)

    assert isinstance(excinfo.value.__cause__, InvalidSecurityCodeError)
    assert ctl.session.attempt_count == 3
    assert captcha.calls == 3
    assert len(sleeps) == 3
    assert ctl.session.status == SessionStatus.ERROR


def test_ambiguous_result_reloads_and_retries() -> None:
    driver = FakeDriver(login_outcomes=["stay", "stay", "ok"])
    ctl, _ = _controller(FakeCaptcha())

    session = ctl.login(driver, CREDS)

    assert session.status == SessionStatus.LOGGED_IN
    assert session.attempt_count == 3
    assert driver.goto_count == 3


def test_missing_credentials_makes_no_attempt() -> None:
    driver = FakeDriver()
    captcha = FakeCaptcha()
    ctl, _ = _controller(captcha)

    with pytest.raises(MissingCredentialsError):
        ctl.login(driver, None)
    with pytest.raises(MissingCredentialsError):
        ctl.login(driver, PortalCredentials(username="eczane1", password=""))

    assert ctl.session.attempt_count == 0
    assert driver.goto_count == 0
    assert captcha.calls == 0


def test_form_not_found() -> None:
    driver = FakeDriver(form_missing=True)
    captcha = FakeCaptcha()
    ctl, _ = _controller(captcha)

    with pytest.raises(FormNotFoundError):
        ctl.login(driver, CREDS)

    assert captcha.calls == 0
    assert ctl.session.last_error == "form_not_found"


def test_captcha_failures_are_not_retried() -> None:
    driver = FakeDriver(login_outcomes=["ok"])
    captcha = FakeCaptcha(error=CaptchaServiceError("CAPTCHA service returned HTTP 503"))
    ctl, _ = _controller(captcha)

    with pytest.raises(CaptchaServiceError):
        ctl.login(driver, CREDS)

    assert captcha.calls == 1
    assert driver.submits == 0
    assert ctl.session.attempt_count == 1


def test_captcha_image_missing_is_terminal() -> None:
    driver = FakeDriver(login_outcomes=["ok"], captcha_present=False)
    solver = CaptchaSolver("http://localhost:3000/medula/numbers")
    ctl = SessionController(config=PortalConfig(retry_delay_s=0), captcha=solver)

    with pytest.raises(CaptchaElementNotFoundError):
        ctl.login(driver, CREDS)
    assert driver.submits == 0


def test_login_publishes_events() -> None:
    bus = EventBus()
    seen: list[object] = []
    bus.subscribe(LoginAttemptStarted, seen.append)
    bus.subscribe(SessionStatusChanged, seen.append)
    driver = FakeDriver(login_outcomes=["stay", "ok"])
    ctl, _ = _controller(FakeCaptcha(), bus=bus)

    ctl.login(driver, CREDS)

    attempts = [e.attempt for e in seen if isinstance(e, LoginAttemptStarted)]
    statuses = [e.status for e in seen if isinstance(e, SessionStatusChanged)]
    assert attempts == [1, 2]
    assert statuses == [SessionStatus.LOGGING_IN, SessionStatus.LOGGED_IN]


def test_ensure_logged_in_skips_login_when_already_on_portal() -> None:
    driver = FakeDriver(logged_in=True)
    captcha = FakeCaptcha()
    ctl, _ = _controller(captcha)

    state = ctl.ensure_logged_in(driver, lambda: CREDS)

    assert captcha.calls == 0
    assert state.recete_no is None
    assert ctl.is_logged_in


def test_ensure_logged_in_logs_in_when_form_shows() -> None:
    driver = FakeDriver(login_outcomes=["ok"])
    ctl, _ = _controller(FakeCaptcha())

    ctl.ensure_logged_in(driver, lambda: CREDS)

    assert driver.logged_in
    assert ctl.session.attempt_count == 1


def test_restart_resets_session() -> None:
    driver = FakeDriver(login_outcomes=["ok"])
    ctl, _ = _controller(FakeCaptcha())
    ctl.login(driver, CREDS)

    ctl.restart()

    assert ctl.session.status == SessionStatus.IDLE
    assert ctl.session.attempt_count == 0


@pytest.mark.parametrize(
    "error, expected, code",
    [
        (DriverTimeoutError("Timed out after 15000ms: clicking submit"), DriverTimeoutError, "driver_timeout"),
        (RuntimeError("Execution context was destroyed"), DriverUnavailableError, "driver_unavailable"),
    ],
)
def test_driver_failure_mid_attempt_ends_in_error(error: Exception, expected: type, code: str) -> None:
    bus = EventBus()
    statuses: list[SessionStatusChanged] = []
    bus.subscribe(SessionStatusChanged, statuses.append)
    driver = FakeDriver(submit_error=error)
    ctl, _ = _controller(FakeCaptcha(), bus=bus)

    with pytest.raises(expected) as excinfo:
        ctl.login(driver, CREDS)

    if expected is DriverUnavailableError:
        assert excinfo.value.__cause__ is error
    assert ctl.session.status == SessionStatus.ERROR
    assert ctl.session.last_error == code
    assert statuses[-1].status == SessionStatus.ERROR
    assert driver.submits == 1


def test_page_without_menu_is_not_a_login() -> None:
    driver = FakeDriver(login_outcomes=["nomenu", "ok"])
    ctl, _ = _controller(FakeCaptcha())

    session = ctl.login(driver, CREDS)

    assert session.status == SessionStatus.LOGGED_IN
    assert session.attempt_count == 2
    assert driver.goto_count == 2


def test_page_without_menu_every_time_exhausts_attempts() -> None:
    driver = FakeDriver(login_outcomes=["nomenu"] * 5)
    ctl, _ = _controller(FakeCaptcha(), max_attempts=2)

    with pytest.raises(MaxAttemptsExceededError) as excinfo:
        ctl.login(driver, CREDS)

    assert isinstance(excinfo.value.__cause__, LoginRejectedError)
    assert ctl.session.status == SessionStatus.ERROR


def test_ip_refusal_names_public_ip() -> None:
    driver = FakeDriver(login_outcomes=["IP bu eczane için giriş yapmaya yetkili değildir."])
    lookups: list[int] = []

    def lookup() -> str:
        lookups.append(1)
        return "203.0.113.7"

    ctl = SessionController(
        config=PortalConfig(retry_delay_s=0), captcha=FakeCaptcha(), sleep=lambda s: None, ip_lookup=lookup
    )

    with pytest.raises(IpNotAuthorizedError) as excinfo:
        ctl.login(driver, CREDS)

    assert excinfo.value.ip == "203.0.113.7"
    assert "203.0.113.7" in str(excinfo.value)
    assert lookups == [1]


def test_ip_refusal_without_lookup_result() -> None:
    driver = FakeDriver(login_outcomes=["IP bu eczane için giriş yapmaya yetkili değildir."])
    ctl = SessionController(
        config=PortalConfig(retry_delay_s=0), captcha=FakeCaptcha(), sleep=lambda s: None, ip_lookup=lambda: None
    )

    with pytest.raises(IpNotAuthorizedError) as excinfo:
        ctl.login(driver, CREDS)

    assert excinfo.value.ip is None
    assert ctl.session.last_error == "ip_not_authorized"
