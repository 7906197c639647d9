from __future__ import annotations

from typing import Optional


class PortalError(RuntimeError):
    """
    Base class for every failure surfaced by the portal pipeline.

    `code` is a stable, machine-readable kind used by the automation boundary when it converts
    exceptions into result envelopes.
    """

    code: str = "portal_error"


class MissingCredentialsError(PortalError):
    """Raised when no username/password is available for a login attempt."""

    code = "missing_credentials"


class FormNotFoundError(PortalError):
    """Raised when the login form does not appear within the element timeout."""

    code = "form_not_found"


class CaptchaElementNotFoundError(PortalError):
    """Raised when the CAPTCHA challenge image is not present on the login page."""

    code = "captcha_element_not_found"


class CaptchaServiceError(PortalError):
    """Raised when the CAPTCHA solver service fails or returns no code."""

    code = "captcha_service_error"


class IpNotAuthorizedError(PortalError):
    """Raised when the portal refuses logins from this IP for this pharmacy. Never retried."""

    code = "ip_not_authorized"

    def __init__(self, message: str, *, ip: Optional[str] = None) -> None:
        super().__init__(message)
        self.ip = ip


class InvalidSecurityCodeError(PortalError):
    """
    The portal rejected the CAPTCHA answer.

    Retryable: only ever surfaces as the chained cause of `MaxAttemptsExceededError`.
    """

    code = "invalid_security_code"


class LoginRejectedError(PortalError):
    """Raised when the portal shows an error banner we do not recognise."""

    code = "login_rejected"

    def __init__(self, message: str) -> None:
        super().__init__(f"Login rejected by portal: {message}")
        self.banner = message


class MaxAttemptsExceededError(PortalError):
    """Raised when every login attempt was used up without reaching a logged-in page."""

    code = "max_attempts_exceeded"


class RecordNotFoundError(PortalError):
    """Raised when a prescription search does not land on the matching detail page."""

    code = "record_not_found"


class ScrapeIncompleteError(PortalError):
    """Raised when a nested report view could not be read after all retries."""

    code = "scrape_incomplete"


class ScoringServiceError(PortalError):
    """Raised when the report scoring service call fails for one medicine line."""

    code = "scoring_service_error"

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DriverUnavailableError(PortalError):
    """Raised when a browser operation is requested but no page driver is running."""

    code = "driver_unavailable"


class WorkerTimeoutError(DriverUnavailableError):
    """Raised when a browser job does not finish within the outer round-trip timeout."""

    code = "worker_timeout"


class DriverTimeoutError(PortalError):
    """Raised when an element or navigation wait times out inside the page driver."""

    code = "driver_timeout"


class PageActionError(PortalError):
    """Raised when a page action fails for a reason other than a timeout (e.g. a detached element)."""

    code = "page_action_failed"


class AnalysisFailedError(PortalError):
    """Raised when an analysis batch had work to do and every item failed."""

    code = "analysis_failed"

    def __init__(self, message: str, *, errors: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])
