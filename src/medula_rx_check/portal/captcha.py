from __future__ import annotations

import base64
import logging
from typing import Optional

import httpx

from ..errors import CaptchaElementNotFoundError, CaptchaServiceError
from ..util.text import mask_secret
from .driver import PageDriver
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)


class CaptchaSolver:
    """
    Reads the numeric CAPTCHA on the login page via the external solver service.

    No retries here: a wrong answer is detected by the portal and handled by the login loop.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_s: float = 15.0,
        selectors: Optional[PortalSelectors] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout_s = float(timeout_s)
        self.selectors = selectors or PortalSelectors()
        self._transport = transport

    def resolve(self, driver: PageDriver) -> str:
        image = driver.element_screenshot(self.selectors.captcha_image)
        if not image:
            raise CaptchaElementNotFoundError("CAPTCHA image not found on the login page")

        payload = {"image": base64.b64encode(image).decode("ascii")}
        try:
            with httpx.Client(timeout=self.timeout_s, transport=self._transport) as client:
                resp = client.post(self.url, json=payload, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            raise CaptchaServiceError(f"CAPTCHA service request failed: {e}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise CaptchaServiceError(f"CAPTCHA service returned HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise CaptchaServiceError("CAPTCHA service returned invalid JSON") from e

        code = str(data.get("code") or "").strip() if isinstance(data, dict) else ""
        if not code:
            raise CaptchaServiceError("CAPTCHA service returned no code")

        logger.info("CAPTCHA solved (code=%s).", mask_secret(code))
        return code
