from __future__ import annotations

import logging
from typing import Optional

import httpx


logger = logging.getLogger(__name__)


class PublicIpLookup:
    """
    Asks an echo service for this machine's public IP, for the IP-refusal error message.

    Callable with no arguments; returns None when the service cannot be reached.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_s: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout_s = float(timeout_s)
        self._transport = transport

    def __call__(self) -> Optional[str]:
        try:
            with httpx.Client(timeout=self.timeout_s, transport=self._transport) as client:
                resp = client.get(self.url, headers={"Accept": "application/json"})
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Public IP lookup failed: %s", e)
            return None
        ip = str(data.get("ip") or "").strip() if isinstance(data, dict) else ""
        return ip or None
