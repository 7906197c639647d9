from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from ..errors import ScoringServiceError
from ..models import AnalysisResult, PrescriptionRecord


logger = logging.getLogger(__name__)


class ScoringClient:
    """
    Client for the report validity scoring service (`POST /report/generate`).

    Every successful call consumes one metered credit, so nothing here retries.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str = "",
        timeout_s: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        parsed = urlparse(base_url or "")
        if parsed.scheme not in ("http", "https"):
            raise ValueError(f"Invalid scoring base_url scheme: {parsed.scheme!r}")
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._timeout_s = float(timeout_s)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self._timeout_s,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def score(self, barkod: str, record: PrescriptionRecord) -> AnalysisResult:
        client = self._get_client()
        payload = {"barkod": barkod, "recete": record.to_wire()}
        try:
            resp = await client.post("/report/generate", json=payload)
        except httpx.HTTPError as e:
            raise ScoringServiceError(f"Scoring request failed for {barkod}: {e}") from e

        if resp.status_code >= 400:
            raise ScoringServiceError(
                f"Scoring service returned HTTP {resp.status_code} for {barkod}: {self._error_message(resp)}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise ScoringServiceError(f"Scoring service returned invalid JSON for {barkod}") from e

        try:
            return AnalysisResult.model_validate(data)
        except ValidationError as e:
            raise ScoringServiceError(f"Scoring service returned an unexpected payload for {barkod}") from e

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            data = resp.json()
        except ValueError:
            return (resp.text or "").strip()[:200]
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return str(data)[:200]
