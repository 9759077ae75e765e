"""
HTTP Extractor
---------------
POSTs each ExtractionRequest to an extraction service and validates the
JSON body it answers with. Transport failures are retried with exponential
back-off; HTTP error statuses are not (the service made a decision).

Auth: set INSIGHT_EXTRACTOR_TOKEN to send `Authorization: Bearer <token>`.
"""
from __future__ import annotations

import os
from typing import Optional

import httpx
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from insight_pipeline.errors import ExtractorError
from insight_pipeline.extraction.base_extractor import BaseExtractor
from insight_pipeline.schemas import ExtractionRequest, ExtractionResult

_HEADERS = {"User-Agent": "InsightPipeline/1.0", "Accept": "application/json"}


class HttpExtractor(BaseExtractor):
    name = "http"

    def __init__(
        self,
        url: str,
        config: dict | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(config)
        self.url = url
        self.request_timeout = float(self.config.get("timeout_seconds", 120.0))
        self._transport = transport

        self.headers = dict(_HEADERS)
        token = os.getenv("INSIGHT_EXTRACTOR_TOKEN")
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.request_timeout,
            headers=self.headers,
            transport=self._transport,
        )

    async def health_check(self) -> bool:
        try:
            async with self._client() as client:
                resp = await client.get(self.url)
                return resp.status_code < 500
        except httpx.HTTPError as exc:
            logger.warning(f"[HttpExtractor] Health check failed: {exc}")
            return False

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        self.call_count += 1
        try:
            payload = await self._post(request)
        except httpx.HTTPStatusError as exc:
            self.error_count += 1
            raise ExtractorError(
                f"Extractor service answered {exc.response.status_code} for {request.chunk_id}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            self.error_count += 1
            raise ExtractorError(f"Extractor service unreachable: {exc}") from exc
        return self.parse_result(payload)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _post(self, request: ExtractionRequest) -> dict:
        async with self._client() as client:
            logger.debug(f"[HttpExtractor] POST {self.url} | {request.chunk_id}")
            resp = await client.post(self.url, json=request.model_dump(mode="json"))
            resp.raise_for_status()
            try:
                return resp.json()
            except ValueError as exc:
                raise ExtractorError(f"Extractor service did not return JSON: {exc}") from exc
