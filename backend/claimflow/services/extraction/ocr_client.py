"""Async client for the document text-detection (OCR) service."""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from claimflow.core.config import get_settings
from claimflow.services.errors import JobPending, OcrJobFailed, OcrUnavailable
from claimflow.services.extraction.contracts import OcrBlock, OcrJobPage, OcrJobStatus

logger = logging.getLogger(__name__)

_FINAL_OK = {OcrJobStatus.SUCCEEDED.value, OcrJobStatus.PARTIAL_SUCCESS.value}


class OcrClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_pages: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url if base_url is not None else settings.ocr_service_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.ocr_api_key
        self.timeout_seconds = timeout_seconds or settings.ocr_timeout_seconds
        self.max_pages = max_pages or settings.ocr_max_pages
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        if not self.base_url:
            raise OcrUnavailable("OCR_SERVICE_URL is not configured")
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout_seconds,
            transport=self._transport,
        )

    async def start_job(self, bucket: str, path: str) -> str:
        async with self._client() as client:
            try:
                resp = await client.post("/jobs", json={"document": {"bucket": bucket, "path": path}})
                resp.raise_for_status()
                data = resp.json()
            except (httpx.HTTPError, ValueError) as exc:
                raise OcrUnavailable(f"Could not start OCR job: {exc}") from exc

        job_id = str(data.get("jobId") or "").strip() if isinstance(data, dict) else ""
        if not job_id:
            raise OcrUnavailable("OCR service returned no job id")
        logger.info("OCR job %s started for %s/%s", job_id, bucket, path)
        return job_id

    async def _fetch_page(self, client: httpx.AsyncClient, job_id: str, next_token: Optional[str]) -> OcrJobPage:
        params = {"next_token": next_token} if next_token else None
        try:
            resp = await client.get(f"/jobs/{job_id}", params=params)
            resp.raise_for_status()
            return OcrJobPage.model_validate(resp.json())
        except (httpx.HTTPError, ValueError, ValidationError) as exc:
            raise OcrUnavailable(f"Could not read OCR job {job_id}: {exc}") from exc

    async def get_job_blocks(self, job_id: str) -> list[OcrBlock]:
        """All blocks of a finished job, following ``nextToken`` pagination.

        Raises ``JobPending`` while the job is still running and
        ``OcrJobFailed`` when the service reports failure.
        """
        blocks: list[OcrBlock] = []
        async with self._client() as client:
            page = await self._fetch_page(client, job_id, None)
            if page.status == OcrJobStatus.FAILED.value:
                raise OcrJobFailed(page.status_message or f"OCR job {job_id} failed")
            if page.status not in _FINAL_OK:
                raise JobPending()

            blocks.extend(page.blocks)
            pages = 1
            while page.next_token and pages < self.max_pages:
                page = await self._fetch_page(client, job_id, page.next_token)
                blocks.extend(page.blocks)
                pages += 1
            if page.next_token:
                logger.warning("OCR job %s truncated at %s pages", job_id, pages)
        return blocks


def get_ocr_client() -> OcrClient:
    return OcrClient()
