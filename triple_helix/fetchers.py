"""Batch content fetchers for the resolver's network tier."""
from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Optional, Sequence

import httpx
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from .errors import ContentFetchError
from .models import Stitch
from .repositories import ContentFetcher


BATCH_ENDPOINT = "/api/content/batch"


class HttpContentFetcher(ContentFetcher):
    """POSTs stitch ids to the content batch endpoint and parses the reply."""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        retry_attempts: int = 3,
        backoff_seconds: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.retry_attempts = max(1, retry_attempts)
        self.backoff_seconds = backoff_seconds
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=True,
        )
        self._headers = headers

    async def close(self) -> None:
        await self.client.aclose()

    async def fetch(self, stitch_ids: Sequence[str]) -> List[Stitch]:
        """Fetch a batch of stitches, retrying timeouts and server errors.

        Raises:
            ContentFetchError: when every attempt fails or the server reports
                an explicit failure.
        """

        if not stitch_ids:
            return []
        last_error: Optional[Exception] = None

        for attempt in range(self.retry_attempts):
            try:
                response = await self.client.post(
                    f"{self.api_url}{BATCH_ENDPOINT}",
                    json={"stitchIds": list(stitch_ids)},
                    headers=self._headers,
                )
                response.raise_for_status()
                return self._parse(response.json())

            except httpx.TimeoutException as e:
                last_error = e
                logger.warning(
                    f"Content fetch timeout on attempt {attempt + 1}/{self.retry_attempts}"
                )

            except httpx.HTTPStatusError as e:
                last_error = e
                if e.response.status_code < 500:
                    raise ContentFetchError(
                        f"Content batch request rejected with status {e.response.status_code}"
                    ) from e
                logger.warning(
                    f"Content server error {e.response.status_code} on attempt "
                    f"{attempt + 1}/{self.retry_attempts}"
                )

            except httpx.TransportError as e:
                last_error = e
                logger.warning(f"Content transport error on attempt {attempt + 1}: {e}")

            except ValueError as e:
                raise ContentFetchError(f"Malformed content batch response: {e}") from e

            if attempt < self.retry_attempts - 1:
                await asyncio.sleep(self.backoff_seconds * (2 ** attempt))

        raise ContentFetchError(f"Content batch request failed: {last_error}") from last_error

    def _parse(self, payload) -> List[Stitch]:
        if not isinstance(payload, dict):
            raise ContentFetchError("Content batch response must be a JSON object")
        if not payload.get("success", False):
            raise ContentFetchError(payload.get("error") or "Content batch request reported failure")
        stitches: List[Stitch] = []
        for item in payload.get("stitches") or []:
            try:
                stitches.append(Stitch.model_validate(item))
            except PydanticValidationError as e:
                logger.warning(f"Skipping malformed stitch {item.get('id') if isinstance(item, dict) else item!r}: {e}")
        return stitches


class InMemoryContentFetcher(ContentFetcher):
    """Serves stitches from a dict; stands in for the content server in local runs."""

    def __init__(self, stitches: Iterable[Stitch] = (), fail: bool = False) -> None:
        self._stitches: Dict[str, Stitch] = {stitch.id: stitch for stitch in stitches}
        self.fail = fail
        self.requests: List[List[str]] = []

    def add(self, stitch: Stitch) -> None:
        self._stitches[stitch.id] = stitch

    @property
    def call_count(self) -> int:
        return len(self.requests)

    async def fetch(self, stitch_ids: Sequence[str]) -> List[Stitch]:
        self.requests.append(list(stitch_ids))
        await asyncio.sleep(0)
        if self.fail:
            raise ContentFetchError("Content server unavailable")
        return [self._stitches[stitch_id] for stitch_id in stitch_ids if stitch_id in self._stitches]


__all__ = ["BATCH_ENDPOINT", "HttpContentFetcher", "InMemoryContentFetcher"]
