"""Downloads the Network Rail CORPUS and SMART supporting files."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import httpx

from railfeeds.core.config import Settings
from railfeeds.core.telemetry import add_traceparent_header
from railfeeds.services.feed_mapping import decode_corpus, decode_smart
from railfeeds.services.rail_dto import BerthEdge, Location
from railfeeds.services.rail_errors import NotConfiguredError
from railfeeds.services.transport.base import raise_for_status, timed_request

logger = logging.getLogger(__name__)

SUPPORTING_FILE_PATH = "/ntrod/SupportingFileAuthenticate"


class ReferenceDataClient:
    """Fetches the one-shot reference extracts with HTTP basic auth.

    The files are served gzip-compressed behind a redirect; both the
    transport-level ``Content-Encoding`` and a gzip body are handled.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client
        self._owns_client = client is None

    def is_enabled(self) -> bool:
        return self._settings.network_rail_configured

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._settings.reference_data_timeout_seconds,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _download(self, file_type: str) -> bytes:
        if not self.is_enabled():
            raise NotConfiguredError("Network Rail credentials are not configured")

        url = f"{self._settings.network_rail_api_url.rstrip('/')}{SUPPORTING_FILE_PATH}"
        auth = httpx.BasicAuth(
            self._settings.network_rail_username or "",
            self._settings.network_rail_password or "",
        )
        response = await timed_request(
            f"reference_{file_type.lower()}",
            lambda: self._http().get(
                url,
                params={"type": file_type},
                auth=auth,
                headers=add_traceparent_header({"Accept": "application/json"}),
                follow_redirects=True,
            ),
        )
        raise_for_status(f"reference {file_type}", response)
        return response.content

    async def _decode(self, decoder: Callable[[bytes], list[Any]], payload: bytes) -> list[Any]:
        # Extracts run to tens of megabytes; keep the event loop responsive.
        return await asyncio.to_thread(decoder, payload)

    async def fetch_corpus(self) -> list[Location]:
        locations = await self._decode(decode_corpus, await self._download("CORPUS"))
        logger.info("Downloaded CORPUS extract with %d locations", len(locations))
        return locations

    async def fetch_smart(self) -> list[BerthEdge]:
        edges = await self._decode(decode_smart, await self._download("SMART"))
        logger.info("Downloaded SMART extract with %d berth steps", len(edges))
        return edges


__all__ = ["ReferenceDataClient", "SUPPORTING_FILE_PATH"]
