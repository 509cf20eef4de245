"""GDELT DOC 2.0 article search client."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from quanta_stream.common.http import HttpClient
from quanta_stream.config import get_settings

logger = logging.getLogger(__name__)


def format_gdelt_time(dt: datetime) -> str:
    """UTC ``YYYYMMDDHHMMSS`` as expected by startdatetime/enddatetime."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y%m%d%H%M%S")


class GdeltClient:
    """Query the GDELT article list for a keyword within ``[start, end)``."""

    def __init__(self, base_url: str | None = None, client: HttpClient | None = None) -> None:
        self._base_url = base_url or get_settings().gdelt_api_url
        self._client = client

    async def search(
        self,
        query: str,
        start: datetime,
        end: datetime,
        max_records: int = 50,
    ) -> list[dict]:
        params = {
            "query": query,
            "mode": "artlist",
            "format": "json",
            "startdatetime": format_gdelt_time(start),
            "enddatetime": format_gdelt_time(end),
            "maxrecords": max_records,
        }
        if self._client is not None:
            data = await self._client.get_json("/doc", params=params)
        else:
            async with HttpClient(base_url=self._base_url) as client:
                data = await client.get_json("/doc", params=params)

        if not isinstance(data, dict):
            logger.debug("GDELT returned no JSON for %r", query)
            return []
        articles = data.get("articles") or []
        return [a for a in articles if isinstance(a, dict)]

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
