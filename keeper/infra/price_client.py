"""
Minimal async HTTP client for the Pyth Hermes REST API using HTTP/2.

Used as the fallback price source when the streaming feed is down.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Optional

import httpx

from keeper.core import json_utils
from keeper.core.errors import TransportError


class HermesClient:
    def __init__(
        self,
        base_url: str = "https://hermes.pyth.network",
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        # A shared client is not closed by close(); an owned one is.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, http2=True, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def latest_price_updates(self, feed_ids: Iterable[str]) -> List[dict[str, Any]]:
        """
        GET /v2/updates/price/latest?ids[]=...

        Returns the `parsed` list: [{"id": ..., "price": {"price", "conf",
        "expo", "publish_time"}, ...}]. Ids are sent without the 0x prefix.
        """
        params = [("ids[]", _strip_0x(fid)) for fid in feed_ids]
        if not params:
            return []
        try:
            resp = await self.client.get("/v2/updates/price/latest", params=params)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransportError(f"hermes latest price request failed: {exc}") from exc
        data = json_utils.loads(resp.content)
        if isinstance(data, dict):
            parsed = data.get("parsed")
            if isinstance(parsed, list):
                return parsed
        return []


def _strip_0x(feed_id: str) -> str:
    return feed_id[2:] if feed_id.startswith("0x") else feed_id
