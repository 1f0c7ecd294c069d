from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class ResilientHTTPClient:
    """Shared ``httpx.AsyncClient`` with bounded retries on transport errors and 5xx."""

    def __init__(self, timeout: float = 10.0, retries: int = 2, backoff_sec: float = 0.3) -> None:
        self.client = httpx.AsyncClient(timeout=timeout, headers={"User-Agent": "ronin-trade-bot/1.0"})
        self.retries = max(0, int(retries))
        self.backoff_sec = backoff_sec

    async def get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        last_exc: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                resp = await self.client.get(url, params=params)
                resp.raise_for_status()
                return resp.json()
            except httpx.HTTPStatusError as exc:
                last_exc = exc
                if exc.response.status_code < 500:
                    raise
            except httpx.TransportError as exc:
                last_exc = exc
            logger.warning(
                "http_retry",
                extra={"event": "http_retry", "url": url, "attempt": attempt + 1, "error": str(last_exc)},
            )
            if attempt < self.retries:
                await asyncio.sleep(self.backoff_sec * (attempt + 1))
        raise last_exc or RuntimeError(f"GET {url} failed")

    async def close(self) -> None:
        await self.client.aclose()
