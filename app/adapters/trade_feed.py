from __future__ import annotations

import logging

import httpx
from pydantic import BaseModel, Field, ValidationError

from app.core.errors import TransientFeedError
from app.core.http import ResilientHTTPClient

logger = logging.getLogger(__name__)


class FeedTransaction(BaseModel):
    transaction_hash: str = Field(alias="hash")
    input_data: str = Field(default="0x", alias="input")
    block_timestamp: int = Field(alias="timeStamp")
    value: int = 0
    to: str | None = None
    is_error: str = Field(default="0", alias="isError")

    model_config = {"populate_by_name": True}

    @property
    def selector(self) -> str:
        return (self.input_data or "")[:10].lower()


class TradeFeedAdapter:
    """Etherscan compatible ``account/txlist`` client."""

    def __init__(self, http: ResilientHTTPClient, base_url: str, api_key: str = "", page_size: int = 10) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.page_size = max(1, int(page_size))

    async def get_recent_transactions(self, address: str) -> list[FeedTransaction]:
        """Latest outgoing transactions of ``address``, most-recent-last."""
        params = {
            "module": "account",
            "action": "txlist",
            "address": address,
            "page": 1,
            "offset": self.page_size,
            "sort": "desc",
        }
        if self.api_key:
            params["apikey"] = self.api_key
        try:
            payload = await self.http.get_json(self.base_url, params=params)
        except (httpx.HTTPError, ValueError) as exc:
            raise TransientFeedError(f"trade feed request failed: {exc}") from exc
        return self.parse(payload)

    @staticmethod
    def parse(payload) -> list[FeedTransaction]:
        if not isinstance(payload, dict):
            raise TransientFeedError("trade feed returned a non-object payload")
        rows = payload.get("result")
        if isinstance(rows, str):
            # "No transactions found" comes back as status 0 with a string result
            if str(payload.get("status")) == "0" and "no transactions" in str(payload.get("message", "")).lower():
                return []
            raise TransientFeedError(f"trade feed error: {rows}")
        if not isinstance(rows, list):
            raise TransientFeedError("trade feed payload has no result list")
        out: list[FeedTransaction] = []
        for row in rows:
            try:
                out.append(FeedTransaction.model_validate(row))
            except ValidationError as exc:
                raise TransientFeedError(f"malformed trade feed row: {exc.errors()[0].get('msg')}") from exc
        # requested newest-first; flip so same-block rows keep their order
        out.reverse()
        out.sort(key=lambda tx: tx.block_timestamp)
        return out
