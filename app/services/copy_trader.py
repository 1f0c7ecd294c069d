from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable

from app.adapters.abis import buy_selectors
from app.adapters.chain import BlockHead, ChainGateway, normalize_address
from app.adapters.trade_feed import FeedTransaction, TradeFeedAdapter
from app.bot import templates
from app.core.errors import ChainNetworkError, TradeBotError, TradeRevertedError
from app.services.sessions import CopyTradeSession, GasTier, SessionRegistry, WalletAccount
from app.services.swap_executor import SwapExecutor, from_base_units

logger = logging.getLogger(__name__)

Notifier = Callable[[int, str], Awaitable[None]]


def clamp_amount(observed: Decimal, limit: Decimal) -> Decimal:
    return min(observed, limit)


def effective_gas_price(base: int, tier: GasTier) -> int:
    return int(base) * tier.multiplier


@dataclass
class MirrorOrder:
    user_id: int
    watched_address: str
    account: WalletAccount
    token: str
    observed: Decimal
    amount: Decimal
    gas_tier: GasTier
    slippage: Decimal
    source_hash: str


class CopyTrader:
    """Polls watched wallets and mirrors their router buys for each follower."""

    def __init__(
        self,
        registry: SessionRegistry,
        feed: TradeFeedAdapter,
        gateway: ChainGateway,
        executor: SwapExecutor,
        buy_function: str,
        freshness_sec: int = 5,
        session_timeout_sec: float = 4.0,
        native_symbol: str = "RON",
        explorer_url: str = "",
    ) -> None:
        self.registry = registry
        self.feed = feed
        self.gateway = gateway
        self.executor = executor
        self.selectors = buy_selectors(buy_function)
        self.freshness_sec = freshness_sec
        self.session_timeout_sec = session_timeout_sec
        self.native_symbol = native_symbol
        self.explorer_url = explorer_url

    async def _notify(self, notifier: Notifier, user_id: int, text: str) -> None:
        try:
            await notifier(user_id, text)
        except Exception as exc:  # noqa: BLE001
            logger.warning("copy_notify_failed", extra={"event": "copy_notify_failed", "user_id": user_id, "error": str(exc)})

    async def tick(self, notifier: Notifier) -> int:
        """One polling pass. Returns the number of mirrored trades that confirmed."""
        sessions = self.registry.active_copy_sessions()
        if not sessions:
            return 0
        try:
            head = await self.gateway.get_block_head()
        except TradeBotError as exc:
            logger.warning("copy_tick_head_failed", extra={"event": "copy_tick_head_failed", "error": str(exc)})
            return 0

        detections = await asyncio.gather(
            *(self._detect_bounded(s, head, notifier) for s in sessions), return_exceptions=True
        )
        orders: list[MirrorOrder] = []
        for session, result in zip(sessions, detections):
            if isinstance(result, BaseException):
                logger.warning(
                    "copy_session_failed",
                    extra={"event": "copy_session_failed", "user_id": session.user_id, "error": repr(result)},
                )
            elif result is not None:
                orders.append(result)
        if not orders:
            return 0

        # signed transactions are not time-boxed; they run to a receipt
        outcomes = await asyncio.gather(*(self._execute(o, notifier) for o in orders), return_exceptions=True)
        mirrored = 0
        for order, outcome in zip(orders, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "copy_execute_crashed",
                    extra={"event": "copy_execute_crashed", "user_id": order.user_id, "error": repr(outcome)},
                )
            elif outcome:
                mirrored += 1
        logger.info(
            "copy_tick_done",
            extra={"event": "copy_tick_done", "sessions": len(sessions), "orders": len(orders), "mirrored": mirrored},
        )
        return mirrored

    async def _detect_bounded(self, session: CopyTradeSession, head: BlockHead, notifier: Notifier) -> MirrorOrder | None:
        try:
            return await asyncio.wait_for(self._detect(session, head, notifier), timeout=self.session_timeout_sec)
        except asyncio.TimeoutError:
            logger.warning("copy_session_timeout", extra={"event": "copy_session_timeout", "user_id": session.user_id})
            return None

    def _candidate(self, tx: FeedTransaction, head: BlockHead) -> tuple[str, Decimal] | None:
        if head.timestamp - tx.block_timestamp > self.freshness_sec:
            return None
        if tx.is_error == "1" or tx.selector not in self.selectors:
            return None
        if normalize_address(tx.to or "") != self.gateway.router_address:
            return None
        _, params = self.gateway.decode_router_input(tx.input_data)
        path = params.get("path") or []
        token = normalize_address(str(path[-1])) if path else None
        if token is None:
            return None
        observed = from_base_units(tx.value)
        if observed <= 0:
            return None
        return token, observed

    async def _detect(self, session: CopyTradeSession, head: BlockHead, notifier: Notifier) -> MirrorOrder | None:
        user_id = session.user_id
        async with self.registry.lock(user_id):
            copy = self.registry.get_copy(user_id)
            if copy is None or not copy.active or not copy.configured:
                return None
            watched = copy.watched_address
            seen = copy.last_seen_hash

        txs = await self.feed.get_recent_transactions(watched)
        if not txs:
            return None
        latest = txs[-1]
        if latest.transaction_hash == seen:
            return None
        candidate = self._candidate(latest, head)
        if candidate is None:
            return None
        token, observed = candidate

        async with self.registry.lock(user_id):
            copy = self.registry.get_copy(user_id)
            if copy is None or not copy.active or copy.watched_address != watched:
                return None
            if copy.last_seen_hash == latest.transaction_hash:
                return None
            copy.last_seen_hash = latest.transaction_hash
            wallet = self.registry.get_wallet(user_id)
            account = wallet.account if wallet is not None and wallet.connected else None
            limit, gas_tier, slippage = copy.limit, copy.gas_tier, copy.slippage

        logger.info(
            "copy_trade_detected",
            extra={"event": "copy_trade_detected", "user_id": user_id, "watched": watched, "tx_hash": latest.transaction_hash},
        )
        if account is None:
            await self._notify(notifier, user_id, templates.copy_trade_connect_wallet(watched))
            return None
        assert limit is not None and gas_tier is not None and slippage is not None
        return MirrorOrder(
            user_id=user_id,
            watched_address=watched,
            account=account,
            token=token,
            observed=observed,
            amount=clamp_amount(observed, limit),
            gas_tier=gas_tier,
            slippage=slippage,
            source_hash=latest.transaction_hash,
        )

    async def _execute(self, order: MirrorOrder, notifier: Notifier) -> bool:
        await self._notify(
            notifier,
            order.user_id,
            templates.copy_trade_detected(order.watched_address, order.token, order.observed, order.amount, self.native_symbol),
        )
        try:
            base = await self.gateway.get_gas_price()
            receipt = await self.executor.buy(
                order.account,
                order.token,
                order.amount,
                order.slippage,
                gas_price=effective_gas_price(base, order.gas_tier),
            )
        except TradeRevertedError as exc:
            await self._notify(notifier, order.user_id, templates.trade_reverted(exc.reason))
            return False
        except ChainNetworkError:
            await self._notify(notifier, order.user_id, templates.network_error())
            return False
        except TradeBotError as exc:
            await self._notify(notifier, order.user_id, f"⚠️ {exc.user_message}")
            return False

        logger.info(
            "copy_trade_mirrored",
            extra={"event": "copy_trade_mirrored", "user_id": order.user_id, "source": order.source_hash, "tx_hash": receipt.transaction_hash},
        )
        text = templates.trade_success("copy buy", receipt.transaction_hash, self.explorer_url, receipt.balance_after, "tokens")
        await self._notify(notifier, order.user_id, text)
        return True
