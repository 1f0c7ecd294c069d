from __future__ import annotations

import asyncio
import logging
import time
from decimal import ROUND_FLOOR, Decimal, InvalidOperation, localcontext

from app.adapters.chain import ChainGateway, TradeReceipt, TransactionSpec, normalize_address
from app.core.errors import ChainNetworkError, TradeBotError, TradeRevertedError, UserInputError
from app.services.sessions import WalletAccount

logger = logging.getLogger(__name__)

NATIVE_DECIMALS = 18
# uint256 fits in 78 decimal digits
_PREC = 80


def parse_amount(text: str) -> Decimal:
    """Positive finite decimal from user text, else ``UserInputError``."""
    raw = (text or "").strip().replace(",", "")
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise UserInputError("Amount must be a number, e.g. 10 or 0.5.") from exc
    if not value.is_finite() or value <= 0:
        raise UserInputError("Amount must be greater than zero.")
    return value


def to_base_units(amount: Decimal | str, decimals: int = NATIVE_DECIMALS) -> int:
    value = parse_amount(str(amount))
    with localcontext() as ctx:
        ctx.prec = _PREC
        scaled = value.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise UserInputError(f"Too many decimal places: this token supports at most {decimals}.")
        return int(scaled)


def from_base_units(raw: int, decimals: int = NATIVE_DECIMALS) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = _PREC
        return Decimal(int(raw)).scaleb(-decimals)


def minimum_out(expected: int, slippage: Decimal) -> int:
    if not (Decimal(0) < slippage <= Decimal(1)):
        raise UserInputError("Slippage must be between 0 and 100%.")
    with localcontext() as ctx:
        ctx.prec = _PREC
        bound = Decimal(int(expected)) * (Decimal(1) - slippage)
        return int(bound.to_integral_value(rounding=ROUND_FLOOR))


def sell_share(balance_raw: int, pct: Decimal) -> int:
    """Floored ``pct``% of a base-unit balance. 100% is the whole balance."""
    if pct >= 100:
        return int(balance_raw)
    num, den = pct.as_integer_ratio()
    return int(balance_raw) * num // (den * 100)


class SwapExecutor:
    def __init__(
        self,
        gateway: ChainGateway,
        wrapped_native_address: str,
        buy_function: str,
        sell_function: str,
        deadline_sec: int = 600,
    ) -> None:
        self.gateway = gateway
        self.router = gateway.router_address
        self.wrapped_native = normalize_address(wrapped_native_address) or wrapped_native_address
        self.buy_function = buy_function
        self.sell_function = sell_function
        self.deadline_sec = deadline_sec
        self._account_locks: dict[str, asyncio.Lock] = {}

    def _account_lock(self, address: str) -> asyncio.Lock:
        key = address.lower()
        lock = self._account_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._account_locks[key] = lock
        return lock

    def _deadline(self) -> int:
        return int(time.time()) + int(self.deadline_sec)

    @staticmethod
    def _require_token(address: str) -> str:
        token = normalize_address(address)
        if token is None:
            raise UserInputError("That is not a valid token address.")
        return token

    async def native_balance(self, owner: str) -> Decimal:
        return from_base_units(await self.gateway.get_balance(owner))

    async def token_balance_raw(self, owner: str, token: str) -> tuple[int, int]:
        """(balance in base units, token decimals)"""
        token = self._require_token(token)
        decimals = int(await self.gateway.call(token, "decimals"))
        raw = int(await self.gateway.call(token, "balanceOf", [owner]))
        return raw, decimals

    async def token_balance(self, owner: str, token: str) -> Decimal:
        raw, decimals = await self.token_balance_raw(owner, token)
        return from_base_units(raw, decimals)

    async def buy(
        self,
        account: WalletAccount,
        token_out: str,
        native_amount: Decimal | str,
        slippage: Decimal,
        gas_price: int | None = None,
    ) -> TradeReceipt:
        token = self._require_token(token_out)
        amount_wei = to_base_units(native_amount)
        try:
            async with self._account_lock(account.address):
                if gas_price is None:
                    gas_price = await self.gateway.get_gas_price()
                path = [self.wrapped_native, token]
                amounts = await self.gateway.call(self.router, "getAmountsOut", [amount_wei, path])
                min_out = minimum_out(int(amounts[-1]), slippage)
                data = self.gateway.encode_call(
                    self.router, self.buy_function, [min_out, path, account.address, self._deadline()]
                )
                spec = TransactionSpec(sender=account.address, to=self.router, data=data, value=amount_wei, gas_price=gas_price)
                receipt = await self.gateway.sign_and_send(spec, account)
        except TradeBotError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("buy_failed", extra={"event": "buy_failed", "token": token})
            raise ChainNetworkError() from exc

        if not receipt.succeeded:
            raise TradeRevertedError(receipt.revert_reason, receipt.transaction_hash)
        logger.info(
            "buy_confirmed",
            extra={"event": "buy_confirmed", "token": token, "amount_wei": amount_wei, "tx_hash": receipt.transaction_hash},
        )
        receipt.amount_in = Decimal(str(native_amount))
        try:
            receipt.balance_after = await self.token_balance(account.address, token)
        except Exception as exc:  # noqa: BLE001
            logger.warning("post_trade_balance_failed", extra={"event": "post_trade_balance_failed", "error": str(exc)})
        return receipt

    async def sell(
        self,
        account: WalletAccount,
        token_in: str,
        token_amount: Decimal | str,
        slippage: Decimal,
        gas_price: int | None = None,
    ) -> TradeReceipt:
        token = self._require_token(token_in)
        parse_amount(str(token_amount))
        try:
            # approve and swap share the lock: the swap is built only after the approval receipt
            async with self._account_lock(account.address):
                decimals = int(await self.gateway.call(token, "decimals"))
                amount_raw = to_base_units(token_amount, decimals)
                if gas_price is None:
                    gas_price = await self.gateway.get_gas_price()

                allowance = int(await self.gateway.call(token, "allowance", [account.address, self.router]))
                if allowance < amount_raw:
                    logger.info("approve_required", extra={"event": "approve_required", "token": token, "allowance": allowance})
                    approve_data = self.gateway.encode_call(token, "approve", [self.router, amount_raw])
                    approval = await self.gateway.sign_and_send(
                        TransactionSpec(sender=account.address, to=token, data=approve_data, gas_price=gas_price), account
                    )
                    if not approval.succeeded:
                        raise TradeRevertedError(approval.revert_reason or "token approval failed", approval.transaction_hash)

                path = [token, self.wrapped_native]
                amounts = await self.gateway.call(self.router, "getAmountsOut", [amount_raw, path])
                min_out = minimum_out(int(amounts[-1]), slippage)
                data = self.gateway.encode_call(
                    self.router, self.sell_function, [amount_raw, min_out, path, account.address, self._deadline()]
                )
                receipt = await self.gateway.sign_and_send(
                    TransactionSpec(sender=account.address, to=self.router, data=data, gas_price=gas_price), account
                )
        except TradeBotError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("sell_failed", extra={"event": "sell_failed", "token": token})
            raise ChainNetworkError() from exc

        if not receipt.succeeded:
            raise TradeRevertedError(receipt.revert_reason, receipt.transaction_hash)
        logger.info("sell_confirmed", extra={"event": "sell_confirmed", "token": token, "tx_hash": receipt.transaction_hash})
        receipt.amount_in = Decimal(str(token_amount))
        try:
            receipt.balance_after = await self.native_balance(account.address)
        except Exception as exc:  # noqa: BLE001
            logger.warning("post_trade_balance_failed", extra={"event": "post_trade_balance_failed", "error": str(exc)})
        return receipt
