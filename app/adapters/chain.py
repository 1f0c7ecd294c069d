from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError
from web3.middleware import ExtraDataToPOAMiddleware

from app.adapters.abis import ERC20_ABI, router_abi
from app.core.errors import ChainNetworkError, TradeRevertedError
from app.services.sessions import WalletAccount

logger = logging.getLogger(__name__)

# Ronin wallets display addresses as "ronin:<hex>"
_RONIN_PREFIX = "ronin:"


def normalize_address(value: str) -> str | None:
    """Checksummed address, or None when ``value`` is not a 20-byte hex address."""
    raw = (value or "").strip()
    if raw.lower().startswith(_RONIN_PREFIX):
        raw = "0x" + raw[len(_RONIN_PREFIX):]
    if len(raw) != 42 or not raw.lower().startswith("0x"):
        return None
    if not Web3.is_address(raw):
        return None
    return Web3.to_checksum_address(raw)


def is_address(value: str) -> bool:
    return normalize_address(value) is not None


def revert_reason(exc: ContractLogicError) -> str | None:
    text = str(getattr(exc, "message", None) or exc).strip()
    for prefix in ("execution reverted:", "execution reverted"):
        if text.lower().startswith(prefix):
            text = text[len(prefix):].strip()
            break
    return text or None


@dataclass(frozen=True)
class BlockHead:
    number: int
    timestamp: int


@dataclass
class TransactionSpec:
    sender: str
    to: str
    data: str
    value: int = 0
    gas_price: int | None = None
    gas_limit: int | None = None


@dataclass
class TradeReceipt:
    transaction_hash: str
    succeeded: bool
    revert_reason: str | None = None
    amount_in: Decimal | None = None
    balance_after: Decimal | None = None


class ChainGateway:
    """Async JSON-RPC access with provider failover. Reverts map to ``TradeRevertedError``."""

    def __init__(
        self,
        rpc_urls: list[str],
        router_address: str,
        buy_function: str,
        sell_function: str,
        chain_id: int | None = None,
        timeout_sec: float = 30.0,
        retries: int = 3,
        backoff_sec: float = 0.4,
        receipt_timeout_sec: int = 180,
        gas_mode: str = "auto",
        gas_limit_multiplier: float = 1.2,
        priority_fee_gwei: float = 1.5,
    ) -> None:
        if not rpc_urls:
            raise ValueError("at least one RPC url is required")
        self._rpc_urls = list(rpc_urls)
        self._idx = 0
        self._timeout_sec = timeout_sec
        self._retries = max(1, int(retries))
        self._backoff_sec = backoff_sec
        self._receipt_timeout_sec = receipt_timeout_sec
        self._gas_mode = gas_mode.lower()
        self._gas_limit_multiplier = gas_limit_multiplier
        self._priority_fee_wei = int(Web3.to_wei(priority_fee_gwei, "gwei"))
        self._chain_id = chain_id
        self.router_address = Web3.to_checksum_address(router_address)
        self._router_abi = router_abi(buy_function, sell_function)
        self._w3 = self._build(self._rpc_urls[0])

    def _build(self, url: str) -> AsyncWeb3:
        w3 = AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": self._timeout_sec}))
        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        return w3

    async def connect(self) -> None:
        last_err: Exception | None = None
        for idx, url in enumerate(self._rpc_urls):
            w3 = self._build(url)
            try:
                if await w3.is_connected():
                    self._w3, self._idx = w3, idx
                    break
                last_err = ConnectionError(f"node not reachable: {url}")
            except Exception as exc:  # noqa: BLE001
                last_err = exc
            logger.warning("rpc_unreachable", extra={"event": "rpc_unreachable", "url": url, "error": str(last_err)})
        else:
            raise ChainNetworkError() from last_err

        if self._chain_id is None:
            self._chain_id = int(await self._rpc_call("chain_id", lambda: self._w3.eth.chain_id))
        if self._gas_mode == "auto":
            latest = await self._rpc_call("get_block_latest", lambda: self._w3.eth.get_block("latest"))
            self._gas_mode = "1559" if latest.get("baseFeePerGas") is not None else "legacy"
        logger.info(
            "rpc_connected",
            extra={"event": "rpc_connected", "url": self._rpc_urls[self._idx], "chain_id": self._chain_id, "gas_mode": self._gas_mode},
        )

    def _rotate(self) -> None:
        self._idx = (self._idx + 1) % len(self._rpc_urls)
        self._w3 = self._build(self._rpc_urls[self._idx])
        logger.info("rpc_rotated", extra={"event": "rpc_rotated", "url": self._rpc_urls[self._idx]})

    async def _rpc_call(self, label: str, fn: Callable[[], Awaitable[Any]], retries: int | None = None) -> Any:
        attempts = self._retries if retries is None else max(1, retries)
        last_exc: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await fn()
            except ContractLogicError as exc:
                raise TradeRevertedError(revert_reason(exc)) from exc
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                logger.warning(
                    "rpc_call_failed",
                    extra={"event": "rpc_call_failed", "label": label, "attempt": attempt, "error": str(exc)},
                )
                if attempt < attempts:
                    if len(self._rpc_urls) > 1:
                        self._rotate()
                    await asyncio.sleep(self._backoff_sec * attempt)
        raise ChainNetworkError() from last_exc

    def _contract(self, address: str):
        checksummed = Web3.to_checksum_address(address)
        abi = self._router_abi if checksummed == self.router_address else ERC20_ABI
        return self._w3.eth.contract(address=checksummed, abi=abi)

    async def get_gas_price(self) -> int:
        return int(await self._rpc_call("gas_price", lambda: self._w3.eth.gas_price))

    async def get_balance(self, address: str) -> int:
        addr = Web3.to_checksum_address(address)
        return int(await self._rpc_call("get_balance", lambda: self._w3.eth.get_balance(addr)))

    async def get_block_head(self) -> BlockHead:
        latest = await self._rpc_call("get_block_latest", lambda: self._w3.eth.get_block("latest"))
        return BlockHead(number=int(latest["number"]), timestamp=int(latest["timestamp"]))

    async def call(self, contract_address: str, method: str, args: list | tuple = ()) -> Any:
        contract = self._contract(contract_address)
        fn = getattr(contract.functions, method)
        return await self._rpc_call(f"{method}.call", lambda: fn(*args).call())

    def encode_call(self, contract_address: str, method: str, args: list | tuple) -> str:
        return self._contract(contract_address).encode_abi(method, args=list(args))

    def decode_router_input(self, input_data: str) -> tuple[str, dict]:
        func, params = self._contract(self.router_address).decode_function_input(input_data)
        return func.fn_name, dict(params)

    async def _apply_gas_fields(self, tx: dict, gas_price: int | None) -> dict:
        for key in ("gasPrice", "maxFeePerGas", "maxPriorityFeePerGas"):
            tx.pop(key, None)
        if gas_price is None:
            gas_price = await self.get_gas_price()
        if self._gas_mode == "1559":
            tx["type"] = 2
            tx["maxFeePerGas"] = int(gas_price)
            tx["maxPriorityFeePerGas"] = min(self._priority_fee_wei, int(gas_price))
        else:
            tx["gasPrice"] = int(gas_price)
        return tx

    async def _replay_revert_reason(self, tx: dict, block_number: int) -> str | None:
        call_tx = {k: tx[k] for k in ("from", "to", "value", "data") if k in tx}
        try:
            await self._w3.eth.call(call_tx, block_identifier=block_number)
        except ContractLogicError as exc:
            return revert_reason(exc)
        except Exception as exc:  # noqa: BLE001
            logger.debug("revert_replay_failed", extra={"event": "revert_replay_failed", "error": str(exc)})
        return None

    async def sign_and_send(self, spec: TransactionSpec, account: WalletAccount) -> TradeReceipt:
        sender = Web3.to_checksum_address(spec.sender)
        nonce = await self._rpc_call("get_transaction_count", lambda: self._w3.eth.get_transaction_count(sender, "pending"))
        tx: dict[str, Any] = {
            "from": sender,
            "to": Web3.to_checksum_address(spec.to),
            "value": int(spec.value),
            "data": spec.data,
            "nonce": int(nonce),
            "chainId": int(self._chain_id) if self._chain_id is not None else int(await self._w3.eth.chain_id),
        }
        tx = await self._apply_gas_fields(tx, spec.gas_price)
        if spec.gas_limit:
            tx["gas"] = int(spec.gas_limit)
        else:
            estimated = await self._rpc_call("estimate_gas", lambda: self._w3.eth.estimate_gas(tx))
            tx["gas"] = int(int(estimated) * self._gas_limit_multiplier)

        raw = account.sign_transaction(tx)
        # sent once; the nonce is never rebuilt after signing
        tx_hash = await self._rpc_call("send_raw_transaction", lambda: self._w3.eth.send_raw_transaction(raw), retries=1)
        receipt = await self._rpc_call(
            "wait_for_receipt",
            lambda: self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout_sec),
        )
        hash_hex = Web3.to_hex(tx_hash)
        if int(receipt["status"]) == 1:
            logger.info("tx_confirmed", extra={"event": "tx_confirmed", "tx_hash": hash_hex, "from": sender})
            return TradeReceipt(transaction_hash=hash_hex, succeeded=True)

        reason = await self._replay_revert_reason(tx, int(receipt["blockNumber"]))
        logger.warning("tx_reverted", extra={"event": "tx_reverted", "tx_hash": hash_hex, "reason": reason})
        return TradeReceipt(transaction_hash=hash_hex, succeeded=False, revert_reason=reason)
