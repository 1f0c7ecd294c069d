from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from eth_account import Account

from app.core.errors import AuthError, UserInputError

_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
_LOCKS_MAX = 2000


class WizardStep(str, Enum):
    IDLE = "idle"
    AWAITING_PRIVATE_KEY = "awaiting_private_key"
    CONNECTED = "connected"
    AWAITING_TOKEN_ADDRESS = "awaiting_token_address"
    AWAITING_AMOUNT = "awaiting_amount"
    CONFIRMING_TRADE = "confirming_trade"
    AWAITING_TOKEN_TO_SELL = "awaiting_token_to_sell"
    AWAITING_SELL_AMOUNT = "awaiting_sell_amount"
    CONFIRMING_SELL_TRADE = "confirming_sell_trade"
    AWAITING_COPY_WALLET = "awaiting_copy_wallet"
    AWAITING_LIMIT = "awaiting_limit"
    AWAITING_GAS_PREF = "awaiting_gas_pref"
    AWAITING_SLIPPAGE = "awaiting_slippage"


class GasTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def multiplier(self) -> int:
        return {GasTier.LOW: 1, GasTier.MEDIUM: 2, GasTier.HIGH: 3}[self]


class CopyTradeStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    PAUSED = "paused"


class WalletAccount:
    """Address plus key material. The key never leaves this object except as a signature."""

    __slots__ = ("address", "_key")

    def __init__(self, address: str, key: bytes) -> None:
        self.address = address
        self._key = bytearray(key)

    @classmethod
    def from_private_key(cls, raw: str) -> "WalletAccount":
        text = (raw or "").strip()
        if not _KEY_RE.match(text):
            raise AuthError()
        try:
            acct = Account.from_key(text)
        except Exception as exc:  # noqa: BLE001
            raise AuthError() from exc
        return cls(acct.address, bytes(acct.key))

    @property
    def wiped(self) -> bool:
        return not any(self._key)

    def sign_transaction(self, tx: dict) -> bytes:
        if self.wiped:
            raise AuthError("Wallet is disconnected. Connect it again to trade.")
        signed = Account.sign_transaction(tx, bytes(self._key))
        return bytes(signed.raw_transaction)

    def wipe(self) -> None:
        for i in range(len(self._key)):
            self._key[i] = 0

    def __repr__(self) -> str:
        return f"WalletAccount(address={self.address!r})"


@dataclass
class WalletSession:
    user_id: int
    step: WizardStep = WizardStep.IDLE
    account: WalletAccount | None = None
    token_in: str | None = None
    token_out: str | None = None
    pending_amount: str | None = None
    # copy-trade setup in progress; replaces the live session only once complete
    copy_draft: CopyTradeSession | None = None

    @property
    def connected(self) -> bool:
        return self.account is not None and not self.account.wiped

    def reset_pending(self) -> None:
        self.token_in = None
        self.token_out = None
        self.pending_amount = None
        self.copy_draft = None

    def home_step(self) -> WizardStep:
        return WizardStep.CONNECTED if self.connected else WizardStep.IDLE


@dataclass
class CopyTradeSession:
    user_id: int
    watched_address: str
    status: CopyTradeStatus = CopyTradeStatus.INACTIVE
    limit: Decimal | None = None
    gas_tier: GasTier | None = None
    slippage: Decimal | None = None
    last_seen_hash: str | None = field(default=None, compare=False)

    @property
    def active(self) -> bool:
        return self.status == CopyTradeStatus.ACTIVE

    @property
    def configured(self) -> bool:
        return self.limit is not None and self.gas_tier is not None and self.slippage is not None

    def activate(self) -> None:
        if self.status != CopyTradeStatus.INACTIVE:
            raise UserInputError("Copy trade is already running or paused.")
        if not self.configured:
            raise UserInputError("Set a limit, gas preference and slippage first.")
        self.status = CopyTradeStatus.ACTIVE

    def pause(self) -> None:
        if self.status != CopyTradeStatus.ACTIVE:
            raise UserInputError("Copy trade is not running.")
        self.status = CopyTradeStatus.PAUSED

    def resume(self) -> None:
        if self.status != CopyTradeStatus.PAUSED:
            raise UserInputError("Copy trade is not paused.")
        self.status = CopyTradeStatus.ACTIVE

    def deactivate(self) -> None:
        self.status = CopyTradeStatus.INACTIVE


class SessionRegistry:
    """In-memory per-user sessions. Mutations go through ``lock(user_id)``."""

    def __init__(self) -> None:
        self._wallets: dict[int, WalletSession] = {}
        self._copies: dict[int, CopyTradeSession] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    def lock(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            if len(self._locks) >= _LOCKS_MAX:
                idle = [k for k, v in list(self._locks.items()) if not v.locked()]
                for k in idle[: len(idle) // 2 + 1]:
                    self._locks.pop(k, None)
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def get_wallet(self, user_id: int) -> WalletSession | None:
        return self._wallets.get(user_id)

    def put_wallet(self, session: WalletSession) -> None:
        self._wallets[session.user_id] = session

    def delete_wallet(self, user_id: int) -> None:
        session = self._wallets.pop(user_id, None)
        if session and session.account:
            session.account.wipe()

    def get_copy(self, user_id: int) -> CopyTradeSession | None:
        return self._copies.get(user_id)

    def put_copy(self, session: CopyTradeSession) -> None:
        self._copies[session.user_id] = session

    def delete_copy(self, user_id: int) -> None:
        self._copies.pop(user_id, None)

    def active_copy_sessions(self) -> list[CopyTradeSession]:
        return [s for s in list(self._copies.values()) if s.active]

    def clear(self) -> None:
        for user_id in list(self._wallets):
            self.delete_wallet(user_id)
        self._copies.clear()
