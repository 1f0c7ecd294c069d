from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from app.adapters.chain import normalize_address
from app.bot import templates
from app.core.errors import AuthError, ChainNetworkError, TradeBotError, TradeRevertedError, UserInputError
from app.services.sessions import (
    CopyTradeSession,
    CopyTradeStatus,
    GasTier,
    SessionRegistry,
    WalletAccount,
    WalletSession,
    WizardStep,
)
from app.services.swap_executor import SwapExecutor, from_base_units, parse_amount, sell_share

logger = logging.getLogger(__name__)


@dataclass
class Prompt:
    text: str
    options: list[tuple[str, str]] = field(default_factory=list)
    columns: int = 2


def parse_slippage(text: str) -> Decimal:
    """Percent in (0, 100] -> fraction."""
    raw = (text or "").strip().rstrip("%").strip()
    try:
        pct = Decimal(raw)
    except InvalidOperation as exc:
        raise UserInputError("Slippage must be a number between 0 and 100.") from exc
    if not pct.is_finite() or pct <= 0 or pct > 100:
        raise UserInputError("Slippage must be greater than 0 and at most 100.")
    return pct / Decimal(100)


def parse_gas_tier(text: str) -> GasTier:
    try:
        return GasTier((text or "").strip().lower())
    except ValueError as exc:
        raise UserInputError("Pick Low, Medium or High.") from exc


class TradeWizard:
    """Per-user conversational state machine. Every entry point runs under the user's registry lock."""

    def __init__(
        self,
        registry: SessionRegistry,
        executor: SwapExecutor,
        native_symbol: str = "RON",
        explorer_url: str = "",
        buy_presets: list[str] | None = None,
        sell_percent_presets: list[str] | None = None,
        limit_presets: list[str] | None = None,
        slippage_presets: list[str] | None = None,
        default_slippage_pct: float = 5.0,
        copy_default_limit: str = "10",
        copy_default_gas_tier: str = "medium",
        copy_default_slippage_pct: float = 5.0,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.native_symbol = native_symbol
        self.explorer_url = explorer_url
        self.buy_presets = buy_presets or ["10", "25", "50", "100"]
        self.sell_percent_presets = sell_percent_presets or ["25", "50", "100"]
        self.limit_presets = limit_presets or ["10", "25", "50", "100"]
        self.slippage_presets = slippage_presets or ["1", "5", "10"]
        self.default_slippage = parse_slippage(str(default_slippage_pct))
        self.copy_default_limit = parse_amount(copy_default_limit)
        self.copy_default_gas_tier = parse_gas_tier(copy_default_gas_tier)
        self.copy_default_slippage = parse_slippage(str(copy_default_slippage_pct))

    # ------------------------------------------------------------------
    # keyboards
    # ------------------------------------------------------------------

    def _main_menu(self, session: WalletSession | None) -> list[tuple[str, str]]:
        options = [
            ("🔹 Buy", "buy"),
            ("🔸 Sell", "sell"),
            ("🔗 Connect Wallet", "connect_wallet"),
            ("📋 Copy Trade", "copy_trade"),
        ]
        if session and session.connected:
            options.append(("👛 Wallet", "wallet"))
            options.append(("🔌 Disconnect", "disconnect"))
        return options

    @staticmethod
    def _cancel_only() -> list[tuple[str, str]]:
        return [("✖ Cancel", "cancel")]

    def _menu_prompt(self, session: WalletSession, text: str) -> Prompt:
        return Prompt(text, self._main_menu(session))

    def _copy_menu(self, copy: CopyTradeSession) -> list[tuple[str, str]]:
        options: list[tuple[str, str]] = []
        if copy.status == CopyTradeStatus.ACTIVE:
            options.append(("⏸ Pause", "copy:pause"))
        elif copy.status == CopyTradeStatus.PAUSED:
            options.append(("▶ Resume", "copy:resume"))
        else:
            options.append(("▶ Start", "copy:start"))
        if copy.status != CopyTradeStatus.INACTIVE:
            options.append(("⏹ Stop", "copy:stop"))
        options.append(("⚙ New setup", "copy:setup"))
        options.append(("🏠 Menu", "menu"))
        return options

    # ------------------------------------------------------------------
    # entry points
    # ------------------------------------------------------------------

    def _session(self, user_id: int) -> WalletSession:
        session = self.registry.get_wallet(user_id)
        if session is None:
            session = WalletSession(user_id=user_id)
            self.registry.put_wallet(session)
        return session

    def expects_secret(self, user_id: int) -> bool:
        session = self.registry.get_wallet(user_id)
        return session is not None and session.step == WizardStep.AWAITING_PRIVATE_KEY

    async def start(self, user_id: int) -> list[Prompt]:
        async with self.registry.lock(user_id):
            session = self._session(user_id)
            address = session.account.address if session.connected and session.account else None
            return [self._menu_prompt(session, templates.welcome_text(address))]

    async def handle_action(self, user_id: int, action: str) -> list[Prompt]:
        async with self.registry.lock(user_id):
            session = self._session(user_id)
            before = session.step
            prompts = await self._on_action(session, (action or "").strip())
            logger.info(
                "wizard_action",
                extra={"event": "wizard_action", "user_id": user_id, "action": (action or "").split(":", 1)[0], "from": before.value, "to": session.step.value},
            )
            return prompts

    async def handle_text(self, user_id: int, text: str) -> list[Prompt]:
        async with self.registry.lock(user_id):
            session = self._session(user_id)
            before = session.step
            prompts = await self._on_text(session, (text or "").strip())
            logger.info(
                "wizard_text",
                extra={"event": "wizard_text", "user_id": user_id, "from": before.value, "to": session.step.value},
            )
            return prompts

    async def quick_copy(self, user_id: int, address: str) -> list[Prompt]:
        """Ad-hoc activation: missing limit, gas tier and slippage fall back to defaults."""
        async with self.registry.lock(user_id):
            session = self._session(user_id)
            watched = normalize_address(address)
            if watched is None:
                return [Prompt(templates.invalid_input("that is not a valid wallet address."))]
            if session.connected and session.account is not None and watched == session.account.address:
                return [Prompt(templates.invalid_input("you can't copy your own wallet."))]
            copy = self.registry.get_copy(user_id)
            if copy is None or copy.watched_address != watched:
                copy = CopyTradeSession(user_id=user_id, watched_address=watched)
            copy.limit = copy.limit if copy.limit is not None else self.copy_default_limit
            copy.gas_tier = copy.gas_tier or self.copy_default_gas_tier
            copy.slippage = copy.slippage if copy.slippage is not None else self.copy_default_slippage
            copy.status = CopyTradeStatus.ACTIVE
            self.registry.put_copy(copy)
            prompts = [Prompt(templates.copy_status(self._copy_payload(copy), self.native_symbol), self._copy_menu(copy))]
            if not session.connected:
                prompts.append(Prompt(templates.need_wallet(), [("🔗 Connect Wallet", "connect_wallet")]))
            return prompts

    # ------------------------------------------------------------------
    # actions
    # ------------------------------------------------------------------

    async def _on_action(self, session: WalletSession, action: str) -> list[Prompt]:
        name, _, arg = action.partition(":")

        if name in {"menu", "start"}:
            return [self._menu_prompt(session, templates.welcome_text(session.account.address if session.connected else None))]
        if name == "help":
            return [self._menu_prompt(session, templates.help_text())]
        if name == "cancel":
            return self._cancel(session)
        if name == "connect_wallet":
            session.reset_pending()
            session.step = WizardStep.AWAITING_PRIVATE_KEY
            return [Prompt(templates.ask_private_key(), self._cancel_only())]
        if name == "disconnect":
            self.registry.delete_wallet(session.user_id)
            fresh = self._session(session.user_id)
            return [self._menu_prompt(fresh, "wallet disconnected.")]
        if name == "confirm":
            return await self._confirm(session)

        if name in {"buy", "sell", "copy_trade", "wallet"} and not session.connected:
            return [Prompt(templates.need_wallet(), [("🔗 Connect Wallet", "connect_wallet")])]

        if name == "buy":
            session.reset_pending()
            session.step = WizardStep.AWAITING_TOKEN_ADDRESS
            return [Prompt(templates.ask_token_address("buy"), self._cancel_only())]
        if name == "sell":
            session.reset_pending()
            session.step = WizardStep.AWAITING_TOKEN_TO_SELL
            return [Prompt(templates.ask_token_address("sell"), self._cancel_only())]
        if name == "wallet":
            return [await self._wallet_view(session)]
        if name == "copy_trade":
            copy = self.registry.get_copy(session.user_id)
            if copy is not None and copy.configured:
                session.step = WizardStep.CONNECTED
                return [Prompt(templates.copy_status(self._copy_payload(copy), self.native_symbol), self._copy_menu(copy))]
            return self._begin_copy_setup(session)
        if name == "copy":
            return self._on_copy_control(session, arg)

        if name == "amt" and session.step == WizardStep.AWAITING_AMOUNT:
            if arg == "custom":
                return [Prompt(templates.ask_custom_amount(self.native_symbol), self._cancel_only())]
            return self._accept_buy_amount(session, arg)
        if name == "sellpct" and session.step == WizardStep.AWAITING_SELL_AMOUNT:
            return await self._accept_sell_percent(session, arg)
        if name == "limit" and session.step == WizardStep.AWAITING_LIMIT:
            if arg == "custom":
                return [Prompt(templates.ask_custom_amount(self.native_symbol), self._cancel_only())]
            return self._accept_limit(session, arg)
        if name == "gas" and session.step == WizardStep.AWAITING_GAS_PREF:
            return self._accept_gas(session, arg)
        if name == "slip" and session.step == WizardStep.AWAITING_SLIPPAGE:
            return self._accept_slippage(session, arg)

        # stale button from an earlier step
        return [Prompt(templates.session_expired(), self._main_menu(session))]

    def _cancel(self, session: WalletSession) -> list[Prompt]:
        # drops any copy-trade draft; the live copy session is untouched
        session.reset_pending()
        session.step = session.home_step()
        return [self._menu_prompt(session, templates.cancelled())]

    async def _wallet_view(self, session: WalletSession) -> Prompt:
        assert session.account is not None
        balance = None
        try:
            balance = await self.executor.native_balance(session.account.address)
        except TradeBotError as exc:
            logger.warning("wallet_balance_failed", extra={"event": "wallet_balance_failed", "error": str(exc)})
        return self._menu_prompt(session, templates.wallet_view(session.account.address, balance, self.native_symbol))

    # ------------------------------------------------------------------
    # free text
    # ------------------------------------------------------------------

    async def _on_text(self, session: WalletSession, text: str) -> list[Prompt]:
        step = session.step
        if text.lower() in {"cancel", "/cancel"}:
            return self._cancel(session)

        if step == WizardStep.AWAITING_PRIVATE_KEY:
            return self._accept_private_key(session, text)

        if step in {WizardStep.AWAITING_TOKEN_ADDRESS, WizardStep.AWAITING_TOKEN_TO_SELL}:
            token = normalize_address(text)
            if token is None:
                return [Prompt(templates.invalid_input("that is not a valid token address (0x + 40 hex characters)."), self._cancel_only())]
            if step == WizardStep.AWAITING_TOKEN_ADDRESS:
                session.token_out = token
                session.step = WizardStep.AWAITING_AMOUNT
                options = [(f"{p} {self.native_symbol}", f"amt:{p}") for p in self.buy_presets]
                options += [("✏ Custom", "amt:custom"), ("✖ Cancel", "cancel")]
                return [Prompt(templates.ask_buy_amount(token, self.native_symbol), options)]
            session.token_in = token
            session.step = WizardStep.AWAITING_SELL_AMOUNT
            options = [(f"{p}%", f"sellpct:{p}") for p in self.sell_percent_presets] + [("✖ Cancel", "cancel")]
            return [Prompt(templates.ask_sell_amount(token), options, columns=3)]

        if step == WizardStep.AWAITING_AMOUNT:
            return self._accept_buy_amount(session, text)
        if step == WizardStep.AWAITING_SELL_AMOUNT:
            return self._accept_sell_amount(session, text)
        if step in {WizardStep.CONFIRMING_TRADE, WizardStep.CONFIRMING_SELL_TRADE}:
            return [Prompt(templates.use_buttons(), [("✅ Confirm", "confirm"), ("✖ Cancel", "cancel")])]

        if step == WizardStep.AWAITING_COPY_WALLET:
            return self._accept_copy_wallet(session, text)
        if step == WizardStep.AWAITING_LIMIT:
            return self._accept_limit(session, text)
        if step == WizardStep.AWAITING_GAS_PREF:
            return self._accept_gas(session, text)
        if step == WizardStep.AWAITING_SLIPPAGE:
            return self._accept_slippage(session, text)

        return [self._menu_prompt(session, templates.help_text())]

    def _accept_private_key(self, session: WalletSession, text: str) -> list[Prompt]:
        try:
            account = WalletAccount.from_private_key(text)
        except AuthError as exc:
            return [Prompt(f"⚠️ {exc.user_message}", self._cancel_only())]
        previous = session.account
        if previous is not None and previous is not account:
            previous.wipe()
        session.account = account
        session.reset_pending()
        session.step = WizardStep.CONNECTED
        logger.info("wallet_connected", extra={"event": "wallet_connected", "user_id": session.user_id, "address": account.address})
        return [self._menu_prompt(session, templates.wallet_connected(account.address))]

    # ------------------------------------------------------------------
    # buy / sell
    # ------------------------------------------------------------------

    def _accept_buy_amount(self, session: WalletSession, raw: str) -> list[Prompt]:
        try:
            amount = parse_amount(raw)
        except UserInputError as exc:
            return [Prompt(templates.invalid_input(exc.user_message), self._cancel_only())]
        session.pending_amount = format(amount, "f")
        session.step = WizardStep.CONFIRMING_TRADE
        text = templates.confirm_buy(session.pending_amount, session.token_out or "", self.native_symbol, self.default_slippage)
        return [Prompt(text, [("✅ Confirm", "confirm"), ("✖ Cancel", "cancel")])]

    def _accept_sell_amount(self, session: WalletSession, raw: str) -> list[Prompt]:
        try:
            amount = parse_amount(raw)
        except UserInputError as exc:
            return [Prompt(templates.invalid_input(exc.user_message), self._cancel_only())]
        session.pending_amount = format(amount, "f")
        session.step = WizardStep.CONFIRMING_SELL_TRADE
        text = templates.confirm_sell(session.pending_amount, session.token_in or "", self.native_symbol, self.default_slippage)
        return [Prompt(text, [("✅ Confirm", "confirm"), ("✖ Cancel", "cancel")])]

    async def _accept_sell_percent(self, session: WalletSession, raw: str) -> list[Prompt]:
        try:
            pct = parse_amount(raw)
            if pct > 100:
                raise UserInputError("Pick a share between 1 and 100%.")
        except UserInputError as exc:
            return [Prompt(templates.invalid_input(exc.user_message), self._cancel_only())]
        assert session.account is not None and session.token_in is not None
        try:
            balance_raw, decimals = await self.executor.token_balance_raw(session.account.address, session.token_in)
        except TradeBotError as exc:
            return [Prompt(f"⚠️ {exc.user_message}", self._cancel_only())]
        amount_raw = sell_share(balance_raw, pct)
        if amount_raw <= 0:
            return [Prompt(templates.invalid_input("you hold none of this token."), self._cancel_only())]
        return self._accept_sell_amount(session, format(from_base_units(amount_raw, decimals), "f"))

    async def _confirm(self, session: WalletSession) -> list[Prompt]:
        step = session.step
        if step not in {WizardStep.CONFIRMING_TRADE, WizardStep.CONFIRMING_SELL_TRADE} or not session.pending_amount:
            return [Prompt(templates.session_expired(), self._main_menu(session))]
        account = session.account
        amount = session.pending_amount
        side = "buy" if step == WizardStep.CONFIRMING_TRADE else "sell"
        token = session.token_out if side == "buy" else session.token_in
        # leave the confirming state before any chain call
        session.reset_pending()
        session.step = session.home_step()
        if account is None or account.wiped or not token:
            return [Prompt(templates.session_expired(), self._main_menu(session))]

        try:
            if side == "buy":
                receipt = await self.executor.buy(account, token, Decimal(amount), self.default_slippage)
                unit = "tokens"
            else:
                receipt = await self.executor.sell(account, token, Decimal(amount), self.default_slippage)
                unit = self.native_symbol
        except UserInputError as exc:
            return [self._menu_prompt(session, templates.invalid_input(exc.user_message))]
        except TradeRevertedError as exc:
            logger.warning("trade_reverted", extra={"event": "trade_reverted", "user_id": session.user_id, "side": side, "reason": exc.reason})
            return [self._menu_prompt(session, templates.trade_reverted(exc.reason))]
        except ChainNetworkError:
            return [self._menu_prompt(session, templates.network_error())]
        except TradeBotError as exc:
            return [self._menu_prompt(session, f"⚠️ {exc.user_message}")]

        text = templates.trade_success(side, receipt.transaction_hash, self.explorer_url, receipt.balance_after, unit)
        return [self._menu_prompt(session, text)]

    # ------------------------------------------------------------------
    # copy trade setup
    # ------------------------------------------------------------------

    def _begin_copy_setup(self, session: WalletSession) -> list[Prompt]:
        session.reset_pending()
        session.step = WizardStep.AWAITING_COPY_WALLET
        return [Prompt(templates.ask_copy_wallet(), self._cancel_only())]

    @staticmethod
    def _copy_payload(copy: CopyTradeSession) -> dict:
        return {
            "watched_address": copy.watched_address,
            "status": copy.status.value,
            "limit": copy.limit,
            "gas_tier": copy.gas_tier.value if copy.gas_tier else None,
            "slippage": copy.slippage,
        }

    def _on_copy_control(self, session: WalletSession, arg: str) -> list[Prompt]:
        if arg == "setup":
            if not session.connected:
                return [Prompt(templates.need_wallet(), [("🔗 Connect Wallet", "connect_wallet")])]
            return self._begin_copy_setup(session)
        copy = self.registry.get_copy(session.user_id)
        if copy is None:
            return self._on_copy_control(session, "setup")
        try:
            if arg == "pause":
                copy.pause()
            elif arg == "resume":
                copy.resume()
            elif arg == "start":
                copy.activate()
            elif arg == "stop":
                copy.deactivate()
            else:
                return [Prompt(templates.session_expired(), self._main_menu(session))]
        except UserInputError as exc:
            return [Prompt(templates.invalid_input(exc.user_message), self._copy_menu(copy))]
        logger.info("copy_trade_status", extra={"event": "copy_trade_status", "user_id": session.user_id, "status": copy.status.value})
        return [Prompt(templates.copy_status(self._copy_payload(copy), self.native_symbol), self._copy_menu(copy))]

    def _accept_copy_wallet(self, session: WalletSession, text: str) -> list[Prompt]:
        watched = normalize_address(text)
        if watched is None:
            return [Prompt(templates.invalid_input("that is not a valid wallet address (0x + 40 hex characters)."), self._cancel_only())]
        if session.account is not None and watched == session.account.address:
            return [Prompt(templates.invalid_input("you can't copy your own wallet."), self._cancel_only())]
        session.copy_draft = CopyTradeSession(user_id=session.user_id, watched_address=watched)
        session.step = WizardStep.AWAITING_LIMIT
        options = [(f"{p} {self.native_symbol}", f"limit:{p}") for p in self.limit_presets]
        options += [("✏ Custom", "limit:custom"), ("✖ Cancel", "cancel")]
        return [Prompt(templates.ask_copy_limit(self.native_symbol), options)]

    def _pending_copy(self, session: WalletSession) -> CopyTradeSession | None:
        copy = session.copy_draft
        if copy is None:
            session.step = session.home_step()
        return copy

    def _accept_limit(self, session: WalletSession, raw: str) -> list[Prompt]:
        try:
            limit = parse_amount(raw)
        except UserInputError as exc:
            return [Prompt(templates.invalid_input(exc.user_message), self._cancel_only())]
        copy = self._pending_copy(session)
        if copy is None:
            return [Prompt(templates.session_expired(), self._main_menu(session))]
        copy.limit = limit
        session.step = WizardStep.AWAITING_GAS_PREF
        options = [("🐢 Low", "gas:low"), ("🚶 Medium", "gas:medium"), ("🚀 High", "gas:high"), ("✖ Cancel", "cancel")]
        return [Prompt(templates.ask_gas_pref(), options, columns=3)]

    def _accept_gas(self, session: WalletSession, raw: str) -> list[Prompt]:
        try:
            tier = parse_gas_tier(raw)
        except UserInputError as exc:
            return [Prompt(templates.invalid_input(exc.user_message), self._cancel_only())]
        copy = self._pending_copy(session)
        if copy is None:
            return [Prompt(templates.session_expired(), self._main_menu(session))]
        copy.gas_tier = tier
        session.step = WizardStep.AWAITING_SLIPPAGE
        options = [(f"{p}%", f"slip:{p}") for p in self.slippage_presets] + [("✖ Cancel", "cancel")]
        return [Prompt(templates.ask_slippage(), options, columns=3)]

    def _accept_slippage(self, session: WalletSession, raw: str) -> list[Prompt]:
        try:
            slippage = parse_slippage(raw)
        except UserInputError as exc:
            return [Prompt(templates.invalid_input(exc.user_message), self._cancel_only())]
        copy = self._pending_copy(session)
        if copy is None:
            return [Prompt(templates.session_expired(), self._main_menu(session))]
        copy.slippage = slippage
        previous = self.registry.get_copy(session.user_id)
        if previous is not None:
            if previous.watched_address == copy.watched_address:
                copy.last_seen_hash = previous.last_seen_hash
            previous.deactivate()
        copy.activate()
        self.registry.put_copy(copy)
        session.copy_draft = None
        session.step = WizardStep.CONNECTED
        logger.info(
            "copy_trade_started",
            extra={"event": "copy_trade_started", "user_id": session.user_id, "watched": copy.watched_address},
        )
        return [Prompt(templates.copy_status(self._copy_payload(copy), self.native_symbol), self._copy_menu(copy))]
