from __future__ import annotations

from decimal import Decimal

import pytest

from app.adapters.chain import TradeReceipt, normalize_address
from app.core.errors import ChainNetworkError, TradeRevertedError
from app.services.sessions import CopyTradeStatus, GasTier, SessionRegistry, WizardStep
from app.services.swap_executor import SwapExecutor
from app.services.trade_wizard import TradeWizard

KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32
TOKEN = "0x" + "ab" * 20
WATCHED = "0x" + "cd" * 20
OTHER_WATCHED = "0x" + "ef" * 20
ROUTER = normalize_address("0x7d0556d55ca1a92708681e2e231733ebd922597d")
WRAPPED = normalize_address("0xe514d9deb7966c8be0ca922de8a064264ea6bcd4")


class _FakeExecutor:
    def __init__(self, buy_error: Exception | None = None, balance_raw: int = 200 * 10**18 + 3) -> None:
        self.buy_error = buy_error
        self.balance_raw = balance_raw
        self.buys: list[tuple] = []
        self.sells: list[tuple] = []

    async def buy(self, account, token_out, native_amount, slippage, gas_price=None):
        self.buys.append((account.address, token_out, Decimal(native_amount), slippage, gas_price))
        if self.buy_error is not None:
            raise self.buy_error
        return TradeReceipt(transaction_hash="0x" + "12" * 32, succeeded=True, balance_after=Decimal("1234.5"))

    async def sell(self, account, token_in, token_amount, slippage, gas_price=None):
        self.sells.append((account.address, token_in, Decimal(token_amount), slippage))
        return TradeReceipt(transaction_hash="0x" + "34" * 32, succeeded=True, balance_after=Decimal("7"))

    async def native_balance(self, owner):  # noqa: ARG002
        return Decimal("42.5")

    async def token_balance_raw(self, owner, token):  # noqa: ARG002
        return self.balance_raw, 18


def _wizard(executor: _FakeExecutor | None = None) -> tuple[TradeWizard, SessionRegistry, _FakeExecutor]:
    registry = SessionRegistry()
    executor = executor or _FakeExecutor()
    wizard = TradeWizard(registry, executor, native_symbol="RON", explorer_url="https://explorer.roninchain.com")  # type: ignore[arg-type]
    return wizard, registry, executor


def _step(registry: SessionRegistry, user_id: int = 1) -> WizardStep:
    session = registry.get_wallet(user_id)
    assert session is not None
    return session.step


async def _connect(wizard: TradeWizard, user_id: int = 1, key: str = KEY) -> None:
    await wizard.handle_action(user_id, "connect_wallet")
    await wizard.handle_text(user_id, key)


@pytest.mark.asyncio
async def test_start_shows_welcome_and_main_menu() -> None:
    wizard, _, _ = _wizard()
    prompts = await wizard.start(1)
    assert "Welcome to Ronin Trading Bot!" in prompts[0].text
    values = [v for _, v in prompts[0].options]
    assert values[:4] == ["buy", "sell", "connect_wallet", "copy_trade"]


@pytest.mark.asyncio
async def test_buy_scenario_surfaces_revert_reason_and_clears_step() -> None:
    executor = _FakeExecutor(buy_error=TradeRevertedError("INSUFFICIENT_OUTPUT_AMOUNT"))
    wizard, registry, _ = _wizard(executor)

    await wizard.handle_action(1, "connect_wallet")
    assert _step(registry) == WizardStep.AWAITING_PRIVATE_KEY
    assert wizard.expects_secret(1)
    prompts = await wizard.handle_text(1, KEY)
    address = registry.get_wallet(1).account.address
    assert address in prompts[0].text
    assert _step(registry) == WizardStep.CONNECTED

    await wizard.handle_action(1, "buy")
    assert _step(registry) == WizardStep.AWAITING_TOKEN_ADDRESS

    prompts = await wizard.handle_text(1, "not-an-address")
    assert "invalid" in prompts[0].text
    assert _step(registry) == WizardStep.AWAITING_TOKEN_ADDRESS

    prompts = await wizard.handle_text(1, TOKEN)
    assert _step(registry) == WizardStep.AWAITING_AMOUNT
    values = [v for _, v in prompts[0].options]
    for preset in ("10", "25", "50", "100"):
        assert f"amt:{preset}" in values

    prompts = await wizard.handle_action(1, "amt:50")
    assert _step(registry) == WizardStep.CONFIRMING_TRADE
    assert "50 RON for tokens at" in prompts[0].text
    assert normalize_address(TOKEN) in prompts[0].text

    prompts = await wizard.handle_action(1, "confirm")
    assert len(executor.buys) == 1
    assert executor.buys[0][1] == normalize_address(TOKEN)
    assert executor.buys[0][2] == Decimal("50")
    assert "INSUFFICIENT_OUTPUT_AMOUNT" in prompts[0].text
    assert _step(registry) == WizardStep.CONNECTED


@pytest.mark.asyncio
async def test_second_confirm_is_session_expired_without_chain_call() -> None:
    wizard, registry, executor = _wizard()
    await _connect(wizard)
    await wizard.handle_action(1, "buy")
    await wizard.handle_text(1, TOKEN)
    await wizard.handle_action(1, "amt:10")

    first = await wizard.handle_action(1, "confirm")
    assert "confirmed" in first[0].text
    second = await wizard.handle_action(1, "confirm")
    assert "expired" in second[0].text
    assert len(executor.buys) == 1
    assert registry.get_wallet(1).account is not None


@pytest.mark.asyncio
async def test_confirm_without_any_session_is_expired() -> None:
    wizard, _, executor = _wizard()
    prompts = await wizard.handle_action(9, "confirm")
    assert "expired" in prompts[0].text
    assert executor.buys == [] and executor.sells == []


@pytest.mark.asyncio
async def test_network_error_message_differs_from_revert() -> None:
    wizard, registry, _ = _wizard(_FakeExecutor(buy_error=ChainNetworkError()))
    await _connect(wizard)
    await wizard.handle_action(1, "buy")
    await wizard.handle_text(1, TOKEN)
    await wizard.handle_action(1, "amt:25")
    prompts = await wizard.handle_action(1, "confirm")
    assert "network error" in prompts[0].text
    assert _step(registry) == WizardStep.CONNECTED


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["abc", "-1", "0", ""])
async def test_amount_rejections_do_not_advance(raw: str) -> None:
    wizard, registry, _ = _wizard()
    await _connect(wizard)
    await wizard.handle_action(1, "buy")
    await wizard.handle_text(1, TOKEN)
    prompts = await wizard.handle_text(1, raw)
    assert "invalid" in prompts[0].text
    assert _step(registry) == WizardStep.AWAITING_AMOUNT


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["10", "0.5", "100.25"])
async def test_amount_accepted(raw: str) -> None:
    wizard, registry, _ = _wizard()
    await _connect(wizard)
    await wizard.handle_action(1, "buy")
    await wizard.handle_text(1, TOKEN)
    await wizard.handle_text(1, raw)
    assert _step(registry) == WizardStep.CONFIRMING_TRADE
    assert registry.get_wallet(1).pending_amount == raw


@pytest.mark.asyncio
async def test_trading_requires_connected_wallet() -> None:
    wizard, registry, _ = _wizard()
    for action in ("buy", "sell", "copy_trade"):
        prompts = await wizard.handle_action(1, action)
        assert "connect a wallet" in prompts[0].text
        assert _step(registry) == WizardStep.IDLE


@pytest.mark.asyncio
async def test_invalid_private_key_keeps_waiting() -> None:
    wizard, registry, _ = _wizard()
    await wizard.handle_action(1, "connect_wallet")
    prompts = await wizard.handle_text(1, "not a key")
    assert "private key is not valid" in prompts[0].text
    assert _step(registry) == WizardStep.AWAITING_PRIVATE_KEY
    assert not registry.get_wallet(1).connected


@pytest.mark.asyncio
async def test_reconnect_wipes_previous_key() -> None:
    wizard, registry, _ = _wizard()
    await _connect(wizard)
    first = registry.get_wallet(1).account
    await _connect(wizard, key=OTHER_KEY)
    second = registry.get_wallet(1).account
    assert first.wiped
    assert not second.wiped
    assert first.address != second.address


@pytest.mark.asyncio
async def test_cancel_returns_home_and_keeps_account() -> None:
    wizard, registry, _ = _wizard()
    await _connect(wizard)
    await wizard.handle_action(1, "buy")
    await wizard.handle_text(1, TOKEN)
    await wizard.handle_action(1, "cancel")
    session = registry.get_wallet(1)
    assert session.step == WizardStep.CONNECTED
    assert session.token_out is None
    assert session.connected


@pytest.mark.asyncio
async def test_disconnect_wipes_key() -> None:
    wizard, registry, _ = _wizard()
    await _connect(wizard)
    account = registry.get_wallet(1).account
    await wizard.handle_action(1, "disconnect")
    assert account.wiped
    assert not registry.get_wallet(1).connected


@pytest.mark.asyncio
async def test_stale_button_is_expired() -> None:
    wizard, registry, _ = _wizard()
    await _connect(wizard)
    prompts = await wizard.handle_action(1, "amt:50")
    assert "expired" in prompts[0].text
    assert _step(registry) == WizardStep.CONNECTED


@pytest.mark.asyncio
async def test_sell_by_percentage_of_balance() -> None:
    wizard, registry, executor = _wizard()
    await _connect(wizard)
    await wizard.handle_action(1, "sell")
    assert _step(registry) == WizardStep.AWAITING_TOKEN_TO_SELL
    await wizard.handle_text(1, TOKEN)
    assert _step(registry) == WizardStep.AWAITING_SELL_AMOUNT
    prompts = await wizard.handle_action(1, "sellpct:50")
    assert _step(registry) == WizardStep.CONFIRMING_SELL_TRADE
    assert "100 tokens" in prompts[0].text
    await wizard.handle_action(1, "confirm")
    assert executor.sells[0][1] == normalize_address(TOKEN)
    assert executor.sells[0][2] == Decimal("100.000000000000000001")
    assert _step(registry) == WizardStep.CONNECTED


@pytest.mark.asyncio
async def test_wallet_view_shows_balance() -> None:
    wizard, _, _ = _wizard()
    await _connect(wizard)
    prompts = await wizard.handle_action(1, "wallet")
    assert "42.5 RON" in prompts[0].text


@pytest.mark.asyncio
async def test_copy_setup_flow_and_controls() -> None:
    wizard, registry, _ = _wizard()
    await _connect(wizard)

    await wizard.handle_action(1, "copy_trade")
    assert _step(registry) == WizardStep.AWAITING_COPY_WALLET
    await wizard.handle_text(1, "0x1234")
    assert _step(registry) == WizardStep.AWAITING_COPY_WALLET

    await wizard.handle_text(1, WATCHED)
    assert _step(registry) == WizardStep.AWAITING_LIMIT
    await wizard.handle_action(1, "limit:25")
    assert _step(registry) == WizardStep.AWAITING_GAS_PREF
    await wizard.handle_action(1, "gas:high")
    assert _step(registry) == WizardStep.AWAITING_SLIPPAGE

    for bad in ("0", "-5", "150"):
        await wizard.handle_text(1, bad)
        assert _step(registry) == WizardStep.AWAITING_SLIPPAGE

    await wizard.handle_text(1, "3")
    assert _step(registry) == WizardStep.CONNECTED
    copy = registry.get_copy(1)
    assert copy.active
    assert copy.watched_address == normalize_address(WATCHED)
    assert copy.limit == Decimal("25")
    assert copy.gas_tier == GasTier.HIGH
    assert copy.slippage == Decimal("0.03")

    await wizard.handle_action(1, "copy:pause")
    assert copy.status == CopyTradeStatus.PAUSED
    assert (copy.limit, copy.gas_tier, copy.slippage) == (Decimal("25"), GasTier.HIGH, Decimal("0.03"))
    await wizard.handle_action(1, "copy:resume")
    assert copy.active
    await wizard.handle_action(1, "copy:stop")
    assert copy.status == CopyTradeStatus.INACTIVE


@pytest.mark.asyncio
async def test_copy_rejects_own_wallet() -> None:
    wizard, registry, _ = _wizard()
    await _connect(wizard)
    own = registry.get_wallet(1).account.address
    await wizard.handle_action(1, "copy_trade")
    prompts = await wizard.handle_text(1, own)
    assert "own wallet" in prompts[0].text
    assert _step(registry) == WizardStep.AWAITING_COPY_WALLET


@pytest.mark.asyncio
async def test_cancel_during_copy_setup_drops_draft() -> None:
    wizard, registry, _ = _wizard()
    await _connect(wizard)
    await wizard.handle_action(1, "copy_trade")
    await wizard.handle_text(1, WATCHED)
    await wizard.handle_action(1, "cancel")
    assert registry.get_copy(1) is None
    assert _step(registry) == WizardStep.CONNECTED


@pytest.mark.asyncio
async def test_quick_copy_uses_defaults() -> None:
    wizard, registry, _ = _wizard()
    prompts = await wizard.quick_copy(1, WATCHED)
    copy = registry.get_copy(1)
    assert copy.active
    assert copy.limit == Decimal("10")
    assert copy.gas_tier == GasTier.MEDIUM
    assert copy.slippage == Decimal("0.05")
    assert len(prompts) == 2
    assert "connect a wallet" in prompts[1].text


@pytest.mark.asyncio
async def test_quick_copy_rejects_bad_address() -> None:
    wizard, registry, _ = _wizard()
    prompts = await wizard.quick_copy(1, "nope")
    assert "invalid" in prompts[0].text
    assert registry.get_copy(1) is None


@pytest.mark.asyncio
async def test_reconnect_with_same_key_wipes_previous_handle() -> None:
    wizard, registry, _ = _wizard()
    await _connect(wizard)
    first = registry.get_wallet(1).account
    await _connect(wizard)
    second = registry.get_wallet(1).account
    assert second is not first
    assert first.wiped
    assert not second.wiped
    assert first.address == second.address


async def _complete_copy_setup(wizard: TradeWizard, watched: str, limit: str = "25", tier: str = "high", slip: str = "3") -> None:
    await wizard.handle_action(1, "copy:setup")
    await wizard.handle_text(1, watched)
    await wizard.handle_action(1, f"limit:{limit}")
    await wizard.handle_action(1, f"gas:{tier}")
    await wizard.handle_action(1, f"slip:{slip}")


@pytest.mark.asyncio
@pytest.mark.parametrize("abandon_at", ["wallet", "limit", "gas", "slippage"])
async def test_abandoned_setup_keeps_running_copy_session(abandon_at: str) -> None:
    wizard, registry, _ = _wizard()
    await _connect(wizard)
    await _complete_copy_setup(wizard, WATCHED)
    running = registry.get_copy(1)
    running.last_seen_hash = "0xfeed"
    assert running.active

    await wizard.handle_action(1, "copy:setup")
    if abandon_at != "wallet":
        await wizard.handle_text(1, OTHER_WATCHED)
    if abandon_at in {"gas", "slippage"}:
        await wizard.handle_action(1, "limit:50")
    if abandon_at == "slippage":
        await wizard.handle_action(1, "gas:low")

    await wizard.handle_action(1, "cancel")

    copy = registry.get_copy(1)
    assert copy is running
    assert copy.active
    assert copy.watched_address == normalize_address(WATCHED)
    assert (copy.limit, copy.gas_tier, copy.slippage) == (Decimal("25"), GasTier.HIGH, Decimal("0.03"))
    assert copy.last_seen_hash == "0xfeed"
    assert registry.get_wallet(1).copy_draft is None
    assert _step(registry) == WizardStep.CONNECTED


@pytest.mark.asyncio
async def test_completed_setup_replaces_running_copy_session() -> None:
    wizard, registry, _ = _wizard()
    await _connect(wizard)
    await _complete_copy_setup(wizard, WATCHED)
    old = registry.get_copy(1)

    await _complete_copy_setup(wizard, OTHER_WATCHED, limit="50", tier="low", slip="1")

    new = registry.get_copy(1)
    assert new is not old
    assert old.status == CopyTradeStatus.INACTIVE
    assert new.active
    assert new.watched_address == normalize_address(OTHER_WATCHED)
    assert (new.limit, new.gas_tier, new.slippage) == (Decimal("50"), GasTier.LOW, Decimal("0.01"))
    assert new.last_seen_hash is None


@pytest.mark.asyncio
async def test_setup_for_same_wallet_keeps_dedupe_marker() -> None:
    wizard, registry, _ = _wizard()
    await _connect(wizard)
    await _complete_copy_setup(wizard, WATCHED)
    registry.get_copy(1).last_seen_hash = "0xfeed"

    await _complete_copy_setup(wizard, WATCHED, limit="10")

    copy = registry.get_copy(1)
    assert copy.limit == Decimal("10")
    assert copy.last_seen_hash == "0xfeed"


@pytest.mark.asyncio
async def test_sell_percentage_with_empty_balance() -> None:
    wizard, registry, executor = _wizard(_FakeExecutor(balance_raw=0))
    await _connect(wizard)
    await wizard.handle_action(1, "sell")
    await wizard.handle_text(1, TOKEN)
    prompts = await wizard.handle_action(1, "sellpct:100")
    assert "hold none" in prompts[0].text
    assert _step(registry) == WizardStep.AWAITING_SELL_AMOUNT
    assert executor.sells == []


class _FakeChain:
    """Token and router reads for a real ``SwapExecutor``."""

    router_address = ROUTER

    def __init__(self, balance_raw: int, decimals: int = 18) -> None:
        self.balance_raw = balance_raw
        self.decimals = decimals
        self.encoded: list[tuple[str, list]] = []

    async def get_gas_price(self) -> int:
        return 1_000_000_000

    async def get_balance(self, address: str) -> int:  # noqa: ARG002
        return 5 * 10**18

    async def call(self, contract: str, method: str, args=()):  # noqa: ARG002
        if method == "decimals":
            return self.decimals
        if method == "balanceOf":
            return self.balance_raw
        if method == "allowance":
            return 0
        if method == "getAmountsOut":
            return [args[0], 2000]
        raise AssertionError(method)

    def encode_call(self, contract: str, method: str, args) -> str:  # noqa: ARG002
        self.encoded.append((method, list(args)))
        return f"0x{method}"

    async def sign_and_send(self, spec, account) -> TradeReceipt:  # noqa: ARG002
        return TradeReceipt(transaction_hash="0x" + "56" * 32, succeeded=True)

    def swap_amount_in(self) -> int | None:
        for method, args in self.encoded:
            if method == "swapExactTokensForRON":
                return args[0]
        return None


async def _sell_share(balance_raw: int, pct: str, decimals: int = 18) -> tuple[_FakeChain, list]:
    chain = _FakeChain(balance_raw, decimals)
    executor = SwapExecutor(chain, WRAPPED, "swapExactRONForTokens", "swapExactTokensForRON")  # type: ignore[arg-type]
    wizard = TradeWizard(SessionRegistry(), executor, native_symbol="RON")
    await _connect(wizard)
    await wizard.handle_action(1, "sell")
    await wizard.handle_text(1, TOKEN)
    await wizard.handle_action(1, f"sellpct:{pct}")
    prompts = await wizard.handle_action(1, "confirm")
    return chain, prompts


@pytest.mark.asyncio
async def test_sell_percentage_of_odd_balance_is_floored_to_base_units() -> None:
    chain, prompts = await _sell_share(10**18 + 7, "25")
    assert "confirmed" in prompts[0].text
    assert chain.swap_amount_in() == 250_000_000_000_000_001


@pytest.mark.asyncio
async def test_sell_percentage_with_six_decimal_token() -> None:
    chain, prompts = await _sell_share(1_000_003, "50", decimals=6)
    assert "confirmed" in prompts[0].text
    assert chain.swap_amount_in() == 500_001


@pytest.mark.asyncio
async def test_sell_everything_sends_exact_large_balance() -> None:
    balance = 12_345_678_901_234_567_890_123_456_789
    chain, prompts = await _sell_share(balance, "100")
    assert "confirmed" in prompts[0].text
    assert chain.swap_amount_in() == balance
    assert ("approve", [ROUTER, balance]) in chain.encoded


@pytest.mark.asyncio
@pytest.mark.parametrize("pct", ["25", "33.3", "50", "100"])
@pytest.mark.parametrize("balance", [3, 10**18 + 7, 98_765_432_109_876_543_210_987_654_321, 2**256 - 1])
async def test_sell_percentage_never_exceeds_balance(balance: int, pct: str) -> None:
    chain, _ = await _sell_share(balance, pct)
    num, den = Decimal(pct).as_integer_ratio()
    expected = balance * num // (den * 100)
    amount_in = chain.swap_amount_in()
    if expected == 0:
        assert amount_in is None
    else:
        assert amount_in == expected
        assert amount_in <= balance
