from __future__ import annotations

from decimal import Decimal

from app.core.fmt import fmt_amount, safe_html, short_address


def welcome_text(connected_address: str | None = None) -> str:
    lines = ["<b>Welcome to Ronin Trading Bot!</b>", ""]
    if connected_address:
        lines.append(f"wallet  <code>{connected_address}</code>")
    else:
        lines.append("connect a wallet to buy, sell or copy trade.")
    return "\n".join(lines)


def help_text() -> str:
    return (
        "<b>how it works</b>\n"
        "· <b>Connect Wallet</b> and send your private key (the message is deleted right away)\n"
        "· <b>Buy</b>: token address → amount → confirm\n"
        "· <b>Sell</b>: token address → amount → confirm\n"
        "· <b>Copy Trade</b>: wallet to follow → max per trade → gas → slippage\n\n"
        "<code>/copy 0x…</code> starts copying with default limits. <code>/cancel</code> stops any pending step."
    )


def ask_private_key() -> str:
    return (
        "send your wallet <b>private key</b> (64 hex characters).\n"
        "<i>it stays in memory only for this bot session.</i>"
    )


def wallet_connected(address: str) -> str:
    return f"✅ wallet connected\n<code>{address}</code>"


def wallet_view(address: str, native_balance: Decimal | None, native_symbol: str) -> str:
    bal = fmt_amount(native_balance) if native_balance is not None else "n/a"
    return f"<b>wallet</b>\n<code>{address}</code>\nbalance  {bal} {native_symbol}"


def ask_token_address(side: str) -> str:
    verb = "buy" if side == "buy" else "sell"
    return f"send the <b>token address</b> you want to {verb}."


def ask_buy_amount(token: str, native_symbol: str) -> str:
    return f"token <code>{token}</code>\nhow much {native_symbol} do you want to spend?"


def ask_custom_amount(unit: str) -> str:
    return f"send the amount in {unit}, e.g. <code>12.5</code>"


def ask_sell_amount(token: str) -> str:
    return f"token <code>{token}</code>\nhow many tokens do you want to sell? pick a share of your balance or send an amount."


def confirm_buy(amount: str, token: str, native_symbol: str, slippage: Decimal) -> str:
    return (
        f"<b>confirm buy</b>\n"
        f"{fmt_amount(amount)} {native_symbol} for tokens at <code>{token}</code>\n"
        f"max slippage {fmt_amount(slippage * 100)}%"
    )


def confirm_sell(amount: str, token: str, native_symbol: str, slippage: Decimal) -> str:
    return (
        f"<b>confirm sell</b>\n"
        f"{fmt_amount(amount)} tokens at <code>{token}</code> for {native_symbol}\n"
        f"max slippage {fmt_amount(slippage * 100)}%"
    )


def trade_success(side: str, tx_hash: str, explorer_url: str, balance: Decimal | None, unit: str) -> str:
    lines = [f"✅ {side} confirmed", f"tx  <a href=\"{explorer_url.rstrip('/')}/tx/{tx_hash}\">{short_address(tx_hash)}</a>"]
    if balance is not None:
        lines.append(f"balance now  {fmt_amount(balance)} {unit}")
    return "\n".join(lines)


def trade_reverted(reason: str | None) -> str:
    if reason:
        return f"❌ the trade failed on-chain: <code>{safe_html(reason)}</code>"
    return "❌ the trade failed on-chain (swap reverted)."


def network_error() -> str:
    return "⚠️ a network error occurred while talking to the chain. nothing was changed, try again."


def invalid_input(message: str) -> str:
    return f"⚠️ your input was invalid: {safe_html(message)}"


def session_expired() -> str:
    return "⌛ this trade session expired. start again from the menu."


def need_wallet() -> str:
    return "connect a wallet first."


def cancelled() -> str:
    return "cancelled."


def use_buttons() -> str:
    return "use the <b>Confirm</b> or <b>Cancel</b> button."


def ask_copy_wallet() -> str:
    return "send the <b>wallet address</b> you want to copy."


def ask_copy_limit(native_symbol: str) -> str:
    return f"max {native_symbol} per mirrored trade?"


def ask_gas_pref() -> str:
    return "gas preference for mirrored trades?\n<i>low = network price, medium = 2x, high = 3x</i>"


def ask_slippage() -> str:
    return "max slippage in percent (greater than 0, up to 100)?"


def copy_status(payload: dict, native_symbol: str) -> str:
    limit = payload.get("limit")
    slippage = payload.get("slippage")
    lines = [
        "<b>copy trade</b>",
        f"watching  <code>{payload['watched_address']}</code>",
        f"status  {payload['status']}",
        f"max per trade  {fmt_amount(limit) + ' ' + native_symbol if limit is not None else 'not set'}",
        f"gas  {payload.get('gas_tier') or 'not set'}",
        f"slippage  {fmt_amount(slippage * 100) + '%' if slippage is not None else 'not set'}",
    ]
    return "\n".join(lines)


def copy_trade_detected(watched: str, token: str, observed: Decimal, executed: Decimal, native_symbol: str) -> str:
    return (
        f"👀 <code>{short_address(watched)}</code> bought <code>{token}</code> "
        f"with {fmt_amount(observed)} {native_symbol}\n"
        f"mirroring with {fmt_amount(executed)} {native_symbol}…"
    )


def copy_trade_connect_wallet(watched: str) -> str:
    return (
        f"👀 <code>{short_address(watched)}</code> just traded, but no wallet is connected.\n"
        "connect your wallet to mirror trades."
    )
