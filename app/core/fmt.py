from __future__ import annotations

from decimal import Decimal, localcontext

# room for uint256 amounts at full scale
_PREC = 100


def fmt_amount(v: Decimal | int | float | str, max_decimals: int = 6) -> str:
    """Human-readable token amount: 50, 0.5, 1,234.567891"""
    value = Decimal(str(v))
    quant = Decimal(1).scaleb(-max_decimals)
    if value != 0 and abs(value) < quant:
        return f"{value:.{max_decimals}e}"
    with localcontext() as ctx:
        ctx.prec = _PREC
        text = f"{value.quantize(quant):,f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def short_address(address: str) -> str:
    """0x1234...abcd"""
    if not address or len(address) < 12:
        return address or ""
    return f"{address[:6]}...{address[-4:]}"


def safe_html(text: str) -> str:
    return (text or "").replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
