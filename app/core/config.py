from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.core.errors import ConfigurationError

_HEX_ADDRESS_LEN = 42


def _looks_like_address(value: str) -> bool:
    raw = (value or "").strip()
    if len(raw) != _HEX_ADDRESS_LEN or not raw.lower().startswith("0x"):
        return False
    try:
        int(raw[2:], 16)
    except ValueError:
        return False
    return True


def _parse_number_list(raw: str) -> List[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "ronin-trade-bot"
    env: str = "dev"
    log_level: str = "INFO"

    host: str = "0.0.0.0"
    port: int = 8000

    telegram_bot_token: str = Field(default="", alias="TELEGRAM_BOT_TOKEN")
    telegram_use_webhook: bool = False
    telegram_webhook_url: str = ""
    telegram_webhook_path: str = "/telegram/webhook"
    telegram_webhook_secret: str = ""
    telegram_auto_set_webhook: bool = Field(default=True, alias="TELEGRAM_AUTO_SET_WEBHOOK")
    serverless_mode: bool = Field(default=False, alias="SERVERLESS_MODE")
    cron_secret: str = Field(default="", alias="CRON_SECRET")

    # Chain. RPC_URLS accepts a comma separated list; the first reachable one wins.
    rpc_urls: str = Field(default="https://api.roninchain.com/rpc", alias="RPC_URLS")
    chain_id: int = Field(default=2020, alias="CHAIN_ID")
    rpc_timeout_sec: float = Field(default=30.0, alias="RPC_TIMEOUT_SEC")
    rpc_retries: int = Field(default=3, alias="RPC_RETRIES")
    rpc_retry_backoff_sec: float = Field(default=0.4, alias="RPC_RETRY_BACKOFF_SEC")
    receipt_timeout_sec: int = Field(default=180, alias="RECEIPT_TIMEOUT_SEC")
    native_symbol: str = Field(default="RON", alias="NATIVE_SYMBOL")
    router_address: str = Field(default="0x7d0556d55ca1a92708681e2e231733ebd922597d", alias="ROUTER_ADDRESS")
    wrapped_native_address: str = Field(default="0xe514d9deb7966c8be0ca922de8a064264ea6bcd4", alias="WRAPPED_NATIVE_ADDRESS")
    router_buy_function: str = Field(default="swapExactRONForTokens", alias="ROUTER_BUY_FUNCTION")
    router_sell_function: str = Field(default="swapExactTokensForRON", alias="ROUTER_SELL_FUNCTION")
    explorer_url: str = Field(default="https://explorer.roninchain.com", alias="EXPLORER_URL")

    # gas_mode: auto | legacy | 1559
    gas_mode: str = Field(default="auto", alias="GAS_MODE")
    gas_limit_multiplier: float = Field(default=1.2, alias="GAS_LIMIT_MULTIPLIER")
    priority_fee_gwei: float = Field(default=1.5, alias="PRIORITY_FEE_GWEI")

    # Trade feed (Etherscan compatible account/txlist endpoint)
    trade_feed_url: str = Field(default="https://api.roninscan.com/api", alias="TRADE_FEED_URL")
    trade_feed_api_key: str = Field(default="", alias="TRADE_FEED_API_KEY")
    trade_feed_page_size: int = Field(default=10, alias="TRADE_FEED_PAGE_SIZE")

    buy_amount_presets: str = Field(default="10,25,50,100", alias="BUY_AMOUNT_PRESETS")
    sell_percent_presets: str = Field(default="25,50,100", alias="SELL_PERCENT_PRESETS")
    copy_limit_presets: str = Field(default="10,25,50,100", alias="COPY_LIMIT_PRESETS")
    slippage_presets: str = Field(default="1,5,10", alias="SLIPPAGE_PRESETS")
    default_slippage_pct: float = Field(default=5.0, alias="DEFAULT_SLIPPAGE_PCT")
    swap_deadline_sec: int = Field(default=600, alias="SWAP_DEADLINE_SEC")

    copy_trade_interval_sec: int = Field(default=5, alias="COPY_TRADE_INTERVAL_SEC")
    copy_trade_freshness_sec: int = Field(default=5, alias="COPY_TRADE_FRESHNESS_SEC")
    copy_trade_session_timeout_sec: float = Field(default=4.0, alias="COPY_TRADE_SESSION_TIMEOUT_SEC")
    copy_default_limit: str = Field(default="10", alias="COPY_DEFAULT_LIMIT")
    copy_default_gas_tier: str = Field(default="medium", alias="COPY_DEFAULT_GAS_TIER")
    copy_default_slippage_pct: float = Field(default=5.0, alias="COPY_DEFAULT_SLIPPAGE_PCT")

    def rpc_url_list(self) -> List[str]:
        return [u.strip().rstrip("/") for u in self.rpc_urls.split(",") if u.strip()]

    def buy_presets_list(self) -> List[str]:
        return _parse_number_list(self.buy_amount_presets) or ["10", "25", "50", "100"]

    def sell_presets_list(self) -> List[str]:
        return _parse_number_list(self.sell_percent_presets) or ["25", "50", "100"]

    def copy_limit_presets_list(self) -> List[str]:
        return _parse_number_list(self.copy_limit_presets) or ["10", "25", "50", "100"]

    def slippage_presets_list(self) -> List[str]:
        return _parse_number_list(self.slippage_presets) or ["1", "5", "10"]

    def require_trading_config(self) -> None:
        """Fail fast when the bot cannot trade with the current environment."""
        missing: List[str] = []
        if not self.telegram_bot_token:
            missing.append("TELEGRAM_BOT_TOKEN")
        if not self.rpc_url_list():
            missing.append("RPC_URLS")
        if not _looks_like_address(self.router_address):
            missing.append("ROUTER_ADDRESS")
        if not _looks_like_address(self.wrapped_native_address):
            missing.append("WRAPPED_NATIVE_ADDRESS")
        if not self.router_buy_function or not self.router_sell_function:
            missing.append("ROUTER_BUY_FUNCTION/ROUTER_SELL_FUNCTION")
        if self.gas_mode.lower() not in {"auto", "legacy", "1559"}:
            missing.append("GAS_MODE")
        if missing:
            raise ConfigurationError(f"Missing or invalid configuration: {', '.join(missing)}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
