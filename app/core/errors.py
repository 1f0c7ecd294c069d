from __future__ import annotations


class TradeBotError(Exception):
    """Base error. ``user_message`` is safe to show in chat."""

    default_message = "Something went wrong."

    def __init__(self, user_message: str | None = None) -> None:
        self.user_message = user_message or self.default_message
        super().__init__(self.user_message)


class UserInputError(TradeBotError):
    default_message = "That input is not valid."


class AuthError(TradeBotError):
    default_message = "That private key is not valid. Send a 64 character hex key."


class ChainError(TradeBotError):
    default_message = "The trade failed."


class TradeRevertedError(ChainError):
    def __init__(self, reason: str | None = None, tx_hash: str | None = None) -> None:
        self.reason = (reason or "").strip() or None
        self.tx_hash = tx_hash
        if self.reason:
            message = f"Trade failed on-chain: {self.reason}"
        else:
            message = "Trade failed on-chain (swap reverted)."
        super().__init__(message)


class ChainNetworkError(ChainError):
    default_message = "A network error occurred while talking to the chain. Try again."


class TransientFeedError(TradeBotError):
    default_message = "Trade feed unavailable."


class ConfigurationError(TradeBotError):
    default_message = "Missing configuration."
