from __future__ import annotations

from dataclasses import dataclass

from aiogram import Bot

from app.adapters.chain import ChainGateway
from app.adapters.trade_feed import TradeFeedAdapter
from app.core.config import Settings
from app.core.http import ResilientHTTPClient
from app.services.copy_trader import CopyTrader
from app.services.sessions import SessionRegistry
from app.services.swap_executor import SwapExecutor
from app.services.trade_wizard import TradeWizard


@dataclass
class ServiceHub:
    bot: Bot
    settings: Settings
    http: ResilientHTTPClient
    registry: SessionRegistry
    gateway: ChainGateway
    feed: TradeFeedAdapter
    executor: SwapExecutor
    wizard: TradeWizard
    copy_trader: CopyTrader
