from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.core.container import ServiceHub

logger = logging.getLogger(__name__)


class WorkerScheduler:
    def __init__(self, hub: ServiceHub) -> None:
        self.hub = hub
        self.settings = hub.settings
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    async def _notify(self, chat_id: int, text: str) -> None:
        await self.hub.bot.send_message(chat_id=chat_id, text=text, disable_web_page_preview=True)

    async def _run_copy_trades(self) -> None:
        count = await self.hub.copy_trader.tick(self._notify)
        if count:
            logger.info("copy_trades_processed", extra={"event": "copy_trades_processed", "count": count})

    def start(self) -> None:
        self.scheduler.add_job(
            self._run_copy_trades,
            "interval",
            seconds=self.settings.copy_trade_interval_sec,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
