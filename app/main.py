from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.types import Update
from fastapi import FastAPI, HTTPException, Request

from app.adapters.chain import ChainGateway
from app.adapters.trade_feed import TradeFeedAdapter
from app.bot.handlers import bot_commands, init_handlers, router
from app.core.config import Settings, get_settings
from app.core.container import ServiceHub
from app.core.http import ResilientHTTPClient
from app.core.logging import setup_logging
from app.services.copy_trader import CopyTrader
from app.services.sessions import SessionRegistry
from app.services.swap_executor import SwapExecutor
from app.services.trade_wizard import TradeWizard
from app.workers.scheduler import WorkerScheduler

logger = logging.getLogger(__name__)


def build_hub(settings: Settings, bot: Bot, http: ResilientHTTPClient) -> ServiceHub:
    registry = SessionRegistry()
    gateway = ChainGateway(
        rpc_urls=settings.rpc_url_list(),
        router_address=settings.router_address,
        buy_function=settings.router_buy_function,
        sell_function=settings.router_sell_function,
        chain_id=settings.chain_id or None,
        timeout_sec=settings.rpc_timeout_sec,
        retries=settings.rpc_retries,
        backoff_sec=settings.rpc_retry_backoff_sec,
        receipt_timeout_sec=settings.receipt_timeout_sec,
        gas_mode=settings.gas_mode,
        gas_limit_multiplier=settings.gas_limit_multiplier,
        priority_fee_gwei=settings.priority_fee_gwei,
    )
    feed = TradeFeedAdapter(
        http=http,
        base_url=settings.trade_feed_url,
        api_key=settings.trade_feed_api_key,
        page_size=settings.trade_feed_page_size,
    )
    executor = SwapExecutor(
        gateway=gateway,
        wrapped_native_address=settings.wrapped_native_address,
        buy_function=settings.router_buy_function,
        sell_function=settings.router_sell_function,
        deadline_sec=settings.swap_deadline_sec,
    )
    wizard = TradeWizard(
        registry=registry,
        executor=executor,
        native_symbol=settings.native_symbol,
        explorer_url=settings.explorer_url,
        buy_presets=settings.buy_presets_list(),
        sell_percent_presets=settings.sell_presets_list(),
        limit_presets=settings.copy_limit_presets_list(),
        slippage_presets=settings.slippage_presets_list(),
        default_slippage_pct=settings.default_slippage_pct,
        copy_default_limit=settings.copy_default_limit,
        copy_default_gas_tier=settings.copy_default_gas_tier,
        copy_default_slippage_pct=settings.copy_default_slippage_pct,
    )
    copy_trader = CopyTrader(
        registry=registry,
        feed=feed,
        gateway=gateway,
        executor=executor,
        buy_function=settings.router_buy_function,
        freshness_sec=settings.copy_trade_freshness_sec,
        session_timeout_sec=settings.copy_trade_session_timeout_sec,
        native_symbol=settings.native_symbol,
        explorer_url=settings.explorer_url,
    )
    return ServiceHub(
        bot=bot,
        settings=settings,
        http=http,
        registry=registry,
        gateway=gateway,
        feed=feed,
        executor=executor,
        wizard=wizard,
        copy_trader=copy_trader,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.log_level)
    settings.require_trading_config()

    http = ResilientHTTPClient()
    bot = Bot(token=settings.telegram_bot_token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
    dp = Dispatcher()

    hub = build_hub(settings, bot, http)
    await hub.gateway.connect()

    try:
        await bot.set_my_commands(bot_commands())
    except Exception as exc:  # noqa: BLE001
        logger.warning("set_bot_commands_failed", extra={"event": "set_bot_commands_failed", "error": str(exc)})
    init_handlers(hub)
    dp.include_router(router)

    scheduler = None
    if not settings.serverless_mode:
        scheduler = WorkerScheduler(hub)
        scheduler.start()

    polling_task = None
    if settings.serverless_mode and not settings.telegram_use_webhook:
        logger.warning("serverless_mode_enabled_without_webhook", extra={"event": "serverless_warning"})

    if settings.telegram_use_webhook and settings.telegram_auto_set_webhook:
        webhook_url = settings.telegram_webhook_url.rstrip("/") + settings.telegram_webhook_path
        try:
            await bot.set_webhook(webhook_url, secret_token=settings.telegram_webhook_secret or None)
            logger.info("webhook_configured", extra={"event": "webhook", "url": webhook_url})
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "webhook_configure_failed",
                extra={"event": "webhook_error", "url": webhook_url, "error": str(exc)},
            )
    elif not settings.telegram_use_webhook and not settings.serverless_mode:
        polling_task = asyncio.create_task(dp.start_polling(bot, allowed_updates=dp.resolve_used_update_types()))

    app.state.settings = settings
    app.state.hub = hub
    app.state.dp = dp
    app.state.bot = bot
    app.state.http = http
    app.state.scheduler = scheduler
    app.state.polling_task = polling_task

    try:
        yield
    finally:
        if scheduler:
            scheduler.stop()
        if polling_task:
            polling_task.cancel()
            with contextlib.suppress(Exception):
                await polling_task
        hub.registry.clear()
        await bot.session.close()
        await http.close()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Ronin Trade Bot", version="1.0.0", lifespan=lifespan)

    def _cron_authorized(req: Request) -> bool:
        if req.headers.get("x-vercel-cron"):
            return True
        if not settings.cron_secret:
            return True
        auth = req.headers.get("authorization", "")
        if auth == f"Bearer {settings.cron_secret}":
            return True
        if req.headers.get("x-cron-secret", "") == settings.cron_secret:
            return True
        return False

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post(settings.telegram_webhook_path)
    async def telegram_webhook(req: Request) -> dict:
        app_settings = app.state.settings
        if not app_settings.telegram_use_webhook:
            raise HTTPException(status_code=400, detail="Webhook mode disabled")

        if app_settings.telegram_webhook_secret:
            secret = req.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
            if secret != app_settings.telegram_webhook_secret:
                raise HTTPException(status_code=403, detail="Invalid secret")

        payload = await req.json()
        update = Update.model_validate(payload)
        await app.state.dp.feed_update(app.state.bot, update)
        return {"ok": True}

    @app.api_route("/tasks/copytrade/run", methods=["GET", "POST"])
    async def task_copytrade(req: Request) -> dict:
        if not _cron_authorized(req):
            raise HTTPException(status_code=401, detail="Unauthorized")

        async def _notify(chat_id: int, text: str) -> None:
            await app.state.bot.send_message(chat_id=chat_id, text=text, disable_web_page_preview=True)

        try:
            count = await app.state.hub.copy_trader.tick(_notify)
            return {"ok": True, "mirrored": count, "task": "copytrade", "ts": datetime.now(timezone.utc).isoformat()}
        except Exception as exc:  # noqa: BLE001
            logger.exception("task_copytrade_failed", extra={"event": "task_copytrade_failed", "error": str(exc)})
            return {"ok": False, "mirrored": 0, "task": "copytrade", "error": str(exc), "ts": datetime.now(timezone.utc).isoformat()}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("app.main:app", host=settings.host, port=settings.port, reload=False)
