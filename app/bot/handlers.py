from __future__ import annotations

import logging
from contextlib import suppress

from aiogram import F, Router
from aiogram.filters import Command, CommandObject
from aiogram.types import BotCommand, CallbackQuery, Message

from app.bot.keyboards import prompt_keyboard
from app.bot.templates import help_text
from app.core.container import ServiceHub
from app.services.trade_wizard import Prompt

router = Router()
_hub: ServiceHub | None = None
logger = logging.getLogger(__name__)

BOT_COMMANDS = [
    ("start", "Main menu"),
    ("help", "How buying, selling and copy trading work"),
    ("cancel", "Cancel the pending step"),
    ("copy", "Copy a wallet: /copy 0x..."),
]


def init_handlers(hub: ServiceHub) -> None:
    global _hub
    _hub = hub


def _require_hub() -> ServiceHub:
    if _hub is None:
        raise RuntimeError("Handlers not initialized")
    return _hub


def bot_commands() -> list[BotCommand]:
    return [BotCommand(command=c, description=d) for c, d in BOT_COMMANDS]


async def _send_prompts(message: Message, prompts: list[Prompt]) -> None:
    for prompt in prompts:
        await message.answer(
            prompt.text,
            reply_markup=prompt_keyboard(prompt.options, prompt.columns),
            disable_web_page_preview=True,
        )


@router.message(Command("start"))
async def start_cmd(message: Message) -> None:
    hub = _require_hub()
    if not message.from_user:
        return
    await _send_prompts(message, await hub.wizard.start(message.from_user.id))


@router.message(Command("help"))
async def help_cmd(message: Message) -> None:
    await message.answer(help_text())


@router.message(Command("cancel"))
async def cancel_cmd(message: Message) -> None:
    hub = _require_hub()
    if not message.from_user:
        return
    await _send_prompts(message, await hub.wizard.handle_action(message.from_user.id, "cancel"))


@router.message(Command("copy"))
async def copy_cmd(message: Message, command: CommandObject) -> None:
    hub = _require_hub()
    if not message.from_user:
        return
    address = (command.args or "").strip()
    if not address:
        await _send_prompts(message, await hub.wizard.handle_action(message.from_user.id, "copy_trade"))
        return
    await _send_prompts(message, await hub.wizard.quick_copy(message.from_user.id, address))


@router.callback_query(F.data)
async def action_callback(callback: CallbackQuery) -> None:
    hub = _require_hub()
    with suppress(Exception):
        await callback.answer()
    if not isinstance(callback.message, Message):
        return
    prompts = await hub.wizard.handle_action(callback.from_user.id, callback.data or "")
    await _send_prompts(callback.message, prompts)


@router.message(F.text)
async def text_message(message: Message) -> None:
    hub = _require_hub()
    if not message.from_user or not message.text:
        return
    user_id = message.from_user.id
    secret = hub.wizard.expects_secret(user_id)
    prompts = await hub.wizard.handle_text(user_id, message.text)
    if secret:
        # the key is never left in the chat history
        with suppress(Exception):
            await message.delete()
        logger.info("secret_message_deleted", extra={"event": "secret_message_deleted", "user_id": user_id})
    await _send_prompts(message, prompts)
