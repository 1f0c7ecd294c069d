from __future__ import annotations

from aiogram.types import InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

# Telegram rejects callback_data longer than 64 bytes
_CALLBACK_DATA_MAX = 64


def prompt_keyboard(options: list[tuple[str, str]], columns: int = 2) -> InlineKeyboardMarkup | None:
    if not options:
        return None
    kb = InlineKeyboardBuilder()
    for text, value in options:
        kb.button(text=text, callback_data=value[:_CALLBACK_DATA_MAX])
    kb.adjust(max(1, columns))
    return kb.as_markup()
