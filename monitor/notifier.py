"""Trade event delivery: Telegram chat and a local JSONL file."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from html import escape
from typing import Any, Iterable

from telegram import Bot

import config
from utils.log_contracts import trade_close_event, trade_open_event

logger = logging.getLogger(__name__)


class TradeNotifier:
    async def position_opened(self, event: dict[str, Any]) -> None:
        return None

    async def position_closed(self, event: dict[str, Any]) -> None:
        return None

    async def close(self) -> None:
        return None


class TelegramNotifier(TradeNotifier):
    def __init__(self, bot: Bot, chat_id: int) -> None:
        self.bot = bot
        self.chat_id = int(chat_id)

    @classmethod
    def from_token(cls, token: str, chat_id: int) -> "TelegramNotifier":
        return cls(Bot(token=token), chat_id)

    async def _send(self, text: str) -> None:
        await self.bot.send_message(
            chat_id=self.chat_id,
            text=text,
            parse_mode="HTML",
            disable_web_page_preview=True,
        )

    async def position_opened(self, event: dict[str, Any]) -> None:
        text = (
            "\U0001F7E2 <b>Position opened</b>\n"
            f"Token: <b>{escape(str(event.get('symbol', 'N/A')))}</b>\n"
            f"Address: <code>{escape(str(event.get('token_address', '')))}</code>\n"
            f"Chain: {int(event.get('chain_id', 0) or 0)}\n"
            f"Invested: ${float(event.get('amount_usd_invested', 0) or 0):.2f}\n"
            f"Price: ${float(event.get('buy_price_usd', 0) or 0):.10f}\n"
            f"Tx: <code>{escape(str(event.get('tx_ref', '')))}</code>"
        )
        await self._send(text)

    async def position_closed(self, event: dict[str, Any]) -> None:
        pnl = float(event.get("pnl", 0) or 0)
        icon = "\U0001F4B0" if pnl >= 0 else "\U0001F534"
        floor = event.get("profit_floor")
        floor_line = f"Profit floor: ${float(floor):.2f}\n" if floor else ""
        text = (
            f"{icon} <b>Position closed</b> ({escape(str(event.get('reason', '')))})\n"
            f"Token: <b>{escape(str(event.get('symbol', 'N/A')))}</b>\n"
            f"Invested: ${float(event.get('amount_usd_invested', 0) or 0):.2f}\n"
            f"Proceeds: ${float(event.get('proceeds_usd', 0) or 0):.2f}\n"
            f"Peak value: ${float(event.get('highest_price_ever', 0) or 0):.2f}\n"
            f"{floor_line}"
            f"PnL: ${pnl:.2f} ({float(event.get('pnl_percentage', 0) or 0):.2f}%)\n"
            f"Tx: <code>{escape(str(event.get('tx_ref', '')))}</code>"
        )
        await self._send(text)


class LocalEventSink(TradeNotifier):
    def __init__(self, events_file: str, run_tag: str = "") -> None:
        self.events_file = events_file
        self.run_tag = run_tag
        directory = os.path.dirname(self.events_file)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def _append(self, record: dict[str, Any]) -> None:
        with open(self.events_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")

    async def position_opened(self, event: dict[str, Any]) -> None:
        self._append(trade_open_event(event, run_tag=self.run_tag))

    async def position_closed(self, event: dict[str, Any]) -> None:
        self._append(trade_close_event(event, run_tag=self.run_tag))


class FanoutNotifier(TradeNotifier):
    """Delivers to every sink; one failing sink does not block the others."""

    def __init__(self, sinks: Iterable[TradeNotifier]) -> None:
        self.sinks = list(sinks)

    async def _dispatch(self, method: str, event: dict[str, Any]) -> None:
        results = await asyncio.gather(
            *[getattr(sink, method)(event) for sink in self.sinks],
            return_exceptions=True,
        )
        for sink, result in zip(self.sinks, results):
            if isinstance(result, Exception):
                logger.warning("NOTIFY failed sink=%s event=%s err=%s", type(sink).__name__, method, result)

    async def position_opened(self, event: dict[str, Any]) -> None:
        await self._dispatch("position_opened", event)

    async def position_closed(self, event: dict[str, Any]) -> None:
        await self._dispatch("position_closed", event)

    async def close(self) -> None:
        for sink in self.sinks:
            await sink.close()


def build_notifier() -> FanoutNotifier:
    sinks: list[TradeNotifier] = []
    if config.TRADE_EVENTS_FILE:
        sinks.append(LocalEventSink(config.TRADE_EVENTS_FILE, run_tag=config.RUN_TAG))
    if config.TELEGRAM_BOT_TOKEN and config.TELEGRAM_CHAT_ID:
        sinks.append(TelegramNotifier.from_token(config.TELEGRAM_BOT_TOKEN, config.TELEGRAM_CHAT_ID))
    else:
        logger.info("NOTIFY telegram disabled (TELEGRAM_BOT_TOKEN/TELEGRAM_CHAT_ID not set)")
    return FanoutNotifier(sinks)
