"""
Telegram bot entrypoint built with aiogram 3.

Операторский интерфейс монитора:
- /monitor, /stop, /clear, /status, /health, /check
- кнопки: Статус, Здоровье, Остановить
- FSM для состояния мониторинга
- мидлвара, которая пускает только админа по chat_id
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiogram import BaseMiddleware, Bot, Dispatcher, F
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.filters import Command, CommandObject
from aiogram.fsm.context import FSMContext
from aiogram.fsm.state import State, StatesGroup
from aiogram.types import (
    CallbackQuery,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    Message,
    TelegramObject,
)
from pydantic import ValidationError

from .browser import BrowserController
from .config import get_settings
from .errors import BrowserUnavailable, SessionValidationError
from .models import (
    AppointmentSlot,
    DateRange,
    HealthStatus,
    MonitoringSession,
    SessionPreferences,
    SessionStatus,
    TimeWindow,
)
from .navigation import NavigationEngine
from .retry import RetryPolicy
from .scheduler import SessionScheduler
from .utils import setup_logging


logger = logging.getLogger(__name__)

MAX_SLOTS_IN_MESSAGE = 30


class AdminOnlyMiddleware(BaseMiddleware):
    """Allow only admin user to interact with bot (messages and button presses)."""

    def __init__(self, admin_chat_id: int) -> None:
        super().__init__()
        self.admin_chat_id = admin_chat_id

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        chat = data.get("event_chat")
        if chat is None or chat.id != self.admin_chat_id:
            await event.answer("This bot is reserved for its owner.")
            return
        return await handler(event, data)


class SlotNotifier:
    """
    Results consumer: sends only slots not seen in the previous check.

    Пустые результаты и повторы прошлой проверки в чат не отправляются.
    """

    def __init__(self, send: Callable[[str], Awaitable[None]]) -> None:
        self._send = send
        self._known: Dict[str, set[tuple[str, date, time]]] = {}

    async def __call__(self, session: MonitoringSession, slots: List[AppointmentSlot]) -> None:
        previous = self._known.get(session.session_id, set())
        self._known[session.session_id] = {slot.identity for slot in slots}
        new_slots = [slot for slot in slots if slot.identity not in previous]
        if not new_slots:
            logger.info("No new slots for %s", session.session_id)
            return
        await self._send(format_slots(session, new_slots))


class MonitorStates(StatesGroup):
    idle = State()
    running = State()


def parse_monitor_args(args: str | None) -> tuple[str, List[str], SessionPreferences]:
    """
    Parse "/monitor <url> <loc1>, <loc2> [dates=A..B] [time=HH:MM-HH:MM]".

    Raises SessionValidationError on malformed input.
    """
    tokens = (args or "").split()
    if not tokens:
        raise SessionValidationError("usage: /monitor <url> <location>, <location> ...")

    url, rest = tokens[0], tokens[1:]
    date_range: Optional[DateRange] = None
    time_window: Optional[TimeWindow] = None
    location_tokens: List[str] = []
    try:
        for token in rest:
            key, sep, value = token.partition("=")
            if sep and key.lower() == "dates":
                start, _, end = value.partition("..")
                date_range = DateRange(
                    start=date.fromisoformat(start),
                    end=date.fromisoformat(end or start),
                )
            elif sep and key.lower() == "time":
                start, _, end = value.partition("-")
                time_window = TimeWindow(start=time.fromisoformat(start), end=time.fromisoformat(end))
            else:
                location_tokens.append(token)
    except (ValueError, ValidationError) as e:
        raise SessionValidationError(f"bad preference value: {e}") from e

    names = [name.strip() for name in " ".join(location_tokens).split(",") if name.strip()]
    return url, names, SessionPreferences(date_range=date_range, time_window=time_window)


def format_slots(session: MonitoringSession, slots: List[AppointmentSlot]) -> str:
    lines = [
        f"📅 <b>{len(slots)} new appointment(s) available</b> (<code>{session.session_id}</code>)",
        "",
    ]
    for slot in slots[:MAX_SLOTS_IN_MESSAGE]:
        # 08/15/2025 09:30 @ Danvers
        lines.append(
            f"{slot.date.strftime('%m/%d/%Y')} {slot.time.strftime('%H:%M')} @ {slot.location_name}"
        )
    if len(slots) > MAX_SLOTS_IN_MESSAGE:
        lines.append(f"... and {len(slots) - MAX_SLOTS_IN_MESSAGE} more")
    return "\n".join(lines)


def format_status(statuses: List[SessionStatus], scheduler_running: bool) -> str:
    text = (
        "📊 <b>Monitoring status</b>\n"
        f"Scheduler: {'running' if scheduler_running else 'stopped'}\n"
        f"Active sessions: {len(statuses)}\n"
    )
    for st in statuses:
        text += (
            f"\n<code>{st.session_id}</code>\n"
            f"Locations: {st.locations_count}, slots: {st.slots_found}\n"
            f"Started: {st.started_at:%Y-%m-%d %H:%M:%S}\n"
        )
        if st.last_checked_at:
            text += f"Last attempted check: {st.last_checked_at:%Y-%m-%d %H:%M:%S}\n"
        if st.last_success_at:
            text += f"Last successful check: {st.last_success_at:%Y-%m-%d %H:%M:%S}\n"
        if st.last_error:
            text += (
                f"Last error ({st.consecutive_failures} in a row): "
                f"<code>{_escape(st.last_error)}</code>\n"
            )
    return text


def format_health(health: HealthStatus) -> str:
    icon = "✅" if health.status == "healthy" else "⚠️"
    text = (
        f"{icon} <b>{health.status}</b>\n"
        f"Browser: {'ok' if health.browser_ok else 'failed'}\n"
        f"Active sessions: {health.active_sessions}\n"
    )
    if health.last_latency_ms is not None:
        text += f"Latency: {health.last_latency_ms:.0f} ms\n"
    if health.error:
        text += f"Error: <code>{_escape(health.error)}</code>\n"
    return text


def _escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def build_scheduler(on_results=None) -> tuple[BrowserController, SessionScheduler]:
    """Wire controller, engine, retry policy and scheduler from settings."""
    settings = get_settings()
    controller = BrowserController(settings.browser)
    engine = NavigationEngine(controller, settings.navigation)
    retry = RetryPolicy(controller.restart, settings.retry)
    scheduler = SessionScheduler(
        engine,
        retry,
        controller,
        settings.scheduler,
        on_results=on_results,
    )
    return controller, scheduler


def main() -> None:
    """Entry point for running the bot."""
    settings = get_settings()
    setup_logging()

    bot = Bot(
        settings.bot.token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    dp = Dispatcher()
    admin_chat_id = settings.bot.admin_chat_id

    controller, scheduler = build_scheduler(
        on_results=SlotNotifier(lambda text: _notify_admin_text(bot, admin_chat_id, text)),
    )

    admin_only = AdminOnlyMiddleware(admin_chat_id)
    dp.message.middleware(admin_only)
    dp.callback_query.middleware(admin_only)

    # region keyboards
    def main_keyboard() -> InlineKeyboardMarkup:
        return InlineKeyboardMarkup(
            inline_keyboard=[
                [InlineKeyboardButton(text="ℹ️ Status", callback_data="status")],
                [InlineKeyboardButton(text="🩺 Health", callback_data="health")],
                [InlineKeyboardButton(text="⏹ Stop all", callback_data="stop_monitoring")],
            ]
        )

    # endregion

    @dp.message(Command("start"))
    async def cmd_start(message: Message, state: FSMContext) -> None:
        await state.set_state(MonitorStates.idle)
        await message.answer(
            "👋 Appointment slot monitor.\n\n"
            "/monitor &lt;url&gt; &lt;location&gt;, &lt;location&gt; "
            "[dates=YYYY-MM-DD..YYYY-MM-DD] [time=HH:MM-HH:MM]\n"
            "/stop [session_id], /clear, /status, /health, /check",
            reply_markup=main_keyboard(),
        )

    @dp.message(Command("monitor"))
    async def cmd_monitor(message: Message, command: CommandObject, state: FSMContext) -> None:
        try:
            url, names, prefs = parse_monitor_args(command.args)
            session_id = await scheduler.start_session(url, names, prefs)
        except SessionValidationError as e:
            await message.answer(f"❌ {_escape(str(e))}")
            return
        await state.set_state(MonitorStates.running)
        await message.answer(
            f"Monitoring started ✅\nSession: <code>{session_id}</code>\n"
            f"Locations: {len(names)}. First check runs right away.",
            reply_markup=main_keyboard(),
        )

    @dp.message(Command("stop"))
    async def cmd_stop(message: Message, command: CommandObject, state: FSMContext) -> None:
        session_id = (command.args or "").strip() or None
        removed = scheduler.stop_session(session_id)
        if not len(scheduler.store):
            await state.set_state(MonitorStates.idle)
        await message.answer(f"Stopped {removed} monitoring session(s) ⏹️")

    @dp.message(Command("clear"))
    async def cmd_clear(message: Message, state: FSMContext) -> None:
        removed = scheduler.stop_session()
        await state.set_state(MonitorStates.idle)
        await message.answer(f"Cleared {removed} monitoring session(s)")

    @dp.message(Command("status"))
    async def cmd_status(message: Message) -> None:
        await message.answer(
            format_status(scheduler.status(), scheduler.is_running),
            reply_markup=main_keyboard(),
        )

    @dp.message(Command("health"))
    async def cmd_health(message: Message) -> None:
        await message.answer(format_health(await scheduler.health()))

    @dp.message(Command("check"))
    async def cmd_check(message: Message) -> None:
        await message.answer("Running monitoring cycle...")
        report = await scheduler.run_cycle()
        await message.answer(
            f"Cycle finished: {report.succeeded} ok, {report.failed} failed "
            f"of {report.processed} session(s)."
        )

    @dp.callback_query(F.data == "stop_monitoring")
    async def on_stop_monitoring(callback: CallbackQuery, state: FSMContext) -> None:
        await callback.answer()
        removed = scheduler.stop_session()
        await state.set_state(MonitorStates.idle)
        await callback.message.edit_text(
            f"Stopped {removed} monitoring session(s) ⏹️", reply_markup=main_keyboard()
        )

    @dp.callback_query(F.data == "status")
    async def on_status(callback: CallbackQuery) -> None:
        await callback.answer()
        await callback.message.edit_text(
            format_status(scheduler.status(), scheduler.is_running),
            reply_markup=main_keyboard(),
        )

    @dp.callback_query(F.data == "health")
    async def on_health(callback: CallbackQuery) -> None:
        await callback.answer()
        await callback.message.edit_text(
            format_health(await scheduler.health()), reply_markup=main_keyboard()
        )

    async def on_startup() -> None:
        try:
            await controller.initialize()
        except BrowserUnavailable as e:
            # Бот остаётся доступным, чтобы можно было посмотреть /health
            logger.error("Browser failed to start, bot stays up for diagnostics: %s", e)
            await _notify_admin_text(
                bot, admin_chat_id, f"⚠️ Browser failed to start: <code>{_escape(str(e))}</code>"
            )
        await scheduler.start()

    async def on_shutdown() -> None:
        await scheduler.stop()
        await controller.close()

    dp.startup.register(on_startup)
    dp.shutdown.register(on_shutdown)

    logger.info("Starting polling")
    asyncio.run(_run_polling(dp, bot))


async def _run_polling(dp: Dispatcher, bot: Bot) -> None:
    try:
        await dp.start_polling(bot)
    finally:
        await bot.session.close()


async def _notify_admin_text(bot: Bot, admin_chat_id: int, text: str) -> None:
    try:
        await bot.send_message(chat_id=admin_chat_id, text=text)
    except Exception as e:  # noqa: BLE001
        logger.warning("Failed to send text notification: %s", e)


if __name__ == "__main__":
    main()
