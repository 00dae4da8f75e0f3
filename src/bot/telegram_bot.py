"""
Remindly — Telegram Bot.

Telegram is the user interface to Remindly: commands create and list
reminders, and sharing a location runs a scan of the user's Location
reminders around that spot.

Security-first: unauthorized users are silently ignored.
"""

from __future__ import annotations

import logging
from datetime import datetime
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)
from telegram.helpers import escape_markdown

from src.config import settings
from src.core.errors import (
    InvalidInputError,
    InvalidReminderError,
    ReminderNotFoundError,
    SpeechNotAvailableError,
)
from src.core.rate_limit import make_key
from src.data.models import DAY_NAMES, ReminderKind, ScheduleType

if TYPE_CHECKING:
    from src.core.location_trigger import LocationTriggerEngine, ScanOutcome
    from src.core.rate_limit import RateLimiter
    from src.core.reminder_service import ReminderService
    from src.data.db import UserDB
    from src.data.models import Reminder, User
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

_DAY_ABBREVIATIONS = {name[:3].lower(): idx for idx, name in enumerate(DAY_NAMES)}
_LIST_LIMIT = 20


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores messages from unauthorized users.

    Does NOT send any response to strangers; the bot must not reveal
    its existence to unauthorized users.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None or user.id not in settings.ALLOWED_USER_IDS:
            uid = user.id if user else "unknown"
            logger.warning("Unauthorized access attempt from user_id=%s", uid)
            return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _current_user(update: Update, context: ContextTypes.DEFAULT_TYPE) -> User:
    """Return the stored user, registering them on first contact."""
    users: UserDB = context.bot_data["users"]
    tg_user = update.effective_user
    user = users.get_user(tg_user.id)
    if user is None:
        user = users.add_user(tg_user.id, tg_user.full_name or tg_user.first_name or "")
    return user


def parse_day_list(token: str) -> list[int] | None:
    """Parse "mon,wed,fri" into weekday indexes (0 = Sunday). None if not a day list."""
    days = []
    for part in token.lower().split(","):
        part = part.strip()[:3]
        if part not in _DAY_ABBREVIATIONS:
            return None
        days.append(_DAY_ABBREVIATIONS[part])
    return sorted(set(days))


def parse_meeting_args(args: list[str], tz: ZoneInfo) -> tuple[datetime, str] | None:
    """Parse "YYYY-MM-DD HH:MM <title>" in the local time zone."""
    if len(args) < 3:
        return None
    try:
        local = datetime.strptime(f"{args[0]} {args[1]}", "%Y-%m-%d %H:%M")
    except ValueError:
        return None
    title = " ".join(args[2:]).strip()
    if not title:
        return None
    return local.replace(tzinfo=tz), title


def format_reminder(reminder: Reminder, tz: ZoneInfo) -> str:
    """One-line summary of a reminder for list replies."""
    line = f"`{reminder.id}` — {reminder.kind.value}: {escape_markdown(reminder.title)}"
    if reminder.is_completed:
        line += " ✅"
    if reminder.schedule_type is ScheduleType.ROUTINE and reminder.schedule_time.fixed_time:
        days = ", ".join(DAY_NAMES[d][:3] for d in reminder.schedule_days) or "daily"
        line += f" ({days} at {reminder.schedule_time.fixed_time})"
    elif reminder.start_time is not None:
        line += f" ({reminder.start_time.astimezone(tz).strftime('%a %d %b %H:%M')})"
    elif reminder.kind is ReminderKind.LOCATION and reminder.schedule_days:
        line += f" ({', '.join(DAY_NAMES[d][:3] for d in reminder.schedule_days)})"
    elif reminder.kind is ReminderKind.TASK and not reminder.is_manual_schedule:
        line += " (scheduling…)"
    return line


def format_outcomes(outcomes: list[ScanOutcome]) -> str:
    triggered = [o for o in outcomes if o.triggered]
    if not outcomes:
        return "You have no active place reminders."
    if not triggered:
        return "Nothing to remind you about around here right now."
    lines = ["📍 Near you:"]
    for o in triggered:
        lines.append(f"• {o.body or o.body_fallback} — {o.place.name} ({o.distance_meters} m)")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — register the user and say hello."""
    user = _current_user(update, context)
    await update.message.reply_text(
        f"Welcome to *Remindly*, {user.first_name}!\n\n"
        "• /task <title> — I'll find a time for it\n"
        "• /meeting YYYY-MM-DD HH:MM <title> — a meeting at a fixed time\n"
        "• /place <keyword> [mon,wed] — remind me near a place\n"
        "• Share your location to check nearby place reminders\n\n"
        "Type /help for the full command list.",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.message.reply_text(
        "*Available commands:*\n"
        "/task <title> — Add a task, scheduled for you\n"
        "/meeting YYYY-MM-DD HH:MM <title> — Add a meeting\n"
        "/place <keyword> [days] — Add a place reminder (days like mon,wed,fri)\n"
        "/reminders — List your reminders\n"
        "/notifications — Show recent notifications\n"
        "/done <id> — Mark a reminder as done\n"
        "/help — Show this message",
        parse_mode="Markdown",
    )


async def _create(
    update: Update, context: ContextTypes.DEFAULT_TYPE, payload: dict,
) -> None:
    service: ReminderService = context.bot_data["service"]
    tz = ZoneInfo(settings.TIMEZONE)
    user = _current_user(update, context)
    try:
        result = await service.create_reminder(user, payload)
    except InvalidInputError as exc:
        problems = "\n".join(f"• {e['field']}: {e['message']}" for e in exc.errors)
        await update.message.reply_text(f"That doesn't look right:\n{problems}")
        return
    except InvalidReminderError as exc:
        await update.message.reply_text(str(exc))
        return
    except Exception as exc:
        logger.error("Create reminder error: %s", exc)
        await update.message.reply_text("Couldn't save that reminder. Please try again.")
        return

    await update.message.reply_text(
        f"Saved! {format_reminder(result.reminder, tz)}", parse_mode="Markdown",
    )


@authorized_only
async def cmd_task(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /task <title> — an unscheduled task the assistant will place."""
    title = " ".join(context.args or []).strip()
    if not title:
        await update.message.reply_text("Usage: /task <title>")
        return
    await _create(update, context, {"type": "Task", "title": title})


@authorized_only
async def cmd_meeting(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /meeting YYYY-MM-DD HH:MM <title>."""
    parsed = parse_meeting_args(context.args or [], ZoneInfo(settings.TIMEZONE))
    if parsed is None:
        await update.message.reply_text("Usage: /meeting YYYY-MM-DD HH:MM <title>")
        return
    start, title = parsed
    await _create(update, context, {"type": "Meeting", "title": title, "start_time": start})


@authorized_only
async def cmd_place(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /place <keyword> [days] — a Location reminder."""
    args = list(context.args or [])
    days: list[int] = []
    if len(args) > 1:
        parsed_days = parse_day_list(args[-1])
        if parsed_days is not None:
            days = parsed_days
            args = args[:-1]
    keyword = " ".join(args).strip()
    if not keyword:
        await update.message.reply_text("Usage: /place <keyword> [mon,wed,fri]")
        return
    await _create(update, context, {"type": "Location", "title": keyword, "schedule_days": days})


@authorized_only
async def cmd_reminders(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /reminders — list the newest reminders."""
    service: ReminderService = context.bot_data["service"]
    user = _current_user(update, context)
    try:
        page = service.list_reminders(user, limit=_LIST_LIMIT)
    except Exception as exc:
        logger.error("/reminders error: %s", exc)
        await update.message.reply_text("Couldn't load reminders. Please try again.")
        return

    if not page.items:
        await update.message.reply_text("No reminders yet.")
        return

    tz = ZoneInfo(settings.TIMEZONE)
    lines = [f"*Your reminders* ({page.total}):\n"]
    lines.extend(format_reminder(r, tz) for r in page.items)
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


@authorized_only
async def cmd_notifications(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /notifications — show recent notifications and mark them read."""
    service: ReminderService = context.bot_data["service"]
    user = _current_user(update, context)
    try:
        page = service.list_notifications(user, limit=10)
        service.mark_all_notifications_read(user)
    except Exception as exc:
        logger.error("/notifications error: %s", exc)
        await update.message.reply_text("Couldn't load notifications. Please try again.")
        return

    if not page.items:
        await update.message.reply_text("No notifications.")
        return

    lines = ["*Notifications:*\n"]
    for n in page.items:
        marker = "" if n.is_read else "🆕 "
        lines.append(f"{marker}{escape_markdown(n.message)}")
    await update.message.reply_text("\n".join(lines), parse_mode="Markdown")


@authorized_only
async def cmd_done(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /done <id> — mark a reminder as completed."""
    service: ReminderService = context.bot_data["service"]
    args = context.args
    if not args:
        await update.message.reply_text("Usage: /done <reminder_id>\nUse /reminders to see IDs.")
        return

    try:
        reminder_id = int(args[0])
    except ValueError:
        await update.message.reply_text("Invalid reminder ID. Use /reminders to see valid IDs.")
        return

    user = _current_user(update, context)
    try:
        result = await service.update_reminder(user, reminder_id, {"is_completed": True})
    except ReminderNotFoundError:
        await update.message.reply_text(f"Reminder {reminder_id} not found. Please check the ID.")
        return
    except Exception as exc:
        logger.error("/done error: %s", exc)
        await update.message.reply_text(f"Couldn't update reminder {reminder_id}. Please try again.")
        return

    await update.message.reply_text(
        f"✅ Marked '*{escape_markdown(result.reminder.title)}*' as done.", parse_mode="Markdown",
    )


# ---------------------------------------------------------------------------
# Location messages → scan
# ---------------------------------------------------------------------------


@authorized_only
async def handle_location(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """A shared location runs a trigger scan around it."""
    engine: LocationTriggerEngine = context.bot_data["engine"]
    limiter: RateLimiter = context.bot_data["limiter"]
    service: ReminderService = context.bot_data["service"]

    user = _current_user(update, context)
    if not limiter.hit(make_key("user", user.user_id)):
        await update.message.reply_text("Too many scans, please try again in a minute.")
        return

    location = update.message.location
    try:
        outcomes = await engine.scan_and_trigger(user, location.latitude, location.longitude)
    except Exception as exc:
        logger.error("Location scan error: %s", exc)
        await update.message.reply_text("Couldn't check your surroundings. Please try again.")
        return

    await update.message.reply_text(format_outcomes(outcomes))

    for outcome in outcomes:
        if not outcome.triggered or not outcome.tts_text_hash:
            continue
        try:
            audio = service.get_speech_audio(user, outcome.reminder_id)
        except (SpeechNotAvailableError, ReminderNotFoundError):
            continue
        try:
            await update.message.reply_voice(voice=audio.audio, caption=outcome.title)
        except TelegramError as exc:
            logger.warning("Voice note for reminder #%d not sent: %s", outcome.reminder_id, exc)


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_components(notifier: NotificationPort | None = None) -> dict[str, Any]:
    """Wire stores, capability adapters and core services with their defaults."""
    from src.core.enrichment import EnrichmentPipeline, EnrichmentQueue
    from src.core.location_trigger import LocationTriggerEngine
    from src.core.notifications import NotificationSink
    from src.core.rate_limit import RateLimiter
    from src.core.reminder_service import ReminderService
    from src.core.schedule_resolver import ScheduleResolver
    from src.core.speech import SpeechStage
    from src.core.suggestions import LLMAssistant
    from src.data.db import CalendarEventDB, NotificationDB, ReminderDB, UserDB
    from src.integrations.elevenlabs import ElevenLabsSpeech
    from src.integrations.google_maps import GooglePlacesClient

    reminder_db = ReminderDB()
    notification_db = NotificationDB()
    user_db = UserDB()
    assistant = LLMAssistant()

    resolver = ScheduleResolver(reminder_db, assistant=assistant, calendar_db=CalendarEventDB())
    speech_stage = SpeechStage(reminder_db, ElevenLabsSpeech(), user_db=user_db)
    pipeline = EnrichmentPipeline(
        reminder_db, resolver, speech_stage, assistant=assistant, user_db=user_db,
    )
    queue = EnrichmentQueue(pipeline)
    service = ReminderService(
        reminder_db, notification_db, pipeline, speech_stage, assistant=assistant, queue=queue,
    )
    engine = LocationTriggerEngine(
        reminder_db,
        GooglePlacesClient(),
        speech_stage=speech_stage,
        sink=NotificationSink(notification_db, notifier),
        assistant=assistant,
    )
    return {
        "users": user_db,
        "service": service,
        "engine": engine,
        "queue": queue,
        "limiter": RateLimiter(max_events=settings.SCAN_RATE_LIMIT_PER_MINUTE, window_seconds=60),
    }


async def _post_init(app: Application) -> None:
    app.bot_data["queue"].start()


async def _post_shutdown(app: Application) -> None:
    await app.bot_data["queue"].stop()


def build_app(components: dict[str, Any] | None = None) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        components: Pre-wired services (see build_components). Defaults to
                    the production wiring, with a TelegramNotifier created
                    from the bot instance.
    """
    app = (
        ApplicationBuilder()
        .token(settings.TELEGRAM_BOT_TOKEN)
        .post_init(_post_init)
        .post_shutdown(_post_shutdown)
        .build()
    )

    if components is None:
        from src.adapters.telegram_notifier import TelegramNotifier
        components = build_components(TelegramNotifier(app.bot))

    # Store services in bot_data for handler access
    app.bot_data.update(components)

    # Commands
    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("task", cmd_task))
    app.add_handler(CommandHandler("meeting", cmd_meeting))
    app.add_handler(CommandHandler("place", cmd_place))
    app.add_handler(CommandHandler("reminders", cmd_reminders))
    app.add_handler(CommandHandler("notifications", cmd_notifications))
    app.add_handler(CommandHandler("done", cmd_done))

    # Shared locations
    app.add_handler(MessageHandler(filters.LOCATION, handle_location))

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def main() -> None:
    """Entry point: build the app and start polling."""
    if not settings.TELEGRAM_BOT_TOKEN:
        raise SystemExit("TELEGRAM_BOT_TOKEN is not set. Add it to .env and restart.")
    logger.info("Starting Remindly bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
