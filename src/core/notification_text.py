"""
Remindly — Notification text.

Deterministic notification lines used when the assistant is unavailable,
and the text fingerprint that ties cached speech audio to the text it
was synthesized from.
"""

from __future__ import annotations

import hashlib

from src.data.models import Reminder, ReminderKind, User


def fallback_notification_line(reminder: Reminder, user: User | None) -> str:
    """Template line by reminder kind, addressed to the user's first name."""
    first = user.first_name if user is not None else "there"
    if reminder.kind is ReminderKind.TASK:
        return f"Hey {first}, reminder: {reminder.title}."
    if reminder.kind is ReminderKind.MEETING:
        return f"Hey {first}, reminder for meeting: {reminder.title}."
    if reminder.kind is ReminderKind.LOCATION:
        place = (reminder.location.name if reminder.location else "") or "your saved place"
        return f"Hey {first}, you are near {place}."
    return f"Hey {first}, you have a reminder: {reminder.title}."


def active_notification_text(reminder: Reminder, user: User | None) -> str:
    """The text speech is generated from: the AI line if set, else the template."""
    return reminder.ai_notification_line or fallback_notification_line(reminder, user)


def compute_text_hash(text: str, voice_id: str | None) -> str:
    """sha256 hex of "{voice_id}::{text}"."""
    return hashlib.sha256(f"{voice_id or ''}::{text}".encode("utf-8")).hexdigest()


def location_trigger_message(title: str) -> str:
    return f"You're near a place for {title}."


def location_trigger_fallback_body(title: str) -> str:
    return f"Reminder: {location_trigger_message(title)}"
