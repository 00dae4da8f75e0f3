"""
Remindly — Service errors.

Raised by the reminder service and caught by the front-end, which turns
them into user-facing replies.
"""

from __future__ import annotations


class InvalidInputError(Exception):
    """Raised when a request payload fails validation.

    ``errors`` is a list of {"field": ..., "message": ...} dicts.
    """

    def __init__(self, errors: list[dict]) -> None:
        self.errors = errors
        summary = "; ".join(f"{e['field']}: {e['message']}" for e in errors)
        super().__init__(f"Invalid input: {summary}")


class InvalidReminderError(Exception):
    """Raised when a reminder breaks a business rule (e.g. Meeting without start)."""


class ReminderNotFoundError(Exception):
    """Raised when a reminder doesn't exist or isn't owned by the caller."""

    def __init__(self, reminder_id: int) -> None:
        self.reminder_id = reminder_id
        super().__init__(f"Reminder #{reminder_id} not found")


class SpeechNotAvailableError(Exception):
    """Raised when a reminder has no synthesized audio to serve."""


class NotificationNotFoundError(Exception):
    """Raised when a notification doesn't exist or belongs to another user."""

    def __init__(self, notification_id: int) -> None:
        self.notification_id = notification_id
        super().__init__(f"Notification #{notification_id} not found")
