"""
Remindly — Notification sink.

Persists in-app notifications and, when a push channel is wired in,
forwards them to the user. The push is best-effort: the stored record is
the source of truth.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.data.db import NotificationDB
    from src.data.models import Notification, NotificationKind
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)


class NotificationSink:
    def __init__(self, notification_db: NotificationDB, notifier: NotificationPort | None = None) -> None:
        self._db = notification_db
        self._notifier = notifier

    async def record(
        self,
        user_id: int,
        kind: NotificationKind,
        message: str,
        reminder_id: int | None = None,
        push: bool = True,
    ) -> Notification:
        notification = self._db.add_notification(user_id, kind, message, reminder_id=reminder_id)
        if push and self._notifier is not None:
            try:
                await self._notifier.send_message(user_id, message)
            except Exception as exc:
                logger.warning("Push for notification #%d failed: %s", notification.id, exc)
        return notification
