"""Notification port — abstract interface for pushing messages to users.

Core modules depend on this protocol, never on a specific messaging provider.
"""

from __future__ import annotations

from typing import Protocol


class NotificationPort(Protocol):
    """Abstract push interface used by the notification sink."""

    async def send_message(self, user_id: int, text: str) -> None: ...
