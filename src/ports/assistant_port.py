"""Assistant port — abstract interface for the generative-AI capability.

Two best-effort operations: proposing a schedule for an unscheduled item and
writing a one-line notification. Callers must treat every failure as
"unavailable" and fall back.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from src.core.schedule_resolver import ScheduleDecision
    from src.data.models import Reminder, User


class AssistantUnavailableError(Exception):
    """Raised when the AI capability cannot produce a usable answer."""


class AssistantPort(Protocol):
    """Abstract AI interface used by the resolver, pipeline and trigger engine."""

    async def suggest_schedule(
        self,
        user_id: int,
        now: datetime,
        item: dict,
        busy_window: list[dict],
    ) -> ScheduleDecision | None: ...

    async def generate_line(self, reminder: Reminder, user: User | None) -> str | None: ...
