"""
Remindly — LLM Assistant.

Implements AssistantPort on top of `complete()`:
- suggest_schedule: picks a one-day time or a routine for an unscheduled item,
  given the user's busy window for the next 7 days.
- generate_line: writes a single friendly notification line.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from typing import TYPE_CHECKING

from src.core.llm import complete
from src.core.schedule_resolver import SOURCE_AI, ScheduleDecision, decision_from_payload
from src.ports.assistant_port import AssistantUnavailableError

if TYPE_CHECKING:
    from src.data.models import Reminder, User

logger = logging.getLogger(__name__)

MAX_LINE_CHARS = 140

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_SCHEDULE_PROMPT = """\
You are a scheduling assistant. You receive the user's BUSY WINDOW (items already
scheduled in the next 7 days, ISO UTC timestamps), the current time, and a NEW ITEM.
Choose a schedule for the NEW ITEM.

Rules:
- Habits and routines (prayer, workout, gym, running, walking, meditation, study,
  reading, medicine, watering plants, journaling) get scheduleType "routine" with a
  fixedTime "HH:MM" (24h) between 06:00 and 22:00. Daily routines use scheduleDays [].
  Routines on specific weekdays list them in scheduleDays (0=Sunday .. 6=Saturday).
- One-off items get scheduleType "one-day" with a startDateISO in the future, at most
  7 days from now.
- Do not overlap the busy window; keep at least 30 minutes between items.
- If no one-day time fits in 7 days, choose a routine with a sensible fixedTime.

Reply with ONLY this JSON object, no extra text:
{"startDateISO": "YYYY-MM-DDTHH:MM:SSZ" or null, "scheduleType": "one-day" or "routine", \
"scheduleDays": [ints 0-6], "scheduleTime": {"minutesBeforeStart": int or null, "fixedTime": "HH:MM" or null}}
"""

_LINE_PROMPT = """\
Write ONE friendly notification line addressed to the user by first name.
Mention the reminder title briefly. Stay under 140 characters.
Never mention a date, a time, or a countdown. Plain text only, no quotes.
"""

_JSON_BLOCK_RE = re.compile(r"\{[\s\S]*\}")


def _clean_llm_response(raw_text: str) -> str:
    """Remove markdown code block delimiters from an LLM response."""
    cleaned = (raw_text or "").strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned.removeprefix("```json")
    elif cleaned.startswith("```"):
        cleaned = cleaned.removeprefix("```")
    if cleaned.endswith("```"):
        cleaned = cleaned.removesuffix("```")
    return cleaned.strip()


def parse_json_object(raw_text: str) -> dict:
    """Parse the first JSON object in an LLM response.

    Raises AssistantUnavailableError when nothing parseable is found.
    """
    text = _clean_llm_response(raw_text)
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_BLOCK_RE.search(text)
        if match is None:
            raise AssistantUnavailableError(f"non-JSON schedule response: {text[:80]!r}")
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as exc:
            raise AssistantUnavailableError(f"malformed schedule JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise AssistantUnavailableError(f"expected a JSON object, got {type(data).__name__}")
    return data


def clean_notification_line(raw_text: str) -> str:
    """Collapse an LLM reply into a single trimmed line of at most 140 chars."""
    first = next((ln for ln in (raw_text or "").strip().splitlines() if ln.strip()), "")
    line = re.sub(r"\s+", " ", first).strip().strip('"').strip()
    if len(line) > MAX_LINE_CHARS:
        line = line[: MAX_LINE_CHARS - 1].rstrip() + "…"
    return line


class LLMAssistant:
    """AssistantPort implementation backed by the configured LLM provider."""

    async def suggest_schedule(
        self,
        user_id: int,
        now: datetime,
        item: dict,
        busy_window: list[dict],
    ) -> ScheduleDecision | None:
        user_message = (
            f"BUSY WINDOW:\n{json.dumps(busy_window, indent=2)}\n"
            f"Now (UTC): {now.isoformat()}\n"
            "NEW ITEM:\n"
            + json.dumps(
                {
                    "type": item.get("type"),
                    "title": item.get("title"),
                    "description": item.get("description", ""),
                },
                indent=2,
            )
        )
        raw = await complete(system=_SCHEDULE_PROMPT, user_message=user_message, max_tokens=256)
        logger.debug("LLM schedule response for user %d: %s", user_id, raw)

        decision = decision_from_payload(parse_json_object(raw), now, source=SOURCE_AI)
        if decision is None:
            logger.info("LLM schedule for '%s' rejected by validation", item.get("title"))
        return decision

    async def generate_line(self, reminder: Reminder, user: User | None) -> str | None:
        first_name = user.first_name if user is not None else "there"
        user_message = (
            f"User first name: {first_name}\n"
            f"Type: {reminder.kind.value}\n"
            f"Title: {reminder.title}"
        )
        raw = await complete(system=_LINE_PROMPT, user_message=user_message, max_tokens=96)
        line = clean_notification_line(raw)
        return line or None
