"""
Remindly — SQLite storage.

Reminders, notifications, users and mirrored calendar events share one
SQLite file. Nested reminder fields (schedule days, schedule time, places)
are stored as JSON text; synthesized audio is stored as a BLOB.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict, replace
from datetime import datetime, timezone
from pathlib import Path

from src.data.models import (
    CalendarEvent,
    LocationStatus,
    Notification,
    NotificationKind,
    Reminder,
    ReminderKind,
    SavedPlace,
    ScheduleTime,
    ScheduleType,
    SpeechState,
    SpeechStatus,
    TriggeredLocation,
    User,
    normalize_schedule_days,
)

logger = logging.getLogger(__name__)


def to_db_time(value: datetime | None) -> str | None:
    """Serialize a datetime as fixed-width UTC ISO text (sortable as a string)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _json_or_none(obj: object | None) -> str | None:
    if obj is None:
        return None
    return json.dumps(asdict(obj))


class _SQLiteStore:
    """Connection handling shared by every table-specific store."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------

_REMINDER_COLUMNS = (
    "owner_id", "kind", "title", "description", "icon", "start_time",
    "is_manual_schedule", "schedule_type", "schedule_days", "schedule_time",
    "notification_preference_minutes", "ai_suggested", "ai_notification_line",
    "location", "last_triggered_at", "triggered_location", "status",
    "tts_voice_id", "tts_text_hash", "tts_audio", "tts_content_type",
    "tts_size", "tts_status", "tts_generated_at", "is_completed",
)


class ReminderDB(_SQLiteStore):
    """SQLite-backed storage for Task, Meeting and Location reminders."""

    def _init_db(self) -> None:
        """Create the reminders table if it doesn't exist, and migrate schema."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS reminders (
                    id                              INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id                        INTEGER NOT NULL,
                    kind                            TEXT    NOT NULL,
                    title                           TEXT    NOT NULL,
                    description                     TEXT    NOT NULL DEFAULT '',
                    icon                            TEXT    NOT NULL DEFAULT 'star',
                    start_time                      TEXT,
                    is_manual_schedule              INTEGER NOT NULL DEFAULT 0,
                    schedule_type                   TEXT,
                    schedule_days                   TEXT    NOT NULL DEFAULT '[]',
                    schedule_time                   TEXT    NOT NULL DEFAULT '{}',
                    notification_preference_minutes INTEGER NOT NULL DEFAULT 10,
                    ai_suggested                    INTEGER NOT NULL DEFAULT 0,
                    ai_notification_line            TEXT,
                    location                        TEXT,
                    last_triggered_at               TEXT,
                    triggered_location              TEXT,
                    status                          TEXT    NOT NULL DEFAULT 'active',
                    tts_voice_id                    TEXT,
                    tts_text_hash                   TEXT,
                    tts_audio                       BLOB,
                    tts_content_type                TEXT,
                    tts_size                        INTEGER NOT NULL DEFAULT 0,
                    tts_status                      TEXT    NOT NULL DEFAULT 'pending',
                    tts_generated_at                TEXT,
                    is_completed                    INTEGER NOT NULL DEFAULT 0,
                    created_at                      TEXT    NOT NULL,
                    updated_at                      TEXT    NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_reminders_owner_start "
                "ON reminders (owner_id, start_time)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_reminders_owner_kind_status "
                "ON reminders (owner_id, kind, status)"
            )
            existing_cols = {
                row[1] for row in conn.execute("PRAGMA table_info(reminders)").fetchall()
            }
            # Old databases kept a single weekday name per Location reminder
            if "day" in existing_cols:
                self._migrate_legacy_day(conn)
        logger.debug("Reminders table initialized at %s", self._db_path)

    @staticmethod
    def _migrate_legacy_day(conn: sqlite3.Connection) -> None:
        rows = conn.execute(
            "SELECT id, day FROM reminders "
            "WHERE day IS NOT NULL AND (schedule_days IS NULL OR schedule_days = '[]')"
        ).fetchall()
        for row in rows:
            days = normalize_schedule_days(None, row["day"])
            if days:
                conn.execute(
                    "UPDATE reminders SET schedule_days = ? WHERE id = ?",
                    (json.dumps(days), row["id"]),
                )
        if rows:
            logger.info("Migrated %d legacy weekday reminders", len(rows))

    @staticmethod
    def _row_to_reminder(row: sqlite3.Row) -> Reminder:
        schedule_time = json.loads(row["schedule_time"] or "{}")
        location = json.loads(row["location"]) if row["location"] else None
        triggered = json.loads(row["triggered_location"]) if row["triggered_location"] else None
        return Reminder(
            id=row["id"],
            owner_id=row["owner_id"],
            kind=ReminderKind(row["kind"]),
            title=row["title"],
            description=row["description"] or "",
            icon=row["icon"] or "star",
            start_time=from_db_time(row["start_time"]),
            is_manual_schedule=bool(row["is_manual_schedule"]),
            schedule_type=ScheduleType(row["schedule_type"]) if row["schedule_type"] else None,
            schedule_days=json.loads(row["schedule_days"] or "[]"),
            schedule_time=ScheduleTime(**schedule_time),
            notification_preference_minutes=row["notification_preference_minutes"],
            ai_suggested=bool(row["ai_suggested"]),
            ai_notification_line=row["ai_notification_line"],
            location=SavedPlace(**location) if location else None,
            last_triggered_at=from_db_time(row["last_triggered_at"]),
            triggered_location=TriggeredLocation(**triggered) if triggered else None,
            status=LocationStatus(row["status"]),
            tts=SpeechState(
                voice_id=row["tts_voice_id"],
                text_hash=row["tts_text_hash"],
                audio=row["tts_audio"],
                content_type=row["tts_content_type"],
                size=row["tts_size"] or 0,
                status=SpeechStatus(row["tts_status"]),
                generated_at=from_db_time(row["tts_generated_at"]),
            ),
            is_completed=bool(row["is_completed"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )

    @staticmethod
    def _reminder_values(reminder: Reminder) -> tuple:
        return (
            reminder.owner_id,
            reminder.kind.value,
            reminder.title,
            reminder.description or "",
            reminder.icon or "star",
            to_db_time(reminder.start_time),
            int(reminder.is_manual_schedule),
            reminder.schedule_type.value if reminder.schedule_type else None,
            json.dumps(list(reminder.schedule_days or [])),
            json.dumps(asdict(reminder.schedule_time)),
            reminder.notification_preference_minutes,
            int(reminder.ai_suggested),
            reminder.ai_notification_line,
            _json_or_none(reminder.location),
            to_db_time(reminder.last_triggered_at),
            _json_or_none(reminder.triggered_location),
            reminder.status.value,
            reminder.tts.voice_id,
            reminder.tts.text_hash,
            reminder.tts.audio,
            reminder.tts.content_type,
            reminder.tts.size,
            reminder.tts.status.value,
            to_db_time(reminder.tts.generated_at),
            int(reminder.is_completed),
        )

    def add_reminder(self, reminder: Reminder) -> Reminder:
        """Insert a new reminder. The id on the passed object is ignored."""
        now = _utcnow()
        placeholders = ", ".join("?" for _ in range(len(_REMINDER_COLUMNS) + 2))
        with self._connect() as conn:
            cursor = conn.execute(
                f"INSERT INTO reminders ({', '.join(_REMINDER_COLUMNS)}, created_at, updated_at) "
                f"VALUES ({placeholders})",
                self._reminder_values(reminder) + (to_db_time(now), to_db_time(now)),
            )
            reminder_id = cursor.lastrowid

        created = replace(reminder, id=reminder_id, created_at=now, updated_at=now)
        logger.info(
            "Reminder added: #%d %s '%s' for user %d",
            reminder_id, created.kind.value, created.title, created.owner_id,
        )
        return created

    def get_reminder(self, reminder_id: int, owner_id: int | None = None) -> Reminder | None:
        """Fetch a single reminder, optionally scoped to its owner."""
        query = "SELECT * FROM reminders WHERE id = ?"
        params: list = [reminder_id]
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        if row is None:
            return None
        return self._row_to_reminder(row)

    def save_reminder(self, reminder: Reminder) -> bool:
        """Write every mutable column of a reminder back. Last write wins."""
        reminder.updated_at = _utcnow()
        assignments = ", ".join(f"{col} = ?" for col in _REMINDER_COLUMNS)
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE reminders SET {assignments}, updated_at = ? WHERE id = ?",
                self._reminder_values(reminder) + (to_db_time(reminder.updated_at), reminder.id),
            )
        if cursor.rowcount == 0:
            logger.warning("Reminder #%d vanished before save", reminder.id)
            return False
        return True

    def save_speech_state(self, reminder_id: int, tts: SpeechState) -> None:
        """Persist only the speech columns, leaving schedule fields untouched."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE reminders SET
                    tts_voice_id = ?, tts_text_hash = ?, tts_audio = ?,
                    tts_content_type = ?, tts_size = ?, tts_status = ?,
                    tts_generated_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    tts.voice_id, tts.text_hash, tts.audio, tts.content_type,
                    tts.size, tts.status.value, to_db_time(tts.generated_at),
                    to_db_time(_utcnow()), reminder_id,
                ),
            )

    def set_notification_line(self, reminder_id: int, line: str | None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE reminders SET ai_notification_line = ?, updated_at = ? WHERE id = ?",
                (line, to_db_time(_utcnow()), reminder_id),
            )

    def record_trigger(
        self,
        reminder_id: int,
        triggered_at: datetime,
        place: TriggeredLocation,
        status: LocationStatus,
    ) -> Reminder | None:
        """Stamp a Location reminder as fired at a place. Returns the fresh row."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE reminders SET
                    last_triggered_at = ?, triggered_location = ?, status = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    to_db_time(triggered_at), json.dumps(asdict(place)),
                    status.value, to_db_time(_utcnow()), reminder_id,
                ),
            )
        logger.info("Reminder #%d triggered at '%s'", reminder_id, place.name)
        return self.get_reminder(reminder_id)

    def delete_reminder(self, reminder_id: int, owner_id: int) -> bool:
        """Permanently delete a reminder owned by the user."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM reminders WHERE id = ? AND owner_id = ?",
                (reminder_id, owner_id),
            )
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Reminder #%d deleted", reminder_id)
        return deleted

    @staticmethod
    def _filters(
        owner_id: int,
        kind: ReminderKind | None,
        completed: bool | None,
        start_from: datetime | None,
        start_to: datetime | None,
    ) -> tuple[str, list]:
        conditions = ["owner_id = ?"]
        params: list = [owner_id]
        if kind is not None:
            conditions.append("kind = ?")
            params.append(kind.value)
        if completed is not None:
            conditions.append("is_completed = ?")
            params.append(int(completed))
        if start_from is not None:
            conditions.append("start_time >= ?")
            params.append(to_db_time(start_from))
        if start_to is not None:
            conditions.append("start_time <= ?")
            params.append(to_db_time(start_to))
        return " WHERE " + " AND ".join(conditions), params

    def list_reminders(
        self,
        owner_id: int,
        kind: ReminderKind | None = None,
        completed: bool | None = None,
        start_from: datetime | None = None,
        start_to: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Reminder]:
        """List a user's reminders, newest first."""
        where, params = self._filters(owner_id, kind, completed, start_from, start_to)
        query = f"SELECT * FROM reminders{where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        with self._connect() as conn:
            rows = conn.execute(query, params + [limit, offset]).fetchall()
        return [self._row_to_reminder(r) for r in rows]

    def count_reminders(
        self,
        owner_id: int,
        kind: ReminderKind | None = None,
        completed: bool | None = None,
        start_from: datetime | None = None,
        start_to: datetime | None = None,
    ) -> int:
        where, params = self._filters(owner_id, kind, completed, start_from, start_to)
        with self._connect() as conn:
            row = conn.execute(f"SELECT COUNT(*) FROM reminders{where}", params).fetchone()
        return int(row[0])

    def find_by_start_range(
        self,
        owner_id: int,
        start: datetime,
        end: datetime,
        kinds: tuple[ReminderKind, ...] | None = None,
        incomplete_only: bool = False,
        exclude_id: int | None = None,
    ) -> list[Reminder]:
        """Return reminders whose start_time lies in [start, end], earliest first."""
        query = (
            "SELECT * FROM reminders WHERE owner_id = ? "
            "AND start_time IS NOT NULL AND start_time >= ? AND start_time <= ?"
        )
        params: list = [owner_id, to_db_time(start), to_db_time(end)]
        if kinds:
            query += f" AND kind IN ({', '.join('?' for _ in kinds)})"
            params.extend(k.value for k in kinds)
        if incomplete_only:
            query += " AND is_completed = 0"
        if exclude_id is not None:
            query += " AND id != ?"
            params.append(exclude_id)
        query += " ORDER BY start_time"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_reminder(r) for r in rows]

    def list_active_locations(self, owner_id: int) -> list[Reminder]:
        """Location reminders that are neither completed nor in completed status."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM reminders
                WHERE owner_id = ? AND kind = ? AND is_completed = 0 AND status != ?
                ORDER BY id
                """,
                (owner_id, ReminderKind.LOCATION.value, LocationStatus.COMPLETED.value),
            ).fetchall()
        return [self._row_to_reminder(r) for r in rows]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationDB(_SQLiteStore):
    """SQLite-backed in-app notification feed."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS notifications (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id     INTEGER NOT NULL,
                    kind        TEXT    NOT NULL DEFAULT 'reminder',
                    message     TEXT    NOT NULL,
                    is_read     INTEGER NOT NULL DEFAULT 0,
                    reminder_id INTEGER,
                    created_at  TEXT    NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_notifications_user_created "
                "ON notifications (user_id, created_at)"
            )
        logger.debug("Notifications table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_notification(row: sqlite3.Row) -> Notification:
        return Notification(
            id=row["id"],
            user_id=row["user_id"],
            kind=NotificationKind(row["kind"]),
            message=row["message"],
            is_read=bool(row["is_read"]),
            reminder_id=row["reminder_id"],
            created_at=from_db_time(row["created_at"]),
        )

    def add_notification(
        self,
        user_id: int,
        kind: NotificationKind,
        message: str,
        reminder_id: int | None = None,
    ) -> Notification:
        now = _utcnow()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO notifications (user_id, kind, message, is_read, reminder_id, created_at)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                (user_id, kind.value, message, reminder_id, to_db_time(now)),
            )
            notification_id = cursor.lastrowid
        logger.info("Notification #%d (%s) for user %d", notification_id, kind.value, user_id)
        return Notification(
            id=notification_id,
            user_id=user_id,
            kind=kind,
            message=message,
            is_read=False,
            reminder_id=reminder_id,
            created_at=now,
        )

    def list_for_user(self, user_id: int, limit: int = 50, offset: int = 0) -> list[Notification]:
        """Newest notifications first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE user_id = ? "
                "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                (user_id, limit, offset),
            ).fetchall()
        return [self._row_to_notification(r) for r in rows]

    def count_for_user(self, user_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM notifications WHERE user_id = ?", (user_id,),
            ).fetchone()
        return int(row[0])

    def mark_read(self, notification_id: int, user_id: int) -> Notification | None:
        """Mark one of the user's notifications as read."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?",
                (notification_id, user_id),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM notifications WHERE id = ?", (notification_id,),
            ).fetchone()
        return self._row_to_notification(row)

    def mark_all_read(self, user_id: int) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0",
                (user_id,),
            )
        return cursor.rowcount


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserDB(_SQLiteStore):
    """SQLite-backed storage for registered users."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id    INTEGER PRIMARY KEY,
                    full_name  TEXT NOT NULL,
                    voice_id   TEXT,
                    created_at TEXT NOT NULL
                )
            """)
        logger.debug("Users table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            user_id=row["user_id"],
            full_name=row["full_name"],
            voice_id=row["voice_id"],
            created_at=row["created_at"],
        )

    def add_user(self, user_id: int, full_name: str, voice_id: str | None = None) -> User:
        """Register a user, or refresh the name of an existing one."""
        now = _utcnow().isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users (user_id, full_name, voice_id, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET full_name = excluded.full_name
                """,
                (user_id, full_name, voice_id, now),
            )
        logger.info("User registered: %d '%s'", user_id, full_name)
        return self.get_user(user_id)

    def get_user(self, user_id: int) -> User | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE user_id = ?", (user_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def set_voice(self, user_id: int, voice_id: str | None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET voice_id = ? WHERE user_id = ?", (voice_id, user_id),
            )

    def is_registered(self, user_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM users WHERE user_id = ?", (user_id,),
            ).fetchone()
        return row is not None


# ---------------------------------------------------------------------------
# Mirrored calendar events
# ---------------------------------------------------------------------------


class CalendarEventDB(_SQLiteStore):
    """Calendar events mirrored by an external sync job; read-only to the core."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS calendar_events (
                    user_id     INTEGER NOT NULL,
                    external_id TEXT    NOT NULL,
                    summary     TEXT    NOT NULL,
                    start_time  TEXT    NOT NULL,
                    end_time    TEXT,
                    PRIMARY KEY (user_id, external_id)
                )
            """)
        logger.debug("Calendar events table initialized at %s", self._db_path)

    def replace_events(self, user_id: int, events: list[CalendarEvent]) -> None:
        """Swap the user's mirrored events for a fresh sync result."""
        with self._connect() as conn:
            conn.execute("DELETE FROM calendar_events WHERE user_id = ?", (user_id,))
            conn.executemany(
                """
                INSERT OR REPLACE INTO calendar_events
                    (user_id, external_id, summary, start_time, end_time)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (
                        user_id, ev.external_id, ev.summary or "Event",
                        to_db_time(ev.start_time), to_db_time(ev.end_time),
                    )
                    for ev in events
                ],
            )
        logger.info("Synced %d calendar events for user %d", len(events), user_id)

    def find_between(self, user_id: int, start: datetime, end: datetime) -> list[CalendarEvent]:
        """Events starting in [start, end], earliest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM calendar_events
                WHERE user_id = ? AND start_time >= ? AND start_time <= ?
                ORDER BY start_time
                """,
                (user_id, to_db_time(start), to_db_time(end)),
            ).fetchall()
        return [
            CalendarEvent(
                user_id=row["user_id"],
                external_id=row["external_id"],
                summary=row["summary"],
                start_time=from_db_time(row["start_time"]),
                end_time=from_db_time(row["end_time"]),
            )
            for row in rows
        ]
