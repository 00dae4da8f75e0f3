"""Shared test fixtures and configuration.

Sets up fake environment variables before src.config is imported, and
provides temp-file database fixtures.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("LLM_API_KEY", "fake-llm-key-for-tests")
os.environ.setdefault("LLM_PROVIDER", "gemini")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "")
os.environ.setdefault("ELEVENLABS_API_KEY", "")
os.environ.setdefault("TIMEZONE", "UTC")
os.environ.setdefault("USE_SYNC_AI", "0")

import pytest


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_remindly.db")


@pytest.fixture
def reminder_db(tmp_db_path):
    from src.data.db import ReminderDB
    return ReminderDB(db_path=tmp_db_path)


@pytest.fixture
def notification_db(tmp_db_path):
    from src.data.db import NotificationDB
    return NotificationDB(db_path=tmp_db_path)


@pytest.fixture
def user_db(tmp_db_path):
    """Return a UserDB instance backed by a temp file."""
    from src.data.db import UserDB
    return UserDB(db_path=tmp_db_path)


@pytest.fixture
def calendar_db(tmp_db_path):
    from src.data.db import CalendarEventDB
    return CalendarEventDB(db_path=tmp_db_path)


@pytest.fixture
def user(user_db):
    """A registered user named Dana Levi."""
    return user_db.add_user(12345, "Dana Levi")
