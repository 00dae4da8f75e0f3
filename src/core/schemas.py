"""
Remindly — Input schemas.

Pydantic models for everything that enters the service from the outside
(bot commands today, any other front-end tomorrow). Validation failures are
converted to InvalidInputError with one {"field", "message"} entry per
problem.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from src.core.errors import InvalidInputError
from src.data.models import (
    LocationStatus,
    ReminderKind,
    SavedPlace,
    ScheduleTime,
    ScheduleType,
    normalize_schedule_days,
)

DayName = Literal["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
Weekday = Annotated[int, Field(ge=0, le=6)]


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SavedPlaceIn(BaseModel):
    name: str = ""
    link: str = ""
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)

    @field_validator("link")
    @classmethod
    def check_link(cls, v: str) -> str:
        v = v.strip()
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("Invalid location URL")
        return v

    def to_model(self) -> SavedPlace:
        return SavedPlace(name=self.name.strip(), link=self.link, lat=self.lat, lng=self.lng)


class ScheduleTimeIn(BaseModel):
    minutes_before_start: int | None = Field(default=None, ge=0)
    fixed_time: str | None = Field(default=None, pattern=r"^\d{2}:\d{2}$")

    def to_model(self) -> ScheduleTime:
        return ScheduleTime(minutes_before_start=self.minutes_before_start, fixed_time=self.fixed_time)


class _ReminderFields(BaseModel):
    """Fields shared by create and update payloads."""

    description: str | None = None
    icon: str | None = None
    start_time: datetime | None = None
    location: SavedPlaceIn | None = None
    day: DayName | None = None            # legacy single weekday
    status: LocationStatus | None = None
    is_manual_schedule: bool | None = None
    schedule_type: ScheduleType | None = None
    schedule_time: ScheduleTimeIn | None = None
    schedule_days: list[Weekday] | None = None
    notification_preference_minutes: int | None = Field(default=None, ge=0)

    @field_validator("start_time")
    @classmethod
    def utc_start(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    @field_validator("description", "icon")
    @classmethod
    def strip_text(cls, v: str | None) -> str | None:
        return v.strip() if isinstance(v, str) else v

    @model_validator(mode="after")
    def fold_legacy_day(self):
        if self.day is not None and not self.schedule_days:
            self.schedule_days = normalize_schedule_days(None, self.day)
        return self


class ReminderCreate(_ReminderFields):
    type: ReminderKind
    title: str

    @field_validator("title")
    @classmethod
    def title_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Title is required")
        return v


class ReminderUpdate(_ReminderFields):
    type: ReminderKind | None = None
    title: str | None = None
    is_completed: bool | None = None

    @field_validator("title")
    @classmethod
    def title_not_empty(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("Title cannot be empty")
        return v

    def changes(self) -> dict[str, Any]:
        """Only the fields the caller actually sent, with the legacy day folded in."""
        sent = set(self.model_fields_set)
        if "day" in sent:
            sent.discard("day")
            sent.add("schedule_days")
        return {name: getattr(self, name) for name in sent}


class ScanRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    radius: int | None = Field(default=None, gt=0, le=50_000)


def validate_input(model_cls: type[BaseModel], data: dict) -> BaseModel:
    """Validate a payload, raising InvalidInputError with per-field messages."""
    try:
        return model_cls.model_validate(data)
    except ValidationError as exc:
        errors = []
        for err in exc.errors():
            names = [str(p) for p in err.get("loc", ()) if isinstance(p, str)]
            message = err.get("msg", "Invalid value").removeprefix("Value error, ")
            errors.append({"field": names[-1] if names else "field", "message": message})
        raise InvalidInputError(errors) from exc
