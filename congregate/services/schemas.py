"""
congregate.services.schemas — Pydantic input models
====================================================

Shapes of the payloads the UI hands to the managers.  Validation happens
here, locally, before any store call; failures surface as the engine's own
:class:`~congregate.services.errors.ValidationError` with a ``detail`` code
naming the first offending field (``"title_required"``,
``"invalid_max_capacity"``…).
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from congregate.database.models import AnnouncementCategory, EventRecurrence
from congregate.services.errors import ValidationError

M = TypeVar("M", bound=BaseModel)

_HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class _Input(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")


# ---------------------------------------------------------------------------
# Announcements
# ---------------------------------------------------------------------------
class AnnouncementCreate(_Input):
    group_id: str = Field(min_length=1)
    author_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=200)
    content: str = Field(min_length=1)
    category: AnnouncementCategory = AnnouncementCategory.INFO
    is_pinned: bool = False
    scheduled_for: datetime | None = None
    bypass_mute: bool = False
    cross_group_ids: list[str] | None = None

    @field_validator("scheduled_for")
    @classmethod
    def _scheduled_utc(cls, value: datetime | None) -> datetime | None:
        return _utc(value)

    @field_validator("cross_group_ids")
    @classmethod
    def _dedupe_targets(cls, value: list[str] | None) -> list[str] | None:
        if not value:
            return None
        seen: list[str] = []
        for gid in value:
            if gid and gid not in seen:
                seen.append(gid)
        return seen or None


class AnnouncementUpdate(_Input):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    content: str | None = Field(default=None, min_length=1)
    category: AnnouncementCategory | None = None
    is_pinned: bool | None = None
    bypass_mute: bool | None = None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------
class EventCreate(_Input):
    group_id: str = Field(min_length=1)
    creator_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    start_time: datetime
    end_time: datetime | None = None
    location: str | None = Field(default=None, max_length=200)
    location_url: str | None = Field(default=None, max_length=500)
    recurrence: EventRecurrence = EventRecurrence.ONCE
    recurrence_end_date: datetime | None = None
    max_capacity: int | None = Field(default=None, gt=0)
    reminder_24h: bool = True
    reminder_1h: bool = True
    custom_reminder_minutes: int | None = Field(default=None, gt=0)

    @field_validator("start_time", "recurrence_end_date")
    @classmethod
    def _times_utc(cls, value: datetime | None) -> datetime | None:
        return _utc(value)

    @field_validator("end_time")
    @classmethod
    def _end_after_start(cls, value: datetime | None, info: ValidationInfo) -> datetime | None:
        value = _utc(value)
        start = info.data.get("start_time")
        if value is not None and start is not None and value < start:
            raise ValueError("end_time must not be before start_time")
        return value


class EventUpdate(_Input):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    location: str | None = Field(default=None, max_length=200)
    location_url: str | None = Field(default=None, max_length=500)
    max_capacity: int | None = Field(default=None, gt=0)
    reminder_24h: bool | None = None
    reminder_1h: bool | None = None
    custom_reminder_minutes: int | None = Field(default=None, gt=0)

    @field_validator("start_time", "end_time")
    @classmethod
    def _times_utc(cls, value: datetime | None) -> datetime | None:
        return _utc(value)


# ---------------------------------------------------------------------------
# Custom roles
# ---------------------------------------------------------------------------
class CustomRoleCreate(_Input):
    group_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=50)
    color: str = "#6b7280"
    position: int = Field(default=0, ge=0)
    permissions: dict[str, bool] = Field(default_factory=dict)

    @field_validator("color")
    @classmethod
    def _hex_color(cls, value: str) -> str:
        if not _HEX_COLOR.match(value):
            raise ValueError("color must be #rrggbb")
        return value.lower()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def _detail_for(error: dict[str, Any]) -> str:
    loc = error.get("loc") or ()
    field = str(loc[0]) if loc else "input"
    if error.get("type") == "missing" or error.get("type") == "string_too_short":
        return f"{field}_required"
    return f"invalid_{field}"


def parse_input(model: type[M], data: dict[str, Any] | M) -> M:
    """Validate *data* against *model*, raising the engine's ValidationError."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        errors = exc.errors()
        detail = _detail_for(errors[0]) if errors else "validation_error"
        message = errors[0].get("msg") if errors else None
        raise ValidationError(detail, user_message=message) from exc
