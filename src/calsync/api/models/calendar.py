"""Request and response models for the calendar-source endpoints."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from calsync.calendar.models import CalendarItem, CalendarSource, normalize_color


class LinkSourceRequest(BaseModel):
    """Body of ``POST /api/providers/{provider_id}/sources``."""

    model_config = ConfigDict(extra="forbid")

    calendar_id: str = Field(min_length=1)
    name: str | None = None
    color: str | None = None
    subscribe: bool = True

    @field_validator("calendar_id")
    @classmethod
    def _normalize_calendar_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("calendar_id must be a non-empty string")
        return normalized

    @field_validator("color")
    @classmethod
    def _normalize_color(cls, value: Any) -> str | None:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return normalize_color(value)


class CalendarItemView(BaseModel):
    """A mirrored event as shown to API clients, carrying its source color."""

    event_id: str
    title: str
    all_day: bool
    start: datetime | date
    end: datetime | date
    html_link: str | None = None
    color: str

    @classmethod
    def from_item(cls, item: CalendarItem, color: str) -> CalendarItemView:
        return cls(
            event_id=item.event_id,
            title=item.title,
            all_day=item.all_day,
            start=item.start,
            end=item.end,
            html_link=item.html_link,
            color=color,
        )


class SourceItemsResponse(BaseModel):
    source_id: uuid.UUID
    name: str
    color: str
    last_sync: datetime | None = None
    items: list[CalendarItemView] = Field(default_factory=list)

    @classmethod
    def build(cls, source: CalendarSource, items: list[CalendarItem]) -> SourceItemsResponse:
        return cls(
            source_id=source.id,
            name=source.name,
            color=source.color,
            last_sync=source.last_sync,
            items=[CalendarItemView.from_item(item, source.color) for item in items],
        )
