"""Provider account endpoints: status, unlinking, calendar listing and linking."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status

from calsync.api.deps import get_calendar_service
from calsync.api.models import ApiResponse
from calsync.api.models.calendar import LinkSourceRequest
from calsync.calendar.models import CalendarSource, CalendarSummary, ProviderStatus
from calsync.calendar.service import CalendarService

router = APIRouter(prefix="/api/providers", tags=["providers"])


@router.get("/{provider_id}", response_model=ApiResponse[ProviderStatus])
async def get_provider(
    provider_id: uuid.UUID,
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[ProviderStatus]:
    return ApiResponse[ProviderStatus](data=await service.provider_status(provider_id))


@router.delete("/{provider_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unlink_provider(
    provider_id: uuid.UUID,
    service: CalendarService = Depends(get_calendar_service),
) -> None:
    await service.unlink_provider(provider_id)


@router.get("/{provider_id}/calendars", response_model=ApiResponse[list[CalendarSummary]])
async def list_calendars(
    provider_id: uuid.UUID,
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[list[CalendarSummary]]:
    calendars = await service.list_calendars(provider_id)
    return ApiResponse[list[CalendarSummary]](data=calendars)


@router.post(
    "/{provider_id}/sources",
    response_model=ApiResponse[CalendarSource],
    status_code=status.HTTP_201_CREATED,
)
async def link_source(
    provider_id: uuid.UUID,
    body: LinkSourceRequest,
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[CalendarSource]:
    source = await service.link_source(
        provider_id,
        body.calendar_id,
        name=body.name,
        color=body.color,
        subscribe=body.subscribe,
    )
    return ApiResponse[CalendarSource](data=source)
