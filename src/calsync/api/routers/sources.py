"""Source endpoints: unlink, manual sync and mirrored items."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status

from calsync.api.deps import get_calendar_service
from calsync.api.models import ApiResponse
from calsync.api.models.calendar import SourceItemsResponse
from calsync.calendar.models import SyncOutcome
from calsync.calendar.service import CalendarService

router = APIRouter(prefix="/api/sources", tags=["sources"])


@router.delete("/{source_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unlink_source(
    source_id: uuid.UUID,
    service: CalendarService = Depends(get_calendar_service),
) -> None:
    await service.unlink_source(source_id)


@router.post("/{source_id}/sync", response_model=ApiResponse[SyncOutcome])
async def sync_source(
    source_id: uuid.UUID,
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[SyncOutcome]:
    """Run a sync now; provider failures map to the error envelope."""
    outcome = await service.sync_now(source_id)
    return ApiResponse[SyncOutcome](data=outcome)


@router.get("/{source_id}/items", response_model=ApiResponse[SourceItemsResponse])
async def list_source_items(
    source_id: uuid.UUID,
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[SourceItemsResponse]:
    source, items = await service.source_items(source_id)
    return ApiResponse[SourceItemsResponse](data=SourceItemsResponse.build(source, items))
