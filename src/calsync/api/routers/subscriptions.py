"""Subscription renewal trigger, called periodically by an external scheduler."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from calsync.api.deps import get_calendar_service
from calsync.api.models import ApiResponse
from calsync.calendar.models import RenewalReport
from calsync.calendar.service import CalendarService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


@router.post("/renew", response_model=ApiResponse[RenewalReport])
async def renew_subscriptions(
    service: CalendarService = Depends(get_calendar_service),
) -> ApiResponse[RenewalReport]:
    report = await service.renew_subscriptions()
    if report.failed:
        logger.warning("Subscription renewal failed for %d source(s)", len(report.failed))
    return ApiResponse[RenewalReport](data=report)
