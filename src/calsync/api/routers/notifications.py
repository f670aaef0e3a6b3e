"""Google Calendar push-notification webhook.

Google posts an empty body with ``X-Goog-Channel-*`` headers.  Authenticated
notifications are acknowledged with 200 even when the triggered sync fails;
anything that fails channel validation gets the 400 error envelope.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from calsync.api.deps import get_webhook_handler
from calsync.api.models import ApiResponse
from calsync.calendar.models import NotificationReceipt
from calsync.calendar.webhook import WebhookHandler
from calsync.config import WEBHOOK_PATH

router = APIRouter(tags=["notifications"])


@router.post(WEBHOOK_PATH, response_model=ApiResponse[NotificationReceipt])
async def receive_notification(
    request: Request,
    handler: WebhookHandler = Depends(get_webhook_handler),
) -> ApiResponse[NotificationReceipt]:
    receipt = await handler.handle_notification(request.headers)
    return ApiResponse[NotificationReceipt](data=receipt)
