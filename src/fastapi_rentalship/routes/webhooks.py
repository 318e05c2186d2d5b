"""Carrier tracking webhook endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Request

from fastapi_rentalship.dependencies import get_tracking_handler
from fastapi_rentalship.schemas import WebhookAckResponse
from fastapi_rentalship.tracking import TrackingWebhookHandler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/webhooks/carrier-tracking",
    response_model=WebhookAckResponse,
)
async def carrier_tracking_webhook(
    request: Request,
    x_signature: str | None = Header(default=None),
    handler: TrackingWebhookHandler = Depends(get_tracking_handler),
) -> WebhookAckResponse:
    """Reconcile a signed tracking event; 2xx once handled or ignored."""
    raw_body = await request.body()
    ack = await handler.handle_tracking_event(raw_body, x_signature)
    return WebhookAckResponse(
        status=ack.status,
        reason=ack.reason,
        transaction_id=ack.transaction_id,
        leg=ack.leg.value if ack.leg else None,
        notification=ack.notification.value if ack.notification else None,
    )
