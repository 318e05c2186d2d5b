"""Label, ship-by and reminder endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from fastapi_rentalship.deadline import format_ship_by
from fastapi_rentalship.dependencies import get_components
from fastapi_rentalship.reminders import (
    process_return_reminders,
    process_ship_by_reminders,
)
from fastapi_rentalship.schemas import (
    HealthResponse,
    LabelJobResponse,
    ReminderRunResponse,
    ShipByResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/fulfillment/health", response_model=HealthResponse)
async def fulfillment_health(
    components=Depends(get_components),
) -> HealthResponse:
    """Healthcheck endpoint with background job counters."""
    return HealthResponse(
        status="ok",
        pending_jobs=components.runner.pending,
        failed_jobs=len(components.runner.failures),
    )


@router.post(
    "/transactions/{transaction_id}/labels",
    response_model=LabelJobResponse,
    status_code=202,
)
async def create_labels(
    transaction_id: str,
    components=Depends(get_components),
) -> LabelJobResponse:
    """Acceptance trigger: queue label acquisition for the transaction."""
    await components.store.get(transaction_id)
    name = f"labels:{transaction_id}"
    if components.runner.is_pending(name):
        logger.info(
            "Label acquisition for tx %s already queued", transaction_id
        )
        return LabelJobResponse(
            transaction_id=transaction_id, status="already_queued"
        )
    components.runner.submit(
        name,
        components.labels.create_labels_for_transaction(transaction_id),
    )
    logger.info("Queued label acquisition for tx %s", transaction_id)
    return LabelJobResponse(transaction_id=transaction_id)


@router.get(
    "/transactions/{transaction_id}/ship-by",
    response_model=ShipByResponse,
)
async def get_ship_by(
    transaction_id: str,
    components=Depends(get_components),
) -> ShipByResponse:
    """Re-derive the ship-by date from stored booking and address data."""
    record = await components.store.get(transaction_id)
    config = components.config
    result = await components.ship_by.compute(
        record.booking_start,
        config.ship_lead_mode,
        config.ship_lead_days,
        config.ship_lead_max_days,
        record.protected_data.get("providerZip"),
        record.protected_data.get("customerZip"),
    )
    return ShipByResponse(
        transaction_id=transaction_id,
        ship_by=result.ship_by,
        ship_by_label=format_ship_by(result.ship_by),
        lead_days=result.lead_days,
        mode=result.mode.value,
        miles=result.miles,
    )


@router.post("/jobs/ship-by-reminders", response_model=ReminderRunResponse)
async def run_ship_by_reminders(
    components=Depends(get_components),
) -> ReminderRunResponse:
    """Run one ship-by reminder sweep."""
    run = await process_ship_by_reminders(
        store=components.store,
        dispatcher=components.dispatcher,
        ship_by_calculator=components.ship_by,
        config=components.config,
        shortener=components.shortener,
    )
    return ReminderRunResponse(
        scanned=run.scanned,
        sent=run.sent,
        skipped=run.skipped,
        failed=run.failed,
    )


@router.post("/jobs/return-reminders", response_model=ReminderRunResponse)
async def run_return_reminders(
    components=Depends(get_components),
) -> ReminderRunResponse:
    """Run one borrower return reminder sweep."""
    run = await process_return_reminders(
        store=components.store,
        dispatcher=components.dispatcher,
        config=components.config,
        shortener=components.shortener,
    )
    return ReminderRunResponse(
        scanned=run.scanned,
        sent=run.sent,
        skipped=run.skipped,
        failed=run.failed,
    )
