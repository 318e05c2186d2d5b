"""Pydantic schemas for the fulfillment HTTP surface."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TrackingStatus(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: str
    status_details: str | None = None
    status_date: str | None = None


class TrackingData(BaseModel):
    model_config = ConfigDict(extra="allow")

    tracking_number: str = Field(min_length=1)
    carrier: str | None = None
    tracking_status: TrackingStatus
    metadata: dict[str, Any] | str | None = None


class TrackingWebhookPayload(BaseModel):
    """Carrier ``track_updated`` webhook body."""

    model_config = ConfigDict(extra="allow")

    event: str | None = None
    test: bool | None = None
    data: TrackingData


class WebhookAckResponse(BaseModel):
    status: str
    reason: str | None = None
    transaction_id: str | None = None
    leg: str | None = None
    notification: str | None = None


class LabelJobResponse(BaseModel):
    transaction_id: str
    status: str = "queued"


class ShipByResponse(BaseModel):
    transaction_id: str
    ship_by: datetime | None
    ship_by_label: str | None = None
    lead_days: int | None = None
    mode: str
    miles: float | None = None


class ReminderRunResponse(BaseModel):
    scanned: int
    sent: int
    skipped: int
    failed: int


class HealthResponse(BaseModel):
    status: str = "ok"
    pending_jobs: int = 0
    failed_jobs: int = 0
