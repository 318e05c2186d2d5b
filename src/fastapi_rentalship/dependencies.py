"""Dependency providers for request handlers."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

from fastapi_rentalship.config import RentalShipConfig
from fastapi_rentalship.labels import LabelOrchestrator
from fastapi_rentalship.protocols import LinkShortener, TransactionStore
from fastapi_rentalship.tasks import BackgroundJobRunner
from fastapi_rentalship.tracking import TrackingWebhookHandler

if TYPE_CHECKING:
    from fastapi_rentalship.router import FulfillmentComponents


def get_components(request: Request) -> FulfillmentComponents:
    """Read the wired pipeline from FastAPI app state."""
    return request.app.state.rentalship


def get_config(request: Request) -> RentalShipConfig:
    """Read config from FastAPI app state."""
    return get_components(request).config


def get_store(request: Request) -> TransactionStore:
    """Read transaction store from FastAPI app state."""
    return get_components(request).store


def get_runner(request: Request) -> BackgroundJobRunner:
    return get_components(request).runner


def get_label_orchestrator(request: Request) -> LabelOrchestrator:
    return get_components(request).labels


def get_tracking_handler(request: Request) -> TrackingWebhookHandler:
    return get_components(request).tracking


def get_shortener(request: Request) -> LinkShortener | None:
    """Read the optional link shortener from FastAPI app state."""
    return get_components(request).shortener
