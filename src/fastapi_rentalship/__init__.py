"""Rental shipment fulfillment and notification pipeline for FastAPI."""

from typing import TYPE_CHECKING

__version__ = "0.1.0"

__all__ = [
    "LabelOrchestrator",
    "NotificationDispatcher",
    "ProtectedDataReconciler",
    "RentalShipConfig",
    "TrackingWebhookHandler",
    "TransactionNotFoundError",
    "TransactionStore",
    "__version__",
    "create_fulfillment_router",
    "pick_link",
    "register_exception_handlers",
]

if TYPE_CHECKING:
    from fastapi_rentalship.config import RentalShipConfig
    from fastapi_rentalship.exceptions import (
        TransactionNotFoundError,
        register_exception_handlers,
    )
    from fastapi_rentalship.labels import LabelOrchestrator
    from fastapi_rentalship.links import pick_link
    from fastapi_rentalship.notifications import NotificationDispatcher
    from fastapi_rentalship.persistence import ProtectedDataReconciler
    from fastapi_rentalship.protocols import TransactionStore
    from fastapi_rentalship.router import create_fulfillment_router
    from fastapi_rentalship.tracking import TrackingWebhookHandler


def __getattr__(name: str):
    # Lazy imports to avoid loading all submodules on package import.
    if name == "RentalShipConfig":
        from fastapi_rentalship.config import RentalShipConfig

        return RentalShipConfig
    if name == "create_fulfillment_router":
        from fastapi_rentalship.router import create_fulfillment_router

        return create_fulfillment_router
    if name in ("TransactionNotFoundError", "register_exception_handlers"):
        from fastapi_rentalship import exceptions

        return getattr(exceptions, name)
    if name == "TransactionStore":
        from fastapi_rentalship import protocols

        return getattr(protocols, name)
    if name == "LabelOrchestrator":
        from fastapi_rentalship.labels import LabelOrchestrator

        return LabelOrchestrator
    if name == "NotificationDispatcher":
        from fastapi_rentalship.notifications import NotificationDispatcher

        return NotificationDispatcher
    if name == "ProtectedDataReconciler":
        from fastapi_rentalship.persistence import ProtectedDataReconciler

        return ProtectedDataReconciler
    if name == "TrackingWebhookHandler":
        from fastapi_rentalship.tracking import TrackingWebhookHandler

        return TrackingWebhookHandler
    if name == "pick_link":
        from fastapi_rentalship.links import pick_link

        return pick_link
    raise AttributeError(
        f"module 'fastapi_rentalship' has no attribute {name!r}"
    )
