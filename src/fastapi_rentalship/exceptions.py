"""Fulfillment exceptions and their HTTP mapping."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class RentalShipError(Exception):
    """Base class for fulfillment pipeline errors."""


class TransactionNotFoundError(RentalShipError):
    def __init__(
        self,
        transaction_id: str | None = None,
        *,
        tracking_number: str | None = None,
    ) -> None:
        self.transaction_id = transaction_id
        self.tracking_number = tracking_number
        if transaction_id is None and tracking_number is not None:
            message = f"No transaction for tracking number {tracking_number}"
        else:
            message = f"Transaction {transaction_id} not found"
        super().__init__(message)


class WriteConflictError(RentalShipError):
    """Optimistic-concurrency violation on a transaction write."""

    def __init__(self, transaction_id: str, expected_version: int) -> None:
        self.transaction_id = transaction_id
        self.expected_version = expected_version
        super().__init__(
            f"Transaction {transaction_id} changed since version "
            f"{expected_version}"
        )


class CarrierError(RentalShipError):
    """Failure reported by or while talking to the carrier integration."""


class CarrierCommunicationError(CarrierError):
    """Network, timeout or HTTP-level carrier failure; retryable by caller."""

    def __init__(
        self, message: str, *, status_code: int | None = None
    ) -> None:
        self.status_code = status_code
        super().__init__(message)


class LabelPurchaseError(CarrierError):
    """Terminal failure for one purchase attempt; never retried blindly."""

    def __init__(
        self,
        reason: str,
        message: str,
        *,
        status: str | None = None,
        diagnostics: dict[str, Any] | None = None,
    ) -> None:
        self.reason = reason
        self.status = status
        self.diagnostics = diagnostics or {}
        super().__init__(message)


class InvalidWebhookError(RentalShipError):
    """Inbound webhook body cannot be processed."""


class InvalidSignatureError(InvalidWebhookError):
    """Webhook HMAC signature did not verify."""


class MissingContactError(RentalShipError):
    """No phone number could be resolved for the notification recipient."""


class NoCompliantLinkError(RentalShipError):
    """Link policy produced no URL that may be sent for this phase."""


class SmsDeliveryError(RentalShipError):
    """SMS gateway rejected or failed to accept a message."""


def register_exception_handlers(app: FastAPI) -> None:
    """Register fulfillment exception handlers on a FastAPI app.

    Handler order (most specific first):
    1. TransactionNotFoundError → 404
    2. InvalidSignatureError → 403
    3. InvalidWebhookError → 400
    4. MissingContactError → 400
    5. WriteConflictError → 409
    6. CarrierError → 502
    7. RentalShipError → 400 (catch-all)
    """

    @app.exception_handler(TransactionNotFoundError)
    async def _not_found(
        request: Request,
        exc: TransactionNotFoundError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={
                "detail": str(exc),
                "code": "transaction_not_found",
            },
        )

    @app.exception_handler(InvalidSignatureError)
    async def _invalid_signature(
        request: Request,
        exc: InvalidSignatureError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=403,
            content={
                "detail": str(exc),
                "code": "invalid_signature",
            },
        )

    @app.exception_handler(InvalidWebhookError)
    async def _invalid_webhook(
        request: Request,
        exc: InvalidWebhookError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "detail": str(exc),
                "code": "invalid_webhook",
            },
        )

    @app.exception_handler(MissingContactError)
    async def _missing_contact(
        request: Request,
        exc: MissingContactError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "detail": str(exc),
                "code": "missing_contact",
            },
        )

    @app.exception_handler(WriteConflictError)
    async def _write_conflict(
        request: Request,
        exc: WriteConflictError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=409,
            content={
                "detail": str(exc),
                "code": "write_conflict",
            },
        )

    @app.exception_handler(CarrierError)
    async def _carrier_error(
        request: Request,
        exc: CarrierError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=502,
            content={
                "detail": str(exc),
                "code": "carrier_error",
            },
        )

    @app.exception_handler(RentalShipError)
    async def _rentalship_error(
        request: Request,
        exc: RentalShipError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "detail": str(exc),
                "code": "fulfillment_error",
            },
        )
