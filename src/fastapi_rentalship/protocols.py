"""Collaborator protocols consumed by the fulfillment pipeline."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from fastapi_rentalship.types import Coordinates, SmsReceipt, TransactionRecord


@runtime_checkable
class TransactionStore(Protocol):
    """Marketplace platform access to transactions and their extensible data.

    ``update_protected_data`` replaces the blob only if the stored version
    still equals ``expected_version``; otherwise it raises
    ``WriteConflictError``.
    """

    async def get(self, transaction_id: str) -> TransactionRecord: ...

    async def update_protected_data(
        self,
        transaction_id: str,
        protected_data: dict[str, Any],
        *,
        expected_version: int,
    ) -> TransactionRecord: ...

    async def list_recent(
        self, limit: int, *, state: str | None = None
    ) -> list[TransactionRecord]: ...


@runtime_checkable
class CarrierClient(Protocol):
    """Label purchasing integration (rates + transactions)."""

    async def create_shipment(
        self,
        address_from: dict[str, Any],
        address_to: dict[str, Any],
        parcel: dict[str, Any],
    ) -> dict[str, Any]: ...

    async def purchase_label(
        self, rate_id: str, options: dict[str, Any]
    ) -> dict[str, Any]: ...


@runtime_checkable
class Geocoder(Protocol):
    async def geocode(self, postal_code: str) -> Coordinates | None: ...


@runtime_checkable
class SmsGateway(Protocol):
    async def send(
        self, phone: str, body: str, tags: dict[str, Any]
    ) -> SmsReceipt: ...


@runtime_checkable
class LinkShortener(Protocol):
    """Best-effort URL shortener; ``None`` means use the original URL."""

    async def shorten(self, url: str) -> str | None: ...
