"""Shared fixtures for fastapi-rentalship tests."""

from __future__ import annotations

import asyncio
import copy
import json
from typing import Any

import pytest

from fastapi_rentalship.config import RentalShipConfig
from fastapi_rentalship.deadline import ShipByCalculator
from fastapi_rentalship.exceptions import (
    TransactionNotFoundError,
    WriteConflictError,
)
from fastapi_rentalship.labels import LabelOrchestrator
from fastapi_rentalship.notifications import DedupCache, NotificationDispatcher
from fastapi_rentalship.persistence import ProtectedDataReconciler
from fastapi_rentalship.tracking import TrackingWebhookHandler, compute_signature
from fastapi_rentalship.types import Coordinates, SmsReceipt, TransactionRecord

WEBHOOK_SECRET = "whsec_test"

PROVIDER_FIELDS = {
    "providerName": "Lena Lender",
    "providerStreet": "1 Market St",
    "providerCity": "San Francisco",
    "providerState": "CA",
    "providerZip": "94105",
    "providerPhone": "(415) 555-0100",
}

CUSTOMER_FIELDS = {
    "customerName": "Bo Borrower",
    "customerStreet": "200 Park Ave",
    "customerCity": "New York",
    "customerState": "NY",
    "customerZip": "10166",
    "customerPhone": "212-555-0199",
}


def make_transaction(
    tx_id: str = "tx-1",
    *,
    protected_data: dict[str, Any] | None = None,
    booking_start: str | None = "2025-01-20T00:00:00Z",
    **kwargs: Any,
) -> TransactionRecord:
    data = {**PROVIDER_FIELDS, **CUSTOMER_FIELDS}
    if protected_data is not None:
        data.update(protected_data)
    return TransactionRecord(
        id=tx_id,
        protected_data=data,
        booking_start=booking_start,
        listing_title=kwargs.pop("listing_title", "Vintage Slip Dress"),
        **kwargs,
    )


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return compute_signature(body, secret)


def tracking_event(
    tracking_number: str,
    status: str,
    *,
    metadata: dict[str, Any] | str | None = None,
    carrier: str = "usps",
    test: bool | None = None,
) -> bytes:
    payload: dict[str, Any] = {
        "event": "track_updated",
        "data": {
            "tracking_number": tracking_number,
            "carrier": carrier,
            "tracking_status": {"status": status},
        },
    }
    if metadata is not None:
        payload["data"]["metadata"] = metadata
    if test is not None:
        payload["test"] = test
    return json.dumps(payload).encode()


class InMemoryTransactionStore:
    """Versioned store; ``conflicts`` forces that many write conflicts."""

    def __init__(self) -> None:
        self.records: dict[str, TransactionRecord] = {}
        self.conflicts = 0
        self.update_calls = 0

    def add(self, record: TransactionRecord) -> TransactionRecord:
        self.records[record.id] = copy.deepcopy(record)
        return record

    async def get(self, transaction_id: str) -> TransactionRecord:
        if transaction_id not in self.records:
            raise TransactionNotFoundError(transaction_id)
        return copy.deepcopy(self.records[transaction_id])

    async def update_protected_data(
        self,
        transaction_id: str,
        protected_data: dict[str, Any],
        *,
        expected_version: int,
    ) -> TransactionRecord:
        self.update_calls += 1
        if transaction_id not in self.records:
            raise TransactionNotFoundError(transaction_id)
        record = self.records[transaction_id]
        if self.conflicts > 0:
            self.conflicts -= 1
            # Simulates another writer landing first.
            record.version += 1
            raise WriteConflictError(transaction_id, expected_version)
        if record.version != expected_version:
            raise WriteConflictError(transaction_id, expected_version)
        record.protected_data = copy.deepcopy(protected_data)
        record.version += 1
        return copy.deepcopy(record)

    async def list_recent(
        self, limit: int, *, state: str | None = None
    ) -> list[TransactionRecord]:
        records = [
            r
            for r in reversed(list(self.records.values()))
            if state is None or r.state == state
        ]
        return [copy.deepcopy(r) for r in records[:limit]]


class FakeCarrier:
    """Records calls; rates and purchase responses are configurable."""

    def __init__(self) -> None:
        self.rates: list[dict[str, Any]] = [
            {
                "object_id": "rate-usps",
                "provider": "USPS",
                "amount": "8.10",
                "servicelevel": {"name": "Priority Mail"},
            },
            {
                "object_id": "rate-ups",
                "provider": "UPS",
                "amount": "11.20",
                "servicelevel": {"name": "Ground"},
            },
        ]
        self.shipment_extra: dict[str, Any] = {}
        self.purchase_status = "SUCCESS"
        self.fail_purchase_on_call: int | None = None
        self.shipments: list[dict[str, Any]] = []
        self.purchases: list[tuple[str, dict[str, Any]]] = []

    @property
    def calls(self) -> int:
        return len(self.shipments) + len(self.purchases)

    async def create_shipment(
        self,
        address_from: dict[str, Any],
        address_to: dict[str, Any],
        parcel: dict[str, Any],
    ) -> dict[str, Any]:
        self.shipments.append(
            {"from": address_from, "to": address_to, "parcel": parcel}
        )
        return {"status": "SUCCESS", "rates": list(self.rates), **self.shipment_extra}

    async def purchase_label(
        self, rate_id: str, options: dict[str, Any]
    ) -> dict[str, Any]:
        self.purchases.append((rate_id, options))
        n = len(self.purchases)
        if self.fail_purchase_on_call == n:
            return {"status": "ERROR", "messages": [{"text": "rejected"}]}
        response: dict[str, Any] = {
            "status": self.purchase_status,
            "tracking_number": f"TRK{n}",
            "tracking_url_provider": f"https://carrier.example/track/TRK{n}",
            "label_url": f"https://labels.example/{n}.png",
            "messages": [],
        }
        if options.get("extra", {}).get("qr_code_requested"):
            response["qr_code_url"] = (
                f"https://qr.example/{n}.png?Expires=1737331200"
            )
        return response


class FakeSms:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = False

    async def send(
        self, phone: str, body: str, tags: dict[str, Any]
    ) -> SmsReceipt:
        if self.fail:
            raise RuntimeError("gateway down")
        self.sent.append({"phone": phone, "body": body, "tags": tags})
        return SmsReceipt(message_id=f"SM{len(self.sent)}")


class YieldingTransactionStore(InMemoryTransactionStore):
    """Suspends on every call so concurrent callers really interleave."""

    async def get(self, transaction_id: str) -> TransactionRecord:
        await asyncio.sleep(0)
        return await super().get(transaction_id)

    async def update_protected_data(
        self,
        transaction_id: str,
        protected_data: dict[str, Any],
        *,
        expected_version: int,
    ) -> TransactionRecord:
        await asyncio.sleep(0)
        return await super().update_protected_data(
            transaction_id, protected_data, expected_version=expected_version
        )


class YieldingCarrier(FakeCarrier):
    async def create_shipment(self, *args: Any) -> dict[str, Any]:
        await asyncio.sleep(0)
        return await super().create_shipment(*args)

    async def purchase_label(
        self, rate_id: str, options: dict[str, Any]
    ) -> dict[str, Any]:
        await asyncio.sleep(0)
        return await super().purchase_label(rate_id, options)


class YieldingSms(FakeSms):
    async def send(
        self, phone: str, body: str, tags: dict[str, Any]
    ) -> SmsReceipt:
        await asyncio.sleep(0)
        return await super().send(phone, body, tags)


def sent_tags(sms: FakeSms) -> list[str]:
    return [message["tags"]["tag"] for message in sms.sent]


class FakeGeocoder:
    def __init__(self, coordinates: dict[str, Coordinates] | None = None):
        self.coordinates = coordinates or {}
        self.calls: list[str] = []

    async def geocode(self, postal_code: str) -> Coordinates | None:
        self.calls.append(postal_code)
        return self.coordinates.get(postal_code)


class FakeShortener:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.urls: list[str] = []

    async def shorten(self, url: str) -> str | None:
        if self.fail:
            raise RuntimeError("shortener down")
        self.urls.append(url)
        return f"https://s.example/r/{len(self.urls)}"


async def no_sleep(_: float) -> None:
    return None


@pytest.fixture()
def config() -> RentalShipConfig:
    return RentalShipConfig(
        shippo_api_token="shippo_test_token",
        webhook_secret=WEBHOOK_SECRET,
        brand_name="Sherbrt",
        persist_backoff_ms=0,
    )


@pytest.fixture()
def store() -> InMemoryTransactionStore:
    return InMemoryTransactionStore()


@pytest.fixture()
def carrier() -> FakeCarrier:
    return FakeCarrier()


@pytest.fixture()
def sms() -> FakeSms:
    return FakeSms()


@pytest.fixture()
def reconciler(store) -> ProtectedDataReconciler:
    return ProtectedDataReconciler(store, retries=3, backoff_ms=0, sleep=no_sleep)


@pytest.fixture()
def dispatcher(sms, reconciler) -> NotificationDispatcher:
    return NotificationDispatcher(sms=sms, reconciler=reconciler, dedup=DedupCache())


@pytest.fixture()
def ship_by_calculator() -> ShipByCalculator:
    return ShipByCalculator(geocoder=None)


@pytest.fixture()
def orchestrator(
    config, store, carrier, reconciler, dispatcher, ship_by_calculator
) -> LabelOrchestrator:
    return LabelOrchestrator(
        config=config,
        store=store,
        carrier=carrier,
        reconciler=reconciler,
        dispatcher=dispatcher,
        ship_by=ship_by_calculator,
    )


@pytest.fixture()
def tracking_handler(config, store, dispatcher) -> TrackingWebhookHandler:
    return TrackingWebhookHandler(
        config=config, store=store, dispatcher=dispatcher
    )


@pytest.fixture()
async def async_engine():
    """Create an in-memory aiosqlite async engine."""
    pytest.importorskip("aiosqlite")
    from sqlalchemy.ext.asyncio import create_async_engine

    from fastapi_rentalship.contrib.sqlalchemy.models import Base

    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture()
async def async_session_factory(async_engine):
    """Create an async session factory bound to the in-memory engine."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    factory = async_sessionmaker(
        async_engine, class_=AsyncSession, expire_on_commit=False
    )
    yield factory
