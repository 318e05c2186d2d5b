"""SQLAlchemy transaction store tests with a real aiosqlite DB."""

import pytest

from fastapi_rentalship.contrib.sqlalchemy.store import (
    SQLAlchemyTransactionStore,
)
from fastapi_rentalship.exceptions import (
    TransactionNotFoundError,
    WriteConflictError,
)
from fastapi_rentalship.persistence import ProtectedDataReconciler


@pytest.fixture()
def store(async_session_factory) -> SQLAlchemyTransactionStore:
    return SQLAlchemyTransactionStore(async_session_factory)


async def test_create_and_get(store) -> None:
    created = await store.create(
        id="tx-1",
        protected_data={"providerZip": "94105"},
        booking_start="2025-01-20T00:00:00Z",
        booking_end="2025-01-25T00:00:00Z",
        listing_title="Vintage Slip Dress",
        metadata={"source": "checkout"},
    )

    assert created.version == 0
    fetched = await store.get("tx-1")
    assert fetched.protected_data == {"providerZip": "94105"}
    assert fetched.listing_title == "Vintage Slip Dress"
    assert fetched.booking_end == "2025-01-25T00:00:00Z"
    assert fetched.metadata == {"source": "checkout"}
    assert fetched.state == "accepted"


async def test_get_missing(store) -> None:
    with pytest.raises(TransactionNotFoundError):
        await store.get("nope")


async def test_versioned_update(store) -> None:
    await store.create(id="tx-1")

    updated = await store.update_protected_data(
        "tx-1", {"outbound": {"trackingNumber": "9400"}}, expected_version=0
    )

    assert updated.version == 1
    assert updated.protected_data["outbound"]["trackingNumber"] == "9400"


async def test_stale_version_conflicts(store) -> None:
    await store.create(id="tx-1")
    await store.update_protected_data("tx-1", {"a": 1}, expected_version=0)

    with pytest.raises(WriteConflictError):
        await store.update_protected_data(
            "tx-1", {"b": 2}, expected_version=0
        )

    assert (await store.get("tx-1")).protected_data == {"a": 1}


async def test_update_missing(store) -> None:
    with pytest.raises(TransactionNotFoundError):
        await store.update_protected_data("nope", {}, expected_version=0)


async def test_list_recent_filters_by_state(store) -> None:
    await store.create(id="tx-1")
    await store.create(id="tx-2", state="completed")
    await store.create(id="tx-3")

    accepted = await store.list_recent(10, state="accepted")
    limited = await store.list_recent(1)

    assert {r.id for r in accepted} == {"tx-1", "tx-3"}
    assert len(limited) == 1


async def test_reconciler_merges_through_sql_store(store) -> None:
    await store.create(id="tx-1", protected_data={"providerZip": "94105"})
    reconciler = ProtectedDataReconciler(store, backoff_ms=0)

    first = await reconciler.merge_protected_fields(
        "tx-1", {"outbound": {"trackingNumber": "9400"}}
    )
    second = await reconciler.merge_protected_fields(
        "tx-1", {"outbound": {"state": "first-scan-notified"}}
    )

    assert first.success and second.success
    record = await store.get("tx-1")
    assert record.version == 2
    assert record.protected_data == {
        "providerZip": "94105",
        "outbound": {
            "trackingNumber": "9400",
            "state": "first-scan-notified",
        },
    }
