"""SQLAlchemy transaction store implementation."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fastapi_rentalship.contrib.sqlalchemy.models import TransactionModel
from fastapi_rentalship.exceptions import (
    TransactionNotFoundError,
    WriteConflictError,
)
from fastapi_rentalship.types import TransactionRecord


def _to_record(model: TransactionModel) -> TransactionRecord:
    return TransactionRecord(
        id=model.id,
        protected_data=dict(model.protected_data or {}),
        version=model.version,
        state=model.state,
        booking_start=model.booking_start,
        booking_end=model.booking_end,
        listing_title=model.listing_title,
        customer_profile=dict(model.customer_profile or {}),
        provider_profile=dict(model.provider_profile or {}),
        metadata=dict(model.metadata_ or {}),
    )


class SQLAlchemyTransactionStore:
    """Transaction store backed by SQLAlchemy async sessions.

    ``protected_data`` writes are compare-and-set on the ``version`` column.
    """

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        self.session_factory = session_factory

    async def create(self, **kwargs: Any) -> TransactionRecord:
        model = TransactionModel(
            id=kwargs["id"],
            state=kwargs.get("state", "accepted"),
            version=0,
            protected_data=kwargs.get("protected_data") or {},
            booking_start=kwargs.get("booking_start"),
            booking_end=kwargs.get("booking_end"),
            listing_title=kwargs.get("listing_title"),
            customer_profile=kwargs.get("customer_profile") or {},
            provider_profile=kwargs.get("provider_profile") or {},
            metadata_=kwargs.get("metadata") or {},
        )
        async with self.session_factory() as session:
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _to_record(model)

    async def get(self, transaction_id: str) -> TransactionRecord:
        async with self.session_factory() as session:
            model = await session.get(TransactionModel, transaction_id)
            if model is None:
                raise TransactionNotFoundError(transaction_id)
            return _to_record(model)

    async def update_protected_data(
        self,
        transaction_id: str,
        protected_data: dict[str, Any],
        *,
        expected_version: int,
    ) -> TransactionRecord:
        async with self.session_factory() as session:
            result = await session.execute(
                update(TransactionModel)
                .where(
                    TransactionModel.id == transaction_id,
                    TransactionModel.version == expected_version,
                )
                .values(
                    protected_data=protected_data,
                    version=expected_version + 1,
                )
            )
            if result.rowcount == 0:
                await session.rollback()
                exists = await session.get(TransactionModel, transaction_id)
                if exists is None:
                    raise TransactionNotFoundError(transaction_id)
                raise WriteConflictError(transaction_id, expected_version)
            await session.commit()
        return await self.get(transaction_id)

    async def list_recent(
        self, limit: int, *, state: str | None = None
    ) -> list[TransactionRecord]:
        async with self.session_factory() as session:
            stmt = select(TransactionModel)
            if state is not None:
                stmt = stmt.where(TransactionModel.state == state)
            stmt = stmt.order_by(
                TransactionModel.created_at.desc(), TransactionModel.id.desc()
            ).limit(limit)
            result = await session.execute(stmt)
            return [_to_record(model) for model in result.scalars().all()]
