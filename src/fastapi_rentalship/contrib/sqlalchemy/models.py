"""SQLAlchemy transaction/short-link models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""


class TransactionModel(Base):
    """Local mirror of a marketplace transaction."""

    __tablename__ = "rentalship_transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    state: Mapped[str] = mapped_column(String(32), default="accepted")
    version: Mapped[int] = mapped_column(Integer, default=0)
    protected_data: Mapped[dict] = mapped_column(JSON, default=dict)
    booking_start: Mapped[str | None] = mapped_column(
        String(64), nullable=True
    )
    booking_end: Mapped[str | None] = mapped_column(
        String(64), nullable=True
    )
    listing_title: Mapped[str | None] = mapped_column(
        String(256), nullable=True
    )
    customer_profile: Mapped[dict] = mapped_column(JSON, default=dict)
    provider_profile: Mapped[dict] = mapped_column(JSON, default=dict)
    metadata_: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class ShortLinkModel(Base):
    """Short code to target URL mapping."""

    __tablename__ = "rentalship_short_links"

    code: Mapped[str] = mapped_column(String(32), primary_key=True)
    url: Mapped[str] = mapped_column(String(2048))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
