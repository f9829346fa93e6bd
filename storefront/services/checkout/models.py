"""Checkout database models.

This DB is the placement ledger: one row per client order id recording how far
the saga got, the external correlation ids, and service-local outbox records.
It is not the order of record; that lives in the content store.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from storefront.common.db import Base, JSONDocument


class OrderPlacement(Base):
    """Saga progress for one client order id."""

    __tablename__ = "order_placements"

    order_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    payment_reference: Mapped[str] = mapped_column(String, index=True)
    rate_id: Mapped[str] = mapped_column(String)
    state: Mapped[str] = mapped_column(String, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    charged_amount: Mapped[float | None] = mapped_column(Float, nullable=True)
    charged_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    label_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String, nullable=True)
    label_url: Mapped[str | None] = mapped_column(String, nullable=True)
    carrier: Mapped[str | None] = mapped_column(String, nullable=True)
    failure_details: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)
    confirmation: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)
    order_document: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)
    document_id: Mapped[str | None] = mapped_column(String, nullable=True)
    persist_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PlacementTimeline(Base):
    """Immutable audit trail of every saga transition."""

    __tablename__ = "placement_timeline"

    timeline_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id: Mapped[str] = mapped_column(ForeignKey("order_placements.order_id"), index=True)
    from_state: Mapped[str | None] = mapped_column(String, nullable=True)
    to_state: Mapped[str] = mapped_column(String)
    reason: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OutboxEvent(Base):
    """Order events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JSONDocument)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
