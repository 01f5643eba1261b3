"""Quote sessions and the shipment records booked from them."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List

from sqlalchemy import String, DateTime, Integer, Boolean, Index
from sqlalchemy.orm import Mapped, mapped_column

from shipquote.database import Base
from shipquote.db_types import JSONType, UUIDType


class QuoteSessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    BOOKED = "BOOKED"
    EXPIRED = "EXPIRED"


class ShipmentRecordStatus(str, Enum):
    BOOKED = "BOOKED"
    NEEDS_RECONCILIATION = "NEEDS_RECONCILIATION"


class QuoteSession(Base):
    """
    Immutable, time-bound snapshot of ranked carrier options.

    input_params and options are written once at creation. Only status and
    the booking markers change, and only once.
    """
    __tablename__ = "quote_sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)

    input_params: Mapped[dict] = mapped_column(JSONType, nullable=False)
    options: Mapped[List[dict]] = mapped_column(
        JSONType, nullable=False,
        comment="QuoteOption list, ranked best first"
    )
    recommended_option_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        default=QuoteSessionStatus.ACTIVE.value,
        nullable=False
    )
    booked_option_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    booked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<QuoteSession(id='{self.id}', status='{self.status}')>"


class ShipmentRecord(Base):
    """Outcome of a booking call: the chosen option plus the attempt trail summary."""
    __tablename__ = "shipment_records"
    __table_args__ = (
        Index("ix_shipment_records_order_session", "order_id", "quote_session_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    quote_session_id: Mapped[uuid.UUID] = mapped_column(UUIDType(as_uuid=True), nullable=False)

    option_id: Mapped[str] = mapped_column(String(120), nullable=False)
    carrier: Mapped[str] = mapped_column(String(50), nullable=False)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False)

    attempt_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    fallback_used: Mapped[bool] = mapped_column(Boolean, default=False)
    attempted_option_ids: Mapped[List[str]] = mapped_column(JSONType, default=list)
    pricing_snapshot: Mapped[dict] = mapped_column(JSONType, default=dict)
    failure_reason: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<ShipmentRecord(order='{self.order_id}', awb='{self.tracking_number}')>"
