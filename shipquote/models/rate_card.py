"""Rate card models: versioned pricing contracts with per-zone tariff rules."""
import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    String, Boolean, DateTime, Date, Integer, Numeric, Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from shipquote.database import Base
from shipquote.db_types import JSONType, MoneyType, UUIDType


# ============================================
# ENUMS
# ============================================

class RateCardStatus(str, Enum):
    """Rate card lifecycle status."""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class FuelSurchargeBasis(str, Enum):
    """Amount the fuel surcharge percentage is applied to."""
    FREIGHT = "FREIGHT"  # base + additional weight
    FREIGHT_ZONE = "FREIGHT_ZONE"  # freight + zone surcharge


class WeightRoundingMode(str, Enum):
    CEIL = "CEIL"
    FLOOR = "FLOOR"
    NEAREST = "NEAREST"


class WeightBasis(str, Enum):
    """Which weight is charged."""
    ACTUAL = "ACTUAL"
    VOLUMETRIC = "VOLUMETRIC"
    MAX = "MAX"  # max(actual, volumetric)


class SelectionReason(str, Enum):
    """Which tier of rate card selection produced the card."""
    CUSTOMER_OVERRIDE = "customer_override"
    GROUP_OVERRIDE = "group_override"
    TIME_BOUND = "time_bound"
    DEFAULT = "default"


# ============================================
# RATE CARD
# ============================================

class RateCard(Base):
    """
    Versioned pricing contract for a tenant.

    Cards scoped to a customer or customer group are overrides. The tenant's
    default card is referenced from TenantPricingSettings, never flagged here.
    Zone rules are stored as a JSON list validated by schemas.rate_card.ZoneRule.
    Cards are soft-deleted only, so shipments keep their pricing audit trail.
    """
    __tablename__ = "rate_cards"
    __table_args__ = (
        Index("ix_rate_cards_tenant_customer", "tenant_id", "customer_id"),
        Index("ix_rate_cards_tenant_group", "tenant_id", "customer_group_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Identification
    code: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Rate card code e.g., STD-2025-Q1"
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Override scope
    customer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer_group_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    priority: Mapped[int] = mapped_column(Integer, default=0, comment="Higher wins")
    is_special_promotion: Mapped[bool] = mapped_column(Boolean, default=False)

    # Validity Period
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        default=RateCardStatus.DRAFT.value,
        nullable=False,
        comment="DRAFT, ACTIVE, ARCHIVED"
    )
    currency: Mapped[str] = mapped_column(String(3), default="INR")

    zone_rules: Mapped[List[dict]] = mapped_column(JSONType, default=list)

    # Global modifiers
    fuel_surcharge_percent: Mapped[Decimal] = mapped_column(
        Numeric(6, 3), default=Decimal("0"),
        comment="Percent, e.g. 15 for 15%"
    )
    fuel_surcharge_basis: Mapped[str] = mapped_column(
        String(20), default=FuelSurchargeBasis.FREIGHT.value
    )
    minimum_charge: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("0"))
    weight_rounding_unit: Mapped[Decimal] = mapped_column(
        Numeric(6, 3), default=Decimal("0.5")
    )
    weight_rounding_mode: Mapped[str] = mapped_column(
        String(10), default=WeightRoundingMode.CEIL.value
    )
    weight_basis: Mapped[str] = mapped_column(String(12), default=WeightBasis.MAX.value)
    dim_divisor: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    gst_rate: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(5, 4), nullable=True,
        comment="Fraction, e.g. 0.18. Null uses the configured default"
    )

    # Soft delete and versioning
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_override(self) -> bool:
        return bool(self.customer_id or self.customer_group_id)

    def __repr__(self) -> str:
        return f"<RateCard(code='{self.code}', tenant='{self.tenant_id}', status='{self.status}')>"
