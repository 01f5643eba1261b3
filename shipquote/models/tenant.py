"""Per-tenant pricing policy."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from shipquote.database import Base
from shipquote.db_types import JSONType, UUIDType


class SelectionMode(str, Enum):
    """Whether quote sessions carry a system recommendation."""
    MANUAL_WITH_RECOMMENDATION = "MANUAL_WITH_RECOMMENDATION"
    MANUAL_ONLY = "MANUAL_ONLY"


class TenantPricingSettings(Base):
    """
    Tenant-level pricing configuration.

    Holds the tenant's default rate card (at most one per tenant) and the
    carrier/service policy used to decide which candidates may be quoted.
    """
    __tablename__ = "tenant_pricing_settings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    default_rate_card_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType(as_uuid=True), nullable=True
    )

    # Candidate policy
    candidates: Mapped[List[dict]] = mapped_column(
        JSONType, default=list,
        comment="Eligible carrier/service combinations for quoting"
    )
    allowed_providers: Mapped[List[str]] = mapped_column(JSONType, default=list)
    blocked_providers: Mapped[List[str]] = mapped_column(JSONType, default=list)
    allowed_services: Mapped[List[str]] = mapped_column(JSONType, default=list)
    blocked_services: Mapped[List[str]] = mapped_column(JSONType, default=list)

    selection_mode: Mapped[str] = mapped_column(
        String(40),
        default=SelectionMode.MANUAL_WITH_RECOMMENDATION.value
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<TenantPricingSettings(tenant='{self.tenant_id}')>"
