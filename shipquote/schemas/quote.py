"""Schemas for quote sessions and their ranked options."""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
import uuid

from pydantic import BaseModel, Field

from shipquote.schemas.base import BaseResponseSchema


class PricingSource(str, Enum):
    TABLE = "TABLE"  # cost from the carrier's cost rate card
    COMPUTED = "COMPUTED"  # cost estimated by formula


class Confidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class OptionTag(str, Enum):
    RECOMMENDED = "RECOMMENDED"
    CHEAPEST = "CHEAPEST"
    FASTEST = "FASTEST"


class QuoteOption(BaseModel):
    """One scored carrier option inside a quote session."""
    option_id: str
    carrier: str
    service_id: str
    service_name: str
    chargeable_weight: Decimal
    zone: str
    quoted_amount: Decimal
    cost_amount: Decimal
    estimated_margin: Decimal
    estimated_margin_percent: Decimal
    pricing_source: PricingSource
    confidence: Confidence
    rank_score: float = 0.0
    tags: List[OptionTag] = Field(default_factory=list)
    recommendation_reason: Optional[str] = None
    eta_days: Optional[int] = None
    reliability: Optional[float] = None
    rate_card_id: Optional[uuid.UUID] = None
    selection_reason: Optional[str] = None


class QuoteSessionView(BaseResponseSchema):
    """Read model of a persisted quote session."""
    id: uuid.UUID
    tenant_id: str
    seller_id: str
    input_params: dict
    options: List[QuoteOption]
    recommended_option_id: Optional[str] = None
    status: str
    booked_option_id: Optional[str] = None
    expires_at: datetime
    created_at: Optional[datetime] = None

    def get_option(self, option_id: str) -> Optional[QuoteOption]:
        for option in self.options:
            if option.option_id == option_id:
                return option
        return None

    @property
    def recommended_option(self) -> Optional[QuoteOption]:
        if self.recommended_option_id is None:
            return None
        return self.get_option(self.recommended_option_id)
