from shipquote.models.rate_card import (
    RateCard,
    RateCardStatus,
    FuelSurchargeBasis,
    WeightRoundingMode,
    WeightBasis,
    SelectionReason,
)
from shipquote.models.tenant import TenantPricingSettings, SelectionMode
from shipquote.models.quote_session import (
    QuoteSession,
    QuoteSessionStatus,
    ShipmentRecord,
    ShipmentRecordStatus,
)

__all__ = [
    "RateCard",
    "RateCardStatus",
    "FuelSurchargeBasis",
    "WeightRoundingMode",
    "WeightBasis",
    "SelectionReason",
    "TenantPricingSettings",
    "SelectionMode",
    "QuoteSession",
    "QuoteSessionStatus",
    "ShipmentRecord",
    "ShipmentRecordStatus",
]
