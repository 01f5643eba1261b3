from shipquote.schemas.rate_card import (
    FlatFeeRule,
    PercentageFeeRule,
    SlabFeeRule,
    ForwardMirrorRule,
    FeeBand,
    WeightSlab,
    ZoneRule,
    RateCardCreate,
    RateCardUpdate,
    RateCardTariff,
    migrate_legacy_fee_rule,
    migrate_legacy_zone_rules,
    normalize_zone_key,
)
from shipquote.schemas.pricing import (
    PaymentMode,
    ShipmentDirection,
    ShipmentParams,
    CarrierCandidate,
)
from shipquote.schemas.quote import (
    PricingSource,
    Confidence,
    OptionTag,
    QuoteOption,
    QuoteSessionView,
)
