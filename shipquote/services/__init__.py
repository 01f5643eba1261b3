# Pricing
from shipquote.services.zone_resolver import ZoneResolver, ZoneResolution
from shipquote.services.rate_card_selector import RateCardSelector, RateCardSelection
from shipquote.services.tariff_evaluator import TariffEvaluator, PriceBreakdown
from shipquote.services.pricing_orchestrator import PricingOrchestrator, PricingResult

# Quoting / Booking
from shipquote.services.quote_session_service import QuoteSessionBuilder, QuoteSessionStore
from shipquote.services.booking_resolver import BookingResolver, BookingOutcome
from shipquote.services.booking_service import BookingService, BookingResult
from shipquote.services.shipping_pipeline import ShippingPipeline

__all__ = [
    "ZoneResolver",
    "ZoneResolution",
    "RateCardSelector",
    "RateCardSelection",
    "TariffEvaluator",
    "PriceBreakdown",
    "PricingOrchestrator",
    "PricingResult",
    # Quoting / Booking
    "QuoteSessionBuilder",
    "QuoteSessionStore",
    "BookingResolver",
    "BookingOutcome",
    "BookingService",
    "BookingResult",
    "ShippingPipeline",
]
