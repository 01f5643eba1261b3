"""
Pricing Orchestrator.

Prices one carrier/service candidate: resolves the zone, selects the rate
card, evaluates the tariff, and estimates the carrier cost so quote
options can report margin. Failures raise domain errors; a price is never
silently zero.
"""
from decimal import Decimal
from typing import Optional
import logging

from shipquote.config import PricingFeatureFlags
from shipquote.core.exceptions import ConfigurationError, ErrorCode
from shipquote.schemas.pricing import CarrierCandidate, ShipmentParams
from shipquote.schemas.quote import Confidence, PricingSource
from shipquote.schemas.rate_card import UNCLASSIFIED_ZONE
from shipquote.services.rate_card_selector import RateCardSelector, RateCardSource
from shipquote.services.tariff_evaluator import PriceBreakdown, TariffEvaluator, round_money
from shipquote.services.zone_resolver import ZoneResolution, ZoneResolver

logger = logging.getLogger(__name__)


class PricingResult:
    """Sell price for one candidate plus everything used to compute it."""

    def __init__(
        self,
        candidate: CarrierCandidate,
        breakdown: PriceBreakdown,
        zone: ZoneResolution,
        selection_reason: str,
        cost_amount: Decimal,
        pricing_source: PricingSource,
        confidence: Confidence,
    ):
        self.candidate = candidate
        self.breakdown = breakdown
        self.zone = zone
        self.selection_reason = selection_reason
        self.cost_amount = cost_amount
        self.pricing_source = pricing_source
        self.confidence = confidence

    @property
    def rate_card_id(self):
        return self.breakdown.rate_card_id

    @property
    def quoted_amount(self) -> Decimal:
        return self.breakdown.total

    @property
    def margin(self) -> Decimal:
        return self.quoted_amount - self.cost_amount

    @property
    def margin_percent(self) -> Decimal:
        if self.quoted_amount <= 0:
            return Decimal("0")
        return round_money(self.margin / self.quoted_amount * 100)

    def to_dict(self) -> dict:
        return {
            "option_id": self.candidate.option_id,
            "carrier": self.candidate.carrier,
            "service_id": self.candidate.service_id,
            "zone": self.zone.zone,
            "zone_source": self.zone.source,
            "rate_card_id": str(self.rate_card_id) if self.rate_card_id else None,
            "selection_reason": self.selection_reason,
            "breakdown": self.breakdown.to_dict(),
            "quoted_amount": float(self.quoted_amount),
            "cost_amount": float(self.cost_amount),
            "estimated_margin": float(self.margin),
            "estimated_margin_percent": float(self.margin_percent),
            "pricing_source": self.pricing_source.value,
            "confidence": self.confidence.value,
        }


class PricingOrchestrator:

    # Used when a carrier has no cost rate card configured
    COMPUTED_COST_MINIMUM = Decimal("50")
    COMPUTED_COST_PER_KG = Decimal("20")

    def __init__(
        self,
        zone_resolver: ZoneResolver,
        rate_card_selector: RateCardSelector,
        rate_cards: RateCardSource,
        evaluator: Optional[TariffEvaluator] = None,
        feature_flags: Optional[PricingFeatureFlags] = None,
    ):
        self.zone_resolver = zone_resolver
        self.rate_card_selector = rate_card_selector
        self.rate_cards = rate_cards
        self.evaluator = evaluator or TariffEvaluator()
        self.feature_flags = feature_flags or PricingFeatureFlags()

    async def evaluate_price(
        self,
        tenant_id: str,
        candidate: CarrierCandidate,
        params: ShipmentParams,
    ) -> PricingResult:
        """Price one candidate. Raises ValidationError or ConfigurationError."""
        zone = await self.zone_resolver.resolve(
            params.origin_pincode, params.destination_pincode, candidate.carrier
        )
        selection = await self.rate_card_selector.select_rate_card(
            tenant_id,
            customer_id=params.customer_id,
            customer_group_id=params.customer_group_id,
            as_of=params.as_of,
        )

        breakdown = self._evaluate(selection.rate_card, zone, candidate, params)
        cost_amount, source = await self._estimate_cost(candidate, zone, params, breakdown)

        return PricingResult(
            candidate=candidate,
            breakdown=breakdown,
            zone=zone,
            selection_reason=selection.selection_reason.value,
            cost_amount=cost_amount,
            pricing_source=source,
            confidence=self._confidence(source, zone),
        )

    def _evaluate(self, card, zone: ZoneResolution, candidate: CarrierCandidate, params: ShipmentParams):
        is_intra_state = (
            zone.origin_state_code is not None
            and zone.origin_state_code == zone.destination_state_code
        )
        return self.evaluator.evaluate(
            card,
            zone.zone,
            params,
            carrier_dim_divisor=candidate.dim_divisor,
            is_intra_state=is_intra_state,
            is_remote=zone.is_remote,
            include_rto=self.feature_flags.include_rto_in_forward,
        )

    async def _estimate_cost(
        self,
        candidate: CarrierCandidate,
        zone: ZoneResolution,
        params: ShipmentParams,
        sell: PriceBreakdown,
    ):
        if candidate.cost_rate_card_id:
            cost_card = await self.rate_cards.get_tariff(candidate.cost_rate_card_id)
            if cost_card is None:
                raise ConfigurationError(
                    f"Cost rate card {candidate.cost_rate_card_id} for {candidate.option_id} not found",
                    code=ErrorCode.BIZ_RATE_CARD_NOT_FOUND,
                    details={"option_id": candidate.option_id},
                )
            cost = self._evaluate(cost_card, zone, candidate, params)
            return cost.total, PricingSource.TABLE

        base = max(
            self.COMPUTED_COST_MINIMUM,
            sell.chargeable_weight * self.COMPUTED_COST_PER_KG,
        )
        logger.debug(f"{candidate.option_id}: no cost card, computed cost from {base}")
        return round_money(base * (1 + sell.gst_rate)), PricingSource.COMPUTED

    @staticmethod
    def _confidence(source: PricingSource, zone: ZoneResolution) -> Confidence:
        classified = zone.zone != UNCLASSIFIED_ZONE
        if source == PricingSource.TABLE and classified:
            return Confidence.HIGH
        if source == PricingSource.TABLE or classified:
            return Confidence.MEDIUM
        return Confidence.LOW
