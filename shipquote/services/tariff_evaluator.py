"""
Tariff Evaluator.

Computes a deterministic price for one rate card, zone and shipment:

1. Chargeable weight (actual vs volumetric, rounded to the card's unit)
2. Zone rule lookup (exact zone, else ALL wildcard)
3. Slab charge plus additional per-kg charge beyond the last slab
4. Zone and remote-area surcharges
5. Fuel surcharge on freight or freight + zone
6. COD and RTO fee rules
7. Minimum-charge floor (replaces the subtotal, never stacks)
8. GST (CGST + SGST intra-state, IGST otherwise)

Components are carried at full precision; only the total is rounded.
"""
from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP
from typing import Optional, Tuple
import uuid

from shipquote.config import settings
from shipquote.core.exceptions import ConfigurationError, ErrorCode, ValidationError
from shipquote.models.rate_card import FuelSurchargeBasis, WeightBasis, WeightRoundingMode
from shipquote.schemas.pricing import PaymentMode, ShipmentParams
from shipquote.schemas.rate_card import (
    FlatFeeRule, ForwardMirrorRule, PercentageFeeRule, RateCardTariff, SlabFeeRule,
    ZoneRule,
)

PAISA = Decimal("0.01")
HUNDRED = Decimal("100")
ZERO = Decimal("0")


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(PAISA, rounding=ROUND_HALF_UP)


class PriceBreakdown:
    """Named price components for one evaluation."""

    def __init__(self):
        self.rate_card_id: Optional[uuid.UUID] = None
        self.zone: Optional[str] = None
        self.matched_zone_rule: Optional[str] = None
        self.currency: str = "INR"
        self.actual_weight: Decimal = ZERO
        self.volumetric_weight: Decimal = ZERO
        self.chargeable_weight: Decimal = ZERO
        self.base_charge: Decimal = ZERO
        self.additional_weight_charge: Decimal = ZERO
        self.zone_charge: Decimal = ZERO
        self.remote_area_charge: Decimal = ZERO
        self.fuel_surcharge: Decimal = ZERO
        self.cod_charge: Decimal = ZERO
        self.cod_rule_type: Optional[str] = None
        self.rto_charge: Decimal = ZERO
        self.rto_rule_type: Optional[str] = None
        self.rto_included: bool = False
        self.minimum_charge_adjustment: Decimal = ZERO
        self.subtotal: Decimal = ZERO
        self.gst_rate: Decimal = ZERO
        self.tax: Decimal = ZERO
        self.cgst: Decimal = ZERO
        self.sgst: Decimal = ZERO
        self.igst: Decimal = ZERO
        self.total: Decimal = ZERO

    @property
    def freight(self) -> Decimal:
        return self.base_charge + self.additional_weight_charge

    def to_dict(self) -> dict:
        return {
            "rate_card_id": str(self.rate_card_id) if self.rate_card_id else None,
            "zone": self.zone,
            "matched_zone_rule": self.matched_zone_rule,
            "currency": self.currency,
            "actual_weight": float(self.actual_weight),
            "volumetric_weight": float(self.volumetric_weight),
            "chargeable_weight": float(self.chargeable_weight),
            "base_charge": float(self.base_charge),
            "additional_weight_charge": float(self.additional_weight_charge),
            "zone_charge": float(self.zone_charge),
            "remote_area_charge": float(self.remote_area_charge),
            "fuel_surcharge": float(self.fuel_surcharge),
            "cod_charge": float(self.cod_charge),
            "cod_rule_type": self.cod_rule_type,
            "rto_charge": float(self.rto_charge),
            "rto_rule_type": self.rto_rule_type,
            "rto_included": self.rto_included,
            "minimum_charge_adjustment": float(self.minimum_charge_adjustment),
            "subtotal": float(self.subtotal),
            "gst_rate": float(self.gst_rate),
            "tax": float(self.tax),
            "cgst": float(self.cgst),
            "sgst": float(self.sgst),
            "igst": float(self.igst),
            "total": float(self.total),
        }


class TariffEvaluator:
    """Stateless tariff computation over a RateCardTariff."""

    # Standard courier volumetric divisor (cm^3 per kg)
    VOLUMETRIC_DIVISOR = 5000

    # Applied when a COD shipment's zone rule has no usable COD rule
    FALLBACK_COD_PERCENT = Decimal("2")
    FALLBACK_COD_MINIMUM = Decimal("30")

    def __init__(self, default_gst_rate: Optional[Decimal] = None):
        self.default_gst_rate = (
            default_gst_rate if default_gst_rate is not None else settings.DEFAULT_GST_RATE
        )

    # ============================================
    # WEIGHT CALCULATIONS
    # ============================================

    def calculate_volumetric_weight(
        self,
        params: ShipmentParams,
        divisor: int,
    ) -> Decimal:
        if not params.has_dimensions:
            return ZERO
        volume = Decimal(str(params.length_cm)) * Decimal(str(params.width_cm)) * Decimal(str(params.height_cm))
        return volume / Decimal(divisor)

    @staticmethod
    def round_weight(weight: Decimal, unit: Decimal, mode: WeightRoundingMode) -> Decimal:
        """Round to a multiple of unit; never returns less than one unit."""
        rounding = {
            WeightRoundingMode.CEIL: ROUND_CEILING,
            WeightRoundingMode.FLOOR: ROUND_FLOOR,
            WeightRoundingMode.NEAREST: ROUND_HALF_UP,
        }[mode]
        units = (weight / unit).to_integral_value(rounding=rounding)
        return max(units * unit, unit)

    def get_chargeable_weight(
        self,
        card: RateCardTariff,
        params: ShipmentParams,
        carrier_dim_divisor: Optional[int] = None,
    ) -> Tuple[Decimal, Decimal]:
        """
        Calculate chargeable weight per the card's weight basis.

        Returns:
            Tuple of (chargeable_weight, volumetric_weight)
        """
        actual = Decimal(str(params.weight_kg))
        if actual <= 0:
            raise ValidationError(
                "weight_kg must be greater than zero",
                code=ErrorCode.VAL_INVALID_WEIGHT,
                details={"weight_kg": str(params.weight_kg)},
            )

        divisor = card.dim_divisor or carrier_dim_divisor or settings.DEFAULT_DIM_DIVISOR or self.VOLUMETRIC_DIVISOR
        volumetric = self.calculate_volumetric_weight(params, divisor)

        if card.weight_basis == WeightBasis.ACTUAL:
            raw = actual
        elif card.weight_basis == WeightBasis.VOLUMETRIC and volumetric > 0:
            raw = volumetric
        else:
            raw = max(actual, volumetric)

        chargeable = self.round_weight(raw, card.weight_rounding_unit, card.weight_rounding_mode)
        return chargeable, volumetric

    # ============================================
    # ZONE RULE AND SLABS
    # ============================================

    @staticmethod
    def find_zone_rule(card: RateCardTariff, zone: str) -> ZoneRule:
        rule = card.find_zone_rule(zone)
        if rule is None:
            raise ConfigurationError(
                f"Rate card {card.code} has no rule for zone {zone} and no ALL rule",
                code=ErrorCode.BIZ_ZONE_RULE_NOT_FOUND,
                details={"rate_card_id": str(card.id), "zone": zone},
            )
        return rule

    @staticmethod
    def calculate_slab_charge(rule: ZoneRule, weight: Decimal) -> Tuple[Decimal, Decimal]:
        """
        Returns (slab_charge, additional_weight_charge).

        Slabs are "up to" bands: a weight sitting exactly on a boundary is
        charged at the lower slab (1kg falls in 0.5-1kg, not 1-2kg). A
        weight in a gap between slabs is charged at the next slab up.
        """
        for slab in rule.slabs:
            if weight <= slab.max_weight:
                return slab.charge, ZERO

        last = rule.slabs[-1]
        extra_kg = weight - last.max_weight
        return last.charge, rule.additional_per_kg * extra_kg

    # ============================================
    # FEE RULES
    # ============================================

    @staticmethod
    def _apply_bounds(charge: Decimal, rule: PercentageFeeRule) -> Decimal:
        if rule.min_charge is not None:
            charge = max(charge, rule.min_charge)
        if rule.max_charge is not None:
            charge = min(charge, rule.max_charge)
        return charge

    @staticmethod
    def _basis_amount(basis: str, params: ShipmentParams, freight: Decimal) -> Decimal:
        if basis == "freight":
            return freight
        if basis == "cod_amount" and params.cod_amount is not None:
            return Decimal(str(params.cod_amount))
        return Decimal(str(params.order_value))

    def _evaluate_fee_rule(
        self,
        rule,
        params: ShipmentParams,
        weight: Decimal,
        freight: Decimal,
        default_basis: str,
    ) -> Optional[Decimal]:
        """Evaluate one tagged rule; None when a slab table has no matching band."""
        if isinstance(rule, FlatFeeRule):
            return rule.amount

        if isinstance(rule, PercentageFeeRule):
            basis_amount = self._basis_amount(rule.basis, params, freight)
            return self._apply_bounds(basis_amount * rule.percent / HUNDRED, rule)

        if isinstance(rule, SlabFeeRule):
            basis_amount = self._basis_amount(default_basis, params, freight)
            measure = weight if rule.band_by == "weight" else basis_amount
            for band in rule.bands:
                if band.contains(measure):
                    if band.charge_type == "percentage":
                        return basis_amount * band.charge / HUNDRED
                    return band.charge
            return None

        if isinstance(rule, ForwardMirrorRule):
            return freight * rule.percent_of_forward / HUNDRED

        raise ConfigurationError(f"Unsupported fee rule: {type(rule).__name__}")

    def calculate_cod_charge(
        self,
        rule: ZoneRule,
        params: ShipmentParams,
        weight: Decimal,
        freight: Decimal,
    ) -> Tuple[Decimal, Optional[str]]:
        """Returns (charge, rule_type). Prepaid shipments carry no COD charge."""
        if params.payment_mode != PaymentMode.COD:
            return ZERO, None

        if rule.cod_rule is not None:
            charge = self._evaluate_fee_rule(rule.cod_rule, params, weight, freight, "cod_amount")
            if charge is not None:
                return charge, rule.cod_rule.type

        basis = self._basis_amount("cod_amount", params, freight)
        fallback = max(basis * self.FALLBACK_COD_PERCENT / HUNDRED, self.FALLBACK_COD_MINIMUM)
        return fallback, "fallback"

    def calculate_rto_charge(
        self,
        rule: ZoneRule,
        params: ShipmentParams,
        weight: Decimal,
        freight: Decimal,
    ) -> Tuple[Decimal, str]:
        """Expected return-to-origin charge; mirrors forward freight when unset."""
        if rule.rto_rule is not None:
            charge = self._evaluate_fee_rule(rule.rto_rule, params, weight, freight, "freight")
            if charge is not None:
                return charge, rule.rto_rule.type
        return freight, "forward_mirror_fallback"

    # ============================================
    # EVALUATION
    # ============================================

    def evaluate(
        self,
        card: RateCardTariff,
        zone: str,
        params: ShipmentParams,
        carrier_dim_divisor: Optional[int] = None,
        is_intra_state: bool = False,
        is_remote: bool = False,
        include_rto: bool = False,
    ) -> PriceBreakdown:
        """Price one shipment against one rate card and zone."""
        cost = PriceBreakdown()
        cost.rate_card_id = card.id
        cost.zone = zone
        cost.currency = card.currency
        cost.actual_weight = Decimal(str(params.weight_kg))

        weight, volumetric = self.get_chargeable_weight(card, params, carrier_dim_divisor)
        cost.chargeable_weight = weight
        cost.volumetric_weight = volumetric

        rule = self.find_zone_rule(card, zone)
        cost.matched_zone_rule = rule.zone

        cost.base_charge, cost.additional_weight_charge = self.calculate_slab_charge(rule, weight)
        freight = cost.freight

        cost.zone_charge = rule.zone_surcharge or ZERO
        if is_remote and rule.remote_area_surcharge:
            cost.remote_area_charge = rule.remote_area_surcharge

        if card.fuel_surcharge_basis == FuelSurchargeBasis.FREIGHT_ZONE:
            fuel_basis = freight + cost.zone_charge + cost.remote_area_charge
        else:
            fuel_basis = freight
        cost.fuel_surcharge = fuel_basis * card.fuel_surcharge_percent / HUNDRED

        cost.cod_charge, cost.cod_rule_type = self.calculate_cod_charge(rule, params, weight, freight)
        cost.rto_charge, cost.rto_rule_type = self.calculate_rto_charge(rule, params, weight, freight)
        cost.rto_included = include_rto

        subtotal = (
            freight
            + cost.zone_charge
            + cost.remote_area_charge
            + cost.fuel_surcharge
            + cost.cod_charge
            + (cost.rto_charge if include_rto else ZERO)
        )

        # Minimum floor replaces the subtotal
        if subtotal < card.minimum_charge:
            cost.minimum_charge_adjustment = card.minimum_charge - subtotal
            subtotal = card.minimum_charge
        cost.subtotal = subtotal

        cost.gst_rate = card.gst_rate if card.gst_rate is not None else self.default_gst_rate
        cost.tax = subtotal * cost.gst_rate
        if is_intra_state:
            cost.cgst = cost.tax / 2
            cost.sgst = cost.tax / 2
        else:
            cost.igst = cost.tax

        cost.total = round_money(subtotal + cost.tax)
        return cost
