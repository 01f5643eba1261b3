"""Pydantic schemas for rate cards, zone rules and COD/RTO fee rules."""
from datetime import date
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union
import uuid

from pydantic import BaseModel, Field, field_validator, model_validator

from shipquote.models.rate_card import (
    RateCardStatus, FuelSurchargeBasis, WeightRoundingMode, WeightBasis,
)
from shipquote.schemas.base import BaseResponseSchema, StrictSchema


WILDCARD_ZONE = "ALL"
UNCLASSIFIED_ZONE = "UNCLASSIFIED"

_ZONE_PREFIXES = ("zone_", "route_", "zone", "route")


def normalize_zone_key(zone: str) -> str:
    """
    Canonical zone key.

    'a', 'zone_a', 'zoneA' and 'route_a' all become 'zoneA'; 'all' and '*'
    become the wildcard 'ALL'. Carrier-specific codes are upper-cased.
    """
    raw = (zone or "").strip()
    lowered = raw.lower().replace("-", "_")
    if lowered in ("all", "*"):
        return WILDCARD_ZONE
    for prefix in _ZONE_PREFIXES:
        if lowered.startswith(prefix) and len(lowered) > len(prefix):
            lowered = lowered[len(prefix):]
            break
    if len(lowered) == 1 and lowered.isalpha():
        return f"zone{lowered.upper()}"
    return raw.upper()


# ============================================
# FEE RULES (COD / RTO)
# ============================================
# Each rule is exactly one variant, selected by its "type" tag.
# Untagged payloads are rejected here; see migrate_legacy_fee_rule().

class FlatFeeRule(StrictSchema):
    """Fixed amount."""
    type: Literal["flat"] = "flat"
    amount: Decimal = Field(..., ge=0)


class PercentageFeeRule(StrictSchema):
    """
    Percentage of a basis amount, clamped to optional min/max.

    percent is in percent units: 2 means 2%.
    basis: order_value, cod_amount (falls back to order value) or freight.
    """
    type: Literal["percentage"] = "percentage"
    percent: Decimal = Field(..., ge=0, le=100)
    basis: Literal["order_value", "cod_amount", "freight"] = "order_value"
    min_charge: Optional[Decimal] = Field(default=None, ge=0)
    max_charge: Optional[Decimal] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def check_bounds(self):
        if (
            self.min_charge is not None
            and self.max_charge is not None
            and self.min_charge > self.max_charge
        ):
            raise ValueError("min_charge cannot exceed max_charge")
        return self


class FeeBand(StrictSchema):
    """One band of a slab fee table; [min, max), open-ended when max is None."""
    min: Decimal = Field(default=Decimal("0"), ge=0)
    max: Optional[Decimal] = Field(default=None, gt=0)
    charge: Decimal = Field(..., ge=0)
    charge_type: Literal["flat", "percentage"] = "flat"

    def contains(self, value: Decimal) -> bool:
        return value >= self.min and (self.max is None or value < self.max)


class SlabFeeRule(StrictSchema):
    """Banded by shipment weight or by order value."""
    type: Literal["slab"] = "slab"
    band_by: Literal["weight", "order_value"] = "order_value"
    bands: List[FeeBand] = Field(..., min_length=1)

    @field_validator("bands")
    @classmethod
    def order_bands(cls, v: List[FeeBand]) -> List[FeeBand]:
        """
        Bands may not overlap, and a charge never drops below an earlier
        band's charge of the same charge_type.
        """
        ordered = sorted(v, key=lambda b: b.min)
        for prev, nxt in zip(ordered, ordered[1:]):
            if prev.max is None or nxt.min < prev.max:
                raise ValueError(f"Fee bands overlap at {nxt.min}")

        highest: dict = {}
        for band in ordered:
            previous = highest.get(band.charge_type)
            if previous is not None and band.charge < previous:
                raise ValueError(
                    f"Fee band charge decreases from {previous} to {band.charge} at {band.min}"
                )
            highest[band.charge_type] = band.charge
        return ordered


class ForwardMirrorRule(StrictSchema):
    """RTO only: charge a share of the forward freight."""
    type: Literal["forward_mirror"] = "forward_mirror"
    percent_of_forward: Decimal = Field(default=Decimal("100"), ge=0)


CodRule = Annotated[
    Union[FlatFeeRule, PercentageFeeRule, SlabFeeRule],
    Field(discriminator="type"),
]

RtoRule = Annotated[
    Union[FlatFeeRule, PercentageFeeRule, SlabFeeRule, ForwardMirrorRule],
    Field(discriminator="type"),
]


# ============================================
# ZONE RULES
# ============================================

class WeightSlab(BaseModel):
    """Weight band up to and including max_weight, with a flat charge."""
    min_weight: Decimal = Field(default=Decimal("0"), ge=0)
    max_weight: Decimal = Field(..., gt=0)
    charge: Decimal = Field(..., ge=0)

    @model_validator(mode="after")
    def check_range(self):
        if self.max_weight <= self.min_weight:
            raise ValueError("max_weight must be greater than min_weight")
        return self


class ZoneRule(BaseModel):
    """Tariff for one zone (or the ALL wildcard) within a rate card."""
    zone: str = Field(..., min_length=1, max_length=40)
    slabs: List[WeightSlab] = Field(..., min_length=1)
    additional_per_kg: Decimal = Field(default=Decimal("0"), ge=0)
    zone_surcharge: Optional[Decimal] = Field(default=None, ge=0)
    remote_area_surcharge: Optional[Decimal] = Field(default=None, ge=0)
    cod_rule: Optional[CodRule] = None
    rto_rule: Optional[RtoRule] = None
    eta_days: Optional[int] = Field(default=None, ge=0)

    @field_validator("zone")
    @classmethod
    def normalize_zone(cls, v: str) -> str:
        return normalize_zone_key(v)

    @field_validator("slabs")
    @classmethod
    def order_slabs(cls, v: List[WeightSlab]) -> List[WeightSlab]:
        ordered = sorted(v, key=lambda s: s.min_weight)
        for prev, nxt in zip(ordered, ordered[1:]):
            if nxt.min_weight < prev.max_weight:
                raise ValueError(
                    f"Slabs overlap: {prev.min_weight}-{prev.max_weight} "
                    f"and {nxt.min_weight}-{nxt.max_weight}"
                )
            if nxt.charge < prev.charge:
                raise ValueError(
                    f"Slab charge decreases from {prev.charge} to {nxt.charge} "
                    f"at {nxt.min_weight}kg"
                )
        return ordered


# ============================================
# RATE CARD SCHEMAS
# ============================================

class RateCardBase(BaseModel):
    code: str = Field(..., min_length=2, max_length=50)
    name: str = Field(..., min_length=2, max_length=200)
    customer_id: Optional[str] = Field(default=None, max_length=64)
    customer_group_id: Optional[str] = Field(default=None, max_length=64)
    priority: int = 0
    is_special_promotion: bool = False
    effective_from: date
    effective_to: Optional[date] = None
    currency: str = Field(default="INR", min_length=3, max_length=3)
    zone_rules: List[ZoneRule] = Field(..., min_length=1)
    fuel_surcharge_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    fuel_surcharge_basis: FuelSurchargeBasis = FuelSurchargeBasis.FREIGHT
    minimum_charge: Decimal = Field(default=Decimal("0"), ge=0)
    weight_rounding_unit: Decimal = Field(default=Decimal("0.5"), gt=0)
    weight_rounding_mode: WeightRoundingMode = WeightRoundingMode.CEIL
    weight_basis: WeightBasis = WeightBasis.MAX
    dim_divisor: Optional[int] = Field(default=None, gt=0)
    gst_rate: Optional[Decimal] = Field(default=None, ge=0, lt=1)

    @model_validator(mode="after")
    def check_dates(self):
        if self.effective_to is not None and self.effective_to < self.effective_from:
            raise ValueError("effective_to cannot be before effective_from")
        return self

    @model_validator(mode="after")
    def check_scope(self):
        if self.customer_id and self.customer_group_id:
            raise ValueError("A rate card overrides either a customer or a customer group, not both")
        return self


class RateCardCreate(RateCardBase):
    """Create schema for a rate card."""
    status: RateCardStatus = RateCardStatus.DRAFT


class RateCardUpdate(BaseModel):
    """Update schema for a rate card. Omitted fields are left unchanged."""
    name: Optional[str] = Field(default=None, min_length=2, max_length=200)
    priority: Optional[int] = None
    is_special_promotion: Optional[bool] = None
    effective_to: Optional[date] = None
    status: Optional[RateCardStatus] = None
    zone_rules: Optional[List[ZoneRule]] = None
    fuel_surcharge_percent: Optional[Decimal] = Field(default=None, ge=0, le=100)
    fuel_surcharge_basis: Optional[FuelSurchargeBasis] = None
    minimum_charge: Optional[Decimal] = Field(default=None, ge=0)
    dim_divisor: Optional[int] = Field(default=None, gt=0)
    gst_rate: Optional[Decimal] = Field(default=None, ge=0, lt=1)


class RateCardTariff(BaseResponseSchema):
    """
    Read model of a rate card as used for pricing.

    Built from the ORM row with model_validate(card); zone_rules are parsed
    into typed ZoneRule objects on the way in.
    """
    id: uuid.UUID
    tenant_id: str
    code: str
    name: str
    customer_id: Optional[str] = None
    customer_group_id: Optional[str] = None
    priority: int = 0
    is_special_promotion: bool = False
    effective_from: date
    effective_to: Optional[date] = None
    status: RateCardStatus = RateCardStatus.ACTIVE
    currency: str = "INR"
    zone_rules: List[ZoneRule]
    fuel_surcharge_percent: Decimal = Decimal("0")
    fuel_surcharge_basis: FuelSurchargeBasis = FuelSurchargeBasis.FREIGHT
    minimum_charge: Decimal = Decimal("0")
    weight_rounding_unit: Decimal = Decimal("0.5")
    weight_rounding_mode: WeightRoundingMode = WeightRoundingMode.CEIL
    weight_basis: WeightBasis = WeightBasis.MAX
    dim_divisor: Optional[int] = None
    gst_rate: Optional[Decimal] = None
    is_deleted: bool = False

    def is_effective(self, as_of: date) -> bool:
        """Started on or before as_of and not yet ended."""
        if self.effective_from > as_of:
            return False
        return self.effective_to is None or self.effective_to >= as_of

    def is_usable(self, as_of: date) -> bool:
        return (
            self.status == RateCardStatus.ACTIVE
            and not self.is_deleted
            and self.is_effective(as_of)
        )

    def find_zone_rule(self, zone: str) -> Optional[ZoneRule]:
        """Exact zone match, else the ALL wildcard rule, else None."""
        key = normalize_zone_key(zone)
        wildcard = None
        for rule in self.zone_rules:
            if rule.zone == key:
                return rule
            if rule.zone == WILDCARD_ZONE and wildcard is None:
                wildcard = rule
        return wildcard


# ============================================
# LEGACY RULE MIGRATION
# ============================================
# Older rate cards stored fee rules without a "type" tag, used camelCase
# keys, and mixed fractional (0.02) and whole (2) percentages. These
# helpers convert such payloads into the tagged shapes above. They run
# when a card is imported or its stored rules are upgraded, never while
# pricing.

_LEGACY_KEYS = {
    "minCharge": "min_charge",
    "maxCharge": "max_charge",
    "minimum": "min_charge",
    "maximum": "max_charge",
}


def _legacy_percent(value: Any) -> Decimal:
    """Legacy payloads store 0.02 and 2 both meaning 2%."""
    pct = Decimal(str(value))
    return pct * 100 if pct <= 1 else pct


def _clean(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {_LEGACY_KEYS.get(k, k): v for k, v in payload.items() if v is not None}


def migrate_legacy_fee_rule(
    payload: Any,
    kind: Literal["cod", "rto"] = "cod",
) -> Optional[Dict[str, Any]]:
    """
    Convert a stored COD/RTO rule into a tagged rule dict.

    Tagged rules pass through with keys renamed. A bare number is read as a
    flat amount. Untagged dicts carrying a percentage become percentage
    rules; an untagged RTO rule with nothing usable mirrors the forward
    charge. Returns None for an empty rule.
    """
    if payload is None:
        return None
    if isinstance(payload, (int, float, Decimal, str)):
        return {"type": "flat", "amount": str(payload)}

    data = _clean(dict(payload))
    rule_type = data.pop("type", None)

    if rule_type is None:
        if "percentage" in data or "percent" in data:
            rule_type = "percentage"
        elif "amount" in data:
            rule_type = "flat"
        elif kind == "rto":
            rule_type = "forward_mirror"
        elif "min_charge" in data:
            rule_type = "flat"
        else:
            return None

    if rule_type == "flat":
        amount = data.get("amount", data.get("min_charge", 0))
        return {"type": "flat", "amount": str(amount)}

    if rule_type == "percentage":
        if "percent" in data:
            percent = Decimal(str(data["percent"]))
        else:
            percent = _legacy_percent(data.get("percentage", 0))
        rule = {
            "type": "percentage",
            "percent": str(percent),
            "basis": data.get("basis", "freight" if kind == "rto" else "order_value"),
        }
        for key in ("min_charge", "max_charge"):
            if key in data and Decimal(str(data[key])) > 0:
                rule[key] = str(data[key])
        return rule

    if rule_type == "slab":
        bands = []
        for band in data.get("bands", data.get("slabs", [])):
            band = _clean(dict(band))
            charge_type = band.get("charge_type", band.get("type", "flat"))
            charge = band.get("charge", band.get("value", 0))
            if charge_type == "percentage" and "charge" not in band:
                charge = _legacy_percent(charge)
            bands.append({
                "min": str(band.get("min", 0)),
                "max": str(band["max"]) if band.get("max") is not None else None,
                "charge": str(charge),
                "charge_type": charge_type,
            })
        return {
            "type": "slab",
            "band_by": data.get("band_by", data.get("bandBy", "order_value")),
            "bands": bands,
        }

    if rule_type == "forward_mirror":
        return {
            "type": "forward_mirror",
            "percent_of_forward": str(data.get("percent_of_forward", 100)),
        }

    raise ValueError(f"Unknown fee rule type: {rule_type}")


def migrate_legacy_zone_rules(
    rules: List[Dict[str, Any]],
) -> Tuple[List[Dict[str, Any]], List[str]]:
    """
    Upgrade a stored zone rule list to the current shape.

    Returns (migrated_rules, changes) where changes describes every
    rewrite, so callers can log or audit the migration.
    """
    migrated: List[Dict[str, Any]] = []
    changes: List[str] = []

    for index, raw in enumerate(rules):
        rule = dict(raw)
        zone = rule.pop("zoneId", None) or rule.pop("zoneCode", None) or rule.get("zone")
        out: Dict[str, Any] = {"zone": normalize_zone_key(str(zone or WILDCARD_ZONE))}
        if out["zone"] != rule.get("zone"):
            changes.append(f"rule[{index}]: zone '{zone}' -> '{out['zone']}'")

        slabs = []
        for slab in rule.get("slabs", rule.get("weightSlabs", [])):
            slabs.append({
                "min_weight": str(slab.get("min_weight", slab.get("minWeight", 0))),
                "max_weight": str(slab.get("max_weight", slab.get("maxWeight"))),
                "charge": str(slab.get("charge", slab.get("price", 0))),
            })
        out["slabs"] = slabs

        out["additional_per_kg"] = str(
            rule.get("additional_per_kg", rule.get("additionalPerKg", 0))
        )
        for new_key, old_key in (
            ("zone_surcharge", "additionalPrice"),
            ("remote_area_surcharge", "remoteAreaSurcharge"),
            ("eta_days", "etaDays"),
        ):
            value = rule.get(new_key, rule.get(old_key))
            if value is not None:
                out[new_key] = value

        for kind in ("cod", "rto"):
            stored = rule.get(f"{kind}_rule", rule.get(f"{kind}Rule"))
            converted = migrate_legacy_fee_rule(stored, kind=kind)
            if converted is not None:
                out[f"{kind}_rule"] = converted
                if not isinstance(stored, dict) or stored.get("type") is None:
                    changes.append(
                        f"rule[{index}]: untagged {kind} rule -> '{converted['type']}'"
                    )

        migrated.append(out)

    return migrated, changes
