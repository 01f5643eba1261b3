"""Pydantic schemas for shipment pricing inputs."""
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import List, Optional
import uuid

from pydantic import BaseModel, Field, field_validator


class PaymentMode(str, Enum):
    PREPAID = "PREPAID"
    COD = "COD"


class ShipmentDirection(str, Enum):
    FORWARD = "FORWARD"
    REVERSE = "REVERSE"  # Return pickup from the buyer


class ShipmentParams(BaseModel):
    """Shipment shopping parameters for a quote or price evaluation."""
    origin_pincode: str
    destination_pincode: str
    weight_kg: Decimal
    length_cm: Optional[Decimal] = Field(default=None, ge=0)
    width_cm: Optional[Decimal] = Field(default=None, ge=0)
    height_cm: Optional[Decimal] = Field(default=None, ge=0)
    payment_mode: PaymentMode = PaymentMode.PREPAID
    order_value: Decimal = Field(default=Decimal("0"), ge=0)
    cod_amount: Optional[Decimal] = Field(default=None, ge=0)
    direction: ShipmentDirection = ShipmentDirection.FORWARD
    customer_id: Optional[str] = None
    customer_group_id: Optional[str] = None
    as_of: Optional[date] = None

    @field_validator("origin_pincode", "destination_pincode", mode="before")
    @classmethod
    def strip_pincode(cls, v):
        return str(v).strip() if v is not None else v

    @field_validator("payment_mode", "direction", mode="before")
    @classmethod
    def uppercase_enum(cls, v):
        return v.upper() if isinstance(v, str) else v

    @property
    def has_dimensions(self) -> bool:
        return all([self.length_cm, self.width_cm, self.height_cm])


class CarrierCandidate(BaseModel):
    """
    One carrier/service combination eligible for quoting.

    Eligibility constraints are optional; an unset constraint does not
    restrict the candidate.
    """
    carrier: str = Field(..., min_length=1, max_length=50)
    service_id: str = Field(..., min_length=1, max_length=50)
    service_name: Optional[str] = None
    eta_days: Optional[int] = Field(default=None, ge=0)
    reliability: Optional[float] = Field(default=None, ge=0, le=1)
    dim_divisor: Optional[int] = Field(default=None, gt=0)
    cost_rate_card_id: Optional[uuid.UUID] = None
    min_weight_kg: Optional[Decimal] = Field(default=None, ge=0)
    max_weight_kg: Optional[Decimal] = Field(default=None, gt=0)
    max_cod_value: Optional[Decimal] = Field(default=None, ge=0)
    max_prepaid_value: Optional[Decimal] = Field(default=None, ge=0)
    payment_modes: List[PaymentMode] = Field(
        default_factory=lambda: [PaymentMode.PREPAID, PaymentMode.COD]
    )
    supports_reverse: bool = True

    @field_validator("carrier")
    @classmethod
    def lowercase_carrier(cls, v: str) -> str:
        return v.strip().lower()

    @property
    def option_id(self) -> str:
        return f"opt-{self.carrier}-{self.service_id}"

    @property
    def display_name(self) -> str:
        return self.service_name or self.service_id

    def ineligibility_reason(self, params: ShipmentParams) -> Optional[str]:
        """Why this candidate cannot carry the shipment, or None if it can."""
        if params.payment_mode not in self.payment_modes:
            return f"payment mode {params.payment_mode.value} not supported"
        if self.min_weight_kg is not None and params.weight_kg < self.min_weight_kg:
            return f"weight below service minimum {self.min_weight_kg}kg"
        if self.max_weight_kg is not None and params.weight_kg > self.max_weight_kg:
            return f"weight above service maximum {self.max_weight_kg}kg"
        if params.payment_mode == PaymentMode.COD and self.max_cod_value is not None:
            cod_value = params.cod_amount if params.cod_amount is not None else params.order_value
            if cod_value > self.max_cod_value:
                return f"COD value above service limit {self.max_cod_value}"
        if (
            params.payment_mode == PaymentMode.PREPAID
            and self.max_prepaid_value is not None
            and params.order_value > self.max_prepaid_value
        ):
            return f"order value above service limit {self.max_prepaid_value}"
        if params.direction == ShipmentDirection.REVERSE and not self.supports_reverse:
            return "reverse pickups not supported"
        return None
