"""
Carrier booking adapters.

One adapter per provider. Adapters turn a BookingRequest into a carrier
booking and report failures as classified CarrierErrors so the booking
resolver can decide between fallback and stop.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol
import logging
import uuid

import httpx
from pydantic import BaseModel, Field

from shipquote.config import settings
from shipquote.core.exceptions import (
    CarrierError, ConfigurationError, ErrorCode, NonRecoverableProviderError,
    RecoverableProviderError,
)
from shipquote.schemas.quote import QuoteOption

logger = logging.getLogger(__name__)


class BookingRequest(BaseModel):
    """What a carrier needs to create a booking for one quoted option."""
    tenant_id: str
    order_id: str
    quote_session_id: uuid.UUID
    shipment: Dict[str, Any] = Field(default_factory=dict)
    option: Optional[QuoteOption] = None

    def for_option(self, option: QuoteOption) -> "BookingRequest":
        return self.model_copy(update={"option": option})


class CarrierBooking(BaseModel):
    """Successful carrier response."""
    tracking_number: str
    carrier: str
    rate: Optional[Decimal] = None
    label_url: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class CarrierAdapter(Protocol):
    carrier: str

    async def create_booking(self, request: BookingRequest, idempotency_key: str) -> CarrierBooking:
        ...


class CarrierAdapterRegistry:
    """Adapters keyed by lowercase carrier code."""

    def __init__(self, adapters: Optional[List[CarrierAdapter]] = None):
        self._adapters: Dict[str, CarrierAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: CarrierAdapter) -> None:
        self._adapters[adapter.carrier.lower()] = adapter

    def get(self, carrier: str) -> CarrierAdapter:
        adapter = self._adapters.get(carrier.lower())
        if adapter is None:
            raise ConfigurationError(
                f"No booking adapter registered for carrier {carrier}",
                code=ErrorCode.BIZ_FEATURE_DISABLED,
                details={"carrier": carrier},
            )
        return adapter

    def __contains__(self, carrier: str) -> bool:
        return carrier.lower() in self._adapters

    @property
    def carriers(self) -> List[str]:
        return sorted(self._adapters)


# Gateway statuses that mean "try again later", not "your request is bad"
UNAVAILABLE_STATUSES = {502, 503, 504}


class HttpCarrierAdapter:
    """
    Generic JSON-over-HTTP booking adapter.

    Expects the carrier to return the tracking number as ``awb`` (or
    ``tracking_number``). A response that carries a tracking number and an
    error at the same time is a post-AWB failure and is never retried.
    """

    def __init__(
        self,
        carrier: str,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        booking_path: str = "/shipments",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.carrier = carrier.lower()
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout or settings.CARRIER_TIMEOUTS.get(
            self.carrier, settings.CARRIER_DEFAULT_TIMEOUT_SECONDS
        )
        self.booking_path = booking_path
        self._client = client

    def _headers(self, idempotency_key: str) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": idempotency_key,
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _payload(request: BookingRequest) -> Dict[str, Any]:
        option = request.option
        return {
            "order_id": request.order_id,
            "reference": str(request.quote_session_id),
            "service_id": option.service_id if option else None,
            "declared_rate": str(option.quoted_amount) if option else None,
            "shipment": request.shipment,
        }

    async def create_booking(self, request: BookingRequest, idempotency_key: str) -> CarrierBooking:
        url = f"{self.base_url}/{self.booking_path.lstrip('/')}"
        try:
            if self._client is not None:
                response = await self._client.post(
                    url, json=self._payload(request),
                    headers=self._headers(idempotency_key), timeout=self.timeout,
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        url, json=self._payload(request),
                        headers=self._headers(idempotency_key), timeout=self.timeout,
                    )
        except httpx.TimeoutException as e:
            raise RecoverableProviderError(
                f"{self.carrier} booking timed out after {self.timeout}s",
                code=ErrorCode.SYS_TIMEOUT,
                carrier=self.carrier,
            ) from e
        except httpx.TransportError as e:
            raise RecoverableProviderError(
                f"{self.carrier} unreachable: {e}",
                code=ErrorCode.EXT_SERVICE_UNAVAILABLE,
                carrier=self.carrier,
            ) from e

        return self._parse_response(response)

    def _parse_response(self, response: httpx.Response) -> CarrierBooking:
        try:
            body = response.json() if response.text else {}
        except ValueError:
            body = {"message": response.text}
        if not isinstance(body, dict):
            body = {"data": body}

        tracking_number = body.get("awb") or body.get("tracking_number")
        message = body.get("message") or body.get("error") or response.reason_phrase

        if tracking_number and (response.status_code >= 400 or body.get("error")):
            logger.error(
                f"{self.carrier} issued AWB {tracking_number} but failed: {response.status_code} {message}"
            )
            raise NonRecoverableProviderError(
                f"{self.carrier} failed after issuing AWB {tracking_number}: {message}",
                code=ErrorCode.EXT_POST_AWB_FAILURE,
                carrier=self.carrier,
                tracking_number=tracking_number,
                status_code=response.status_code,
                details={"response": body},
            )

        if response.status_code >= 500:
            code = (
                ErrorCode.EXT_SERVICE_UNAVAILABLE
                if response.status_code in UNAVAILABLE_STATUSES
                else ErrorCode.EXT_SERVICE_ERROR
            )
            logger.warning(f"{self.carrier} booking error: {response.status_code} - {message}")
            raise RecoverableProviderError(
                f"{self.carrier} returned {response.status_code}: {message}",
                code=code,
                carrier=self.carrier,
                status_code=response.status_code,
            )

        if response.status_code >= 400:
            error_code = body.get("code")
            if error_code == ErrorCode.VAL_PINCODE_NOT_SERVICEABLE.value:
                raise RecoverableProviderError(
                    f"{self.carrier} cannot service this route: {message}",
                    code=ErrorCode.VAL_PINCODE_NOT_SERVICEABLE,
                    carrier=self.carrier,
                    status_code=response.status_code,
                )
            logger.error(f"{self.carrier} rejected booking: {response.status_code} - {message}")
            raise CarrierError(
                f"{self.carrier} rejected booking: {message}",
                code=ErrorCode.EXT_BOOKING_REJECTED,
                carrier=self.carrier,
                recoverable=False,
                status_code=response.status_code,
                details={"response": body},
            )

        if not tracking_number:
            raise RecoverableProviderError(
                f"{self.carrier} accepted booking without a tracking number",
                code=ErrorCode.EXT_COURIER_FAILURE,
                carrier=self.carrier,
                status_code=response.status_code,
            )

        rate = body.get("rate")
        return CarrierBooking(
            tracking_number=str(tracking_number),
            carrier=self.carrier,
            rate=Decimal(str(rate)) if rate is not None else None,
            label_url=body.get("label_url"),
            raw=body,
        )
