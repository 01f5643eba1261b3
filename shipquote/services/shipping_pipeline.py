"""
Entry point for the HTTP/admin layer.

ShippingPipeline wires the pricing, quoting and booking services together
and exposes the three in-process operations: build_quote, book_from_quote
and evaluate_price.
"""
from typing import List, Optional, Union
import logging
import uuid

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shipquote.config import PricingFeatureFlags, Settings, settings as default_settings
from shipquote.core.exceptions import ErrorCode, ValidationError
from shipquote.core.logging import configure_logging
from shipquote.core.metrics import booking_metrics, quote_metrics
from shipquote.database import async_session_factory
from shipquote.schemas.pricing import CarrierCandidate, ShipmentParams
from shipquote.schemas.quote import QuoteSessionView
from shipquote.services.booking_resolver import BookingResolver
from shipquote.services.booking_service import BookingResult, BookingService, ShipmentRecordStore
from shipquote.services.cache_service import CacheService, get_cache
from shipquote.services.carrier_adapters import CarrierAdapterRegistry
from shipquote.services.postal_directory import PostalDataSource
from shipquote.services.pricing_orchestrator import PricingOrchestrator, PricingResult
from shipquote.services.quote_session_service import QuoteSessionBuilder, QuoteSessionStore
from shipquote.services.ranking import get_ranking_strategy
from shipquote.services.rate_card_selector import RateCardSelector
from shipquote.services.rate_card_service import RateCardRepository
from shipquote.services.tariff_evaluator import TariffEvaluator
from shipquote.services.tenant_policy_service import SqlTenantPolicyProvider
from shipquote.services.zone_resolver import ZoneRangeMapping, ZoneResolver

logger = logging.getLogger(__name__)


def _validation_error(error: PydanticValidationError) -> ValidationError:
    errors = [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in error.errors()
    ]
    return ValidationError(
        f"Invalid input: {errors[0]['field']}: {errors[0]['message']}" if errors else "Invalid input",
        code=ErrorCode.VAL_INVALID_INPUT,
        details={"errors": errors},
    )


def coerce_params(params: Union[ShipmentParams, dict]) -> ShipmentParams:
    if isinstance(params, ShipmentParams):
        return params
    try:
        return ShipmentParams.model_validate(params)
    except PydanticValidationError as e:
        raise _validation_error(e) from e


def coerce_candidate(candidate: Union[CarrierCandidate, dict]) -> CarrierCandidate:
    if isinstance(candidate, CarrierCandidate):
        return candidate
    try:
        return CarrierCandidate.model_validate(candidate)
    except PydanticValidationError as e:
        raise _validation_error(e) from e


def coerce_session_id(session_id: Union[uuid.UUID, str]) -> uuid.UUID:
    if isinstance(session_id, uuid.UUID):
        return session_id
    try:
        return uuid.UUID(str(session_id))
    except ValueError as e:
        raise ValidationError(
            f"Invalid quote session id: {session_id}",
            code=ErrorCode.VAL_INVALID_INPUT,
            details={"session_id": str(session_id)},
        ) from e


class ShippingPipeline:

    def __init__(
        self,
        orchestrator: PricingOrchestrator,
        quote_builder: QuoteSessionBuilder,
        booking_service: BookingService,
    ):
        self.orchestrator = orchestrator
        self.quote_builder = quote_builder
        self.booking_service = booking_service

    @classmethod
    def create_default(
        cls,
        directory: PostalDataSource,
        adapters: CarrierAdapterRegistry,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        range_mappings: Optional[List[ZoneRangeMapping]] = None,
        cache: Optional[CacheService] = None,
        config: Optional[Settings] = None,
    ) -> "ShippingPipeline":
        """Wire the pipeline against the database and the given collaborators."""
        config = config or default_settings
        configure_logging(config.LOG_LEVEL)
        cache = cache or get_cache()
        flags = PricingFeatureFlags.from_settings(config)

        rate_cards = RateCardRepository(session_factory)
        policy = SqlTenantPolicyProvider(session_factory)

        orchestrator = PricingOrchestrator(
            zone_resolver=ZoneResolver(
                directory,
                range_mappings=range_mappings,
                zone_b_type=config.ZONE_B_TYPE,
                cache=cache,
            ),
            rate_card_selector=RateCardSelector(
                rate_cards, policy, cache=cache, cache_ttl=config.RATE_CARD_CACHE_TTL
            ),
            rate_cards=rate_cards,
            evaluator=TariffEvaluator(default_gst_rate=config.DEFAULT_GST_RATE),
            feature_flags=flags,
        )
        quote_builder = QuoteSessionBuilder(
            orchestrator,
            policy,
            QuoteSessionStore(session_factory),
            ranking=get_ranking_strategy(config.QUOTE_RANKING_STRATEGY),
            feature_flags=flags,
            max_concurrent=config.QUOTE_WORKER_POOL_SIZE,
            ttl_minutes=config.QUOTE_SESSION_TTL_MINUTES,
            metrics=quote_metrics,
        )
        resolver = BookingResolver(
            adapters,
            metrics=booking_metrics,
            max_attempts=config.BOOKING_MAX_ATTEMPTS,
            timeouts=config.CARRIER_TIMEOUTS,
            default_timeout=config.CARRIER_DEFAULT_TIMEOUT_SECONDS,
        )
        booking_service = BookingService(quote_builder, resolver, ShipmentRecordStore(session_factory))
        logger.info(f"Shipping pipeline ready with carriers: {', '.join(adapters.carriers) or 'none'}")
        return cls(orchestrator, quote_builder, booking_service)

    async def build_quote(
        self,
        tenant_id: str,
        seller_id: str,
        shipment_params: Union[ShipmentParams, dict],
    ) -> QuoteSessionView:
        return await self.quote_builder.build_quote(tenant_id, seller_id, coerce_params(shipment_params))

    async def book_from_quote(
        self,
        session_id: Union[uuid.UUID, str],
        selected_option_id: str,
        order_id: str,
    ) -> BookingResult:
        return await self.booking_service.book_from_quote(
            coerce_session_id(session_id), selected_option_id, order_id
        )

    async def evaluate_price(
        self,
        tenant_id: str,
        candidate: Union[CarrierCandidate, dict],
        shipment_params: Union[ShipmentParams, dict],
    ) -> PricingResult:
        """What-if pricing for one candidate. Nothing is persisted."""
        return await self.orchestrator.evaluate_price(
            tenant_id, coerce_candidate(candidate), coerce_params(shipment_params)
        )
