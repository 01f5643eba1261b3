"""
Quote Session Builder.

Prices every eligible carrier/service candidate concurrently (bounded by a
semaphore), drops candidates whose pricing fails, ranks the survivors and
persists an immutable, time-bound quote session. A session can be booked
once, before it expires.
"""
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
import asyncio
import logging
import time
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shipquote.config import PricingFeatureFlags, settings
from shipquote.core.exceptions import (
    AlreadyUsedSessionError, ConfigurationError, ErrorCode, ExpiredSessionError,
    QuoteSessionNotFoundError, ShipquoteError, ValidationError,
)
from shipquote.core.metrics import QuoteMetrics, quote_metrics
from shipquote.database import async_session_factory
from shipquote.models.quote_session import QuoteSession, QuoteSessionStatus
from shipquote.models.tenant import SelectionMode
from shipquote.schemas.pricing import CarrierCandidate, ShipmentDirection, ShipmentParams
from shipquote.schemas.quote import OptionTag, QuoteOption, QuoteSessionView
from shipquote.services.pricing_orchestrator import PricingOrchestrator, PricingResult
from shipquote.services.ranking import RankingStrategy, get_ranking_strategy
from shipquote.services.tenant_policy_service import TenantPolicyProvider
from shipquote.services.zone_resolver import ZoneResolver

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class QuoteSessionStore:
    """Persistence for quote sessions. One short unit of work per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = async_session_factory):
        self._session_factory = session_factory

    @staticmethod
    def _to_view(record: QuoteSession) -> QuoteSessionView:
        view = QuoteSessionView.model_validate(record)
        view.expires_at = as_utc(view.expires_at)
        view.created_at = as_utc(view.created_at)
        return view

    async def create(
        self,
        tenant_id: str,
        seller_id: str,
        input_params: dict,
        options: List[QuoteOption],
        recommended_option_id: Optional[str],
        expires_at: datetime,
    ) -> QuoteSessionView:
        async with self._session_factory() as db:
            record = QuoteSession(
                tenant_id=tenant_id,
                seller_id=seller_id,
                input_params=input_params,
                options=[option.model_dump(mode="json") for option in options],
                recommended_option_id=recommended_option_id,
                status=QuoteSessionStatus.ACTIVE.value,
                expires_at=expires_at,
            )
            db.add(record)
            await db.commit()
            await db.refresh(record)
            return self._to_view(record)

    async def get(self, session_id: uuid.UUID) -> Optional[QuoteSessionView]:
        async with self._session_factory() as db:
            record = await db.get(QuoteSession, session_id)
            return self._to_view(record) if record else None

    async def mark_booked(self, session_id: uuid.UUID, option_id: str) -> bool:
        """
        Flip ACTIVE -> BOOKED. Returns False when another caller already
        consumed the session.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                update(QuoteSession)
                .where(
                    QuoteSession.id == session_id,
                    QuoteSession.status == QuoteSessionStatus.ACTIVE.value,
                )
                .values(
                    status=QuoteSessionStatus.BOOKED.value,
                    booked_option_id=option_id,
                    booked_at=datetime.now(timezone.utc),
                )
            )
            await db.commit()
            return result.rowcount == 1

    async def mark_expired(self, session_id: uuid.UUID) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(QuoteSession)
                .where(
                    QuoteSession.id == session_id,
                    QuoteSession.status == QuoteSessionStatus.ACTIVE.value,
                )
                .values(status=QuoteSessionStatus.EXPIRED.value)
            )
            await db.commit()

    async def list_for_tenant(self, tenant_id: str, limit: int = 20) -> List[QuoteSessionView]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(QuoteSession)
                .where(QuoteSession.tenant_id == tenant_id)
                .order_by(QuoteSession.created_at.desc())
                .limit(limit)
            )
            return [self._to_view(record) for record in result.scalars().all()]


class QuoteSessionBuilder:

    def __init__(
        self,
        orchestrator: PricingOrchestrator,
        policy: TenantPolicyProvider,
        store: QuoteSessionStore,
        ranking: Optional[RankingStrategy] = None,
        feature_flags: Optional[PricingFeatureFlags] = None,
        max_concurrent: Optional[int] = None,
        ttl_minutes: Optional[int] = None,
        metrics: QuoteMetrics = quote_metrics,
    ):
        self.orchestrator = orchestrator
        self.policy = policy
        self.store = store
        self.ranking = ranking or get_ranking_strategy(settings.QUOTE_RANKING_STRATEGY)
        self.feature_flags = feature_flags or PricingFeatureFlags.from_settings(settings)
        self.max_concurrent = max_concurrent or settings.QUOTE_WORKER_POOL_SIZE
        self.ttl = timedelta(minutes=ttl_minutes or settings.QUOTE_SESSION_TTL_MINUTES)
        self.metrics = metrics

    # ============================================
    # BUILD
    # ============================================

    async def build_quote(
        self,
        tenant_id: str,
        seller_id: str,
        params: ShipmentParams,
    ) -> QuoteSessionView:
        """Price all eligible candidates and persist a ranked quote session."""
        started = time.perf_counter()
        self._validate_params(params)

        if params.direction == ShipmentDirection.REVERSE and not self.feature_flags.reverse_quote_enabled:
            raise ConfigurationError(
                "Reverse shipment quotes are disabled",
                code=ErrorCode.BIZ_FEATURE_DISABLED,
            )

        candidates = await self._eligible_candidates(tenant_id, params)
        results, dropped = await self._price_candidates(tenant_id, candidates, params)

        if not results:
            raise ConfigurationError(
                f"No carrier option could be priced for tenant {tenant_id}",
                code=ErrorCode.BIZ_NO_ELIGIBLE_CANDIDATES,
                details={"dropped": dropped},
            )

        options = self.ranking.rank([self._to_option(result) for result in results])
        recommended_option_id = options[0].option_id

        if await self.policy.selection_mode(tenant_id) == SelectionMode.MANUAL_ONLY:
            for option in options:
                option.tags = [tag for tag in option.tags if tag != OptionTag.RECOMMENDED]
                option.recommendation_reason = None
            recommended_option_id = None

        session = await self.store.create(
            tenant_id=tenant_id,
            seller_id=seller_id,
            input_params=params.model_dump(mode="json"),
            options=options,
            recommended_option_id=recommended_option_id,
            expires_at=datetime.now(timezone.utc) + self.ttl,
        )

        self.metrics.record_quote(
            time.perf_counter() - started,
            len(options),
            options[0].confidence.value,
        )
        logger.info(
            f"Quote session {session.id} for tenant {tenant_id}: {len(options)} option(s), "
            f"{len(dropped)} dropped, recommended={recommended_option_id}"
        )
        return session

    @staticmethod
    def _validate_params(params: ShipmentParams) -> None:
        ZoneResolver.validate_pincode(params.origin_pincode, "origin_pincode")
        ZoneResolver.validate_pincode(params.destination_pincode, "destination_pincode")
        if params.weight_kg <= 0:
            raise ValidationError(
                "weight_kg must be greater than zero",
                code=ErrorCode.VAL_INVALID_WEIGHT,
                details={"weight_kg": str(params.weight_kg)},
            )

    async def _eligible_candidates(
        self,
        tenant_id: str,
        params: ShipmentParams,
    ) -> List[CarrierCandidate]:
        eligible = []
        for candidate in await self.policy.eligible_candidates(tenant_id):
            reason = candidate.ineligibility_reason(params)
            if reason:
                logger.info(f"Skipping {candidate.option_id} for tenant {tenant_id}: {reason}")
                self.metrics.record_dropped_candidate("ineligible")
                continue
            eligible.append(candidate)
        return eligible

    async def _price_candidates(
        self,
        tenant_id: str,
        candidates: List[CarrierCandidate],
        params: ShipmentParams,
    ) -> Tuple[List[PricingResult], List[dict]]:
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def price(candidate: CarrierCandidate) -> PricingResult:
            async with semaphore:
                return await self.orchestrator.evaluate_price(tenant_id, candidate, params)

        outcomes = await asyncio.gather(
            *(price(candidate) for candidate in candidates),
            return_exceptions=True,
        )

        results: List[PricingResult] = []
        dropped: List[dict] = []
        for candidate, outcome in zip(candidates, outcomes):
            if isinstance(outcome, ShipquoteError):
                logger.warning(
                    f"Dropping {candidate.option_id} from quote for tenant {tenant_id}: "
                    f"{outcome.code.value} {outcome.message}"
                )
                self.metrics.record_dropped_candidate(outcome.code.value)
                dropped.append({"option_id": candidate.option_id, **outcome.to_dict()})
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)
        return results, dropped

    @staticmethod
    def _to_option(result: PricingResult) -> QuoteOption:
        candidate = result.candidate
        return QuoteOption(
            option_id=candidate.option_id,
            carrier=candidate.carrier,
            service_id=candidate.service_id,
            service_name=candidate.display_name,
            chargeable_weight=result.breakdown.chargeable_weight,
            zone=result.zone.zone,
            quoted_amount=result.quoted_amount,
            cost_amount=result.cost_amount,
            estimated_margin=result.margin,
            estimated_margin_percent=result.margin_percent,
            pricing_source=result.pricing_source,
            confidence=result.confidence,
            eta_days=candidate.eta_days,
            reliability=candidate.reliability,
            rate_card_id=result.rate_card_id,
            selection_reason=result.selection_reason,
        )

    # ============================================
    # BOOKING GUARDS
    # ============================================

    async def get_session_for_booking(
        self,
        session_id: uuid.UUID,
        option_id: str,
    ) -> Tuple[QuoteSessionView, QuoteOption]:
        """Load a session that is still bookable, plus the selected option."""
        session = await self.store.get(session_id)
        if session is None:
            raise QuoteSessionNotFoundError(
                f"Quote session {session_id} not found",
                details={"session_id": str(session_id)},
            )

        if session.status == QuoteSessionStatus.BOOKED.value:
            raise AlreadyUsedSessionError(
                f"Quote session {session_id} was already booked",
                details={"session_id": str(session_id), "booked_option_id": session.booked_option_id},
            )

        if session.status == QuoteSessionStatus.EXPIRED.value or session.expires_at <= datetime.now(timezone.utc):
            await self.store.mark_expired(session_id)
            raise ExpiredSessionError(
                f"Quote session {session_id} expired at {session.expires_at.isoformat()}",
                details={"session_id": str(session_id)},
            )

        option = session.get_option(option_id)
        if option is None:
            raise ValidationError(
                f"Option {option_id} is not part of quote session {session_id}",
                code=ErrorCode.VAL_INVALID_OPTION,
                details={"session_id": str(session_id), "option_id": option_id},
            )
        return session, option
