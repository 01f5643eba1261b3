"""Tenant pricing policy: default rate card and eligible carrier candidates."""
from typing import List, Optional, Protocol
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shipquote.core.exceptions import ValidationError
from shipquote.database import async_session_factory
from shipquote.models.rate_card import RateCard
from shipquote.models.tenant import SelectionMode, TenantPricingSettings
from shipquote.schemas.pricing import CarrierCandidate

logger = logging.getLogger(__name__)


class TenantPolicyProvider(Protocol):

    async def eligible_candidates(self, tenant_id: str) -> List[CarrierCandidate]:
        ...

    async def default_rate_card_id(self, tenant_id: str) -> Optional[uuid.UUID]:
        ...

    async def selection_mode(self, tenant_id: str) -> SelectionMode:
        ...


def apply_candidate_policy(
    candidates: List[CarrierCandidate],
    allowed_providers: Optional[List[str]] = None,
    blocked_providers: Optional[List[str]] = None,
    allowed_services: Optional[List[str]] = None,
    blocked_services: Optional[List[str]] = None,
) -> List[CarrierCandidate]:
    """
    Filter candidates by provider and service allow/block lists.

    An empty allow list allows everything; block lists always win.
    """
    allowed_p = {p.lower() for p in allowed_providers or []}
    blocked_p = {p.lower() for p in blocked_providers or []}
    allowed_s = set(allowed_services or [])
    blocked_s = set(blocked_services or [])

    eligible = []
    for candidate in candidates:
        if candidate.carrier in blocked_p or candidate.service_id in blocked_s:
            continue
        if allowed_p and candidate.carrier not in allowed_p:
            continue
        if allowed_s and candidate.service_id not in allowed_s:
            continue
        eligible.append(candidate)
    return eligible


class TenantPolicyService:
    """DB-backed tenant pricing settings for one unit of work."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_settings(self, tenant_id: str) -> Optional[TenantPricingSettings]:
        stmt = select(TenantPricingSettings).where(TenantPricingSettings.tenant_id == tenant_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_settings(
        self,
        tenant_id: str,
        candidates: Optional[List[CarrierCandidate]] = None,
        allowed_providers: Optional[List[str]] = None,
        blocked_providers: Optional[List[str]] = None,
        allowed_services: Optional[List[str]] = None,
        blocked_services: Optional[List[str]] = None,
        selection_mode: Optional[SelectionMode] = None,
    ) -> TenantPricingSettings:
        """Create or update the tenant's policy; None leaves a field unchanged."""
        record = await self.get_settings(tenant_id)
        if record is None:
            record = TenantPricingSettings(
                tenant_id=tenant_id,
                candidates=[],
                allowed_providers=[],
                blocked_providers=[],
                allowed_services=[],
                blocked_services=[],
            )
            self.db.add(record)

        if candidates is not None:
            record.candidates = [c.model_dump(mode="json") for c in candidates]
        if allowed_providers is not None:
            record.allowed_providers = list(allowed_providers)
        if blocked_providers is not None:
            record.blocked_providers = list(blocked_providers)
        if allowed_services is not None:
            record.allowed_services = list(allowed_services)
        if blocked_services is not None:
            record.blocked_services = list(blocked_services)
        if selection_mode is not None:
            record.selection_mode = selection_mode.value

        await self.db.flush()
        return record

    async def set_default_rate_card(self, tenant_id: str, rate_card_id: uuid.UUID) -> TenantPricingSettings:
        """Point the tenant at a default card; replaces any previous default."""
        card = await self.db.get(RateCard, rate_card_id)
        if card is None or card.is_deleted or card.tenant_id != tenant_id:
            raise ValidationError(
                f"Rate card {rate_card_id} not found for tenant {tenant_id}",
                details={"rate_card_id": str(rate_card_id)},
            )
        if card.is_override:
            raise ValidationError("Customer or group override cards cannot be a tenant default")

        record = await self.upsert_settings(tenant_id)
        record.default_rate_card_id = rate_card_id
        await self.db.flush()
        logger.info(f"Tenant {tenant_id} default rate card set to {card.code}")
        return record

    async def eligible_candidates(self, tenant_id: str) -> List[CarrierCandidate]:
        record = await self.get_settings(tenant_id)
        if record is None:
            return []
        candidates = [CarrierCandidate.model_validate(c) for c in record.candidates or []]
        return apply_candidate_policy(
            candidates,
            record.allowed_providers,
            record.blocked_providers,
            record.allowed_services,
            record.blocked_services,
        )

    async def default_rate_card_id(self, tenant_id: str) -> Optional[uuid.UUID]:
        record = await self.get_settings(tenant_id)
        return record.default_rate_card_id if record else None

    async def selection_mode(self, tenant_id: str) -> SelectionMode:
        record = await self.get_settings(tenant_id)
        if record is None:
            return SelectionMode.MANUAL_WITH_RECOMMENDATION
        return SelectionMode(record.selection_mode)


class SqlTenantPolicyProvider:
    """TenantPolicyProvider that opens a short session per lookup."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = async_session_factory):
        self._session_factory = session_factory

    async def eligible_candidates(self, tenant_id: str) -> List[CarrierCandidate]:
        async with self._session_factory() as db:
            return await TenantPolicyService(db).eligible_candidates(tenant_id)

    async def default_rate_card_id(self, tenant_id: str) -> Optional[uuid.UUID]:
        async with self._session_factory() as db:
            return await TenantPolicyService(db).default_rate_card_id(tenant_id)

    async def selection_mode(self, tenant_id: str) -> SelectionMode:
        async with self._session_factory() as db:
            return await TenantPolicyService(db).selection_mode(tenant_id)
