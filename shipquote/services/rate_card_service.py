"""Service for managing tenant rate cards."""
from typing import List, Optional, Tuple
from datetime import date
import logging
import uuid

from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shipquote.core.exceptions import ErrorCode, ValidationError
from shipquote.database import async_session_factory
from shipquote.models.rate_card import RateCard, RateCardStatus
from shipquote.schemas.rate_card import (
    RateCardCreate, RateCardUpdate, RateCardTariff, ZoneRule,
    migrate_legacy_zone_rules,
)

logger = logging.getLogger(__name__)


def _dump_rules(rules: List[ZoneRule]) -> List[dict]:
    return [rule.model_dump(mode="json") for rule in rules]


class RateCardService:
    """Rate card CRUD and selection-tier queries for one unit of work."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ============================================
    # RATE CARD CRUD
    # ============================================

    async def get_rate_card(
        self,
        rate_card_id: uuid.UUID,
        include_deleted: bool = False,
    ) -> Optional[RateCard]:
        """Get rate card by ID."""
        stmt = select(RateCard).where(RateCard.id == rate_card_id)
        if not include_deleted:
            stmt = stmt.where(RateCard.is_deleted == False)  # noqa: E712
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_rate_card_by_code(self, tenant_id: str, code: str) -> Optional[RateCard]:
        stmt = select(RateCard).where(
            RateCard.tenant_id == tenant_id,
            RateCard.code == code,
            RateCard.is_deleted == False,  # noqa: E712
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_rate_cards(
        self,
        tenant_id: str,
        status: Optional[RateCardStatus] = None,
        effective_date: Optional[date] = None,
        include_deleted: bool = False,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[RateCard], int]:
        """List rate cards with filters and pagination."""
        filters = [RateCard.tenant_id == tenant_id]
        if status:
            filters.append(RateCard.status == status.value)
        if not include_deleted:
            filters.append(RateCard.is_deleted == False)  # noqa: E712
        if effective_date:
            filters.append(RateCard.effective_from <= effective_date)
            filters.append(
                or_(
                    RateCard.effective_to.is_(None),
                    RateCard.effective_to >= effective_date
                )
            )

        count_stmt = select(func.count(RateCard.id)).where(and_(*filters))
        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = (
            select(RateCard)
            .where(and_(*filters))
            .order_by(RateCard.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    async def create_rate_card(self, tenant_id: str, data: RateCardCreate) -> RateCard:
        """Create a rate card. Codes are unique per tenant among live cards."""
        existing = await self.get_rate_card_by_code(tenant_id, data.code)
        if existing:
            raise ValidationError(
                f"Rate card with code {data.code} already exists",
                details={"code": data.code},
            )

        values = data.model_dump(exclude={"zone_rules", "status"})
        card = RateCard(
            tenant_id=tenant_id,
            status=data.status.value,
            zone_rules=_dump_rules(data.zone_rules),
            **{k: (v.value if hasattr(v, "value") else v) for k, v in values.items()},
        )
        self.db.add(card)
        await self.db.flush()
        logger.info(f"Created rate card {card.code} ({card.id}) for tenant {tenant_id}")
        return card

    async def update_rate_card(
        self,
        rate_card_id: uuid.UUID,
        data: RateCardUpdate,
    ) -> Optional[RateCard]:
        """Update a rate card and bump its version."""
        card = await self.get_rate_card(rate_card_id)
        if not card:
            return None

        update_data = data.model_dump(exclude_unset=True, exclude={"zone_rules"})
        for field, value in update_data.items():
            setattr(card, field, value.value if hasattr(value, "value") else value)
        if data.zone_rules is not None:
            card.zone_rules = _dump_rules(data.zone_rules)

        card.version = (card.version or 1) + 1
        await self.db.flush()
        return card

    async def delete_rate_card(self, rate_card_id: uuid.UUID) -> bool:
        """Soft delete; shipments priced with the card keep their audit trail."""
        card = await self.get_rate_card(rate_card_id)
        if not card:
            return False
        card.is_deleted = True
        card.status = RateCardStatus.ARCHIVED.value
        await self.db.flush()
        logger.info(f"Soft-deleted rate card {card.code} ({card.id})")
        return True

    # ============================================
    # LEGACY IMPORT / MIGRATION
    # ============================================

    async def import_legacy_rate_card(self, tenant_id: str, payload: dict) -> RateCard:
        """Create a card from a legacy payload, upgrading its zone rules first."""
        rules, changes = migrate_legacy_zone_rules(payload.get("zone_rules", []))
        for change in changes:
            logger.info(f"Legacy rate card {payload.get('code')}: {change}")
        data = RateCardCreate.model_validate({**payload, "zone_rules": rules})
        return await self.create_rate_card(tenant_id, data)

    async def migrate_stored_rules(self, rate_card_id: uuid.UUID) -> List[str]:
        """Rewrite a stored card's zone rules into the tagged shape."""
        card = await self.get_rate_card(rate_card_id, include_deleted=True)
        if not card:
            return []
        rules, changes = migrate_legacy_zone_rules(card.zone_rules or [])
        # Validate before writing so a bad row is never half-migrated
        validated = [ZoneRule.model_validate(rule) for rule in rules]
        if changes:
            card.zone_rules = _dump_rules(validated)
            card.version = (card.version or 1) + 1
            await self.db.flush()
            logger.info(f"Migrated rate card {card.code}: {len(changes)} change(s)")
        return changes

    # ============================================
    # SELECTION TIER QUERIES
    # ============================================

    async def list_tier_candidates(
        self,
        tenant_id: str,
        as_of: date,
        customer_id: Optional[str] = None,
        customer_group_id: Optional[str] = None,
        promotional: bool = False,
    ) -> List[RateCardTariff]:
        """
        Active, live cards for one selection tier, effective at as_of, best
        first (priority desc, then most recent start).
        """
        filters = [
            RateCard.tenant_id == tenant_id,
            RateCard.status == RateCardStatus.ACTIVE.value,
            RateCard.is_deleted == False,  # noqa: E712
            RateCard.effective_from <= as_of,
            or_(RateCard.effective_to.is_(None), RateCard.effective_to >= as_of),
        ]
        if customer_id:
            filters.append(RateCard.customer_id == customer_id)
        elif customer_group_id:
            filters.append(RateCard.customer_group_id == customer_group_id)
        elif promotional:
            filters.append(RateCard.is_special_promotion == True)  # noqa: E712
            filters.append(RateCard.customer_id.is_(None))
            filters.append(RateCard.customer_group_id.is_(None))
        else:
            raise ValueError("A tier query needs a customer, a group or promotional=True")

        stmt = (
            select(RateCard)
            .where(and_(*filters))
            .order_by(RateCard.priority.desc(), RateCard.effective_from.desc())
        )
        result = await self.db.execute(stmt)
        return [RateCardTariff.model_validate(card) for card in result.scalars().all()]

    async def get_tariff(self, rate_card_id: uuid.UUID) -> Optional[RateCardTariff]:
        card = await self.get_rate_card(rate_card_id)
        return RateCardTariff.model_validate(card) if card else None


class RateCardRepository:
    """
    Read side used by the pricing pipeline.

    Opens a short session per lookup so concurrent quote pricing never
    shares an AsyncSession.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = async_session_factory):
        self._session_factory = session_factory

    async def list_tier_candidates(
        self,
        tenant_id: str,
        as_of: date,
        customer_id: Optional[str] = None,
        customer_group_id: Optional[str] = None,
        promotional: bool = False,
    ) -> List[RateCardTariff]:
        async with self._session_factory() as db:
            return await RateCardService(db).list_tier_candidates(
                tenant_id, as_of,
                customer_id=customer_id,
                customer_group_id=customer_group_id,
                promotional=promotional,
            )

    async def get_tariff(self, rate_card_id: uuid.UUID) -> Optional[RateCardTariff]:
        async with self._session_factory() as db:
            return await RateCardService(db).get_tariff(rate_card_id)
