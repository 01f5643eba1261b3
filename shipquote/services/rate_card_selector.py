"""
Rate Card Selector.

Resolves the rate card for a tenant/customer/date. Tiers are tried in
order and the first one that finds a card wins:

1. customer_override - active card scoped to the exact customer
2. group_override    - active card scoped to the customer's group
3. time_bound        - highest-priority active special promotion
4. default           - the tenant's configured default card, by id

Override tiers win by scope, never by the priority field.
"""
from datetime import date, datetime, timezone
from typing import List, Optional, Protocol
import logging
import uuid

from shipquote.config import settings
from shipquote.core.exceptions import ErrorCode, RateCardNotFoundError
from shipquote.models.rate_card import SelectionReason
from shipquote.schemas.rate_card import RateCardTariff
from shipquote.services.cache_service import CacheService
from shipquote.services.tenant_policy_service import TenantPolicyProvider

logger = logging.getLogger(__name__)


class RateCardSource(Protocol):

    async def list_tier_candidates(
        self,
        tenant_id: str,
        as_of: date,
        customer_id: Optional[str] = None,
        customer_group_id: Optional[str] = None,
        promotional: bool = False,
    ) -> List[RateCardTariff]:
        ...

    async def get_tariff(self, rate_card_id: uuid.UUID) -> Optional[RateCardTariff]:
        ...


class RateCardSelection:
    """Winning rate card and the tier that produced it."""

    def __init__(self, rate_card: RateCardTariff, selection_reason: SelectionReason):
        self.rate_card = rate_card
        self.selection_reason = selection_reason

    @property
    def rate_card_id(self) -> uuid.UUID:
        return self.rate_card.id

    def to_dict(self) -> dict:
        return {
            "rate_card": self.rate_card.model_dump(mode="json"),
            "selection_reason": self.selection_reason.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RateCardSelection":
        return cls(
            RateCardTariff.model_validate(data["rate_card"]),
            SelectionReason(data["selection_reason"]),
        )


def pick_best(cards: List[RateCardTariff], as_of: date) -> Optional[RateCardTariff]:
    """Usable card with the highest priority, then the most recent start."""
    usable = [card for card in cards if card.is_usable(as_of)]
    if not usable:
        return None
    return max(usable, key=lambda card: (card.priority, card.effective_from))


class RateCardSelector:

    def __init__(
        self,
        source: RateCardSource,
        policy: TenantPolicyProvider,
        cache: Optional[CacheService] = None,
        cache_ttl: Optional[int] = None,
    ):
        self.source = source
        self.policy = policy
        self.cache = cache
        self.cache_ttl = settings.RATE_CARD_CACHE_TTL if cache_ttl is None else cache_ttl

    async def select_rate_card(
        self,
        tenant_id: str,
        customer_id: Optional[str] = None,
        customer_group_id: Optional[str] = None,
        as_of: Optional[date] = None,
    ) -> RateCardSelection:
        """Resolve the applicable rate card or raise RateCardNotFoundError."""
        as_of = as_of or datetime.now(timezone.utc).date()
        use_cache = self.cache is not None and self.cache_ttl > 0

        if use_cache:
            cached = await self.cache.get_rate_card_selection(
                tenant_id, customer_id, customer_group_id, as_of.isoformat()
            )
            if cached:
                return RateCardSelection.from_dict(cached)

        selection = await self._resolve(tenant_id, customer_id, customer_group_id, as_of)

        if use_cache:
            await self.cache.set_rate_card_selection(
                tenant_id, customer_id, customer_group_id, as_of.isoformat(),
                selection.to_dict(), self.cache_ttl,
            )
        return selection

    async def _resolve(
        self,
        tenant_id: str,
        customer_id: Optional[str],
        customer_group_id: Optional[str],
        as_of: date,
    ) -> RateCardSelection:
        if customer_id:
            cards = await self.source.list_tier_candidates(tenant_id, as_of, customer_id=customer_id)
            card = pick_best(cards, as_of)
            if card:
                return self._selected(tenant_id, card, SelectionReason.CUSTOMER_OVERRIDE)

        if customer_group_id:
            cards = await self.source.list_tier_candidates(
                tenant_id, as_of, customer_group_id=customer_group_id
            )
            card = pick_best(cards, as_of)
            if card:
                return self._selected(tenant_id, card, SelectionReason.GROUP_OVERRIDE)

        cards = await self.source.list_tier_candidates(tenant_id, as_of, promotional=True)
        card = pick_best(
            [c for c in cards if c.is_special_promotion and not (c.customer_id or c.customer_group_id)],
            as_of,
        )
        if card:
            return self._selected(tenant_id, card, SelectionReason.TIME_BOUND)

        default_id = await self.policy.default_rate_card_id(tenant_id)
        if default_id:
            card = await self.source.get_tariff(default_id)
            if card and card.tenant_id == tenant_id and card.is_usable(as_of):
                return self._selected(tenant_id, card, SelectionReason.DEFAULT)
            logger.warning(
                f"Tenant {tenant_id} default rate card {default_id} is missing or not usable on {as_of}"
            )

        raise RateCardNotFoundError(
            f"No applicable rate card for tenant {tenant_id}",
            code=ErrorCode.BIZ_RATE_CARD_NOT_FOUND,
            details={
                "tenant_id": tenant_id,
                "customer_id": customer_id,
                "customer_group_id": customer_group_id,
                "as_of": as_of.isoformat(),
            },
        )

    @staticmethod
    def _selected(tenant_id: str, card: RateCardTariff, reason: SelectionReason) -> RateCardSelection:
        logger.debug(f"Tenant {tenant_id}: rate card {card.code} selected via {reason.value}")
        return RateCardSelection(card, reason)
