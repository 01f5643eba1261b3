from datetime import date

import pytest

from shipquote.core.exceptions import ErrorCode, RateCardNotFoundError
from shipquote.models.rate_card import SelectionReason
from shipquote.services.cache_service import CacheService, InMemoryCache
from shipquote.services.rate_card_selector import RateCardSelector, pick_best

from tests.factories import TENANT, TODAY, FakePolicy, FakeRateCardSource, make_card


def build_selector(cards, default=None, **kwargs):
    source = FakeRateCardSource(cards)
    policy = FakePolicy(default_rate_card_id=default.id if default else None)
    return RateCardSelector(source, policy, **kwargs), source


def full_card_set(customer_priority, group_priority, promo_priority, default_priority):
    default = make_card(code="DEFAULT", priority=default_priority)
    customer = make_card(code="CUST", customer_id="cust-1", priority=customer_priority)
    group = make_card(code="GROUP", customer_group_id="grp-1", priority=group_priority)
    promo = make_card(code="PROMO", is_special_promotion=True, priority=promo_priority)
    return [default, customer, group, promo], default


@pytest.mark.anyio
@pytest.mark.parametrize(
    "priorities",
    [(0, 0, 0, 0), (0, 100, 100, 100), (-5, 10, 999, 50), (1000, 1, 1, 1), (0, -1, 500, 0)],
)
async def test_customer_override_always_wins(priorities):
    cards, default = full_card_set(*priorities)
    selector, _ = build_selector(cards, default)

    selection = await selector.select_rate_card(
        TENANT, customer_id="cust-1", customer_group_id="grp-1", as_of=TODAY
    )

    assert selection.rate_card.code == "CUST"
    assert selection.selection_reason == SelectionReason.CUSTOMER_OVERRIDE


@pytest.mark.anyio
async def test_group_override_when_customer_has_no_card():
    cards, default = full_card_set(0, 0, 100, 0)
    selector, _ = build_selector(cards, default)

    selection = await selector.select_rate_card(
        TENANT, customer_id="someone-else", customer_group_id="grp-1", as_of=TODAY
    )

    assert selection.rate_card.code == "GROUP"
    assert selection.selection_reason == SelectionReason.GROUP_OVERRIDE


@pytest.mark.anyio
async def test_promotion_before_default():
    cards, default = full_card_set(0, 0, 0, 100)
    selector, _ = build_selector(cards, default)

    selection = await selector.select_rate_card(TENANT, as_of=TODAY)

    assert selection.rate_card.code == "PROMO"
    assert selection.selection_reason == SelectionReason.TIME_BOUND


@pytest.mark.anyio
async def test_expired_promotion_falls_through_to_default():
    default = make_card(code="DEFAULT")
    promo = make_card(
        code="DIWALI", is_special_promotion=True,
        effective_from=date(2025, 10, 1), effective_to=date(2025, 11, 15),
    )
    selector, _ = build_selector([default, promo], default)

    selection = await selector.select_rate_card(TENANT, as_of=TODAY)

    assert selection.rate_card.code == "DEFAULT"
    assert selection.selection_reason == SelectionReason.DEFAULT


@pytest.mark.anyio
async def test_customer_scoped_promotion_does_not_leak_to_other_customers():
    default = make_card(code="DEFAULT")
    scoped = make_card(code="VIP-PROMO", is_special_promotion=True, customer_id="vip", priority=50)
    selector, _ = build_selector([default, scoped], default)

    other = await selector.select_rate_card(TENANT, customer_id="regular", as_of=TODAY)
    vip = await selector.select_rate_card(TENANT, customer_id="vip", as_of=TODAY)

    assert other.rate_card.code == "DEFAULT"
    assert vip.rate_card.code == "VIP-PROMO"
    assert vip.selection_reason == SelectionReason.CUSTOMER_OVERRIDE


@pytest.mark.anyio
async def test_draft_and_deleted_cards_are_ignored():
    default = make_card(code="DEFAULT")
    cards = [
        default,
        make_card(code="DRAFT", customer_id="cust-1", status="DRAFT"),
        make_card(code="GONE", customer_id="cust-1", is_deleted=True),
    ]
    selector, _ = build_selector(cards, default)

    selection = await selector.select_rate_card(TENANT, customer_id="cust-1", as_of=TODAY)

    assert selection.rate_card.code == "DEFAULT"


def test_pick_best_breaks_priority_ties_by_latest_start():
    older = make_card(code="OLD", priority=5, effective_from=date(2026, 1, 1))
    newer = make_card(code="NEW", priority=5, effective_from=date(2026, 3, 1))
    higher = make_card(code="HIGH", priority=6, effective_from=date(2025, 1, 1))

    assert pick_best([older, newer], TODAY).code == "NEW"
    assert pick_best([older, newer, higher], TODAY).code == "HIGH"
    assert pick_best([], TODAY) is None


@pytest.mark.anyio
async def test_no_card_raises_rate_card_not_found():
    selector, _ = build_selector([])

    with pytest.raises(RateCardNotFoundError) as exc_info:
        await selector.select_rate_card(TENANT, customer_id="cust-1", as_of=TODAY)

    assert exc_info.value.code == ErrorCode.BIZ_RATE_CARD_NOT_FOUND
    assert exc_info.value.details["tenant_id"] == TENANT


@pytest.mark.anyio
async def test_default_card_from_another_tenant_is_rejected():
    foreign = make_card(code="FOREIGN", tenant_id="tenant-other")
    selector, _ = build_selector([foreign], foreign)

    with pytest.raises(RateCardNotFoundError):
        await selector.select_rate_card(TENANT, as_of=TODAY)


@pytest.mark.anyio
async def test_default_card_outside_validity_is_rejected():
    default = make_card(code="DEFAULT", effective_from=date(2026, 6, 1))
    selector, _ = build_selector([default], default)

    with pytest.raises(RateCardNotFoundError):
        await selector.select_rate_card(TENANT, as_of=TODAY)


@pytest.mark.anyio
async def test_selection_cached_only_when_ttl_positive():
    default = make_card(code="DEFAULT")
    cache = CacheService(InMemoryCache(), namespace="test")

    cached_selector, cached_source = build_selector([default], default, cache=cache, cache_ttl=60)
    first = await cached_selector.select_rate_card(TENANT, as_of=TODAY)
    calls = cached_source.calls
    second = await cached_selector.select_rate_card(TENANT, as_of=TODAY)

    assert cached_source.calls == calls
    assert second.rate_card.id == first.rate_card.id
    assert second.selection_reason == SelectionReason.DEFAULT

    uncached_selector, uncached_source = build_selector([default], default, cache=cache, cache_ttl=0)
    await uncached_selector.select_rate_card(TENANT, as_of=TODAY)
    calls = uncached_source.calls
    await uncached_selector.select_rate_card(TENANT, as_of=TODAY)
    assert uncached_source.calls > calls
