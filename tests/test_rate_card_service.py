from datetime import date
from decimal import Decimal

import pytest

from shipquote.database import get_db_session
from shipquote.core.exceptions import ValidationError
from shipquote.models.rate_card import RateCardStatus
from shipquote.models.tenant import SelectionMode
from shipquote.schemas.rate_card import RateCardUpdate
from shipquote.services.rate_card_service import RateCardRepository, RateCardService
from shipquote.services.tenant_policy_service import (
    SqlTenantPolicyProvider, TenantPolicyService, apply_candidate_policy,
)

from tests.factories import TENANT, TODAY, card_data, make_candidate

pytestmark = [pytest.mark.anyio, pytest.mark.integration]


async def create_cards(session_factory, *cards):
    async with session_factory() as db:
        service = RateCardService(db)
        created = [await service.create_rate_card(TENANT, card) for card in cards]
        await db.commit()
        return created


async def test_create_and_read_tariff(session_factory):
    card, = await create_cards(session_factory, card_data())

    tariff = await RateCardRepository(session_factory).get_tariff(card.id)

    assert tariff.code == "STD-2026"
    assert tariff.status == RateCardStatus.ACTIVE
    assert tariff.fuel_surcharge_percent == Decimal("15")
    assert tariff.find_zone_rule("zoneC").zone == "ALL"

    async with session_factory() as db:
        stored = await RateCardService(db).get_rate_card(card.id)
    assert isinstance(stored.minimum_charge, Decimal)
    assert stored.minimum_charge == Decimal("100.00")


async def test_duplicate_code_rejected(session_factory):
    await create_cards(session_factory, card_data())

    with pytest.raises(ValidationError):
        await create_cards(session_factory, card_data())


async def test_update_bumps_version(session_factory):
    card, = await create_cards(session_factory, card_data())

    async with session_factory() as db:
        updated = await RateCardService(db).update_rate_card(
            card.id, RateCardUpdate(priority=5, minimum_charge=Decimal("80"))
        )
        await db.commit()

    assert updated.version == 2
    assert updated.priority == 5
    assert updated.minimum_charge == Decimal("80")


async def test_soft_delete_hides_card(session_factory):
    card, = await create_cards(session_factory, card_data())

    async with session_factory() as db:
        service = RateCardService(db)
        assert await service.delete_rate_card(card.id) is True
        await db.commit()
        assert await service.get_rate_card(card.id) is None
        archived = await service.get_rate_card(card.id, include_deleted=True)
        assert archived.status == RateCardStatus.ARCHIVED.value

    assert await RateCardRepository(session_factory).get_tariff(card.id) is None


async def test_list_filters_by_status_and_date(session_factory):
    async with get_db_session(session_factory) as db:
        service = RateCardService(db)
        await service.create_rate_card(TENANT, card_data("LIVE"))
        await service.create_rate_card(TENANT, card_data("DRAFT", status="DRAFT"))
        future = await service.create_rate_card(TENANT, card_data("NEXT", effective_from=date(2026, 6, 1)))
        await service.create_rate_card("tenant-other", card_data("FOREIGN"))

    async with get_db_session(session_factory) as db:
        service = RateCardService(db)
        cards, total = await service.list_rate_cards(TENANT)
        active_now, _ = await service.list_rate_cards(
            TENANT, status=RateCardStatus.ACTIVE, effective_date=TODAY
        )
        await service.delete_rate_card(future.id)

    async with get_db_session(session_factory) as db:
        service = RateCardService(db)
        _, live_total = await service.list_rate_cards(TENANT)
        _, all_total = await service.list_rate_cards(TENANT, include_deleted=True)

    assert total == len(cards) == 3
    assert [card.code for card in active_now] == ["LIVE"]
    assert (live_total, all_total) == (2, 3)

async def test_tier_queries(session_factory):
    await create_cards(
        session_factory,
        card_data("CUST-LOW", customer_id="cust-1", priority=1),
        card_data("CUST-HIGH", customer_id="cust-1", priority=9),
        card_data("GROUP", customer_group_id="grp-1"),
        card_data("PROMO", is_special_promotion=True),
        card_data("PROMO-OLD", is_special_promotion=True,
                  effective_from=date(2025, 1, 1), effective_to=date(2025, 12, 31)),
        card_data("PROMO-DRAFT", is_special_promotion=True, status="DRAFT"),
        card_data("PROMO-SCOPED", is_special_promotion=True, customer_id="cust-2"),
    )
    repository = RateCardRepository(session_factory)

    customer = await repository.list_tier_candidates(TENANT, TODAY, customer_id="cust-1")
    group = await repository.list_tier_candidates(TENANT, TODAY, customer_group_id="grp-1")
    promos = await repository.list_tier_candidates(TENANT, TODAY, promotional=True)

    assert [c.code for c in customer] == ["CUST-HIGH", "CUST-LOW"]
    assert [c.code for c in group] == ["GROUP"]
    assert [c.code for c in promos] == ["PROMO"]


async def test_tier_query_needs_a_scope(session_factory):
    async with session_factory() as db:
        with pytest.raises(ValueError):
            await RateCardService(db).list_tier_candidates(TENANT, TODAY)


async def test_import_legacy_rate_card(session_factory):
    payload = {
        "code": "LEGACY-1",
        "name": "Legacy import",
        "effective_from": "2026-01-01",
        "status": "ACTIVE",
        "zone_rules": [{
            "zoneId": "c",
            "weightSlabs": [{"minWeight": 0, "maxWeight": 1, "price": 60}],
            "codRule": {"percentage": 0.02, "minCharge": 35},
            "rtoRule": {},
        }],
    }

    async with session_factory() as db:
        card = await RateCardService(db).import_legacy_rate_card(TENANT, payload)
        await db.commit()

    tariff = await RateCardRepository(session_factory).get_tariff(card.id)
    rule = tariff.find_zone_rule("zoneC")
    assert rule.zone == "zoneC"
    assert rule.cod_rule.type == "percentage"
    assert rule.cod_rule.percent == Decimal("2")
    assert rule.rto_rule.type == "forward_mirror"


async def test_migrate_stored_rules(session_factory):
    card, = await create_cards(session_factory, card_data())

    async with session_factory() as db:
        stored = await RateCardService(db).get_rate_card(card.id)
        stored.zone_rules = [{
            "zoneCode": "zone_a",
            "slabs": [{"min_weight": "0", "max_weight": "1", "charge": "50"}],
            "cod_rule": 40,
        }]
        await db.commit()

    async with session_factory() as db:
        service = RateCardService(db)
        changes = await service.migrate_stored_rules(card.id)
        await db.commit()
        again = await service.migrate_stored_rules(card.id)

    assert len(changes) == 2
    assert again == []
    tariff = await RateCardRepository(session_factory).get_tariff(card.id)
    assert tariff.zone_rules[0].zone == "zoneA"
    assert tariff.zone_rules[0].cod_rule.amount == Decimal("40")


# ============================================
# TENANT POLICY
# ============================================

def test_candidate_policy_filters():
    candidates = [
        make_candidate("delhivery", "surface"),
        make_candidate("delhivery", "air"),
        make_candidate("ekart", "std"),
        make_candidate("velocity", "std"),
    ]

    allowed = apply_candidate_policy(
        candidates,
        allowed_providers=["Delhivery", "ekart"],
        blocked_services=["air"],
    )

    assert [c.option_id for c in allowed] == ["opt-delhivery-surface", "opt-ekart-std"]
    assert len(apply_candidate_policy(candidates)) == 4


async def test_tenant_policy_round_trip(session_factory):
    default, override = await create_cards(
        session_factory, card_data(), card_data("CUST", customer_id="cust-1"),
    )

    async with session_factory() as db:
        service = TenantPolicyService(db)
        await service.upsert_settings(
            TENANT,
            candidates=[make_candidate("ekart"), make_candidate("velocity")],
            blocked_providers=["velocity"],
            selection_mode=SelectionMode.MANUAL_ONLY,
        )
        await service.set_default_rate_card(TENANT, default.id)
        with pytest.raises(ValidationError):
            await service.set_default_rate_card(TENANT, override.id)
        await db.commit()

    provider = SqlTenantPolicyProvider(session_factory)
    assert [c.carrier for c in await provider.eligible_candidates(TENANT)] == ["ekart"]
    assert await provider.default_rate_card_id(TENANT) == default.id
    assert await provider.selection_mode(TENANT) == SelectionMode.MANUAL_ONLY


async def test_unknown_tenant_has_empty_policy(session_factory):
    provider = SqlTenantPolicyProvider(session_factory)

    assert await provider.eligible_candidates("tenant-nobody") == []
    assert await provider.default_rate_card_id("tenant-nobody") is None
    assert await provider.selection_mode("tenant-nobody") == SelectionMode.MANUAL_WITH_RECOMMENDATION
