from datetime import datetime, timedelta, timezone
from decimal import Decimal
import asyncio
import uuid

import pytest

from shipquote.config import PricingFeatureFlags
from shipquote.core.exceptions import (
    AlreadyUsedSessionError, ConfigurationError, ErrorCode, ExpiredSessionError,
    QuoteSessionNotFoundError, ValidationError,
)
from shipquote.core.metrics import QuoteMetrics
from shipquote.models.tenant import SelectionMode
from shipquote.schemas.quote import Confidence, OptionTag, PricingSource
from shipquote.services.quote_session_service import QuoteSessionBuilder, QuoteSessionStore
from shipquote.services.ranking import PriceMarginRankingStrategy

from tests.factories import TENANT, make_candidate, make_card, make_option, make_params

pytestmark = [pytest.mark.anyio, pytest.mark.integration]


class RecordingQuoteMetrics(QuoteMetrics):

    def __init__(self):
        self.dropped = []
        self.quotes = []

    def record_quote(self, duration_seconds, options_count, confidence):
        self.quotes.append((options_count, confidence))

    def record_dropped_candidate(self, reason):
        self.dropped.append(reason)


class CountingOrchestrator:
    """Wraps an orchestrator and tracks how many evaluations overlap."""

    def __init__(self, inner):
        self.inner = inner
        self.active = 0
        self.max_active = 0

    async def evaluate_price(self, tenant_id, candidate, params):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.01)
            return await self.inner.evaluate_price(tenant_id, candidate, params)
        finally:
            self.active -= 1


@pytest.fixture
def store(session_factory):
    return QuoteSessionStore(session_factory)


@pytest.fixture
def metrics():
    return RecordingQuoteMetrics()


@pytest.fixture
def make_builder(orchestrator, policy, store, metrics):
    def build(candidates=(), **overrides):
        policy.candidates = list(candidates)
        kwargs = {
            "orchestrator": orchestrator,
            "policy": policy,
            "store": store,
            "ranking": PriceMarginRankingStrategy(),
            "feature_flags": PricingFeatureFlags(),
            "metrics": metrics,
        }
        kwargs.update(overrides)
        return QuoteSessionBuilder(**kwargs)
    return build


# ============================================
# BUILD
# ============================================

async def test_build_quote_ranks_and_persists(make_builder, rate_cards, store, metrics):
    cost_card = rate_cards.add(make_card(code="DLV-COST", minimum_charge="0", fuel_surcharge_percent="0"))
    builder = make_builder([
        make_candidate("delhivery", cost_rate_card_id=cost_card.id, eta_days=3),
        make_candidate("ekart", eta_days=5),
    ])

    session = await builder.build_quote(TENANT, "seller-1", make_params())

    assert [o.option_id for o in session.options] == ["opt-ekart-std", "opt-delhivery-std"]
    ekart, delhivery = session.options
    assert ekart.rank_score == pytest.approx(0.94)
    assert delhivery.rank_score == pytest.approx(0.925)
    assert delhivery.pricing_source == PricingSource.TABLE
    assert delhivery.confidence == Confidence.HIGH
    assert delhivery.estimated_margin_percent == Decimal("35.00")
    assert OptionTag.FASTEST in delhivery.tags
    assert OptionTag.RECOMMENDED in ekart.tags
    assert session.recommended_option_id == "opt-ekart-std"
    assert session.status == "ACTIVE"
    assert metrics.quotes == [(2, "MEDIUM")]

    stored = await store.get(session.id)
    assert stored.options == session.options
    assert stored.input_params["origin_pincode"] == "110001"
    assert stored.recommended_option.option_id == "opt-ekart-std"


async def test_session_expires_after_ttl(make_builder):
    builder = make_builder([make_candidate("ekart")], ttl_minutes=30)

    before = datetime.now(timezone.utc)
    session = await builder.build_quote(TENANT, "seller-1", make_params())

    assert session.expires_at.tzinfo is not None
    assert timedelta(minutes=29) < session.expires_at - before <= timedelta(minutes=30, seconds=5)


async def test_failed_candidate_is_dropped(make_builder, metrics):
    builder = make_builder([
        make_candidate("ekart"),
        make_candidate("broken", cost_rate_card_id=uuid.uuid4()),
    ])

    session = await builder.build_quote(TENANT, "seller-1", make_params())

    assert [o.option_id for o in session.options] == ["opt-ekart-std"]
    assert metrics.dropped == ["BIZ_RATE_CARD_NOT_FOUND"]


async def test_all_candidates_failing_raises(make_builder):
    builder = make_builder([make_candidate("broken", cost_rate_card_id=uuid.uuid4())])

    with pytest.raises(ConfigurationError) as exc_info:
        await builder.build_quote(TENANT, "seller-1", make_params())

    assert exc_info.value.code == ErrorCode.BIZ_NO_ELIGIBLE_CANDIDATES
    assert exc_info.value.details["dropped"][0]["option_id"] == "opt-broken-std"


async def test_no_candidates_configured_raises(make_builder):
    with pytest.raises(ConfigurationError) as exc_info:
        await make_builder([]).build_quote(TENANT, "seller-1", make_params())

    assert exc_info.value.code == ErrorCode.BIZ_NO_ELIGIBLE_CANDIDATES


async def test_ineligible_candidates_filtered_before_pricing(make_builder, metrics):
    builder = make_builder([
        make_candidate("ekart"),
        make_candidate("bluedart", max_weight_kg=Decimal("0.5")),
        make_candidate("xpress", payment_modes=["PREPAID"]),
    ])

    session = await builder.build_quote(TENANT, "seller-1", make_params(payment_mode="COD"))

    assert [o.option_id for o in session.options] == ["opt-ekart-std"]
    assert metrics.dropped == ["ineligible", "ineligible"]


@pytest.mark.parametrize(
    "overrides,code",
    [
        ({"origin_pincode": "11001"}, ErrorCode.VAL_INVALID_PINCODE),
        ({"destination_pincode": "040001"}, ErrorCode.VAL_INVALID_PINCODE),
        ({"weight_kg": "0"}, ErrorCode.VAL_INVALID_WEIGHT),
    ],
)
async def test_invalid_input_aborts_quote(make_builder, overrides, code):
    builder = make_builder([make_candidate("ekart")])

    with pytest.raises(ValidationError) as exc_info:
        await builder.build_quote(TENANT, "seller-1", make_params(**overrides))

    assert exc_info.value.code == code


async def test_reverse_quotes_need_feature_flag(make_builder):
    candidates = [make_candidate("ekart"), make_candidate("forward-only", supports_reverse=False)]
    params = make_params(direction="reverse")

    with pytest.raises(ConfigurationError) as exc_info:
        await make_builder(candidates).build_quote(TENANT, "seller-1", params)
    assert exc_info.value.code == ErrorCode.BIZ_FEATURE_DISABLED

    enabled = make_builder(candidates, feature_flags=PricingFeatureFlags(reverse_quote_enabled=True))
    session = await enabled.build_quote(TENANT, "seller-1", params)
    assert [o.option_id for o in session.options] == ["opt-ekart-std"]


async def test_manual_only_tenant_gets_no_recommendation(make_builder, policy):
    policy.mode = SelectionMode.MANUAL_ONLY
    builder = make_builder([make_candidate("ekart"), make_candidate("delhivery")])

    session = await builder.build_quote(TENANT, "seller-1", make_params())

    assert session.recommended_option_id is None
    assert session.recommended_option is None
    assert all(OptionTag.RECOMMENDED not in o.tags for o in session.options)
    assert all(o.recommendation_reason is None for o in session.options)
    # Still ranked
    assert session.options[0].rank_score >= session.options[1].rank_score


async def test_pricing_concurrency_is_bounded(make_builder, orchestrator):
    counting = CountingOrchestrator(orchestrator)
    builder = make_builder(
        [make_candidate(f"carrier{i}") for i in range(6)],
        orchestrator=counting,
        max_concurrent=2,
    )

    session = await builder.build_quote(TENANT, "seller-1", make_params())

    assert len(session.options) == 6
    assert counting.max_active == 2


# ============================================
# BOOKING GUARDS
# ============================================

async def create_session(store, expires_in=timedelta(minutes=30)):
    return await store.create(
        tenant_id=TENANT,
        seller_id="seller-1",
        input_params={},
        options=[make_option("opt-ekart-std"), make_option("opt-delhivery-std")],
        recommended_option_id="opt-ekart-std",
        expires_at=datetime.now(timezone.utc) + expires_in,
    )


async def test_bookable_session_returns_selected_option(make_builder, store):
    session = await create_session(store)

    view, option = await make_builder().get_session_for_booking(session.id, "opt-delhivery-std")

    assert view.id == session.id
    assert option.carrier == "delhivery"


async def test_unknown_session_not_found(make_builder):
    with pytest.raises(QuoteSessionNotFoundError):
        await make_builder().get_session_for_booking(uuid.uuid4(), "opt-ekart-std")


async def test_unknown_option_rejected(make_builder, store):
    session = await create_session(store)

    with pytest.raises(ValidationError) as exc_info:
        await make_builder().get_session_for_booking(session.id, "opt-nobody-std")

    assert exc_info.value.code == ErrorCode.VAL_INVALID_OPTION


async def test_expired_session_rejected_and_marked(make_builder, store):
    session = await create_session(store, expires_in=timedelta(seconds=-1))

    with pytest.raises(ExpiredSessionError):
        await make_builder().get_session_for_booking(session.id, "opt-ekart-std")

    assert (await store.get(session.id)).status == "EXPIRED"


async def test_booked_session_cannot_be_reused(make_builder, store):
    session = await create_session(store)

    assert await store.mark_booked(session.id, "opt-ekart-std") is True
    assert await store.mark_booked(session.id, "opt-delhivery-std") is False

    with pytest.raises(AlreadyUsedSessionError) as exc_info:
        await make_builder().get_session_for_booking(session.id, "opt-ekart-std")

    assert exc_info.value.details["booked_option_id"] == "opt-ekart-std"


async def test_list_sessions_for_tenant(store):
    await create_session(store)
    await create_session(store)

    sessions = await store.list_for_tenant(TENANT)

    assert len(sessions) == 2
    assert await store.list_for_tenant("tenant-other") == []
