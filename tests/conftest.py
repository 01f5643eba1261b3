"""Shared fixtures: in-memory collaborators and a SQLite database."""
from typing import AsyncGenerator

import pytest

from shipquote.database import create_engine_for, create_session_factory, init_db
from shipquote.schemas.rate_card import RateCardTariff
from shipquote.services.postal_directory import PincodeDirectory
from shipquote.services.pricing_orchestrator import PricingOrchestrator
from shipquote.services.rate_card_selector import RateCardSelector
from shipquote.services.tariff_evaluator import TariffEvaluator
from shipquote.services.zone_resolver import ZoneResolver

from tests.factories import POSTAL_ROWS, FakePolicy, FakeRateCardSource, make_card


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force pytest-anyio to use asyncio event loop."""
    return "asyncio"


@pytest.fixture
def directory() -> PincodeDirectory:
    return PincodeDirectory.from_rows(POSTAL_ROWS)


@pytest.fixture
def zone_resolver(directory) -> ZoneResolver:
    return ZoneResolver(directory, zone_b_type="state")


@pytest.fixture
def rate_cards() -> FakeRateCardSource:
    return FakeRateCardSource()


@pytest.fixture
def default_card(rate_cards) -> RateCardTariff:
    return rate_cards.add(make_card())


@pytest.fixture
def policy(default_card) -> FakePolicy:
    return FakePolicy(default_rate_card_id=default_card.id)


@pytest.fixture
def orchestrator(zone_resolver, rate_cards, policy) -> PricingOrchestrator:
    return PricingOrchestrator(
        zone_resolver=zone_resolver,
        rate_card_selector=RateCardSelector(rate_cards, policy, cache_ttl=0),
        rate_cards=rate_cards,
        evaluator=TariffEvaluator(),
    )


@pytest.fixture
async def session_factory(tmp_path) -> AsyncGenerator:
    """Function-scoped SQLite database with all tables created."""
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'shipquote_test.db'}")
    await init_db(engine)
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()
