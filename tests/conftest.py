"""
Shared fixtures for the market test suite.
"""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from papertrade.application.market.market_service import MarketSimulationService
from papertrade.domain.market.entities import Instrument
from papertrade.domain.market.index_aggregator import MarketIndexAggregator
from papertrade.domain.market.price_simulator import PriceSimulator, step_length_years
from papertrade.domain.market.registry import InstrumentRegistry

SESSION_START = datetime(2024, 1, 2, 4, 15, tzinfo=timezone.utc)


def _instrument(
    symbol: str = "NABIL",
    base_price: float = 850.0,
    annual_volatility: float = 0.22,
    annual_drift: float = 0.10,
    beta: float = 1.1,
    sector: str = "Commercial Banks",
) -> Instrument:
    return Instrument(
        symbol=symbol,
        name=f"{symbol} Limited",
        sector=sector,
        base_price=base_price,
        annual_drift=annual_drift,
        annual_volatility=annual_volatility,
        beta=beta,
    )


def _clock(start: datetime = SESSION_START, step: timedelta = timedelta(minutes=2)):
    """A clock that advances by ``step`` on every call."""
    counter = itertools.count()
    return lambda: start + step * next(counter)


@pytest.fixture
def make_instrument():
    return _instrument


@pytest.fixture
def make_clock():
    return _clock


@pytest.fixture
def registry() -> InstrumentRegistry:
    return InstrumentRegistry.default()


@pytest.fixture
def small_registry() -> InstrumentRegistry:
    return InstrumentRegistry(
        [
            _instrument("NABIL", 850.0, 0.22, 0.10, 1.1),
            _instrument("SCB", 380.0, 0.18, 0.08, 0.9),
            _instrument("CHCL", 380.0, 0.15, 0.06, 0.5, sector="HydroPower"),
        ]
    )


@pytest.fixture
def simulator() -> PriceSimulator:
    return PriceSimulator()


@pytest.fixture
def make_service():
    """Factory for a service with a deterministic seed and clock."""

    def build(registry: InstrumentRegistry, **kwargs) -> MarketSimulationService:
        kwargs.setdefault("seed", 42)
        kwargs.setdefault("clock", _clock())
        return MarketSimulationService(
            registry,
            PriceSimulator(),
            MarketIndexAggregator(registry),
            dt=step_length_years(120.0),
            **kwargs,
        )

    return build


@pytest.fixture
def service(small_registry, make_service) -> MarketSimulationService:
    return make_service(small_registry, retained_history=5)
