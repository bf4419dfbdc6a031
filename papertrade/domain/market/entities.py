"""
Domain entities for the market bounded context.

Entities are immutable value records. A simulation step never mutates a
state in place; it produces the next one. They contain no framework
imports and no IO operations.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Mapping, Optional

from papertrade.domain.market.errors import InvalidParameterError


def _require_finite(field_name: str, value: float) -> None:
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        raise InvalidParameterError(field_name, value, "must be a finite number")


@dataclass(frozen=True)
class Instrument:
    """A tradable instrument and its simulation parameters.

    Validation happens here so that bad seed data fails at construction,
    never at tick time.
    """

    symbol: str
    name: str
    sector: str
    base_price: float
    annual_drift: float
    annual_volatility: float
    beta: float

    def __post_init__(self) -> None:
        if not self.symbol or not self.symbol.strip():
            raise InvalidParameterError("symbol", self.symbol, "must not be empty")
        _require_finite("base_price", self.base_price)
        _require_finite("annual_drift", self.annual_drift)
        _require_finite("annual_volatility", self.annual_volatility)
        _require_finite("beta", self.beta)
        if self.base_price <= 0:
            raise InvalidParameterError("base_price", self.base_price, "must be > 0")
        if self.annual_volatility < 0:
            raise InvalidParameterError(
                "annual_volatility", self.annual_volatility, "must be >= 0"
            )


@dataclass(frozen=True)
class PricePoint:
    """A single price sample kept in an instrument's bounded history."""

    timestamp: datetime
    price: float
    volume: int = 0


@dataclass(frozen=True)
class InstrumentState:
    """Live per-instrument market state, owned by the tick cycle.

    Attributes:
        current_price: Latest simulated price. Always > 0.
        previous_close: Reference close of the prior session.
        open_price: First price of the current session.
        day_high: Session high, including the open.
        day_low: Session low, including the open.
        change: current_price - previous_close.
        change_percent: change / previous_close * 100.
        last_return: Fractional return of the most recent step.
        volume: Shares traded in the current session.
        history: Recent samples, oldest first, capped in length.
    """

    symbol: str
    current_price: float
    previous_close: float
    open_price: float
    day_high: float
    day_low: float
    change: float = 0.0
    change_percent: float = 0.0
    last_return: float = 0.0
    volume: int = 0
    history: tuple[PricePoint, ...] = ()

    @classmethod
    def baseline(
        cls,
        instrument: Instrument,
        history: tuple[PricePoint, ...] = (),
    ) -> "InstrumentState":
        """Return the reset-to-baseline state for an instrument."""
        price = instrument.base_price
        return cls(
            symbol=instrument.symbol,
            current_price=price,
            previous_close=price,
            open_price=price,
            day_high=price,
            day_low=price,
            history=history,
        )


@dataclass(frozen=True)
class Candle:
    """A single OHLCV bar."""

    time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int


@dataclass(frozen=True)
class Timeframe:
    """Chart timeframe: how many bars, how far apart, and the step length.

    Attributes:
        token: Public identifier, e.g. "1D".
        points: Default number of candles in a series.
        bar_interval: Wall-clock distance between consecutive candles.
        step_years: Simulation step length per candle, in years.
    """

    token: str
    points: int
    bar_interval: timedelta
    step_years: float


@dataclass(frozen=True)
class MarketIndex:
    """Composite market index for one tick cycle."""

    value: float
    change_percent: float
    last_return: float
    feedback_return: float
    constituents: tuple[InstrumentState, ...] = ()


@dataclass(frozen=True)
class MarketSnapshot:
    """Everything published at the end of one tick cycle.

    Readers only ever see whole snapshots.
    """

    cycle: int
    as_of: datetime
    states: Mapping[str, InstrumentState]
    index: MarketIndex

    def __post_init__(self) -> None:
        if not isinstance(self.states, MappingProxyType):
            object.__setattr__(self, "states", MappingProxyType(dict(self.states)))


@dataclass(frozen=True)
class AllocationCandidate:
    """An instrument offered to the allocation optimizer."""

    symbol: str
    unit_price: float
    return_score: float
    max_units: Optional[int] = None


@dataclass(frozen=True)
class AllocationResult:
    """Output of one optimizer run. Has no persisted identity."""

    quantities: Mapping[str, int]
    total_cost: float
    achieved_score: float
    budget: float
    budget_utilization: float
    infeasible_reason: Optional[str] = None
    selected: tuple[str, ...] = field(default=())

    @classmethod
    def empty(
        cls,
        budget: float,
        symbols: list[str],
        reason: Optional[str],
    ) -> "AllocationResult":
        return cls(
            quantities=MappingProxyType({symbol: 0 for symbol in symbols}),
            total_cost=0.0,
            achieved_score=0.0,
            budget=budget,
            budget_utilization=0.0,
            infeasible_reason=reason,
        )
