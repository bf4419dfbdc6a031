"""
Price simulation engine.

Advances instrument prices with a discretized geometric process:

    next = current * (1 + mu*dt + beta*index_return + sigma*sqrt(dt)*z)

where mu and sigma are the instrument's annualized drift and volatility,
dt is the step length in years and z ~ N(0, 1) comes from a seedable
numpy Generator. The same generator state always produces the same path.

The same update rule serves both live ticking and historical candle
backfill, so charts and the live feed never disagree about how prices move.

Stepped prices are rounded to whole cents by default, keeping them on the
same grid the allocation optimizer works on.
"""

import logging
import math
from dataclasses import replace
from datetime import datetime
from typing import NamedTuple, Optional

import numpy as np

from papertrade.domain.market.entities import Instrument, InstrumentState, PricePoint
from papertrade.domain.market.errors import InvalidParameterError

logger = logging.getLogger(__name__)

DEFAULT_PRICE_FLOOR = 0.01
DEFAULT_PRICE_DECIMALS = 2
DEFAULT_HISTORY_CAPACITY = 500
TRADING_DAYS_PER_YEAR = 252
TRADING_SECONDS_PER_DAY = 6.5 * 3600


class CandleStep(NamedTuple):
    """Result of one replayed backfill step."""

    close: float
    high: float
    low: float
    volume: int


def step_length_years(
    interval_seconds: float,
    trading_days_per_year: int = TRADING_DAYS_PER_YEAR,
    trading_seconds_per_day: float = TRADING_SECONDS_PER_DAY,
) -> float:
    """Convert a wall-clock tick interval into a step length in years."""
    return interval_seconds / (trading_days_per_year * trading_seconds_per_day)


class PriceSimulator:
    """Stateless price stepper.

    Holds only tuning parameters; all market state is passed in and a new
    state is returned. Ticking never fails: a non-physical draw is floored
    at ``price_floor`` instead of propagating a negative or NaN price.
    """

    def __init__(
        self,
        price_floor: float = DEFAULT_PRICE_FLOOR,
        history_capacity: int = DEFAULT_HISTORY_CAPACITY,
        tick_volume_range: tuple[int, int] = (100, 5000),
        candle_volume_range: tuple[int, int] = (100_000, 1_100_000),
        wick_factor: float = 0.5,
        max_wick_sigma: float = 3.0,
        price_decimals: Optional[int] = DEFAULT_PRICE_DECIMALS,
    ) -> None:
        """
        Initialize simulator.

        Args:
            price_floor: Smallest price a step may produce (> 0).
            history_capacity: Maximum PricePoints kept per instrument.
            tick_volume_range: Inclusive bounds of the per-tick volume increment.
            candle_volume_range: Half-open bounds of the base volume per candle.
            wick_factor: Candle wick size as a fraction of one step's sigma.
            max_wick_sigma: Cap on the |z| used for wick excursions.
            price_decimals: Decimal places stepped prices are rounded to, so
                prices stay on the currency grid. None keeps raw floats.
        """
        if price_floor <= 0:
            raise InvalidParameterError("price_floor", price_floor, "must be > 0")
        if history_capacity < 1:
            raise InvalidParameterError("history_capacity", history_capacity, "must be >= 1")
        if price_decimals is not None and price_decimals < 0:
            raise InvalidParameterError("price_decimals", price_decimals, "must be >= 0")
        self.price_floor = price_floor
        self.history_capacity = history_capacity
        self.tick_volume_range = tick_volume_range
        self.candle_volume_range = candle_volume_range
        self.wick_factor = wick_factor
        self.max_wick_sigma = max_wick_sigma
        self.price_decimals = price_decimals

    def step_price(
        self,
        instrument: Instrument,
        current_price: float,
        dt: float,
        index_return: float,
        noise: float,
    ) -> float:
        """Apply one update of the geometric process, round and floor the result."""
        drift_term = instrument.annual_drift * dt
        volatility_term = instrument.annual_volatility * math.sqrt(dt) * noise
        market_term = instrument.beta * index_return

        next_price = current_price * (1.0 + drift_term + market_term + volatility_term)

        if not math.isfinite(next_price) or next_price < self.price_floor:
            logger.debug(
                "Flooring %s: drawn price %.6f below %.2f",
                instrument.symbol,
                next_price,
                self.price_floor,
            )
            return self.price_floor
        if self.price_decimals is not None:
            next_price = max(round(next_price, self.price_decimals), self.price_floor)
        return next_price

    def tick(
        self,
        instrument: Instrument,
        state: InstrumentState,
        index_return: float,
        rng: np.random.Generator,
        dt: float,
        timestamp: datetime,
    ) -> InstrumentState:
        """Advance one instrument by one live step.

        Args:
            instrument: Static simulation parameters.
            state: State produced by the previous cycle.
            index_return: Market feedback term from the previous cycle.
            rng: Generator dedicated to this instrument.
            dt: Step length in years.
            timestamp: Wall-clock time recorded in the history.

        Returns:
            The next InstrumentState.
        """
        noise = float(rng.standard_normal())
        low, high = self.tick_volume_range
        volume_increment = int(rng.integers(low, high + 1))

        next_price = self.step_price(instrument, state.current_price, dt, index_return, noise)

        change = next_price - state.previous_close
        change_percent = change / state.previous_close * 100 if state.previous_close else 0.0
        history = (state.history + (PricePoint(timestamp, next_price, volume_increment),))
        if len(history) > self.history_capacity:
            history = history[-self.history_capacity:]

        return replace(
            state,
            current_price=next_price,
            day_high=max(state.day_high, next_price),
            day_low=min(state.day_low, next_price),
            change=change,
            change_percent=change_percent,
            last_return=next_price / state.current_price - 1.0,
            volume=state.volume + volume_increment,
            history=history,
        )

    def candle_step(
        self,
        instrument: Instrument,
        open_price: float,
        dt: float,
        rng: np.random.Generator,
    ) -> CandleStep:
        """Replay one backfill step and shape it into OHLCV values.

        High and low are the open/close range widened by a bounded random
        excursion proportional to the step's volatility.
        """
        noise = float(rng.standard_normal())
        close = self.step_price(instrument, open_price, dt, 0.0, noise)

        excursion = instrument.annual_volatility * math.sqrt(dt) * self.wick_factor
        up = min(abs(float(rng.standard_normal())), self.max_wick_sigma) * excursion
        down = min(abs(float(rng.standard_normal())), self.max_wick_sigma) * excursion

        body_low = min(open_price, close)
        high = max(open_price, close) * (1.0 + up)
        low = max(body_low * (1.0 - down), min(self.price_floor, body_low))

        volume_low, volume_high = self.candle_volume_range
        movement = abs(close - open_price) / open_price
        volume = int(rng.integers(volume_low, volume_high)) + int(movement * 500_000)

        return CandleStep(close=close, high=high, low=low, volume=volume)

    @staticmethod
    def close_session(state: InstrumentState) -> InstrumentState:
        """Roll a state into a fresh session anchored on its current price."""
        price = state.current_price
        return replace(
            state,
            previous_close=price,
            open_price=price,
            day_high=price,
            day_low=price,
            change=0.0,
            change_percent=0.0,
            last_return=0.0,
            volume=0,
        )
