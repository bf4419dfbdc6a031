"""
Candle history builder.

Produces OHLCV series for chart timeframes in two ways:

- ``build_series``: deterministic backfill. Replays the price simulator
  point by point from the instrument's base price, one candle per step.
- ``from_ticks``: buckets stored live price samples into bars of the
  timeframe's interval.

The builder holds no state of its own.
"""

import logging
import zlib
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from papertrade.domain.market.entities import Candle, PricePoint, Timeframe
from papertrade.domain.market.errors import InvalidParameterError, UnknownTimeframeError
from papertrade.domain.market.price_simulator import TRADING_DAYS_PER_YEAR, PriceSimulator
from papertrade.domain.market.registry import InstrumentRegistry

logger = logging.getLogger(__name__)

TIMEFRAMES: dict[str, Timeframe] = {
    # 6.5 trading hours at 12 bars per hour
    "1D": Timeframe("1D", 78, timedelta(minutes=5), 1 / (TRADING_DAYS_PER_YEAR * 78)),
    # 5 bars per calendar day over a week
    "1W": Timeframe("1W", 35, timedelta(hours=4, minutes=48), 1 / TRADING_DAYS_PER_YEAR),
    "1M": Timeframe("1M", 30, timedelta(days=1), 1 / TRADING_DAYS_PER_YEAR),
    "3M": Timeframe("3M", 90, timedelta(days=1), 1 / TRADING_DAYS_PER_YEAR),
    "1Y": Timeframe("1Y", 52, timedelta(weeks=1), 5 / TRADING_DAYS_PER_YEAR),
}


def resolve_timeframe(token: str) -> Timeframe:
    """Look up a timeframe token (case-insensitive).

    Raises:
        UnknownTimeframeError: If the token is not supported.
    """
    timeframe = TIMEFRAMES.get(token.upper()) if isinstance(token, str) else None
    if timeframe is None:
        raise UnknownTimeframeError(str(token), tuple(TIMEFRAMES))
    return timeframe


def series_seed(base_seed: int, symbol: str, timeframe: str) -> int:
    """Derive a stable per-series seed.

    Uses crc32 rather than ``hash()`` so that the seed survives process
    restarts (string hashing is salted per process).
    """
    key = f"{base_seed}:{symbol.upper()}:{timeframe.upper()}".encode()
    return zlib.crc32(key)


def default_series_end(now: Optional[datetime] = None) -> datetime:
    """Midnight UTC of the current day."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


class CandleHistoryBuilder:
    """Builds candle series on top of the price simulator."""

    def __init__(self, registry: InstrumentRegistry, simulator: PriceSimulator) -> None:
        self._registry = registry
        self._simulator = simulator

    def build_series(
        self,
        symbol: str,
        timeframe: str,
        seed: int,
        point_count: Optional[int] = None,
        end: Optional[datetime] = None,
    ) -> list[Candle]:
        """Generate a synthetic candle series for chart backfill.

        Args:
            symbol: Registered instrument symbol.
            timeframe: Timeframe token, e.g. "1D".
            seed: Generator seed. Same inputs always give the same series.
            point_count: Number of candles. Defaults to the timeframe's count.
            end: Time of the last candle. Defaults to midnight UTC today.

        Returns:
            Candles ordered by strictly increasing time. The first candle
            opens at the instrument's base price.

        Raises:
            UnknownSymbolError: If the symbol is not registered.
            UnknownTimeframeError: If the timeframe is not supported.
            InvalidParameterError: If point_count is not positive.
        """
        instrument = self._registry.get(symbol)
        tf = resolve_timeframe(timeframe)
        count = tf.points if point_count is None else point_count
        if count < 1:
            raise InvalidParameterError("point_count", point_count, "must be >= 1")

        end = end or default_series_end()
        start = end - tf.bar_interval * (count - 1)
        rng = np.random.default_rng(seed)

        candles: list[Candle] = []
        price = instrument.base_price
        for i in range(count):
            step = self._simulator.candle_step(instrument, price, tf.step_years, rng)
            candles.append(
                Candle(
                    time=start + tf.bar_interval * i,
                    open=price,
                    high=step.high,
                    low=step.low,
                    close=step.close,
                    volume=step.volume,
                )
            )
            price = step.close

        logger.debug(
            "Built %d %s candles for %s (seed=%d)", count, tf.token, instrument.symbol, seed
        )
        return candles

    def from_ticks(
        self,
        symbol: str,
        samples: Sequence[PricePoint],
        timeframe: str,
        point_count: Optional[int] = None,
    ) -> list[Candle]:
        """Bucket recorded price samples into OHLCV candles.

        Buckets without samples are dropped. When ``point_count`` is given
        only the most recent candles are returned.
        """
        self._registry.get(symbol)
        tf = resolve_timeframe(timeframe)
        if point_count is not None and point_count < 1:
            raise InvalidParameterError("point_count", point_count, "must be >= 1")
        if not samples:
            return []

        frame = pd.DataFrame(
            {
                "price": [s.price for s in samples],
                "volume": [s.volume for s in samples],
            },
            index=pd.DatetimeIndex([s.timestamp for s in samples], name="timestamp"),
        ).sort_index()

        rule = pd.Timedelta(tf.bar_interval)
        bars = frame["price"].resample(rule).ohlc()
        bars["volume"] = frame["volume"].resample(rule).sum()
        bars = bars.dropna(subset=["open"])
        if point_count is not None:
            bars = bars.tail(point_count)

        return [
            Candle(
                time=row.Index.to_pydatetime(),
                open=float(row.open),
                high=float(row.high),
                low=float(row.low),
                close=float(row.close),
                volume=int(row.volume),
            )
            for row in bars.itertuples()
        ]
