"""
Use case: Build an OHLCV candle series for a chart timeframe.

Input: GetCandlesQuery (symbol, timeframe, source, point_count)
Output: CandleSeriesResult
Side effects: None (read-only query).
Failure cases: UnknownSymbolError, UnknownTimeframeError,
    InvalidParameterError, ServiceUnavailableError (stored source only).
"""

import logging
from typing import Optional

from papertrade.application.market.dtos import (
    CANDLE_SOURCES,
    SOURCE_REPLAY,
    SOURCE_SIMULATED,
    CandleSeriesResult,
    GetCandlesQuery,
)
from papertrade.application.market.market_service import (
    MarketSimulationService,
    call_with_retry,
)
from papertrade.domain.market.candles import (
    CandleHistoryBuilder,
    default_series_end,
    resolve_timeframe,
    series_seed,
)
from papertrade.domain.market.errors import InvalidParameterError, ServiceUnavailableError
from papertrade.domain.market.ports import MarketStateRepository

logger = logging.getLogger(__name__)


class GetCandlesUseCase:
    """Serves candle series from one of three sources.

    Simulated series are anchored on the day the market service started,
    so repeated requests return identical candles.
    """

    def __init__(
        self,
        market: MarketSimulationService,
        builder: CandleHistoryBuilder,
        history_seed: int,
        repository: Optional[MarketStateRepository] = None,
    ) -> None:
        self._market = market
        self._builder = builder
        self._history_seed = history_seed
        self._repository = repository

    def execute(self, query: GetCandlesQuery) -> CandleSeriesResult:
        instrument = self._market.registry.get(query.symbol)
        timeframe = resolve_timeframe(query.timeframe)
        if query.source not in CANDLE_SOURCES:
            raise InvalidParameterError(
                "source", query.source, f"must be one of {', '.join(CANDLE_SOURCES)}"
            )

        logger.info(
            "Building candles: symbol=%s, timeframe=%s, source=%s",
            instrument.symbol,
            timeframe.token,
            query.source,
        )

        if query.source == SOURCE_SIMULATED:
            candles = self._builder.build_series(
                instrument.symbol,
                timeframe.token,
                seed=series_seed(self._history_seed, instrument.symbol, timeframe.token),
                point_count=query.point_count,
                end=default_series_end(self._market.started_at),
            )
        elif query.source == SOURCE_REPLAY:
            state = self._market.snapshot.states[instrument.symbol]
            candles = self._builder.from_ticks(
                instrument.symbol, state.history, timeframe.token, query.point_count
            )
        else:
            candles = self._stored(instrument.symbol, timeframe.token, query.point_count)

        return CandleSeriesResult(
            symbol=instrument.symbol,
            timeframe=timeframe.token,
            source=query.source,
            candles=candles,
        )

    def _stored(self, symbol: str, timeframe: str, point_count: Optional[int]):
        if self._repository is None:
            raise ServiceUnavailableError("persistence", "no database configured")
        if point_count is not None and point_count < 1:
            raise InvalidParameterError("point_count", point_count, "must be >= 1")
        repository = self._repository
        candles = call_with_retry(
            lambda: repository.get_candles(symbol, timeframe),
            f"Candle load ({symbol} {timeframe})",
        )
        return candles[-point_count:] if point_count else candles
