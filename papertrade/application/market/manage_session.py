"""
Use cases: Reset the market to baseline and close a trading session.

Input: None
Output: MarketCycleResult
Side effects: Replaces live state; session close archives the session's
    replayed 1D candles when persistence is configured.
Failure cases: None. Archive failures are logged and skipped.
"""

import logging
from typing import Optional

from papertrade.application.market.dtos import MarketCycleResult
from papertrade.application.market.market_service import (
    MarketSimulationService,
    call_with_retry,
)
from papertrade.domain.market.candles import CandleHistoryBuilder
from papertrade.domain.market.errors import ServiceUnavailableError
from papertrade.domain.market.ports import MarketStateRepository

logger = logging.getLogger(__name__)

ARCHIVE_TIMEFRAME = "1D"


class ResetMarketUseCase:
    """Restores every instrument to its base price in one atomic update."""

    def __init__(self, market: MarketSimulationService) -> None:
        self._market = market

    def execute(self) -> MarketCycleResult:
        snapshot = self._market.reset_to_baseline()
        return MarketCycleResult(
            action="reset",
            cycle=snapshot.cycle,
            as_of=snapshot.as_of,
            index_value=snapshot.index.value,
        )


class CloseSessionUseCase:
    """Archives the session's intraday candles, then rolls the session."""

    def __init__(
        self,
        market: MarketSimulationService,
        builder: CandleHistoryBuilder,
        repository: Optional[MarketStateRepository] = None,
    ) -> None:
        self._market = market
        self._builder = builder
        self._repository = repository

    def execute(self) -> MarketCycleResult:
        archived = self._archive()
        snapshot = self._market.close_session()
        return MarketCycleResult(
            action="session_close",
            cycle=snapshot.cycle,
            as_of=snapshot.as_of,
            index_value=snapshot.index.value,
            archived_symbols=archived,
        )

    def _archive(self) -> list[str]:
        if self._repository is None:
            return []
        repository = self._repository
        snapshot = self._market.snapshot
        archived = []
        for symbol, state in snapshot.states.items():
            candles = self._builder.from_ticks(symbol, state.history, ARCHIVE_TIMEFRAME)
            if not candles:
                continue
            try:
                call_with_retry(
                    lambda: repository.save_candles(symbol, ARCHIVE_TIMEFRAME, candles),
                    f"Candle archive ({symbol})",
                )
            except ServiceUnavailableError as exc:
                logger.error("Skipping candle archive for %s: %s", symbol, exc.message)
                continue
            archived.append(symbol)
        logger.info("Archived session candles for %d instruments.", len(archived))
        return sorted(archived)
