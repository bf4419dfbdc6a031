"""
Use case: List the tradable instruments with their live state.

Input: ListInstrumentsQuery (sector, search, sort, limit)
Output: InstrumentListing
Side effects: None (read-only query).
Failure cases: InvalidParameterError on an unknown sort order or a
    negative limit.
"""

import logging
from typing import Optional

from papertrade.application.market.dtos import (
    SORT_GAINERS,
    SORT_LOSERS,
    SORT_ORDERS,
    InstrumentListing,
    InstrumentSummary,
    ListInstrumentsQuery,
)
from papertrade.application.market.market_service import MarketSimulationService
from papertrade.domain.market.entities import Instrument, InstrumentState
from papertrade.domain.market.errors import InvalidParameterError

logger = logging.getLogger(__name__)


def summarize(
    instrument: Instrument,
    state: InstrumentState,
    halt_change_percent: Optional[float] = None,
) -> InstrumentSummary:
    """Map an instrument and its live state to the listing DTO.

    An instrument is halted once its move against the previous close
    exceeds ``halt_change_percent`` in either direction.
    """
    halted = (
        halt_change_percent is not None
        and abs(state.change_percent) > halt_change_percent
    )
    return InstrumentSummary(
        symbol=instrument.symbol,
        name=instrument.name,
        sector=instrument.sector,
        current_price=state.current_price,
        previous_close=state.previous_close,
        change=state.change,
        change_percent=state.change_percent,
        day_high=state.day_high,
        day_low=state.day_low,
        volume=state.volume,
        annual_volatility=instrument.annual_volatility,
        halted=halted,
    )


def _contains(text: str, needle: str) -> bool:
    return needle.casefold() in text.casefold()


class ListInstrumentsUseCase:
    """Reads the last published snapshot. Never waits on a tick cycle."""

    def __init__(
        self,
        market: MarketSimulationService,
        halt_change_percent: Optional[float] = None,
    ) -> None:
        self._market = market
        self._halt_change_percent = halt_change_percent

    def execute(self, query: Optional[ListInstrumentsQuery] = None) -> InstrumentListing:
        query = query or ListInstrumentsQuery()
        if query.sort not in SORT_ORDERS:
            raise InvalidParameterError("sort", query.sort, f"must be one of {SORT_ORDERS}")
        if query.limit is not None and query.limit < 0:
            raise InvalidParameterError("limit", query.limit, "must be >= 0")

        snapshot = self._market.snapshot
        summaries = [
            summarize(instrument, snapshot.states[instrument.symbol], self._halt_change_percent)
            for instrument in self._market.registry
        ]

        if query.sector:
            summaries = [s for s in summaries if _contains(s.sector, query.sector)]
        if query.search:
            summaries = [
                s
                for s in summaries
                if any(_contains(field, query.search) for field in (s.symbol, s.name, s.sector))
            ]
        if query.sort == SORT_GAINERS:
            summaries.sort(key=lambda s: (-s.change_percent, s.symbol))
        elif query.sort == SORT_LOSERS:
            summaries.sort(key=lambda s: (s.change_percent, s.symbol))
        if query.limit is not None:
            summaries = summaries[:query.limit]

        logger.debug(
            "Listing %d of %d instruments at cycle %d",
            len(summaries),
            len(snapshot.states),
            snapshot.cycle,
        )
        return InstrumentListing(
            cycle=snapshot.cycle,
            as_of=snapshot.as_of,
            instruments=summaries,
        )
