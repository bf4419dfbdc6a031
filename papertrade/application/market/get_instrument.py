"""
Use case: Retrieve one instrument with its recent price samples.

Input: GetInstrumentQuery (symbol, history_limit)
Output: InstrumentDetail
Side effects: None (read-only query).
Failure cases: UnknownSymbolError, InvalidParameterError.
"""

import logging
from typing import Optional

from papertrade.application.market.dtos import (
    GetInstrumentQuery,
    InstrumentDetail,
    PricePointResult,
)
from papertrade.application.market.list_instruments import summarize
from papertrade.application.market.market_service import MarketSimulationService
from papertrade.domain.market.errors import InvalidParameterError

logger = logging.getLogger(__name__)


class GetInstrumentUseCase:
    def __init__(
        self,
        market: MarketSimulationService,
        halt_change_percent: Optional[float] = None,
    ) -> None:
        self._market = market
        self._halt_change_percent = halt_change_percent

    def execute(self, query: GetInstrumentQuery) -> InstrumentDetail:
        """Run the get instrument use case.

        Raises:
            UnknownSymbolError: If the symbol is not registered.
            InvalidParameterError: If history_limit is negative.
        """
        if query.history_limit < 0:
            raise InvalidParameterError("history_limit", query.history_limit, "must be >= 0")

        instrument = self._market.registry.get(query.symbol)
        state = self._market.snapshot.states[instrument.symbol]
        samples = state.history[-query.history_limit:] if query.history_limit else ()

        return InstrumentDetail(
            summary=summarize(instrument, state, self._halt_change_percent),
            open_price=state.open_price,
            last_return=state.last_return,
            annual_drift=instrument.annual_drift,
            beta=instrument.beta,
            history=[
                PricePointResult(timestamp=p.timestamp, price=p.price, volume=p.volume)
                for p in samples
            ],
        )
