"""
Use case: Retrieve the composite market index.

Input: None
Output: IndexResult
Side effects: None (read-only query).
Failure cases: None.
"""

from typing import Optional

from papertrade.application.market.dtos import IndexResult
from papertrade.application.market.list_instruments import summarize
from papertrade.application.market.market_service import MarketSimulationService


class GetIndexUseCase:
    """Returns the index of the last published snapshot."""

    def __init__(
        self,
        market: MarketSimulationService,
        halt_change_percent: Optional[float] = None,
    ) -> None:
        self._market = market
        self._halt_change_percent = halt_change_percent

    def execute(self) -> IndexResult:
        snapshot = self._market.snapshot
        registry = self._market.registry
        return IndexResult(
            value=snapshot.index.value,
            change_percent=snapshot.index.change_percent,
            last_return=snapshot.index.last_return,
            cycle=snapshot.cycle,
            as_of=snapshot.as_of,
            constituents=[
                summarize(registry.get(state.symbol), state, self._halt_change_percent)
                for state in snapshot.index.constituents
            ],
        )
