"""
Adapter: Momentum return scoring.

Implements ReturnScoringPort.
Scores an instrument by its percent price change across the recent
sample window. Rising instruments score positive; flat or falling ones
score zero or below and are skipped by the optimizer.
"""

from typing import Sequence

from papertrade.domain.market.entities import PricePoint
from papertrade.domain.market.ports import ReturnScoringPort


class MomentumScoringAdapter(ReturnScoringPort):
    """Percent change from the oldest to the newest sample in the window."""

    def score(self, symbol: str, recent_history: Sequence[PricePoint]) -> float:
        if len(recent_history) < 2:
            return 0.0
        first = recent_history[0].price
        last = recent_history[-1].price
        if first <= 0:
            return 0.0
        return (last - first) / first * 100.0
