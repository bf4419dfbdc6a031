"""
Market index aggregation.

Combines the fully advanced set of instrument states into one composite
index. The index's ``feedback_return`` is the market term fed into every
instrument's next tick, scaled by ``beta`` there.

The feedback is damped by ``coupling`` and clamped to
``max_index_return`` so that a market whose average beta is near or above
one cannot run away through its own feedback loop.
"""

import logging
from collections import Counter
from typing import Iterable, Mapping, Optional

from papertrade.domain.market.entities import Instrument, InstrumentState, MarketIndex
from papertrade.domain.market.errors import InvalidParameterError
from papertrade.domain.market.registry import InstrumentRegistry

logger = logging.getLogger(__name__)

WEIGHTING_EQUAL = "equal"
WEIGHTING_SECTOR = "sector"
SUPPORTED_WEIGHTINGS = (WEIGHTING_EQUAL, WEIGHTING_SECTOR)


def equal_weights(instruments: Iterable[Instrument]) -> dict[str, float]:
    symbols = [i.symbol for i in instruments]
    if not symbols:
        return {}
    weight = 1.0 / len(symbols)
    return {symbol: weight for symbol in symbols}


def sector_weights(instruments: Iterable[Instrument]) -> dict[str, float]:
    """Give every sector the same share, split evenly among its members."""
    members = list(instruments)
    if not members:
        return {}
    per_sector = Counter(i.sector for i in members)
    sector_share = 1.0 / len(per_sector)
    return {i.symbol: sector_share / per_sector[i.sector] for i in members}


class MarketIndexAggregator:
    """Computes the composite index from one cycle's states.

    Weights are normalized once at construction and must be non-negative.
    Symbols missing from a recompute are skipped and the remaining weights
    renormalized.
    """

    def __init__(
        self,
        registry: InstrumentRegistry,
        weighting: str = WEIGHTING_EQUAL,
        weights: Optional[Mapping[str, float]] = None,
        base_level: float = 1000.0,
        coupling: float = 0.3,
        max_index_return: float = 0.05,
    ) -> None:
        """
        Initialize aggregator.

        Args:
            registry: Instrument catalog (for base prices and sectors).
            weighting: "equal" or "sector"; ignored when ``weights`` is given.
            weights: Explicit symbol -> weight mapping.
            base_level: Index value when every price sits at its base price.
            coupling: Fraction of the cycle return fed back to the next tick.
            max_index_return: Absolute clamp on the feedback return.
        """
        if weights is not None:
            raw = {symbol.upper(): float(w) for symbol, w in weights.items()}
            for symbol in raw:
                registry.get(symbol)
        elif weighting == WEIGHTING_EQUAL:
            raw = equal_weights(registry)
        elif weighting == WEIGHTING_SECTOR:
            raw = sector_weights(registry)
        else:
            raise InvalidParameterError(
                "index_weighting", weighting, f"must be one of {SUPPORTED_WEIGHTINGS}"
            )

        if any(w < 0 for w in raw.values()):
            raise InvalidParameterError("weights", raw, "weights must be >= 0")
        total = sum(raw.values())
        if total <= 0:
            raise InvalidParameterError("weights", raw, "weights must sum to > 0")
        if base_level <= 0:
            raise InvalidParameterError("index_base_level", base_level, "must be > 0")
        if max_index_return < 0:
            raise InvalidParameterError("max_index_return", max_index_return, "must be >= 0")

        self._registry = registry
        self._weights = {symbol: w / total for symbol, w in raw.items()}
        self.base_level = base_level
        self.coupling = coupling
        self.max_index_return = max_index_return

    @property
    def weights(self) -> dict[str, float]:
        return dict(self._weights)

    def recompute(self, states: Iterable[InstrumentState]) -> MarketIndex:
        """Build the index from a complete set of post-tick states."""
        constituents = tuple(sorted(states, key=lambda s: s.symbol))
        weighted = [
            (self._weights[s.symbol], s)
            for s in constituents
            if self._weights.get(s.symbol, 0.0) > 0
        ]
        total = sum(w for w, _ in weighted)

        if total <= 0:
            return MarketIndex(
                value=self.base_level,
                change_percent=0.0,
                last_return=0.0,
                feedback_return=0.0,
                constituents=constituents,
            )

        value = 0.0
        change_percent = 0.0
        last_return = 0.0
        for weight, state in weighted:
            share = weight / total
            base_price = self._registry.get(state.symbol).base_price
            value += share * state.current_price / base_price
            change_percent += share * state.change_percent
            last_return += share * state.last_return

        feedback = self.coupling * last_return
        feedback = max(-self.max_index_return, min(self.max_index_return, feedback))

        return MarketIndex(
            value=self.base_level * value,
            change_percent=change_percent,
            last_return=last_return,
            feedback_return=feedback,
            constituents=constituents,
        )
