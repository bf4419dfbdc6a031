"""
Allocation optimizer.

Chooses integer share quantities q_i that maximize sum(q_i * score_i)
subject to sum(q_i * price_i) <= budget and optionally q_i <= cap_i.
This is an unbounded knapsack (bounded when a unit cap applies), solved by
dynamic programming over a discretized budget axis.

Prices must lie on the granularity grid; an off-grid price is a resolution
error, never rounded. The axis unit is the granularity times the greatest
common divisor of the grid prices, so costs stay exact while the table
stays as short as the prices allow.

Complexity is O(W * N) with W = floor(budget / unit), or the most the capped
candidates could spend when that is less, and N the number of candidates
with a positive score. Each candidate is folded in with one pass over the
table, viewed as rows of its price: the best earlier row of every residue
class is carried forward (a sliding window when a unit cap applies),
vectorized across residues with numpy.

Tie-break among equally scoring allocations: lower total cost first, then
fewer distinct instruments. Candidates are visited in symbol order so the
result is deterministic.

The optimizer never computes scores itself. They arrive with the
candidates from an external scoring provider.
"""

import logging
import math
from types import MappingProxyType
from typing import Callable, Optional, Sequence

import numpy as np

from papertrade.domain.market.entities import AllocationCandidate, AllocationResult
from papertrade.domain.market.errors import (
    InvalidBudgetError,
    InvalidParameterError,
    OptimizerInfeasibleError,
)

logger = logging.getLogger(__name__)

SCORE_TOLERANCE = 1e-9
# Largest distance from a whole number of grid steps still treated as on-grid.
GRID_TOLERANCE = 1e-6

REASON_NO_CANDIDATES = "no_candidates"
REASON_NO_POSITIVE_SCORES = "no_positive_scores"
REASON_BUDGET = "budget"
REASON_RESOLUTION = "resolution"

# (key, distinct, origin row) per residue class
_Best = tuple[np.ndarray, np.ndarray, np.ndarray]


def _grid_steps(value: float, granularity: float) -> Optional[int]:
    """Return value / granularity when it is a whole number of steps."""
    steps = value / granularity
    nearest = round(steps)
    if abs(steps - nearest) <= GRID_TOLERANCE:
        return int(nearest)
    return None


def _better(
    key_a: np.ndarray, distinct_a: np.ndarray, key_b: np.ndarray, distinct_b: np.ndarray
) -> np.ndarray:
    """Elementwise: is state a strictly preferable to state b at equal cost?"""
    return (key_a > key_b + SCORE_TOLERANCE) | (
        (key_a >= key_b - SCORE_TOLERANCE) & (distinct_a < distinct_b)
    )


def _pick(older: _Best, newer: _Best) -> _Best:
    """Keep the older state only where it is strictly preferable.

    A newer row holds fewer units of the current candidate, so it wins ties.
    """
    keep = _better(older[0], older[1], newer[0], newer[1])
    return (
        np.where(keep, older[0], newer[0]),
        np.where(keep, older[1], newer[1]),
        np.where(keep, older[2], newer[2]),
    )


class _Item:
    __slots__ = ("candidate", "weight", "cap")

    def __init__(self, candidate: AllocationCandidate, weight: int, cap: int) -> None:
        self.candidate = candidate
        self.weight = weight
        self.cap = cap


class _Ticker:
    """Calls the checkpoint once every ``interval`` processed cells."""

    def __init__(self, checkpoint: Optional[Callable[[], None]], interval: int) -> None:
        self._checkpoint = checkpoint
        self._interval = interval
        self._pending = 0

    def advance(self, cells: int) -> None:
        if self._checkpoint is None:
            return
        self._pending += cells
        if self._pending >= self._interval:
            self._pending = 0
            self._checkpoint()


class AllocationOptimizer:
    """Budget-constrained integer allocation via dynamic programming."""

    def __init__(
        self,
        granularity: float = 0.01,
        max_budget_steps: int = 5_000_000,
        checkpoint_interval: int = 8192,
    ) -> None:
        """
        Initialize optimizer.

        Args:
            granularity: Price grid. Every candidate price must be a whole
                multiple of it.
            max_budget_steps: Largest budget axis the optimizer will build.
            checkpoint_interval: DP cells between calls to the checkpoint.
        """
        if not math.isfinite(granularity) or granularity <= 0:
            raise InvalidParameterError("granularity", granularity, "must be > 0")
        if max_budget_steps < 1:
            raise InvalidParameterError("max_budget_steps", max_budget_steps, "must be >= 1")
        self.granularity = granularity
        self.max_budget_steps = max_budget_steps
        self.checkpoint_interval = max(1, checkpoint_interval)

    def optimize(
        self,
        budget: float,
        candidates: Sequence[AllocationCandidate],
        per_symbol_unit_cap: Optional[int] = None,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> AllocationResult:
        """Compute the score-maximizing allocation.

        Args:
            budget: Cash available (>= 0).
            candidates: Instruments with unit price and return score.
            per_symbol_unit_cap: Optional cap on units of any one symbol.
            checkpoint: Called periodically during the DP. It aborts the
                run by raising (timeout, supersession).

        Returns:
            AllocationResult. Empty when nothing positive is affordable.

        Raises:
            InvalidBudgetError: If budget is negative or not finite.
            InvalidParameterError: On bad prices, scores, caps or duplicates.
            OptimizerInfeasibleError: If a price is off the grid or the
                budget axis is too long to build.
        """
        if not isinstance(budget, (int, float)) or not math.isfinite(budget) or budget < 0:
            raise InvalidBudgetError(budget)
        if per_symbol_unit_cap is not None and per_symbol_unit_cap < 0:
            raise InvalidParameterError(
                "per_symbol_unit_cap", per_symbol_unit_cap, "must be >= 0"
            )
        self._validate(candidates)

        symbols = [c.symbol for c in candidates]
        if not candidates:
            return AllocationResult.empty(budget, symbols, REASON_NO_CANDIDATES)

        positive = sorted(
            (c for c in candidates if c.return_score > 0), key=lambda c: c.symbol
        )
        if not positive:
            return AllocationResult.empty(budget, symbols, REASON_NO_POSITIVE_SCORES)

        weights = self._grid_weights(positive)
        unit = math.gcd(*weights)
        budget_steps = _grid_steps(budget, self.granularity)
        if budget_steps is None:
            budget_steps = math.floor(budget / self.granularity)
        steps = budget_steps // unit

        items = self._bound(positive, [w // unit for w in weights], steps, per_symbol_unit_cap)
        if not items:
            return AllocationResult.empty(budget, symbols, REASON_BUDGET)

        # Capped candidates can never spend more than this.
        steps = min(steps, sum(item.cap * item.weight for item in items))
        if steps > self.max_budget_steps:
            raise OptimizerInfeasibleError(
                REASON_RESOLUTION,
                f"budget axis of {steps} steps of {unit * self.granularity:g} "
                f"exceeds {self.max_budget_steps}",
            )

        logger.debug(
            "Budget axis: %d steps of %g for %d candidates",
            steps,
            unit * self.granularity,
            len(items),
        )
        quantities = self._solve(items, steps, _Ticker(checkpoint, self.checkpoint_interval))

        allocation = {symbol: 0 for symbol in symbols}
        allocation.update(quantities)
        by_symbol = {c.symbol: c for c in candidates}
        total_cost = sum(q * by_symbol[s].unit_price for s, q in allocation.items())
        achieved = sum(q * by_symbol[s].return_score for s, q in allocation.items())

        logger.info(
            "Optimized allocation: budget=%.2f cost=%.2f score=%.4f holdings=%d",
            budget,
            total_cost,
            achieved,
            sum(1 for q in allocation.values() if q > 0),
        )

        return AllocationResult(
            quantities=MappingProxyType(allocation),
            total_cost=total_cost,
            achieved_score=achieved,
            budget=budget,
            budget_utilization=total_cost / budget if budget > 0 else 0.0,
            infeasible_reason=None if total_cost > 0 else REASON_BUDGET,
            selected=tuple(sorted(s for s, q in allocation.items() if q > 0)),
        )

    @staticmethod
    def _validate(candidates: Sequence[AllocationCandidate]) -> None:
        seen: set[str] = set()
        for c in candidates:
            if c.symbol in seen:
                raise InvalidParameterError("symbol", c.symbol, "duplicate candidate")
            seen.add(c.symbol)
            if not math.isfinite(c.unit_price) or c.unit_price <= 0:
                raise InvalidParameterError("unit_price", c.unit_price, "must be > 0")
            if not math.isfinite(c.return_score):
                raise InvalidParameterError("return_score", c.return_score, "must be finite")
            if c.max_units is not None and c.max_units < 0:
                raise InvalidParameterError("max_units", c.max_units, "must be >= 0")

    def _grid_weights(self, candidates: list[AllocationCandidate]) -> list[int]:
        """Express each price in grid steps, rejecting prices between steps."""
        weights = []
        for c in candidates:
            weight = _grid_steps(c.unit_price, self.granularity)
            if weight is None or weight < 1:
                raise OptimizerInfeasibleError(
                    REASON_RESOLUTION,
                    f"price {c.unit_price!r} of {c.symbol} is not a multiple "
                    f"of granularity {self.granularity:g}",
                )
            weights.append(weight)
        return weights

    @staticmethod
    def _bound(
        candidates: list[AllocationCandidate],
        weights: list[int],
        steps: int,
        unit_cap: Optional[int],
    ) -> list[_Item]:
        items = []
        for c, weight in zip(candidates, weights):
            if weight > steps:
                continue
            cap = steps // weight
            for limit in (unit_cap, c.max_units):
                if limit is not None:
                    cap = min(cap, limit)
            if cap > 0:
                items.append(_Item(c, weight, cap))
        return items

    def _solve(self, items: list[_Item], steps: int, ticker: _Ticker) -> dict[str, int]:
        size = steps + 1
        # score[c] / distinct[c]: best allocation costing exactly c axis units
        score = np.full(size, -np.inf)
        score[0] = 0.0
        distinct = np.zeros(size, dtype=np.int64)
        widest = max(item.cap for item in items)
        dtype = np.uint16 if widest <= np.iinfo(np.uint16).max else np.int32
        choices = np.zeros((len(items), size), dtype=dtype)

        for row, item in enumerate(items):
            score, distinct, taken = self._fold(item, score, distinct, ticker)
            choices[row] = taken

        best = int(np.flatnonzero(score >= score.max() - SCORE_TOLERANCE)[0])

        quantities: dict[str, int] = {}
        remaining = best
        for row in range(len(items) - 1, -1, -1):
            units = int(choices[row, remaining])
            quantities[items[row].candidate.symbol] = units
            remaining -= units * items[row].weight
        return quantities

    @staticmethod
    def _fold(
        item: _Item,
        score: np.ndarray,
        distinct: np.ndarray,
        ticker: _Ticker,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Fold one candidate into the exact-cost table.

        The table is laid out as rows of ``weight`` cells, so cost
        c = t * weight + r sits at row t, column r. Buying k units moves a
        state from row t - k to row t in the same column. With
        key[t] = score[t] - t * value, the best predecessor for row t is
        the highest key among rows [t - cap, t - 1], and its score there is
        key + t * value.
        """
        size = score.size
        weight, cap = item.weight, item.cap
        value = item.candidate.return_score

        rows = -(-size // weight)
        pad = rows * weight - size
        prev_score = np.concatenate([score, np.full(pad, -np.inf)]).reshape(rows, weight)
        prev_distinct = np.concatenate(
            [distinct, np.zeros(pad, dtype=distinct.dtype)]
        ).reshape(rows, weight)
        key = prev_score - np.arange(rows)[:, None] * value
        origin = np.broadcast_to(np.arange(rows)[:, None], (rows, weight))

        new_score = prev_score.copy()
        new_distinct = prev_distinct.copy()
        taken = np.zeros((rows, weight), dtype=np.int64)

        def offer(t: int, best: _Best) -> None:
            candidate = best[0] + t * value
            candidate_distinct = best[1] + 1
            improve = _better(candidate, candidate_distinct, new_score[t], new_distinct[t])
            new_score[t] = np.where(improve, candidate, new_score[t])
            new_distinct[t] = np.where(improve, candidate_distinct, new_distinct[t])
            taken[t] = np.where(improve, t - best[2], 0)

        def at(t: int) -> _Best:
            return key[t], prev_distinct[t], origin[t]

        if cap >= rows - 1:
            # Every earlier row is within reach: carry a running best.
            best = at(0)
            for t in range(1, rows):
                ticker.advance(weight)
                offer(t, best)
                best = _pick(best, at(t))
        else:
            # Window of the last ``cap`` rows, split into blocks of ``cap``:
            # prefix bests run forward inside a block, suffix bests backward.
            prefix = [at(0)]
            for t in range(1, rows):
                ticker.advance(weight)
                prefix.append(_pick(prefix[-1], at(t)) if t % cap else at(t))
            suffix: list[Optional[_Best]] = [None] * rows
            suffix[rows - 1] = at(rows - 1)
            for t in range(rows - 2, -1, -1):
                ticker.advance(weight)
                following = suffix[t + 1]
                suffix[t] = _pick(at(t), following) if (t + 1) % cap else at(t)
            for t in range(1, rows):
                ticker.advance(weight)
                first = max(0, t - cap)
                if first % cap == 0:
                    best = prefix[t - 1]
                else:
                    best = _pick(suffix[first], prefix[t - 1])
                offer(t, best)

        return (
            new_score.reshape(-1)[:size],
            new_distinct.reshape(-1)[:size],
            taken.reshape(-1)[:size],
        )
