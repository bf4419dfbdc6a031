"""
Use case: Compute a budget-constrained share allocation.

Input: OptimizeAllocationCommand (caller_id, budget, candidates, cap)
Output: AllocationOutcome
Side effects: Publishes the result through the broadcast port.
Failure cases: InvalidBudgetError, InvalidParameterError, UnknownSymbolError,
    OptimizerInfeasibleError, OptimizationTimeoutError,
    OptimizationSupersededError.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Optional

from papertrade.application.market.dtos import (
    AllocationLine,
    AllocationOutcome,
    OptimizeAllocationCommand,
)
from papertrade.application.market.market_service import (
    MarketSimulationService,
    call_with_retry,
)
from papertrade.application.market.optimization_worker import OptimizationWorker
from papertrade.domain.market.entities import AllocationCandidate, AllocationResult
from papertrade.domain.market.errors import InvalidBudgetError, ServiceUnavailableError
from papertrade.domain.market.ports import MarketBroadcastPort, ReturnScoringPort

logger = logging.getLogger(__name__)


class OptimizeAllocationUseCase:
    """Orchestrates candidate assembly, optimization and result delivery.

    When the caller supplies no candidates, every registered instrument is
    offered at its current price with a score from the scoring provider.
    A per-symbol budget limit, when configured, becomes a unit cap of
    floor(limit / price) for each candidate.
    """

    def __init__(
        self,
        market: MarketSimulationService,
        worker: OptimizationWorker,
        scoring: ReturnScoringPort,
        broadcaster: Optional[MarketBroadcastPort] = None,
        per_symbol_budget_limit: Optional[float] = None,
        default_unit_cap: Optional[int] = None,
        scoring_window: int = 30,
    ) -> None:
        self._market = market
        self._worker = worker
        self._scoring = scoring
        self._broadcaster = broadcaster
        self._per_symbol_budget_limit = per_symbol_budget_limit
        self._default_unit_cap = default_unit_cap
        self._scoring_window = scoring_window

    def execute(self, command: OptimizeAllocationCommand) -> AllocationOutcome:
        """Run the allocation use case.

        Raises:
            InvalidBudgetError: If the budget is negative or not finite.
            UnknownSymbolError: If no candidates were given and the
                universe contains an unregistered symbol.
            OptimizationTimeoutError: If the optimizer ran out of time.
            OptimizationSupersededError: If the caller sent a newer request.
        """
        if not math.isfinite(command.budget) or command.budget < 0:
            raise InvalidBudgetError(command.budget)

        candidates = self._candidates(command)
        cap = command.per_symbol_unit_cap
        if cap is None:
            cap = self._default_unit_cap

        logger.info(
            "Allocation requested: caller=%s, budget=%.2f, candidates=%d",
            command.caller_id,
            command.budget,
            len(candidates),
        )

        result = self._worker.run(command.caller_id, command.budget, candidates, cap)
        self._publish(command.caller_id, result)
        return self._to_outcome(result, candidates)

    def _candidates(self, command: OptimizeAllocationCommand) -> list[AllocationCandidate]:
        if command.candidates is not None:
            return [
                AllocationCandidate(
                    symbol=c.symbol.upper(),
                    unit_price=c.unit_price,
                    return_score=c.return_score,
                    max_units=self._limit_units(c.unit_price, c.max_units),
                )
                for c in command.candidates
            ]

        snapshot = self._market.snapshot
        candidates = []
        for instrument in self._market.registry:
            state = snapshot.states[instrument.symbol]
            window = state.history[-self._scoring_window:]
            candidates.append(
                AllocationCandidate(
                    symbol=instrument.symbol,
                    unit_price=state.current_price,
                    return_score=self._scoring.score(instrument.symbol, window),
                    max_units=self._limit_units(state.current_price, None),
                )
            )
        return candidates

    def _limit_units(self, unit_price: float, max_units: Optional[int]) -> Optional[int]:
        limit = self._per_symbol_budget_limit
        if limit is None or not math.isfinite(unit_price) or unit_price <= 0:
            return max_units
        by_budget = math.floor(limit / unit_price)
        return by_budget if max_units is None else min(max_units, by_budget)

    def _publish(self, caller_id: str, result: AllocationResult) -> None:
        if self._broadcaster is None:
            return
        broadcaster = self._broadcaster
        try:
            call_with_retry(
                lambda: broadcaster.publish_allocation(caller_id, result),
                f"Allocation broadcast for {caller_id}",
            )
        except ServiceUnavailableError as exc:
            logger.error("Allocation for %s not broadcast: %s", caller_id, exc.message)

    @staticmethod
    def _to_outcome(
        result: AllocationResult,
        candidates: list[AllocationCandidate],
    ) -> AllocationOutcome:
        by_symbol = {c.symbol: c for c in candidates}
        lines = [
            AllocationLine(
                symbol=symbol,
                quantity=quantity,
                unit_price=by_symbol[symbol].unit_price,
                return_score=by_symbol[symbol].return_score,
                cost=quantity * by_symbol[symbol].unit_price,
            )
            for symbol, quantity in sorted(result.quantities.items())
            if quantity > 0
        ]
        return AllocationOutcome(
            quantities=dict(result.quantities),
            lines=lines,
            total_cost=result.total_cost,
            achieved_score=result.achieved_score,
            budget=result.budget,
            budget_utilization=result.budget_utilization,
            remaining_cash=result.budget - result.total_cost,
            infeasible_reason=result.infeasible_reason,
            computed_at=datetime.now(timezone.utc),
        )
