"""
Optimization worker.

Runs the allocation optimizer on a thread pool, off the tick path, so a
large request never delays a tick cycle.

Each request carries a ticket. The optimizer polls the ticket between DP
cells; the ticket raises when its deadline passes or when a newer request
from the same caller has replaced it. Only the newest request per caller
completes.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Optional, Sequence

from papertrade.domain.market.allocation import AllocationOptimizer
from papertrade.domain.market.entities import AllocationCandidate, AllocationResult
from papertrade.domain.market.errors import (
    OptimizationSupersededError,
    OptimizationTimeoutError,
)

logger = logging.getLogger(__name__)

# Extra wait on the future beyond the ticket deadline, so the worker
# thread gets to raise the timeout itself.
_RESULT_GRACE_SECONDS = 1.0


class _Ticket:
    """Cancellation handle shared between the caller and the worker thread."""

    def __init__(self, caller_id: str, timeout_seconds: float) -> None:
        self.caller_id = caller_id
        self.timeout_seconds = timeout_seconds
        self.deadline = time.monotonic() + timeout_seconds
        self._superseded = threading.Event()
        self._expired = threading.Event()

    def supersede(self) -> None:
        self._superseded.set()

    def expire(self) -> None:
        self._expired.set()

    def checkpoint(self) -> None:
        if self._superseded.is_set():
            raise OptimizationSupersededError(self.caller_id)
        if self._expired.is_set() or time.monotonic() > self.deadline:
            raise OptimizationTimeoutError(self.timeout_seconds)


class OptimizationWorker:
    """Thread-pool runner for allocation requests.

    Usage:
        worker = OptimizationWorker(AllocationOptimizer(), max_workers=2)
        result = worker.run("session-1", 10_000, candidates)
        worker.shutdown()
    """

    def __init__(
        self,
        optimizer: AllocationOptimizer,
        max_workers: int = 2,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._optimizer = optimizer
        self._timeout = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="optimizer"
        )
        self._lock = threading.Lock()
        self._inflight: dict[str, _Ticket] = {}

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._inflight)

    def submit(
        self,
        caller_id: str,
        budget: float,
        candidates: Sequence[AllocationCandidate],
        per_symbol_unit_cap: Optional[int] = None,
    ) -> Future:
        """Queue a request, superseding any in-flight one from the same caller."""
        return self._submit(caller_id, budget, candidates, per_symbol_unit_cap)[1]

    def run(
        self,
        caller_id: str,
        budget: float,
        candidates: Sequence[AllocationCandidate],
        per_symbol_unit_cap: Optional[int] = None,
    ) -> AllocationResult:
        """Submit a request and block until it finishes.

        Raises:
            OptimizationTimeoutError: If the deadline passed.
            OptimizationSupersededError: If a newer request replaced this one.
            Any error raised by the optimizer itself.
        """
        ticket, future = self._submit(caller_id, budget, candidates, per_symbol_unit_cap)
        try:
            return future.result(timeout=self._timeout + _RESULT_GRACE_SECONDS)
        except FutureTimeoutError:
            ticket.expire()
            future.cancel()
            logger.warning(
                "Optimization for %s still queued after %.2fs; abandoned.",
                caller_id,
                self._timeout,
            )
            raise OptimizationTimeoutError(self._timeout)

    def shutdown(self) -> None:
        with self._lock:
            for ticket in self._inflight.values():
                ticket.expire()
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Optimization worker stopped.")

    def _submit(
        self,
        caller_id: str,
        budget: float,
        candidates: Sequence[AllocationCandidate],
        per_symbol_unit_cap: Optional[int],
    ) -> tuple[_Ticket, Future]:
        ticket = _Ticket(caller_id, self._timeout)
        with self._lock:
            previous = self._inflight.get(caller_id)
            if previous is not None:
                previous.supersede()
                logger.info("Superseding in-flight optimization for %s", caller_id)
            self._inflight[caller_id] = ticket
        future = self._executor.submit(
            self._execute, ticket, budget, list(candidates), per_symbol_unit_cap
        )
        return ticket, future

    def _execute(
        self,
        ticket: _Ticket,
        budget: float,
        candidates: list[AllocationCandidate],
        per_symbol_unit_cap: Optional[int],
    ) -> AllocationResult:
        started = time.monotonic()
        try:
            # Superseded or expired while still queued.
            ticket.checkpoint()
            result = self._optimizer.optimize(
                budget,
                candidates,
                per_symbol_unit_cap=per_symbol_unit_cap,
                checkpoint=ticket.checkpoint,
            )
        except (OptimizationSupersededError, OptimizationTimeoutError) as exc:
            logger.info("Optimization for %s aborted: %s", ticket.caller_id, exc.message)
            raise
        finally:
            with self._lock:
                if self._inflight.get(ticket.caller_id) is ticket:
                    del self._inflight[ticket.caller_id]

        logger.debug(
            "Optimization for %s finished in %.3fs",
            ticket.caller_id,
            time.monotonic() - started,
        )
        return result
