"""
Market simulation service.

The single authority over live market state. One tick cycle:

1. every instrument advances once, using the previous snapshot's index
   feedback and its own random generator;
2. the index is recomputed from the fully advanced set;
3. the result is persisted and swapped in as one immutable snapshot;
4. subscribers and the broadcast collaborator are notified.

Cycles, resets and session closes are serialized by one lock. Readers
never take it: they read the last published snapshot reference.
Notifications go out in cycle order; a snapshot overtaken by a newer
one before it could be published is dropped.

Collaborator failures are retried once. If the retry also fails the
service keeps running on local state and reports itself degraded.
"""

import itertools
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional, TypeVar

import numpy as np

from papertrade.domain.market.entities import InstrumentState, MarketSnapshot
from papertrade.domain.market.errors import ServiceUnavailableError
from papertrade.domain.market.index_aggregator import MarketIndexAggregator
from papertrade.domain.market.ports import MarketBroadcastPort, MarketStateRepository
from papertrade.domain.market.price_simulator import PriceSimulator
from papertrade.domain.market.registry import InstrumentRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

SnapshotListener = Callable[[MarketSnapshot], None]


def call_with_retry(operation: Callable[[], T], description: str) -> T:
    """Run a collaborator call, retrying exactly once on ServiceUnavailableError."""
    try:
        return operation()
    except ServiceUnavailableError as exc:
        logger.warning("%s failed (%s); retrying once.", description, exc.reason)
    return operation()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MarketSimulationService:
    """Owns the tick cycle and publishes immutable market snapshots.

    Usage:
        service = MarketSimulationService(registry, simulator, aggregator, dt=dt)
        service.initialize()          # restore persisted state, if any
        snapshot = service.run_cycle()
        service.snapshot              # last published snapshot (lock-free)
    """

    def __init__(
        self,
        registry: InstrumentRegistry,
        simulator: PriceSimulator,
        aggregator: MarketIndexAggregator,
        dt: float,
        seed: Optional[int] = None,
        retained_history: int = 10,
        repository: Optional[MarketStateRepository] = None,
        broadcaster: Optional[MarketBroadcastPort] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._registry = registry
        self._simulator = simulator
        self._aggregator = aggregator
        self._dt = dt
        self._retained_history = retained_history
        self._repository = repository
        self._broadcaster = broadcaster
        self._clock = clock

        self._lock = threading.Lock()
        self._publish_lock = threading.Lock()
        self._published_cycle = 0
        self._listeners: dict[int, SnapshotListener] = {}
        self._listener_ids = itertools.count(1)
        self._failures: dict[str, str] = {}

        # One child stream per instrument: results do not depend on the
        # order in which instruments are stepped.
        children = np.random.SeedSequence(seed).spawn(len(registry))
        self._rngs = {
            symbol: np.random.default_rng(child)
            for symbol, child in zip(registry.symbols, children)
        }

        self.started_at = clock()
        self._snapshot = self._compose(
            0, {i.symbol: InstrumentState.baseline(i) for i in registry}
        )

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> MarketSnapshot:
        """The last complete snapshot. Never a half-updated market."""
        return self._snapshot

    @property
    def registry(self) -> InstrumentRegistry:
        return self._registry

    @property
    def is_degraded(self) -> bool:
        return bool(self._failures)

    def get_state(self, symbol: str) -> InstrumentState:
        """Return the published state for a symbol.

        Raises:
            UnknownSymbolError: If the symbol is not registered.
        """
        instrument = self._registry.get(symbol)
        return self._snapshot.states[instrument.symbol]

    def status(self) -> dict:
        snapshot = self._snapshot
        return {
            "cycle": snapshot.cycle,
            "as_of": snapshot.as_of.isoformat(),
            "instruments": len(snapshot.states),
            "degraded": self.is_degraded,
            "failures": dict(self._failures),
            "subscribers": len(self._listeners),
        }

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a listener for published snapshots.

        Returns:
            A callable that removes the listener again.
        """
        listener_id = next(self._listener_ids)
        self._listeners[listener_id] = listener

        def unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return unsubscribe

    # ------------------------------------------------------------------
    # Write side (serialized)
    # ------------------------------------------------------------------

    def initialize(self) -> MarketSnapshot:
        """Prepare persistence and resume from the last stored states."""
        if self._repository is None:
            return self._snapshot

        repository = self._repository
        try:
            call_with_retry(repository.ensure_schema, "Schema setup")
            call_with_retry(
                lambda: repository.save_instruments(list(self._registry)),
                "Instrument catalog save",
            )
            stored = call_with_retry(repository.load_states, "State restore")
        except ServiceUnavailableError as exc:
            self._record_failure(exc)
            logger.error("Starting from baseline; persistence unavailable: %s", exc.reason)
            return self._snapshot

        self._clear_failure("persistence")
        if not stored:
            logger.info("No persisted market state found; starting from baseline.")
            return self._snapshot
        return self.restore(stored, persist=False)

    def restore(
        self,
        states: Mapping[str, InstrumentState],
        persist: bool = True,
    ) -> MarketSnapshot:
        """Replace live states (e.g. from storage) as one atomic update.

        Unknown symbols are ignored; registered symbols without a stored
        state keep their current one.
        """
        with self._lock:
            current = dict(self._snapshot.states)
            restored = 0
            for symbol, state in states.items():
                if symbol in current:
                    current[symbol] = state
                    restored += 1
                else:
                    logger.warning("Ignoring stored state for unknown symbol %s", symbol)
            snapshot = self._commit(current, persist=persist)
        logger.info("Restored %d instrument states.", restored)
        self._publish(snapshot)
        return snapshot

    def run_cycle(self) -> MarketSnapshot:
        """Advance every instrument once and publish the new snapshot."""
        with self._lock:
            previous = self._snapshot
            index_return = previous.index.feedback_return
            timestamp = self._clock()

            advanced = {}
            for symbol in self._registry.symbols:
                advanced[symbol] = self._simulator.tick(
                    self._registry.get(symbol),
                    previous.states[symbol],
                    index_return,
                    self._rngs[symbol],
                    self._dt,
                    timestamp,
                )
            snapshot = self._commit(advanced, as_of=timestamp)

        logger.debug(
            "Cycle %d: index=%.2f (%+.3f%%)",
            snapshot.cycle,
            snapshot.index.value,
            snapshot.index.change_percent,
        )
        self._publish(snapshot)
        return snapshot

    def reset_to_baseline(self) -> MarketSnapshot:
        """Restore every instrument to its base price as one atomic update.

        History is truncated to the retained tail. Calling this twice in a
        row leaves the same state as calling it once.
        """
        keep = self._retained_history
        with self._lock:
            states = {}
            for instrument in self._registry:
                history = self._snapshot.states[instrument.symbol].history
                tail = history[-keep:] if keep > 0 else ()
                states[instrument.symbol] = InstrumentState.baseline(instrument, tail)
            snapshot = self._commit(states)

        logger.info("Market reset to baseline at cycle %d.", snapshot.cycle)
        self._publish(snapshot)
        return snapshot

    def close_session(self) -> MarketSnapshot:
        """Start a new trading session anchored on the current prices."""
        with self._lock:
            states = {
                symbol: self._simulator.close_session(state)
                for symbol, state in self._snapshot.states.items()
            }
            snapshot = self._commit(states)

        logger.info("Trading session closed at cycle %d.", snapshot.cycle)
        self._publish(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _compose(
        self,
        cycle: int,
        states: Mapping[str, InstrumentState],
        as_of: Optional[datetime] = None,
    ) -> MarketSnapshot:
        index = self._aggregator.recompute(states.values())
        return MarketSnapshot(
            cycle=cycle,
            as_of=as_of or self._clock(),
            states=states,
            index=index,
        )

    def _commit(
        self,
        states: Mapping[str, InstrumentState],
        as_of: Optional[datetime] = None,
        persist: bool = True,
    ) -> MarketSnapshot:
        """Build, persist and swap in the next snapshot. Caller holds the lock."""
        snapshot = self._compose(self._snapshot.cycle + 1, states, as_of)
        if persist:
            self._persist(snapshot)
        self._snapshot = snapshot
        return snapshot

    def _persist(self, snapshot: MarketSnapshot) -> None:
        if self._repository is None:
            return
        repository = self._repository
        try:
            call_with_retry(
                lambda: repository.save_snapshot(snapshot),
                f"Snapshot save (cycle {snapshot.cycle})",
            )
        except ServiceUnavailableError as exc:
            self._record_failure(exc)
            logger.error(
                "Cycle %d kept in memory only: %s", snapshot.cycle, exc.message
            )
        else:
            self._clear_failure("persistence")

    def _publish(self, snapshot: MarketSnapshot) -> None:
        """Notify listeners and the broadcaster, in cycle order.

        Publishing happens outside the state lock, so a writer can reach
        this point after a newer snapshot already went out. Such a
        snapshot is dropped rather than delivered out of order.
        """
        with self._publish_lock:
            if snapshot.cycle <= self._published_cycle:
                logger.debug(
                    "Dropping cycle %d; cycle %d already published.",
                    snapshot.cycle,
                    self._published_cycle,
                )
                return
            self._published_cycle = snapshot.cycle
            self._deliver(snapshot)

    def _deliver(self, snapshot: MarketSnapshot) -> None:
        for listener in list(self._listeners.values()):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed at cycle %d", snapshot.cycle)

        if self._broadcaster is None:
            return
        broadcaster = self._broadcaster
        try:
            call_with_retry(
                lambda: broadcaster.publish_snapshot(snapshot),
                f"Snapshot broadcast (cycle {snapshot.cycle})",
            )
        except ServiceUnavailableError as exc:
            self._record_failure(exc)
            logger.error("Broadcast of cycle %d dropped: %s", snapshot.cycle, exc.message)
        else:
            self._clear_failure("broadcast")

    def _record_failure(self, exc: ServiceUnavailableError) -> None:
        self._failures[exc.collaborator] = exc.reason

    def _clear_failure(self, collaborator: str) -> None:
        self._failures.pop(collaborator, None)
