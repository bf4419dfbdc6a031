"""
Tests for the market application layer.

Covers:
- MarketSimulationService (atomic cycles, reset, restore, degraded mode)
- call_with_retry
- OptimizationWorker (supersede, timeout)
- Use cases: list, get instrument, index, candles, allocation, session
"""

import threading
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from papertrade.application.market.dtos import (
    SORT_GAINERS,
    SORT_LOSERS,
    CandidateInput,
    GetCandlesQuery,
    GetInstrumentQuery,
    ListInstrumentsQuery,
    OptimizeAllocationCommand,
)
from papertrade.application.market.get_candles import GetCandlesUseCase
from papertrade.application.market.get_index import GetIndexUseCase
from papertrade.application.market.get_instrument import GetInstrumentUseCase
from papertrade.application.market.list_instruments import ListInstrumentsUseCase
from papertrade.application.market.manage_session import (
    CloseSessionUseCase,
    ResetMarketUseCase,
)
from papertrade.application.market.market_service import call_with_retry
from papertrade.application.market.optimization_worker import OptimizationWorker
from papertrade.application.market.optimize_allocation import OptimizeAllocationUseCase
from papertrade.domain.market.allocation import AllocationOptimizer
from papertrade.domain.market.candles import CandleHistoryBuilder
from papertrade.domain.market.entities import (
    AllocationCandidate,
    AllocationResult,
    Candle,
    InstrumentState,
    PricePoint,
)
from papertrade.domain.market.errors import (
    InvalidBudgetError,
    InvalidParameterError,
    OptimizationSupersededError,
    OptimizationTimeoutError,
    ServiceUnavailableError,
    UnknownSymbolError,
    UnknownTimeframeError,
)
from papertrade.domain.market.index_aggregator import MarketIndexAggregator
from papertrade.domain.market.ports import (
    MarketBroadcastPort,
    MarketStateRepository,
    ReturnScoringPort,
)
from papertrade.domain.market.price_simulator import PriceSimulator


@pytest.fixture
def worker():
    worker = OptimizationWorker(AllocationOptimizer(), max_workers=2, timeout_seconds=5.0)
    yield worker
    worker.shutdown()


@pytest.fixture
def builder(small_registry):
    return CandleHistoryBuilder(small_registry, PriceSimulator())


def _unavailable(collaborator="persistence"):
    return ServiceUnavailableError(collaborator, "connection refused")


# =====================================================================
# call_with_retry
# =====================================================================

class TestCallWithRetry:
    def test_returns_on_first_success(self):
        operation = MagicMock(return_value=3)
        assert call_with_retry(operation, "op") == 3
        assert operation.call_count == 1

    def test_retries_once(self):
        operation = MagicMock(side_effect=[_unavailable(), 7])
        assert call_with_retry(operation, "op") == 7
        assert operation.call_count == 2

    def test_second_failure_propagates(self):
        operation = MagicMock(side_effect=_unavailable())
        with pytest.raises(ServiceUnavailableError):
            call_with_retry(operation, "op")
        assert operation.call_count == 2

    def test_other_errors_are_not_retried(self):
        operation = MagicMock(side_effect=RuntimeError("boom"))
        with pytest.raises(RuntimeError):
            call_with_retry(operation, "op")
        assert operation.call_count == 1


# =====================================================================
# MarketSimulationService
# =====================================================================

class TestTickCycle:
    """One cycle advances everything, then publishes one snapshot."""

    def test_initial_snapshot_is_baseline(self, service, small_registry):
        snapshot = service.snapshot
        assert snapshot.cycle == 0
        assert snapshot.index.value == pytest.approx(1000.0)
        for instrument in small_registry:
            assert snapshot.states[instrument.symbol].current_price == instrument.base_price

    def test_cycle_advances_every_instrument(self, service):
        snapshot = service.run_cycle()
        assert snapshot.cycle == 1
        assert service.snapshot is snapshot
        assert all(len(s.history) == 1 for s in snapshot.states.values())
        assert {s.history[0].timestamp for s in snapshot.states.values()} == {snapshot.as_of}

    def test_index_matches_published_states(self, service, small_registry):
        aggregator = MarketIndexAggregator(small_registry)
        for _ in range(10):
            snapshot = service.run_cycle()
            expected = aggregator.recompute(snapshot.states.values())
            assert snapshot.index.value == pytest.approx(expected.value)

    def test_previous_snapshot_is_untouched(self, service):
        first = service.run_cycle()
        prices = {s: st.current_price for s, st in first.states.items()}
        service.run_cycle()
        assert {s: st.current_price for s, st in first.states.items()} == prices

    def test_same_seed_same_market(self, small_registry, make_service):
        first = make_service(small_registry, seed=9)
        second = make_service(small_registry, seed=9)
        for _ in range(20):
            a, b = first.run_cycle(), second.run_cycle()
        assert {s: st.current_price for s, st in a.states.items()} == {
            s: st.current_price for s, st in b.states.items()
        }

    def test_flat_market_stays_at_base_price(self, make_instrument, make_service):
        from papertrade.domain.market.registry import InstrumentRegistry

        registry = InstrumentRegistry(
            [make_instrument(annual_volatility=0.0, annual_drift=0.0)]
        )
        service = make_service(registry)
        for _ in range(1000):
            snapshot = service.run_cycle()
        assert snapshot.states["NABIL"].current_price == 850.0

    def test_readers_never_see_partial_cycles(self, service, small_registry):
        aggregator = MarketIndexAggregator(small_registry)
        seen = {}
        done = threading.Event()

        def reader():
            while not done.is_set():
                snapshot = service.snapshot
                seen[snapshot.cycle] = snapshot

        def writer():
            for _ in range(25):
                service.run_cycle()

        reader_thread = threading.Thread(target=reader)
        reader_thread.start()
        writers = [threading.Thread(target=writer) for _ in range(4)]
        for t in writers:
            t.start()
        for t in writers:
            t.join()
        done.set()
        reader_thread.join()

        assert service.snapshot.cycle == 100
        assert seen
        for snapshot in seen.values():
            lengths = {len(s.history) for s in snapshot.states.values()}
            assert lengths == {snapshot.cycle}
            assert snapshot.index.value == pytest.approx(
                aggregator.recompute(snapshot.states.values()).value
            )

    def test_status(self, service):
        service.run_cycle()
        status = service.status()
        assert status["cycle"] == 1
        assert status["instruments"] == 3
        assert status["degraded"] is False
        assert status["failures"] == {}

    def test_get_state(self, service):
        assert service.get_state("nabil").symbol == "NABIL"
        with pytest.raises(UnknownSymbolError):
            service.get_state("XYZ")


class TestSubscribers:
    def test_listener_receives_each_snapshot(self, service):
        received = []
        unsubscribe = service.subscribe(received.append)
        first = service.run_cycle()
        second = service.run_cycle()
        unsubscribe()
        service.run_cycle()
        assert received == [first, second]

    def test_failing_listener_does_not_stop_cycle(self, service):
        service.subscribe(MagicMock(side_effect=RuntimeError("listener bug")))
        received = []
        service.subscribe(received.append)
        snapshot = service.run_cycle()
        assert received == [snapshot]

    def test_snapshots_are_published_in_cycle_order(self, service):
        gate = threading.Event()
        entered = threading.Event()
        received = []

        def slow_listener(snapshot):
            if snapshot.cycle == 1:
                entered.set()
                gate.wait(timeout=5)
            received.append(snapshot.cycle)

        service.subscribe(slow_listener)
        first = threading.Thread(target=service.run_cycle)
        first.start()
        assert entered.wait(timeout=5)
        # Cycle 1 is being published and stuck in the listener.
        others = [threading.Thread(target=service.run_cycle) for _ in range(2)]
        for thread in others:
            thread.start()
        deadline = time.monotonic() + 5
        while service.snapshot.cycle < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
        time.sleep(0.05)
        gate.set()
        for thread in [first, *others]:
            thread.join(timeout=5)

        assert service.snapshot.cycle == 3
        assert received[0] == 1
        assert received[-1] == 3
        assert received == sorted(set(received))


class TestResetAndRestore:
    """Baseline reset, restore and session close."""

    def test_reset_restores_base_prices(self, service, small_registry):
        for _ in range(20):
            service.run_cycle()
        snapshot = service.reset_to_baseline()

        for instrument in small_registry:
            state = snapshot.states[instrument.symbol]
            assert state.current_price == instrument.base_price
            assert state.previous_close == instrument.base_price
            assert state.day_high == state.day_low == instrument.base_price
            assert state.change == 0.0
            assert len(state.history) == 5
        assert snapshot.index.value == pytest.approx(1000.0)

    def test_reset_is_idempotent(self, service):
        for _ in range(12):
            service.run_cycle()
        first = service.reset_to_baseline()
        second = service.reset_to_baseline()
        assert dict(first.states) == dict(second.states)
        assert second.index.value == first.index.value

    def test_reset_repairs_corrupted_state(self, service):
        corrupted = InstrumentState(
            symbol="NABIL",
            current_price=1e9,
            previous_close=0.01,
            open_price=3.0,
            day_high=1e12,
            day_low=0.01,
            change=1e9,
            change_percent=1e13,
            last_return=55.0,
            volume=10**12,
        )
        service.restore({"NABIL": corrupted})
        assert service.snapshot.states["NABIL"].current_price == 1e9

        state = service.reset_to_baseline().states["NABIL"]
        assert state.current_price == state.previous_close == 850.0
        assert state.day_high == state.day_low == state.open_price == 850.0
        assert state.volume == 0

    def test_reset_without_retained_history(self, small_registry, make_service):
        service = make_service(small_registry, retained_history=0)
        service.run_cycle()
        snapshot = service.reset_to_baseline()
        assert all(s.history == () for s in snapshot.states.values())

    def test_restore_ignores_unknown_symbols(self, service, make_instrument):
        stray = InstrumentState.baseline(make_instrument("XYZ"))
        snapshot = service.restore({"XYZ": stray})
        assert "XYZ" not in snapshot.states
        assert snapshot.cycle == 1

    def test_close_session(self, service):
        for _ in range(5):
            service.run_cycle()
        before = service.snapshot
        snapshot = service.close_session()
        assert snapshot.cycle == before.cycle + 1
        for symbol, state in snapshot.states.items():
            assert state.previous_close == before.states[symbol].current_price
            assert state.change == 0.0


class TestDegradedMode:
    """Collaborator failures are retried once, then the market degrades."""

    def test_persistence_failure_degrades_but_cycle_completes(self, small_registry, make_service):
        repository = MagicMock(spec=MarketStateRepository)
        repository.save_snapshot.side_effect = _unavailable()
        service = make_service(small_registry, repository=repository)

        snapshot = service.run_cycle()

        assert snapshot.cycle == 1
        assert service.snapshot is snapshot
        assert repository.save_snapshot.call_count == 2
        assert service.is_degraded
        assert service.status()["failures"] == {"persistence": "connection refused"}

        repository.save_snapshot.side_effect = None
        service.run_cycle()
        assert not service.is_degraded

    def test_transient_failure_is_absorbed(self, small_registry, make_service):
        repository = MagicMock(spec=MarketStateRepository)
        repository.save_snapshot.side_effect = [_unavailable(), None]
        service = make_service(small_registry, repository=repository)
        service.run_cycle()
        assert not service.is_degraded

    def test_broadcast_failure_degrades(self, small_registry, make_service):
        broadcaster = MagicMock(spec=MarketBroadcastPort)
        broadcaster.publish_snapshot.side_effect = _unavailable("broadcast")
        service = make_service(small_registry, broadcaster=broadcaster)

        snapshot = service.run_cycle()

        assert service.snapshot is snapshot
        assert broadcaster.publish_snapshot.call_count == 2
        assert "broadcast" in service.status()["failures"]

    def test_broadcast_receives_snapshot(self, small_registry, make_service):
        broadcaster = MagicMock(spec=MarketBroadcastPort)
        service = make_service(small_registry, broadcaster=broadcaster)
        snapshot = service.run_cycle()
        broadcaster.publish_snapshot.assert_called_once_with(snapshot)


class TestInitialize:
    def test_without_repository(self, service):
        assert service.initialize() is service.snapshot

    def test_restores_stored_states(self, small_registry, make_service):
        stored = InstrumentState(
            symbol="SCB",
            current_price=400.0,
            previous_close=380.0,
            open_price=381.0,
            day_high=401.0,
            day_low=379.0,
            change=20.0,
            change_percent=20.0 / 380.0 * 100,
            history=(PricePoint(datetime(2024, 1, 1, tzinfo=timezone.utc), 400.0, 100),),
        )
        repository = MagicMock(spec=MarketStateRepository)
        repository.load_states.return_value = {"SCB": stored}
        service = make_service(small_registry, repository=repository)

        snapshot = service.initialize()

        repository.ensure_schema.assert_called_once()
        repository.save_instruments.assert_called_once()
        repository.save_snapshot.assert_not_called()
        assert snapshot.states["SCB"] == stored
        assert snapshot.states["NABIL"].current_price == 850.0

    def test_empty_store_keeps_baseline(self, small_registry, make_service):
        repository = MagicMock(spec=MarketStateRepository)
        repository.load_states.return_value = {}
        service = make_service(small_registry, repository=repository)
        assert service.initialize().cycle == 0

    def test_unreachable_store_degrades(self, small_registry, make_service):
        repository = MagicMock(spec=MarketStateRepository)
        repository.ensure_schema.side_effect = _unavailable()
        service = make_service(small_registry, repository=repository)

        snapshot = service.initialize()

        assert snapshot.cycle == 0
        assert service.is_degraded
        repository.load_states.assert_not_called()


# =====================================================================
# OptimizationWorker
# =====================================================================

class _GatedOptimizer:
    """Spins on the checkpoint until released."""

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def optimize(self, budget, candidates, per_symbol_unit_cap=None, checkpoint=None):
        self.started.set()
        while not self.release.is_set():
            checkpoint()
            time.sleep(0.005)
        return AllocationResult.empty(budget, [c.symbol for c in candidates], None)


class TestOptimizationWorker:
    def test_run_returns_optimizer_result(self, worker):
        candidates = [AllocationCandidate("A", 10.0, 5.0)]
        result = worker.run("caller", 35, candidates)
        assert result.quantities["A"] == 3
        assert worker.in_flight == 0

    def test_optimizer_errors_propagate(self, worker):
        with pytest.raises(InvalidBudgetError):
            worker.run("caller", -1, [AllocationCandidate("A", 10.0, 5.0)])

    def test_newer_request_supersedes_older(self):
        optimizer = _GatedOptimizer()
        worker = OptimizationWorker(optimizer, max_workers=2, timeout_seconds=5.0)
        candidates = [AllocationCandidate("A", 10.0, 5.0)]
        try:
            first = worker.submit("session-1", 100, candidates)
            assert optimizer.started.wait(2)
            second = worker.submit("session-1", 200, candidates)

            with pytest.raises(OptimizationSupersededError):
                first.result(timeout=2)

            optimizer.release.set()
            assert second.result(timeout=2).budget == 200
        finally:
            optimizer.release.set()
            worker.shutdown()

    def test_different_callers_run_independently(self):
        optimizer = _GatedOptimizer()
        worker = OptimizationWorker(optimizer, max_workers=2, timeout_seconds=5.0)
        candidates = [AllocationCandidate("A", 10.0, 5.0)]
        try:
            first = worker.submit("session-1", 100, candidates)
            second = worker.submit("session-2", 200, candidates)
            assert worker.in_flight == 2
            optimizer.release.set()
            assert first.result(timeout=2).budget == 100
            assert second.result(timeout=2).budget == 200
        finally:
            optimizer.release.set()
            worker.shutdown()

    def test_deadline_aborts_computation(self):
        optimizer = _GatedOptimizer()
        worker = OptimizationWorker(optimizer, max_workers=1, timeout_seconds=0.1)
        try:
            with pytest.raises(OptimizationTimeoutError):
                worker.run("session-1", 100, [AllocationCandidate("A", 10.0, 5.0)])
            assert worker.in_flight == 0
        finally:
            optimizer.release.set()
            worker.shutdown()


# =====================================================================
# Query use cases
# =====================================================================

class TestQueryUseCases:
    def test_list_instruments(self, service):
        service.run_cycle()
        listing = ListInstrumentsUseCase(service).execute()
        assert [i.symbol for i in listing.instruments] == ["CHCL", "NABIL", "SCB"]
        nabil = listing.instruments[1]
        state = service.snapshot.states["NABIL"]
        assert nabil.current_price == state.current_price
        assert nabil.annual_volatility == 0.22
        assert nabil.day_low <= nabil.current_price <= nabil.day_high
        assert nabil.halted is False

    def test_get_instrument(self, service):
        for _ in range(10):
            service.run_cycle()
        use_case = GetInstrumentUseCase(service)

        detail = use_case.execute(GetInstrumentQuery("nabil", history_limit=3))
        assert detail.summary.symbol == "NABIL"
        assert len(detail.history) == 3
        assert detail.history[-1].price == detail.summary.current_price
        assert detail.beta == 1.1

        assert use_case.execute(GetInstrumentQuery("NABIL", history_limit=0)).history == []

    def test_get_instrument_errors(self, service):
        use_case = GetInstrumentUseCase(service)
        with pytest.raises(UnknownSymbolError):
            use_case.execute(GetInstrumentQuery("XYZ"))
        with pytest.raises(InvalidParameterError):
            use_case.execute(GetInstrumentQuery("NABIL", history_limit=-1))

    def test_get_index(self, service):
        snapshot = service.run_cycle()
        result = GetIndexUseCase(service).execute()
        assert result.value == snapshot.index.value
        assert result.cycle == 1
        assert [c.symbol for c in result.constituents] == ["CHCL", "NABIL", "SCB"]


def _moved(symbol: str, previous_close: float, change_percent: float) -> InstrumentState:
    price = round(previous_close * (1 + change_percent / 100), 2)
    return InstrumentState(
        symbol=symbol,
        current_price=price,
        previous_close=previous_close,
        open_price=previous_close,
        day_high=max(price, previous_close),
        day_low=min(price, previous_close),
        change=price - previous_close,
        change_percent=change_percent,
    )


class TestListInstrumentsUseCase:
    """Filtering, ordering and halt flags over one published snapshot."""

    @pytest.fixture
    def moved(self, service):
        service.restore(
            {
                "NABIL": _moved("NABIL", 850.0, 4.0),
                "SCB": _moved("SCB", 380.0, -12.5),
                "CHCL": _moved("CHCL", 380.0, 11.0),
            }
        )
        return service

    def test_sector_filter_is_case_insensitive(self, moved):
        listing = ListInstrumentsUseCase(moved).execute(
            ListInstrumentsQuery(sector="commercial")
        )
        assert [i.symbol for i in listing.instruments] == ["NABIL", "SCB"]

    def test_search_matches_symbol_name_or_sector(self, moved):
        use_case = ListInstrumentsUseCase(moved)
        by_symbol = use_case.execute(ListInstrumentsQuery(search="nab"))
        by_name = use_case.execute(ListInstrumentsQuery(search="SCB limited"))
        by_sector = use_case.execute(ListInstrumentsQuery(search="hydro"))
        missing = use_case.execute(ListInstrumentsQuery(search="zzz"))

        assert [i.symbol for i in by_symbol.instruments] == ["NABIL"]
        assert [i.symbol for i in by_name.instruments] == ["SCB"]
        assert [i.symbol for i in by_sector.instruments] == ["CHCL"]
        assert missing.instruments == []

    def test_top_gainers(self, moved):
        listing = ListInstrumentsUseCase(moved).execute(
            ListInstrumentsQuery(sort=SORT_GAINERS, limit=2)
        )
        assert [i.symbol for i in listing.instruments] == ["CHCL", "NABIL"]

    def test_top_losers(self, moved):
        listing = ListInstrumentsUseCase(moved).execute(
            ListInstrumentsQuery(sort=SORT_LOSERS, limit=1)
        )
        assert [i.symbol for i in listing.instruments] == ["SCB"]

    def test_filters_compose_before_limit(self, moved):
        listing = ListInstrumentsUseCase(moved).execute(
            ListInstrumentsQuery(sector="Commercial Banks", sort=SORT_GAINERS, limit=5)
        )
        assert [i.symbol for i in listing.instruments] == ["NABIL", "SCB"]

    def test_halted_beyond_change_limit(self, moved):
        listing = ListInstrumentsUseCase(moved, halt_change_percent=10.0).execute()
        halted = {i.symbol: i.halted for i in listing.instruments}
        assert halted == {"CHCL": True, "NABIL": False, "SCB": True}

    def test_no_limit_never_halts(self, moved):
        listing = ListInstrumentsUseCase(moved).execute()
        assert not any(i.halted for i in listing.instruments)

    def test_halt_flag_on_instrument_and_index(self, moved):
        detail = GetInstrumentUseCase(moved, halt_change_percent=10.0).execute(
            GetInstrumentQuery("SCB")
        )
        index = GetIndexUseCase(moved, halt_change_percent=10.0).execute()
        assert detail.summary.halted is True
        assert {c.symbol for c in index.constituents if c.halted} == {"CHCL", "SCB"}

    def test_cycle_matches_listed_prices(self, service):
        for _ in range(3):
            service.run_cycle()
        listing = ListInstrumentsUseCase(service).execute()
        assert listing.cycle == service.snapshot.cycle == 3
        assert listing.as_of == service.snapshot.as_of

    def test_invalid_query(self, service):
        use_case = ListInstrumentsUseCase(service)
        with pytest.raises(InvalidParameterError):
            use_case.execute(ListInstrumentsQuery(sort="volume"))
        with pytest.raises(InvalidParameterError):
            use_case.execute(ListInstrumentsQuery(limit=-1))


class TestGetCandlesUseCase:
    def test_simulated_series_is_stable(self, service, builder):
        use_case = GetCandlesUseCase(service, builder, history_seed=7)
        first = use_case.execute(GetCandlesQuery("NABIL", "1D"))
        service.run_cycle()
        second = use_case.execute(GetCandlesQuery("nabil", "1d"))

        assert len(first.candles) == 78
        assert first.candles[0].open == 850.0
        assert first.candles == second.candles
        assert first.candles[-1].time == datetime(2024, 1, 2, tzinfo=timezone.utc)
        assert second.timeframe == "1D"

    def test_replay_uses_live_samples(self, service, builder):
        for _ in range(10):
            service.run_cycle()
        use_case = GetCandlesUseCase(service, builder, history_seed=7)
        result = use_case.execute(GetCandlesQuery("SCB", "1D", source="replay"))
        assert result.source == "replay"
        assert result.candles
        assert result.candles[-1].close == service.snapshot.states["SCB"].current_price

    def test_stored_requires_repository(self, service, builder):
        use_case = GetCandlesUseCase(service, builder, history_seed=7)
        with pytest.raises(ServiceUnavailableError):
            use_case.execute(GetCandlesQuery("SCB", "1D", source="stored"))

    def test_stored_series(self, service, builder):
        candles = [
            Candle(datetime(2024, 1, day, tzinfo=timezone.utc), 1.0, 2.0, 0.5, 1.5, 10)
            for day in range(1, 6)
        ]
        repository = MagicMock(spec=MarketStateRepository)
        repository.get_candles.return_value = candles
        use_case = GetCandlesUseCase(service, builder, history_seed=7, repository=repository)

        result = use_case.execute(GetCandlesQuery("SCB", "1D", source="stored", point_count=2))

        repository.get_candles.assert_called_once_with("SCB", "1D")
        assert result.candles == candles[-2:]

    def test_invalid_requests(self, service, builder):
        use_case = GetCandlesUseCase(service, builder, history_seed=7)
        with pytest.raises(UnknownTimeframeError):
            use_case.execute(GetCandlesQuery("SCB", "4H"))
        with pytest.raises(InvalidParameterError):
            use_case.execute(GetCandlesQuery("SCB", "1D", source="live"))
        with pytest.raises(UnknownSymbolError):
            use_case.execute(GetCandlesQuery("XYZ", "1D"))


# =====================================================================
# Allocation use case
# =====================================================================

class TestOptimizeAllocationUseCase:
    @pytest.fixture
    def scoring(self):
        scores = {"NABIL": 5.0, "SCB": 3.0, "CHCL": -1.0}
        scoring = MagicMock(spec=ReturnScoringPort)
        scoring.score.side_effect = lambda symbol, window: scores[symbol]
        return scoring

    def test_explicit_candidates(self, service, worker, scoring):
        use_case = OptimizeAllocationUseCase(service, worker, scoring)
        outcome = use_case.execute(
            OptimizeAllocationCommand(
                caller_id="s1",
                budget=100_000,
                candidates=[
                    CandidateInput("nabil", 850.0, 5.0),
                    CandidateInput("SCB", 380.0, 3.0),
                ],
            )
        )
        best = max(
            5 * a + 3 * ((100_000 - 850 * a) // 380) for a in range(100_000 // 850 + 1)
        )
        assert outcome.achieved_score == pytest.approx(best)
        assert outcome.total_cost <= 100_000
        assert outcome.remaining_cash == pytest.approx(100_000 - outcome.total_cost)
        assert [line.symbol for line in outcome.lines] == sorted(l.symbol for l in outcome.lines)
        assert set(outcome.quantities) == {"NABIL", "SCB"}
        scoring.score.assert_not_called()

    def test_universe_with_per_symbol_limit(self, service, worker, scoring):
        for _ in range(40):
            service.run_cycle()
        use_case = OptimizeAllocationUseCase(
            service, worker, scoring, per_symbol_budget_limit=2000, scoring_window=30
        )
        outcome = use_case.execute(OptimizeAllocationCommand("s1", budget=100_000))

        states = service.snapshot.states
        assert outcome.quantities["NABIL"] == int(2000 // states["NABIL"].current_price)
        assert outcome.quantities["SCB"] == int(2000 // states["SCB"].current_price)
        assert outcome.quantities["CHCL"] == 0
        for call in scoring.score.call_args_list:
            assert len(call.args[1]) == 30

    def test_universe_at_live_prices(self, service, worker, scoring):
        for _ in range(20):
            service.run_cycle()
        use_case = OptimizeAllocationUseCase(service, worker, scoring)
        outcome = use_case.execute(OptimizeAllocationCommand("s1", budget=5000))

        states = service.snapshot.states
        nabil, scb = states["NABIL"].current_price, states["SCB"].current_price
        best = max(
            5 * a + 3 * int((5000 - nabil * a + 1e-9) // scb)
            for a in range(int(5000 // nabil) + 1)
        )
        assert outcome.achieved_score == pytest.approx(best)
        assert outcome.total_cost <= 5000 + 1e-9
        assert outcome.infeasible_reason is None

    def test_default_unit_cap(self, service, worker, scoring):
        use_case = OptimizeAllocationUseCase(service, worker, scoring, default_unit_cap=1)
        outcome = use_case.execute(OptimizeAllocationCommand("s1", budget=100_000))
        assert outcome.quantities == {"CHCL": 0, "NABIL": 1, "SCB": 1}

    def test_budget_below_prices(self, service, worker, scoring):
        use_case = OptimizeAllocationUseCase(service, worker, scoring)
        outcome = use_case.execute(
            OptimizeAllocationCommand("s1", 100, [CandidateInput("SCB", 380.0, 3.0)])
        )
        assert outcome.lines == []
        assert outcome.total_cost == 0
        assert outcome.budget_utilization == 0
        assert outcome.infeasible_reason == "budget"

    @pytest.mark.parametrize("budget", [-5.0, float("nan")])
    def test_invalid_budget(self, service, worker, scoring, budget):
        use_case = OptimizeAllocationUseCase(service, worker, scoring)
        with pytest.raises(InvalidBudgetError):
            use_case.execute(OptimizeAllocationCommand("s1", budget))

    def test_result_is_broadcast_to_caller(self, service, worker, scoring):
        broadcaster = MagicMock(spec=MarketBroadcastPort)
        use_case = OptimizeAllocationUseCase(service, worker, scoring, broadcaster=broadcaster)
        use_case.execute(OptimizeAllocationCommand("s1", budget=5000))
        broadcaster.publish_allocation.assert_called_once()
        assert broadcaster.publish_allocation.call_args.args[0] == "s1"

    def test_broadcast_failure_does_not_fail_request(self, service, worker, scoring):
        broadcaster = MagicMock(spec=MarketBroadcastPort)
        broadcaster.publish_allocation.side_effect = _unavailable("broadcast")
        use_case = OptimizeAllocationUseCase(service, worker, scoring, broadcaster=broadcaster)
        outcome = use_case.execute(OptimizeAllocationCommand("s1", budget=5000))
        assert outcome.total_cost <= 5000
        assert broadcaster.publish_allocation.call_count == 2


# =====================================================================
# Session use cases
# =====================================================================

class TestSessionUseCases:
    def test_reset(self, service):
        service.run_cycle()
        result = ResetMarketUseCase(service).execute()
        assert result.action == "reset"
        assert result.cycle == 2
        assert result.index_value == pytest.approx(1000.0)

    def test_close_session_without_repository(self, service, builder):
        service.run_cycle()
        result = CloseSessionUseCase(service, builder).execute()
        assert result.action == "session_close"
        assert result.archived_symbols == []

    def test_close_session_archives_candles(self, service, builder):
        for _ in range(5):
            service.run_cycle()
        repository = MagicMock(spec=MarketStateRepository)
        result = CloseSessionUseCase(service, builder, repository).execute()

        assert result.archived_symbols == ["CHCL", "NABIL", "SCB"]
        assert repository.save_candles.call_count == 3
        for call in repository.save_candles.call_args_list:
            symbol, timeframe, candles = call.args
            assert timeframe == "1D"
            assert candles
        states = service.snapshot.states
        assert all(s.previous_close == s.current_price for s in states.values())

    def test_archive_failure_still_closes_session(self, service, builder):
        service.run_cycle()
        repository = MagicMock(spec=MarketStateRepository)
        repository.save_candles.side_effect = _unavailable()
        result = CloseSessionUseCase(service, builder, repository).execute()
        assert result.archived_symbols == []
        assert result.cycle == 2
