"""
Dependency injection for the market bounded context.

``build_market_components`` is the composition root: it wires domain
services, infrastructure adapters and real-time components once per
application. FastAPI dependency functions then build use cases from the
components stored on ``app.state``.
"""

import logging
from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, Header, Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from papertrade.application.market.get_candles import GetCandlesUseCase
from papertrade.application.market.get_index import GetIndexUseCase
from papertrade.application.market.get_instrument import GetInstrumentUseCase
from papertrade.application.market.list_instruments import ListInstrumentsUseCase
from papertrade.application.market.manage_session import (
    CloseSessionUseCase,
    ResetMarketUseCase,
)
from papertrade.application.market.market_service import MarketSimulationService
from papertrade.application.market.optimization_worker import OptimizationWorker
from papertrade.application.market.optimize_allocation import OptimizeAllocationUseCase
from papertrade.core.config import Settings
from papertrade.domain.market.allocation import AllocationOptimizer
from papertrade.domain.market.candles import CandleHistoryBuilder
from papertrade.domain.market.index_aggregator import MarketIndexAggregator
from papertrade.domain.market.ports import MarketStateRepository, ReturnScoringPort
from papertrade.domain.market.price_simulator import PriceSimulator, step_length_years
from papertrade.domain.market.registry import InstrumentRegistry
from papertrade.infrastructure.market.momentum_scoring_adapter import MomentumScoringAdapter
from papertrade.infrastructure.market.sql_market_repository import SqlMarketStateRepository
from papertrade.realtime.scheduler import MarketScheduler
from papertrade.realtime.stream import MarketStreamManager
from papertrade.shared.security.rate_limiting import SESSION_HEADER

logger = logging.getLogger(__name__)


@dataclass
class MarketComponents:
    """Long-lived collaborators shared by every request."""

    settings: Settings
    market: MarketSimulationService
    builder: CandleHistoryBuilder
    worker: OptimizationWorker
    scoring: ReturnScoringPort
    stream: MarketStreamManager
    scheduler: MarketScheduler
    close_session: CloseSessionUseCase
    reset_market: ResetMarketUseCase
    repository: Optional[MarketStateRepository] = None

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.worker.shutdown()


def _build_engine(database_url: str) -> Engine:
    """Build a SQLAlchemy engine from the configured URL."""
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        # One shared connection, otherwise every checkout sees an empty database.
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True)


def build_market_components(
    settings: Settings,
    registry: Optional[InstrumentRegistry] = None,
    repository: Optional[MarketStateRepository] = None,
    scoring: Optional[ReturnScoringPort] = None,
    broadcast: bool = True,
) -> MarketComponents:
    """Wire the market context from settings.

    Args:
        settings: Application settings.
        registry: Instrument catalog. Defaults to the built-in catalog.
        repository: Persistence adapter. Built from ``database_url`` when
            omitted; persistence is off when neither is given.
        scoring: Return scoring provider. Defaults to momentum scoring.
        broadcast: Forward snapshots to the stream manager. Offline
            callers without an event loop turn this off.
    """
    registry = registry or InstrumentRegistry.default()
    if repository is None and settings.database_url:
        repository = SqlMarketStateRepository(
            _build_engine(settings.database_url),
            history_capacity=settings.history_capacity,
        )

    simulator = PriceSimulator(
        price_floor=settings.price_floor,
        history_capacity=settings.history_capacity,
        tick_volume_range=(settings.tick_volume_min, settings.tick_volume_max),
        candle_volume_range=(settings.candle_volume_min, settings.candle_volume_max),
        wick_factor=settings.wick_factor,
        max_wick_sigma=settings.max_wick_sigma,
        price_decimals=settings.price_decimals,
    )
    aggregator = MarketIndexAggregator(
        registry,
        weighting=settings.index_weighting,
        base_level=settings.index_base_level,
        coupling=settings.index_coupling,
        max_index_return=settings.max_index_return,
    )
    stream = MarketStreamManager()
    market = MarketSimulationService(
        registry,
        simulator,
        aggregator,
        dt=step_length_years(
            settings.tick_interval_seconds,
            settings.trading_days_per_year,
            settings.trading_seconds_per_day,
        ),
        seed=settings.simulation_seed,
        retained_history=settings.retained_history,
        repository=repository,
        broadcaster=stream if broadcast else None,
    )
    builder = CandleHistoryBuilder(registry, simulator)
    worker = OptimizationWorker(
        AllocationOptimizer(
            granularity=settings.optimizer_granularity,
            max_budget_steps=settings.optimizer_max_budget_steps,
        ),
        max_workers=settings.optimizer_workers,
        timeout_seconds=settings.optimizer_timeout_seconds,
    )
    close_session = CloseSessionUseCase(market, builder, repository)
    reset_market = ResetMarketUseCase(market)
    scheduler = MarketScheduler(
        market,
        close_session,
        reset_market,
        tick_interval_seconds=settings.tick_interval_seconds,
        timezone_name=settings.market_timezone,
        session_close_hour=settings.session_close_hour,
        session_close_minute=settings.session_close_minute,
        stream_manager=stream,
    )

    logger.info(
        "Market wired: %d instruments, persistence=%s",
        len(registry),
        "on" if repository is not None else "off",
    )
    return MarketComponents(
        settings=settings,
        market=market,
        builder=builder,
        worker=worker,
        scoring=scoring or MomentumScoringAdapter(),
        stream=stream,
        scheduler=scheduler,
        close_session=close_session,
        reset_market=reset_market,
        repository=repository,
    )


def get_components(request: Request) -> MarketComponents:
    components = getattr(request.app.state, "market", None)
    if components is None:
        raise RuntimeError(
            "Market components not initialized. "
            "Ensure the app lifespan has started."
        )
    return components


Components = Annotated[MarketComponents, Depends(get_components)]


def get_caller_id(
    request: Request,
    x_session_id: Annotated[Optional[str], Header(alias=SESSION_HEADER)] = None,
) -> str:
    """Caller identity for allocation supersession."""
    if x_session_id and x_session_id.strip():
        return x_session_id.strip()
    return request.client.host if request.client else "anonymous"


def get_list_instruments_use_case(components: Components) -> ListInstrumentsUseCase:
    return ListInstrumentsUseCase(
        components.market,
        halt_change_percent=components.settings.max_price_change_percent,
    )


def get_instrument_use_case(components: Components) -> GetInstrumentUseCase:
    return GetInstrumentUseCase(
        components.market,
        halt_change_percent=components.settings.max_price_change_percent,
    )


def get_candles_use_case(components: Components) -> GetCandlesUseCase:
    return GetCandlesUseCase(
        components.market,
        components.builder,
        history_seed=components.settings.history_seed,
        repository=components.repository,
    )


def get_index_use_case(components: Components) -> GetIndexUseCase:
    return GetIndexUseCase(
        components.market,
        halt_change_percent=components.settings.max_price_change_percent,
    )


def get_optimize_allocation_use_case(components: Components) -> OptimizeAllocationUseCase:
    settings = components.settings
    return OptimizeAllocationUseCase(
        components.market,
        components.worker,
        components.scoring,
        broadcaster=components.stream,
        per_symbol_budget_limit=settings.per_symbol_budget_limit,
        default_unit_cap=settings.default_unit_cap,
        scoring_window=settings.scoring_window,
    )


def get_reset_market_use_case(components: Components) -> ResetMarketUseCase:
    return components.reset_market


def get_close_session_use_case(components: Components) -> CloseSessionUseCase:
    return components.close_session
