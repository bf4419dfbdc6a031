"""
FastAPI router for the market bounded context.

All routes delegate to use cases. No business logic here.
Input validation is handled by Pydantic schemas.
Error mapping is handled by centralized error handlers.
"""

from dataclasses import asdict
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request

from papertrade.application.market.dtos import (
    CandidateInput,
    GetCandlesQuery,
    GetInstrumentQuery,
    InstrumentSummary,
    ListInstrumentsQuery,
    MarketCycleResult,
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
from papertrade.application.market.optimize_allocation import OptimizeAllocationUseCase
from papertrade.core.config import settings
from papertrade.interfaces.market.dependencies import (
    get_caller_id,
    get_candles_use_case,
    get_close_session_use_case,
    get_index_use_case,
    get_instrument_use_case,
    get_list_instruments_use_case,
    get_optimize_allocation_use_case,
    get_reset_market_use_case,
)
from papertrade.interfaces.market.schemas import (
    AllocationLineItem,
    AllocationRequest,
    AllocationResponse,
    CandleItem,
    CandleSeriesResponse,
    CandleSource,
    ErrorResponse,
    IndexResponse,
    InstrumentDetailResponse,
    InstrumentItem,
    InstrumentListResponse,
    InstrumentSort,
    MarketActionResponse,
    PricePointItem,
)
from papertrade.shared.security.rate_limiting import limiter

router = APIRouter(prefix="/market", tags=["market"])


def _instrument_item(summary: InstrumentSummary) -> InstrumentItem:
    return InstrumentItem(**asdict(summary))


def _action_response(result: MarketCycleResult) -> MarketActionResponse:
    return MarketActionResponse(
        action=result.action,
        cycle=result.cycle,
        as_of=result.as_of,
        index_value=result.index_value,
        archived_symbols=result.archived_symbols,
    )


@router.get(
    "/instruments",
    response_model=InstrumentListResponse,
    responses={422: {"model": ErrorResponse}},
    summary="List instruments",
    description=(
        "Tradable instruments with their latest simulated state. Filter by sector "
        "or a search term over symbol, name and sector; sort by top gainers or losers."
    ),
)
def list_instruments(
    sector: Annotated[Optional[str], Query(min_length=1, max_length=64)] = None,
    q: Annotated[Optional[str], Query(min_length=1, max_length=64)] = None,
    sort: InstrumentSort = "symbol",
    limit: Annotated[Optional[int], Query(ge=1, le=500)] = None,
    use_case: ListInstrumentsUseCase = Depends(get_list_instruments_use_case),
) -> InstrumentListResponse:
    listing = use_case.execute(
        ListInstrumentsQuery(sector=sector, search=q, sort=sort, limit=limit)
    )
    return InstrumentListResponse(
        cycle=listing.cycle,
        as_of=listing.as_of,
        instruments=[_instrument_item(s) for s in listing.instruments],
    )


@router.get(
    "/instruments/{symbol}",
    response_model=InstrumentDetailResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get instrument",
    description="One instrument with its recent price samples.",
)
def get_instrument(
    symbol: str,
    history_limit: Annotated[int, Query(ge=0, le=500)] = 50,
    use_case: GetInstrumentUseCase = Depends(get_instrument_use_case),
) -> InstrumentDetailResponse:
    detail = use_case.execute(GetInstrumentQuery(symbol=symbol, history_limit=history_limit))
    return InstrumentDetailResponse(
        instrument=_instrument_item(detail.summary),
        open_price=detail.open_price,
        last_return=detail.last_return,
        annual_drift=detail.annual_drift,
        beta=detail.beta,
        history=[PricePointItem(**asdict(p)) for p in detail.history],
    )


@router.get(
    "/instruments/{symbol}/candles",
    response_model=CandleSeriesResponse,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    summary="Get candles",
    description="OHLCV candles for one of the 1D, 1W, 1M, 3M or 1Y timeframes.",
)
def get_candles(
    symbol: str,
    timeframe: Annotated[str, Query(max_length=4)] = "1D",
    source: CandleSource = "simulated",
    point_count: Annotated[Optional[int], Query(ge=1, le=1000)] = None,
    use_case: GetCandlesUseCase = Depends(get_candles_use_case),
) -> CandleSeriesResponse:
    result = use_case.execute(
        GetCandlesQuery(
            symbol=symbol,
            timeframe=timeframe,
            source=source,
            point_count=point_count,
        )
    )
    return CandleSeriesResponse(
        symbol=result.symbol,
        timeframe=result.timeframe,
        source=result.source,
        candles=[CandleItem(**asdict(c)) for c in result.candles],
    )


@router.get(
    "/index",
    response_model=IndexResponse,
    summary="Get market index",
    description="Composite index of the latest tick cycle.",
)
def get_index(
    use_case: GetIndexUseCase = Depends(get_index_use_case),
) -> IndexResponse:
    result = use_case.execute()
    return IndexResponse(
        value=result.value,
        change_percent=result.change_percent,
        last_return=result.last_return,
        cycle=result.cycle,
        as_of=result.as_of,
        constituents=[_instrument_item(s) for s in result.constituents],
    )


@router.post(
    "/allocations",
    response_model=AllocationResponse,
    responses={
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
    summary="Optimize allocation",
    description=(
        "Integer share quantities maximizing the total return score within "
        "the budget. A newer request from the same session supersedes an "
        "in-flight one."
    ),
)
@limiter.limit(settings.rate_limit_heavy)
def optimize_allocation(
    request: Request,
    body: AllocationRequest,
    caller_id: str = Depends(get_caller_id),
    use_case: OptimizeAllocationUseCase = Depends(get_optimize_allocation_use_case),
) -> AllocationResponse:
    candidates = None
    if body.candidates is not None:
        candidates = [
            CandidateInput(
                symbol=c.symbol,
                unit_price=c.unit_price,
                return_score=c.return_score,
                max_units=c.max_units,
            )
            for c in body.candidates
        ]
    outcome = use_case.execute(
        OptimizeAllocationCommand(
            caller_id=caller_id,
            budget=body.budget,
            candidates=candidates,
            per_symbol_unit_cap=body.per_symbol_unit_cap,
        )
    )
    return AllocationResponse(
        quantities=outcome.quantities,
        lines=[AllocationLineItem(**asdict(line)) for line in outcome.lines],
        total_cost=outcome.total_cost,
        achieved_score=outcome.achieved_score,
        budget=outcome.budget,
        budget_utilization=outcome.budget_utilization,
        remaining_cash=outcome.remaining_cash,
        infeasible_reason=outcome.infeasible_reason,
        computed_at=outcome.computed_at,
    )


@router.post(
    "/admin/reset",
    response_model=MarketActionResponse,
    summary="Reset market",
    description="Restore every instrument to its base price in one atomic update.",
)
def reset_market(
    use_case: ResetMarketUseCase = Depends(get_reset_market_use_case),
) -> MarketActionResponse:
    return _action_response(use_case.execute())


@router.post(
    "/admin/session-close",
    response_model=MarketActionResponse,
    summary="Close trading session",
    description="Archive intraday candles and start a new session at current prices.",
)
def close_session(
    use_case: CloseSessionUseCase = Depends(get_close_session_use_case),
) -> MarketActionResponse:
    return _action_response(use_case.execute())
