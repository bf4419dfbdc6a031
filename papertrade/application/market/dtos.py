"""
Data Transfer Objects for the market application layer.

DTOs carry data between the interface and application layers.
They are plain dataclasses with no behavior.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from papertrade.domain.market.entities import Candle

SOURCE_SIMULATED = "simulated"
SOURCE_REPLAY = "replay"
SOURCE_STORED = "stored"
CANDLE_SOURCES = (SOURCE_SIMULATED, SOURCE_REPLAY, SOURCE_STORED)

SORT_SYMBOL = "symbol"
SORT_GAINERS = "gainers"
SORT_LOSERS = "losers"
SORT_ORDERS = (SORT_SYMBOL, SORT_GAINERS, SORT_LOSERS)


@dataclass(frozen=True)
class InstrumentSummary:
    """Output DTO for one instrument in the listing.

    Attributes:
        symbol: Ticker symbol.
        name: Display name.
        sector: Sector the instrument belongs to.
        current_price: Latest simulated price.
        previous_close: Close of the prior session.
        change: current_price - previous_close.
        change_percent: Percentage change against previous_close.
        day_high: Session high.
        day_low: Session low.
        volume: Shares traded in the current session.
        annual_volatility: Simulation volatility parameter.
        halted: The session move exceeds the circuit-breaker limit.
    """

    symbol: str
    name: str
    sector: str
    current_price: float
    previous_close: float
    change: float
    change_percent: float
    day_high: float
    day_low: float
    volume: int
    annual_volatility: float
    halted: bool = False


@dataclass(frozen=True)
class ListInstrumentsQuery:
    """Input DTO for the instrument listing.

    Attributes:
        sector: Keep instruments whose sector contains this text.
        search: Keep instruments whose symbol, name or sector contains this text.
        sort: "symbol" (catalog order), "gainers" or "losers" by change_percent.
        limit: Maximum number of instruments returned.
    """

    sector: Optional[str] = None
    search: Optional[str] = None
    sort: str = SORT_SYMBOL
    limit: Optional[int] = None


@dataclass(frozen=True)
class InstrumentListing:
    """Output DTO for the listing, labelled with the snapshot it was read from."""

    cycle: int
    as_of: datetime
    instruments: list[InstrumentSummary]


@dataclass(frozen=True)
class PricePointResult:
    timestamp: datetime
    price: float
    volume: int


@dataclass(frozen=True)
class InstrumentDetail:
    """Output DTO for a single instrument with its recent samples."""

    summary: InstrumentSummary
    open_price: float
    last_return: float
    annual_drift: float
    beta: float
    history: list[PricePointResult] = field(default_factory=list)


@dataclass(frozen=True)
class GetInstrumentQuery:
    symbol: str
    history_limit: int = 50


@dataclass(frozen=True)
class GetCandlesQuery:
    """Input DTO for a candle series.

    Attributes:
        symbol: Registered ticker symbol.
        timeframe: One of 1D, 1W, 1M, 3M, 1Y.
        source: "simulated" backfill, "replay" of live samples,
            or "stored" series from persistence.
        point_count: Optional override of the timeframe's candle count.
    """

    symbol: str
    timeframe: str
    source: str = SOURCE_SIMULATED
    point_count: Optional[int] = None


@dataclass(frozen=True)
class CandleSeriesResult:
    symbol: str
    timeframe: str
    source: str
    candles: list[Candle]


@dataclass(frozen=True)
class IndexResult:
    """Output DTO for the composite market index.

    Attributes:
        value: Index level.
        change_percent: Weighted percentage change of constituents.
        last_return: Weighted return of the latest cycle.
        cycle: Tick cycle the value belongs to.
        as_of: Time of that cycle.
        constituents: Constituent summaries ordered by symbol.
    """

    value: float
    change_percent: float
    last_return: float
    cycle: int
    as_of: datetime
    constituents: list[InstrumentSummary]


@dataclass(frozen=True)
class CandidateInput:
    """Caller-supplied candidate for an allocation request."""

    symbol: str
    unit_price: float
    return_score: float
    max_units: Optional[int] = None


@dataclass(frozen=True)
class OptimizeAllocationCommand:
    """Input DTO for an allocation request.

    Attributes:
        caller_id: Identifies the requester. A newer request from the
            same caller supersedes the older one.
        budget: Cash to allocate.
        candidates: Explicit candidates. When omitted the whole universe
            is offered at current prices with provider scores.
        per_symbol_unit_cap: Optional cap on units per symbol.
    """

    caller_id: str
    budget: float
    candidates: Optional[list[CandidateInput]] = None
    per_symbol_unit_cap: Optional[int] = None


@dataclass(frozen=True)
class AllocationLine:
    symbol: str
    quantity: int
    unit_price: float
    return_score: float
    cost: float


@dataclass(frozen=True)
class AllocationOutcome:
    """Output DTO for an allocation request."""

    quantities: dict[str, int]
    lines: list[AllocationLine]
    total_cost: float
    achieved_score: float
    budget: float
    budget_utilization: float
    remaining_cash: float
    infeasible_reason: Optional[str]
    computed_at: datetime


@dataclass(frozen=True)
class MarketCycleResult:
    """Output DTO for reset and session-close operations."""

    action: str
    cycle: int
    as_of: datetime
    index_value: float
    archived_symbols: list[str] = field(default_factory=list)
