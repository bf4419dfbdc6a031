"""
Pydantic schemas for market API request/response validation.

These schemas enforce input validation and define the API contract.
No business logic belongs here.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

SYMBOL_DESCRIPTION = "Instrument ticker symbol"
SYMBOL_PATTERN = r"^[A-Za-z0-9]+$"
SYMBOL_MIN_LEN = 1
SYMBOL_MAX_LEN = 16
MAX_CANDIDATES = 200


class InstrumentItem(BaseModel):
    """One instrument with its live state."""

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


class InstrumentListResponse(BaseModel):
    cycle: int
    as_of: datetime
    instruments: list[InstrumentItem]


class PricePointItem(BaseModel):
    timestamp: datetime
    price: float
    volume: int


class InstrumentDetailResponse(BaseModel):
    """Response schema for a single instrument."""

    instrument: InstrumentItem
    open_price: float
    last_return: float
    annual_drift: float
    beta: float
    history: list[PricePointItem]


class CandleItem(BaseModel):
    """A single OHLCV bar."""

    time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int


class CandleSeriesResponse(BaseModel):
    symbol: str
    timeframe: str
    source: str
    candles: list[CandleItem]


class IndexResponse(BaseModel):
    """Response schema for the composite market index."""

    value: float
    change_percent: float
    last_return: float
    cycle: int
    as_of: datetime
    constituents: list[InstrumentItem]


class CandidateItem(BaseModel):
    """Caller-supplied allocation candidate.

    Attributes:
        symbol: Ticker symbol (any, not necessarily registered).
        unit_price: Price of one unit (> 0).
        return_score: Predicted return score. <= 0 means never bought.
        max_units: Optional cap on units of this candidate.
    """

    symbol: str = Field(
        ...,
        min_length=SYMBOL_MIN_LEN,
        max_length=SYMBOL_MAX_LEN,
        pattern=SYMBOL_PATTERN,
        description=SYMBOL_DESCRIPTION,
    )
    unit_price: float = Field(..., gt=0, allow_inf_nan=False)
    return_score: float = Field(..., allow_inf_nan=False)
    max_units: int | None = Field(default=None, ge=0)


class AllocationRequest(BaseModel):
    """Request schema for the allocation endpoint.

    Attributes:
        budget: Cash to allocate (> 0).
        candidates: Optional explicit candidates. Defaults to the whole
            universe at current prices.
        per_symbol_unit_cap: Optional cap on units per symbol.
    """

    budget: float = Field(..., gt=0, allow_inf_nan=False, description="Cash to allocate")
    candidates: list[CandidateItem] | None = Field(default=None, max_length=MAX_CANDIDATES)
    per_symbol_unit_cap: int | None = Field(default=None, ge=0)


class AllocationLineItem(BaseModel):
    symbol: str
    quantity: int
    unit_price: float
    return_score: float
    cost: float


class AllocationResponse(BaseModel):
    """Response schema for the allocation endpoint."""

    quantities: dict[str, int]
    lines: list[AllocationLineItem]
    total_cost: float
    achieved_score: float
    budget: float
    budget_utilization: float
    remaining_cash: float
    infeasible_reason: str | None
    computed_at: datetime


class MarketActionResponse(BaseModel):
    """Response schema for reset and session-close."""

    action: str
    cycle: int
    as_of: datetime
    index_value: float
    archived_symbols: list[str] = []


CandleSource = Literal["simulated", "replay", "stored"]
InstrumentSort = Literal["symbol", "gainers", "losers"]


class HealthResponse(BaseModel):
    """Response schema for the health check endpoint."""

    status: str
    version: str
    cycle: int
    degraded: bool
    failures: dict[str, str] = {}


class ErrorResponse(BaseModel):
    """Standard error response returned by all error handlers."""

    error: str
    detail: str | None = None
