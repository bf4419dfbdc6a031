"""
Port interfaces (ABCs) for the market bounded context.

Ports define the contracts that the market core requires from the outside
world: persistence, broadcast and return scoring. Infrastructure adapters
implement these interfaces. The domain layer never depends on concrete
implementations.

Adapters translate their own transport failures into
``ServiceUnavailableError`` so the core can apply one retry policy.
"""

from abc import ABC, abstractmethod
from typing import Sequence

from papertrade.domain.market.entities import (
    AllocationResult,
    Candle,
    Instrument,
    InstrumentState,
    MarketSnapshot,
    PricePoint,
)


class MarketStateRepository(ABC):
    """Port for durably storing instruments, live state and candles.

    Writes belonging to one tick cycle must become visible as a unit.
    """

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create the backing tables if they do not exist yet."""
        raise NotImplementedError

    @abstractmethod
    def save_instruments(self, instruments: Sequence[Instrument]) -> None:
        """Upsert the instrument catalog."""
        raise NotImplementedError

    @abstractmethod
    def save_snapshot(self, snapshot: MarketSnapshot) -> None:
        """Persist every state of one snapshot plus its newest price points."""
        raise NotImplementedError

    @abstractmethod
    def load_states(self) -> dict[str, InstrumentState]:
        """Return the last persisted state per symbol (empty when none)."""
        raise NotImplementedError

    @abstractmethod
    def save_candles(self, symbol: str, timeframe: str, candles: Sequence[Candle]) -> None:
        """Replace the stored candle series for (symbol, timeframe)."""
        raise NotImplementedError

    @abstractmethod
    def get_candles(self, symbol: str, timeframe: str) -> list[Candle]:
        """Return the stored candle series ordered by time (empty when none)."""
        raise NotImplementedError


class MarketBroadcastPort(ABC):
    """Port for forwarding results to interested consumers.

    Delivery guarantees belong to the adapter, not to the market core.
    """

    @abstractmethod
    def publish_snapshot(self, snapshot: MarketSnapshot) -> None:
        """Forward a completed tick-cycle snapshot."""
        raise NotImplementedError

    @abstractmethod
    def publish_allocation(self, caller_id: str, result: AllocationResult) -> None:
        """Forward an allocation result to the caller's consumers."""
        raise NotImplementedError


class ReturnScoringPort(ABC):
    """Port for the predicted-return score consumed by the optimizer."""

    @abstractmethod
    def score(self, symbol: str, recent_history: Sequence[PricePoint]) -> float:
        """Return a real-valued score; <= 0 means "do not buy"."""
        raise NotImplementedError
