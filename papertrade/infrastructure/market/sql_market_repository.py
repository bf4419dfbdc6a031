"""
Adapter: Market state repository.

Implements MarketStateRepository port.
Reads/writes instruments, live states, price samples and archived candles
through a SQLAlchemy engine (PostgreSQL in production, SQLite in tests).

Timestamps are stored as ISO-8601 text so both backends round-trip them
unchanged.
"""

import logging
from datetime import datetime
from typing import Callable, Sequence, TypeVar

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from papertrade.domain.market.entities import (
    Candle,
    Instrument,
    InstrumentState,
    MarketSnapshot,
    PricePoint,
)
from papertrade.domain.market.errors import ServiceUnavailableError
from papertrade.domain.market.ports import MarketStateRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

COLLABORATOR = "persistence"

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS market_instruments (
        symbol VARCHAR(16) PRIMARY KEY,
        name VARCHAR(128) NOT NULL,
        sector VARCHAR(64) NOT NULL,
        base_price DOUBLE PRECISION NOT NULL,
        annual_drift DOUBLE PRECISION NOT NULL,
        annual_volatility DOUBLE PRECISION NOT NULL,
        beta DOUBLE PRECISION NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS market_states (
        symbol VARCHAR(16) PRIMARY KEY,
        cycle INTEGER NOT NULL,
        current_price DOUBLE PRECISION NOT NULL,
        previous_close DOUBLE PRECISION NOT NULL,
        open_price DOUBLE PRECISION NOT NULL,
        day_high DOUBLE PRECISION NOT NULL,
        day_low DOUBLE PRECISION NOT NULL,
        price_change DOUBLE PRECISION NOT NULL,
        change_percent DOUBLE PRECISION NOT NULL,
        last_return DOUBLE PRECISION NOT NULL,
        volume BIGINT NOT NULL,
        updated_at VARCHAR(40) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS market_price_points (
        symbol VARCHAR(16) NOT NULL,
        point_time VARCHAR(40) NOT NULL,
        price DOUBLE PRECISION NOT NULL,
        volume BIGINT NOT NULL,
        PRIMARY KEY (symbol, point_time)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS market_candles (
        symbol VARCHAR(16) NOT NULL,
        timeframe VARCHAR(8) NOT NULL,
        candle_time VARCHAR(40) NOT NULL,
        open DOUBLE PRECISION NOT NULL,
        high DOUBLE PRECISION NOT NULL,
        low DOUBLE PRECISION NOT NULL,
        close DOUBLE PRECISION NOT NULL,
        volume BIGINT NOT NULL,
        PRIMARY KEY (symbol, timeframe, candle_time)
    )
    """,
)


class SqlMarketStateRepository(MarketStateRepository):
    """SQLAlchemy adapter for the market tables.

    Args:
        engine: Engine bound to the market database.
        history_capacity: Number of recent price samples restored per symbol.
    """

    def __init__(self, engine: Engine, history_capacity: int = 500) -> None:
        self._engine = engine
        self._history_capacity = history_capacity

    def ensure_schema(self) -> None:
        def create() -> None:
            with self._engine.begin() as conn:
                for statement in SCHEMA:
                    conn.execute(text(statement))

        self._guard(create, "schema setup")
        logger.info("Market tables ready.")

    def save_instruments(self, instruments: Sequence[Instrument]) -> None:
        """Upsert the instrument catalog."""
        if not instruments:
            return
        query = text(
            """
            INSERT INTO market_instruments
                (symbol, name, sector, base_price, annual_drift, annual_volatility, beta)
            VALUES
                (:symbol, :name, :sector, :base_price, :annual_drift, :annual_volatility, :beta)
            ON CONFLICT (symbol)
            DO UPDATE SET
                name = EXCLUDED.name,
                sector = EXCLUDED.sector,
                base_price = EXCLUDED.base_price,
                annual_drift = EXCLUDED.annual_drift,
                annual_volatility = EXCLUDED.annual_volatility,
                beta = EXCLUDED.beta
            """
        )
        rows = [
            {
                "symbol": i.symbol,
                "name": i.name,
                "sector": i.sector,
                "base_price": i.base_price,
                "annual_drift": i.annual_drift,
                "annual_volatility": i.annual_volatility,
                "beta": i.beta,
            }
            for i in instruments
        ]

        def write() -> None:
            with self._engine.begin() as conn:
                conn.execute(query, rows)

        self._guard(write, "instrument save")
        logger.debug("Saved %d instruments", len(rows))

    def save_snapshot(self, snapshot: MarketSnapshot) -> None:
        """Persist a snapshot in one transaction.

        Writes every state and its newest sample, then drops stored samples
        older than the state's in-memory history so a restart restores
        exactly what was live.
        """
        state_query = text(
            """
            INSERT INTO market_states
                (symbol, cycle, current_price, previous_close, open_price, day_high,
                 day_low, price_change, change_percent, last_return, volume, updated_at)
            VALUES
                (:symbol, :cycle, :current_price, :previous_close, :open_price, :day_high,
                 :day_low, :price_change, :change_percent, :last_return, :volume, :updated_at)
            ON CONFLICT (symbol)
            DO UPDATE SET
                cycle = EXCLUDED.cycle,
                current_price = EXCLUDED.current_price,
                previous_close = EXCLUDED.previous_close,
                open_price = EXCLUDED.open_price,
                day_high = EXCLUDED.day_high,
                day_low = EXCLUDED.day_low,
                price_change = EXCLUDED.price_change,
                change_percent = EXCLUDED.change_percent,
                last_return = EXCLUDED.last_return,
                volume = EXCLUDED.volume,
                updated_at = EXCLUDED.updated_at
            """
        )
        point_query = text(
            """
            INSERT INTO market_price_points (symbol, point_time, price, volume)
            VALUES (:symbol, :point_time, :price, :volume)
            ON CONFLICT (symbol, point_time) DO NOTHING
            """
        )
        # Samples that dropped out of the in-memory history (capacity, reset).
        prune_query = text(
            """
            DELETE FROM market_price_points
            WHERE symbol = :symbol AND point_time < :oldest
            """
        )
        clear_query = text("DELETE FROM market_price_points WHERE symbol = :symbol")

        states = list(snapshot.states.values())
        if not states:
            return
        state_rows = [
            {
                "symbol": s.symbol,
                "cycle": snapshot.cycle,
                "current_price": s.current_price,
                "previous_close": s.previous_close,
                "open_price": s.open_price,
                "day_high": s.day_high,
                "day_low": s.day_low,
                "price_change": s.change,
                "change_percent": s.change_percent,
                "last_return": s.last_return,
                "volume": s.volume,
                "updated_at": snapshot.as_of.isoformat(),
            }
            for s in states
        ]
        point_rows = [
            {
                "symbol": s.symbol,
                "point_time": s.history[-1].timestamp.isoformat(),
                "price": s.history[-1].price,
                "volume": s.history[-1].volume,
            }
            for s in states
            if s.history
        ]
        prune_rows = [
            {"symbol": s.symbol, "oldest": s.history[0].timestamp.isoformat()}
            for s in states
            if s.history
        ]
        clear_rows = [{"symbol": s.symbol} for s in states if not s.history]

        def write() -> None:
            with self._engine.begin() as conn:
                conn.execute(state_query, state_rows)
                if point_rows:
                    conn.execute(point_query, point_rows)
                    conn.execute(prune_query, prune_rows)
                if clear_rows:
                    conn.execute(clear_query, clear_rows)

        self._guard(write, "snapshot save")
        logger.debug("Persisted cycle %d (%d states)", snapshot.cycle, len(state_rows))

    def load_states(self) -> dict[str, InstrumentState]:
        """Return the last persisted state per symbol with its recent samples."""
        state_query = text(
            """
            SELECT symbol, current_price, previous_close, open_price, day_high,
                   day_low, price_change, change_percent, last_return, volume
            FROM market_states
            ORDER BY symbol
            """
        )
        point_query = text(
            """
            SELECT point_time, price, volume
            FROM market_price_points
            WHERE symbol = :symbol
            ORDER BY point_time DESC
            LIMIT :limit
            """
        )

        def read() -> dict[str, InstrumentState]:
            with self._engine.connect() as conn:
                rows = conn.execute(state_query).fetchall()
                states = {}
                for row in rows:
                    points = conn.execute(
                        point_query, {"symbol": row[0], "limit": self._history_capacity}
                    ).fetchall()
                    history = tuple(
                        PricePoint(
                            timestamp=datetime.fromisoformat(p[0]),
                            price=float(p[1]),
                            volume=int(p[2]),
                        )
                        for p in reversed(points)
                    )
                    states[row[0]] = InstrumentState(
                        symbol=row[0],
                        current_price=float(row[1]),
                        previous_close=float(row[2]),
                        open_price=float(row[3]),
                        day_high=float(row[4]),
                        day_low=float(row[5]),
                        change=float(row[6]),
                        change_percent=float(row[7]),
                        last_return=float(row[8]),
                        volume=int(row[9]),
                        history=history,
                    )
                return states

        states = self._guard(read, "state load")
        logger.info("Loaded %d persisted instrument states.", len(states))
        return states

    def save_candles(self, symbol: str, timeframe: str, candles: Sequence[Candle]) -> None:
        """Replace the stored series for (symbol, timeframe)."""
        delete_query = text(
            "DELETE FROM market_candles WHERE symbol = :symbol AND timeframe = :timeframe"
        )
        insert_query = text(
            """
            INSERT INTO market_candles
                (symbol, timeframe, candle_time, open, high, low, close, volume)
            VALUES
                (:symbol, :timeframe, :candle_time, :open, :high, :low, :close, :volume)
            """
        )
        rows = [
            {
                "symbol": symbol,
                "timeframe": timeframe,
                "candle_time": c.time.isoformat(),
                "open": c.open,
                "high": c.high,
                "low": c.low,
                "close": c.close,
                "volume": c.volume,
            }
            for c in candles
        ]

        def write() -> None:
            with self._engine.begin() as conn:
                conn.execute(delete_query, {"symbol": symbol, "timeframe": timeframe})
                if rows:
                    conn.execute(insert_query, rows)

        self._guard(write, "candle save")
        logger.debug("Saved %d %s candles for %s", len(rows), timeframe, symbol)

    def get_candles(self, symbol: str, timeframe: str) -> list[Candle]:
        query = text(
            """
            SELECT candle_time, open, high, low, close, volume
            FROM market_candles
            WHERE symbol = :symbol AND timeframe = :timeframe
            ORDER BY candle_time ASC
            """
        )

        def read() -> list[Candle]:
            with self._engine.connect() as conn:
                rows = conn.execute(
                    query, {"symbol": symbol, "timeframe": timeframe}
                ).fetchall()
            return [
                Candle(
                    time=datetime.fromisoformat(r[0]),
                    open=float(r[1]),
                    high=float(r[2]),
                    low=float(r[3]),
                    close=float(r[4]),
                    volume=int(r[5]),
                )
                for r in rows
            ]

        return self._guard(read, "candle load")

    @staticmethod
    def _guard(operation: Callable[[], T], action: str) -> T:
        """Translate driver failures into ServiceUnavailableError."""
        try:
            return operation()
        except SQLAlchemyError as exc:
            logger.warning("Market %s failed: %s", action, exc.__class__.__name__)
            raise ServiceUnavailableError(COLLABORATOR, f"{action} failed: {exc}") from exc
