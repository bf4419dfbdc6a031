"""
Instrument registry.

Static, seedable catalog of tradable instruments and their simulation
parameters. The default catalog is a small NEPSE-style universe covering
banks, insurance, hydropower and finance.
"""

from dataclasses import replace
from typing import Iterable, Iterator

from papertrade.domain.market.entities import Instrument
from papertrade.domain.market.errors import InvalidParameterError, UnknownSymbolError

DEFAULT_INSTRUMENTS: tuple[dict, ...] = (
    # Commercial banks: medium volatility, market correlated
    {"symbol": "NABIL", "name": "Nabil Bank Limited", "sector": "Commercial Banks",
     "base_price": 850.0, "annual_volatility": 0.22, "annual_drift": 0.10, "beta": 1.1},
    {"symbol": "SCB", "name": "Standard Chartered Bank Nepal", "sector": "Commercial Banks",
     "base_price": 380.0, "annual_volatility": 0.18, "annual_drift": 0.08, "beta": 0.9},
    {"symbol": "EBL", "name": "Everest Bank Limited", "sector": "Commercial Banks",
     "base_price": 520.0, "annual_volatility": 0.20, "annual_drift": 0.09, "beta": 1.0},
    {"symbol": "HBL", "name": "Himalayan Bank Limited", "sector": "Commercial Banks",
     "base_price": 280.0, "annual_volatility": 0.25, "annual_drift": 0.07, "beta": 1.2},
    # Insurance
    {"symbol": "NLIC", "name": "National Life Insurance", "sector": "Insurance",
     "base_price": 850.0, "annual_volatility": 0.24, "annual_drift": 0.11, "beta": 0.8},
    {"symbol": "LICN", "name": "Life Insurance Co. Nepal", "sector": "Insurance",
     "base_price": 1250.0, "annual_volatility": 0.21, "annual_drift": 0.12, "beta": 0.7},
    # Hydropower: low volatility
    {"symbol": "CHCL", "name": "Chilime Hydropower", "sector": "HydroPower",
     "base_price": 380.0, "annual_volatility": 0.15, "annual_drift": 0.06, "beta": 0.5},
    {"symbol": "UPPER", "name": "Upper Tamakoshi Hydropower", "sector": "HydroPower",
     "base_price": 200.0, "annual_volatility": 0.16, "annual_drift": 0.05, "beta": 0.6},
    # Development banks and finance: higher volatility
    {"symbol": "NTC", "name": "Nepal Telecom", "sector": "Development Bank",
     "base_price": 680.0, "annual_volatility": 0.12, "annual_drift": 0.04, "beta": 0.4},
    {"symbol": "NFS", "name": "Nepal Finance Ltd", "sector": "Finance",
     "base_price": 180.0, "annual_volatility": 0.35, "annual_drift": -0.02, "beta": 1.3},
)


class InstrumentRegistry:
    """Immutable catalog of instruments keyed by symbol.

    Symbols are normalized to upper case. Duplicate symbols are rejected
    at construction.
    """

    def __init__(self, instruments: Iterable[Instrument]) -> None:
        catalog: dict[str, Instrument] = {}
        for instrument in instruments:
            key = instrument.symbol.upper()
            if key in catalog:
                raise InvalidParameterError("symbol", key, "duplicate symbol in registry")
            if instrument.symbol != key:
                instrument = replace(instrument, symbol=key)
            catalog[key] = instrument
        self._instruments = catalog

    @classmethod
    def from_records(cls, records: Iterable[dict]) -> "InstrumentRegistry":
        """Build a registry from plain parameter dicts (seed data)."""
        return cls(Instrument(**record) for record in records)

    @classmethod
    def default(cls) -> "InstrumentRegistry":
        return cls.from_records(DEFAULT_INSTRUMENTS)

    def get(self, symbol: str) -> Instrument:
        """Return the instrument for a symbol.

        Raises:
            UnknownSymbolError: If the symbol is not registered.
        """
        try:
            return self._instruments[symbol.upper()]
        except KeyError:
            raise UnknownSymbolError(symbol) from None

    def __contains__(self, symbol: object) -> bool:
        return isinstance(symbol, str) and symbol.upper() in self._instruments

    def __iter__(self) -> Iterator[Instrument]:
        return iter(self._instruments[s] for s in self.symbols)

    def __len__(self) -> int:
        return len(self._instruments)

    @property
    def symbols(self) -> list[str]:
        """Registered symbols in sorted order."""
        return sorted(self._instruments)
