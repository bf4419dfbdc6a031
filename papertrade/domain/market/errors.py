"""
Domain-specific errors for the market bounded context.

All errors raised from the domain layer must be defined here.
These are mapped to HTTP responses at the interface layer.
No framework imports allowed.
"""


class MarketDomainError(Exception):
    """Base error for all market domain errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)


class InvalidParameterError(MarketDomainError):
    """Raised when a seed-time or caller-supplied parameter is invalid."""

    def __init__(self, field: str, value: object, reason: str) -> None:
        super().__init__(f"Invalid {field}={value!r}: {reason}")
        self.field = field
        self.value = value
        self.reason = reason


class UnknownSymbolError(MarketDomainError):
    """Raised when a symbol is not in the instrument registry."""

    def __init__(self, symbol: str) -> None:
        super().__init__(f"Unknown symbol: {symbol}")
        self.symbol = symbol


class UnknownTimeframeError(MarketDomainError):
    """Raised when a candle timeframe token is not supported."""

    def __init__(self, timeframe: str, supported: tuple[str, ...]) -> None:
        super().__init__(
            f"Unknown timeframe: {timeframe}. Supported: {', '.join(supported)}"
        )
        self.timeframe = timeframe
        self.supported = supported


class InvalidBudgetError(MarketDomainError):
    """Raised when an allocation budget is negative or not a number."""

    def __init__(self, budget: float) -> None:
        super().__init__(f"Invalid budget: {budget}. Must be a finite value >= 0.")
        self.budget = budget


class OptimizerInfeasibleError(MarketDomainError):
    """Raised when the optimizer cannot reason about the request at all.

    Only the ``resolution`` case is raised; a budget that buys nothing is
    reported as an empty allocation instead.
    """

    def __init__(self, reason: str, detail: str = "") -> None:
        message = f"Optimizer infeasible ({reason})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.reason = reason
        self.detail = detail


class OptimizationTimeoutError(MarketDomainError):
    """Raised when an optimization exceeds its compute budget."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Optimization exceeded {timeout_seconds:.2f}s")
        self.timeout_seconds = timeout_seconds


class OptimizationSupersededError(MarketDomainError):
    """Raised when a newer request from the same caller replaced this one."""

    def __init__(self, caller_id: str) -> None:
        super().__init__(f"Optimization superseded for caller: {caller_id}")
        self.caller_id = caller_id


class ServiceUnavailableError(MarketDomainError):
    """Raised when a persistence or broadcast collaborator is unreachable."""

    def __init__(self, collaborator: str, reason: str) -> None:
        super().__init__(f"{collaborator} unavailable: {reason}")
        self.collaborator = collaborator
        self.reason = reason
