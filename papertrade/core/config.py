"""
Application configuration.

Loads settings from environment variables and .env file.
All configuration is centralized here; no scattered magic strings.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment.

    Attributes:
        project_name: Display name for the API.
        version: Current API version string.
        debug: Enable debug mode. Must be False in production.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        rate_limit_default: Default rate limit for all endpoints.
        rate_limit_heavy: Rate limit for compute-heavy endpoints.
        database_url: SQLAlchemy URL for market state. Persistence is
            disabled when unset.

    Simulation, index, scheduler and optimizer settings are grouped below.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    project_name: str = "PaperTrade Market"
    version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    rate_limit_default: str = "60/minute"
    rate_limit_heavy: str = "10/minute"

    # --- Persistence ---
    database_url: Optional[str] = None

    # --- Simulation ---
    simulation_seed: Optional[int] = None
    history_seed: int = 20240101
    tick_interval_seconds: float = Field(default=120.0, gt=0)  # 2 minutes
    trading_days_per_year: int = Field(default=252, gt=0)
    trading_seconds_per_day: float = Field(default=6.5 * 3600, gt=0)
    history_capacity: int = Field(default=500, ge=1)
    retained_history: int = Field(default=10, ge=0)
    price_floor: float = Field(default=0.01, gt=0)
    price_decimals: int = Field(default=2, ge=0)  # live prices on a 0.01 grid
    max_price_change_percent: Optional[float] = Field(default=10.0, gt=0)  # halt threshold
    tick_volume_min: int = 100
    tick_volume_max: int = 5000
    candle_volume_min: int = 100_000
    candle_volume_max: int = 1_100_000
    wick_factor: float = 0.5
    max_wick_sigma: float = 3.0

    # --- Market Index ---
    index_weighting: str = "equal"  # "equal" or "sector"
    index_base_level: float = 1000.0
    index_coupling: float = 0.3
    max_index_return: float = 0.05

    # --- Scheduler ---
    scheduler_enabled: bool = True
    market_timezone: str = "Asia/Kathmandu"
    session_close_hour: int = 15
    session_close_minute: int = 0

    # --- Allocation Optimizer ---
    optimizer_granularity: float = Field(default=0.01, gt=0)  # matches price_decimals
    optimizer_max_budget_steps: int = Field(default=5_000_000, ge=1)
    optimizer_timeout_seconds: float = Field(default=10.0, gt=0)
    optimizer_workers: int = Field(default=2, ge=1)
    per_symbol_budget_limit: Optional[float] = None  # e.g. 10000 per stock
    default_unit_cap: Optional[int] = None
    scoring_window: int = Field(default=30, ge=2)


settings = Settings()
