"""
CLI entry point for the market simulator.

Usage:
    # Serve the API (scheduler included)
    python -m papertrade.cli serve --port 8000

    # Run tick cycles offline and report the market
    python -m papertrade.cli simulate --cycles 30 --seed 42

    # Print a candle series
    python -m papertrade.cli candles --symbol NABIL --timeframe 1D

    # Optimize an allocation over the universe
    python -m papertrade.cli allocate --budget 50000 --warmup 30
"""

import argparse
import logging

from papertrade.core.config import settings
from papertrade.shared.logging import configure_logging

logger = logging.getLogger(__name__)


def _offline_components(args: argparse.Namespace):
    """Wire the market without persistence, stream or a running clock."""
    from papertrade.interfaces.market.dependencies import build_market_components

    offline = settings.model_copy(
        update={"database_url": None, "simulation_seed": args.seed}
    )
    return build_market_components(offline, broadcast=False)


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the full FastAPI application."""
    import uvicorn

    logger.info("Starting market API at http://%s:%d", args.host, args.port)
    uvicorn.run("papertrade.main:app", host=args.host, port=args.port, reload=False)


def cmd_simulate(args: argparse.Namespace) -> None:
    """Advance the market offline and log the final state."""
    components = _offline_components(args)
    try:
        for _ in range(args.cycles):
            components.market.run_cycle()

        snapshot = components.market.snapshot
        for symbol, state in sorted(snapshot.states.items()):
            logger.info(
                "%-6s | Price=%10.2f | Chg=%+7.2f%% | High=%10.2f | Low=%10.2f | Vol=%d",
                symbol,
                state.current_price,
                state.change_percent,
                state.day_high,
                state.day_low,
                state.volume,
            )
        logger.info(
            "Index after %d cycles: %.2f (%+.3f%%)",
            snapshot.cycle,
            snapshot.index.value,
            snapshot.index.change_percent,
        )
    finally:
        components.shutdown()


def cmd_candles(args: argparse.Namespace) -> None:
    """Print a simulated candle series."""
    from papertrade.application.market.dtos import GetCandlesQuery
    from papertrade.application.market.get_candles import GetCandlesUseCase

    components = _offline_components(args)
    try:
        use_case = GetCandlesUseCase(
            components.market,
            components.builder,
            history_seed=settings.history_seed if args.seed is None else args.seed,
        )
        result = use_case.execute(
            GetCandlesQuery(
                symbol=args.symbol,
                timeframe=args.timeframe,
                point_count=args.points,
            )
        )
        for c in result.candles:
            logger.info(
                "%s | %s | O=%.2f H=%.2f L=%.2f C=%.2f V=%d",
                result.symbol,
                c.time.isoformat(),
                c.open,
                c.high,
                c.low,
                c.close,
                c.volume,
            )
    finally:
        components.shutdown()


def cmd_allocate(args: argparse.Namespace) -> None:
    """Warm the market up, then optimize an allocation over the universe."""
    from papertrade.application.market.dtos import OptimizeAllocationCommand
    from papertrade.application.market.optimize_allocation import OptimizeAllocationUseCase

    components = _offline_components(args)
    try:
        for _ in range(args.warmup):
            components.market.run_cycle()

        use_case = OptimizeAllocationUseCase(
            components.market,
            components.worker,
            components.scoring,
            per_symbol_budget_limit=args.per_symbol_limit,
            scoring_window=settings.scoring_window,
        )
        outcome = use_case.execute(
            OptimizeAllocationCommand(
                caller_id="cli",
                budget=args.budget,
                per_symbol_unit_cap=args.cap,
            )
        )
        for line in outcome.lines:
            logger.info(
                "%-6s | Qty=%6d | Price=%10.2f | Score=%+.4f | Cost=%12.2f",
                line.symbol,
                line.quantity,
                line.unit_price,
                line.return_score,
                line.cost,
            )
        logger.info(
            "Budget=%.2f | Spent=%.2f | Score=%.4f | Reason=%s",
            outcome.budget,
            outcome.total_cost,
            outcome.achieved_score,
            outcome.infeasible_reason or "-",
        )
    finally:
        components.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(description="PaperTrade Market CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port (default 8000)")
    serve_parser.set_defaults(func=cmd_serve)

    # Simulate
    sim_parser = subparsers.add_parser("simulate", help="Run tick cycles offline")
    sim_parser.add_argument("--cycles", type=int, default=30, help="Number of tick cycles")
    sim_parser.add_argument("--seed", type=int, default=None, help="Simulation seed")
    sim_parser.set_defaults(func=cmd_simulate)

    # Candles
    candle_parser = subparsers.add_parser("candles", help="Print a simulated candle series")
    candle_parser.add_argument("--symbol", required=True, help="Ticker symbol")
    candle_parser.add_argument("--timeframe", default="1D", help="1D, 1W, 1M, 3M or 1Y")
    candle_parser.add_argument("--points", type=int, default=None, help="Candle count override")
    candle_parser.add_argument(
        "--seed", type=int, default=None, help="Seed for the generated candle history"
    )
    candle_parser.set_defaults(func=cmd_candles)

    # Allocate
    alloc_parser = subparsers.add_parser("allocate", help="Optimize an allocation")
    alloc_parser.add_argument("--budget", type=float, required=True, help="Cash to allocate")
    alloc_parser.add_argument(
        "--warmup", type=int, default=30,
        help="Tick cycles to run first so momentum scores exist (default 30)",
    )
    alloc_parser.add_argument("--cap", type=int, default=None, help="Max units per symbol")
    alloc_parser.add_argument(
        "--per-symbol-limit", type=float, default=None, dest="per_symbol_limit",
        help="Max cash per symbol, e.g. 10000",
    )
    alloc_parser.add_argument("--seed", type=int, default=None, help="Simulation seed")
    alloc_parser.set_defaults(func=cmd_allocate)

    args = parser.parse_args()
    configure_logging(level=settings.log_level)
    args.func(args)


if __name__ == "__main__":
    main()
