"""
Real-time scheduler for the market tick cycle and session close.

Uses APScheduler to run:
- **Tick cycle**: every ``tick_interval_seconds`` (2 minutes by default)
- **Session close (15:00, Mon-Fri)**: archive intraday candles and roll
  previous_close to the session's last price
- **On-demand**: tick, session_close or reset via the API

Only one tick runs at a time and missed ticks are coalesced, so a slow
cycle never stacks up behind itself.

Task results are kept in a bounded history and, when a stream manager is
attached, announced to connected clients.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from papertrade.application.market.manage_session import (
    CloseSessionUseCase,
    ResetMarketUseCase,
)
from papertrade.application.market.market_service import MarketSimulationService
from papertrade.domain.market.errors import ServiceUnavailableError
from papertrade.realtime.stream import MarketStreamManager

logger = logging.getLogger(__name__)

TASK_TICK = "tick"
TASK_SESSION_CLOSE = "session_close"
TASK_RESET = "reset"


class TaskStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TaskResult:
    """Result of a scheduled task execution."""

    task_name: str
    status: TaskStatus
    started_at: str
    finished_at: str | None = None
    duration_seconds: float = 0.0
    details: dict = field(default_factory=dict)
    error: str | None = None


class MarketScheduler:
    """Drives the market clock.

    Usage:
        scheduler = MarketScheduler(market, close_session, reset_market)
        scheduler.start()          # begin ticking
        scheduler.stop()           # graceful shutdown
        scheduler.run_now("tick")  # advance one cycle immediately
    """

    def __init__(
        self,
        market: MarketSimulationService,
        close_session: CloseSessionUseCase,
        reset_market: ResetMarketUseCase,
        tick_interval_seconds: float = 120.0,
        timezone_name: str = "Asia/Kathmandu",
        session_close_hour: int = 15,
        session_close_minute: int = 0,
        stream_manager: Optional[MarketStreamManager] = None,
        max_history: int = 200,
    ) -> None:
        self._market = market
        self._close_session = close_session
        self._reset_market = reset_market
        self._tick_interval = tick_interval_seconds
        self._timezone = timezone_name
        self._close_hour = session_close_hour
        self._close_minute = session_close_minute
        self._stream = stream_manager
        self._task_history: list[TaskResult] = []
        self._max_history = max_history
        self._lock = threading.Lock()
        self._scheduler: Any | None = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    @property
    def task_history(self) -> list[TaskResult]:
        with self._lock:
            return list(self._task_history)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the scheduler with the tick and session-close jobs."""
        if self._scheduler is not None:
            logger.warning("Scheduler already running.")
            return

        scheduler = BackgroundScheduler(
            timezone=self._timezone,
            job_defaults={"coalesce": True, "max_instances": 1},
        )
        scheduler.add_job(
            self._task_tick,
            IntervalTrigger(seconds=self._tick_interval),
            id=TASK_TICK,
            name="Market tick cycle",
        )
        scheduler.add_job(
            self._task_session_close,
            CronTrigger(
                day_of_week="mon-fri",
                hour=self._close_hour,
                minute=self._close_minute,
            ),
            id=TASK_SESSION_CLOSE,
            name="Trading session close",
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "MarketScheduler started with %d jobs (tick every %.0fs).",
            len(scheduler.get_jobs()),
            self._tick_interval,
        )

    def stop(self) -> None:
        """Gracefully stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        logger.info("MarketScheduler stopped.")

    def run_now(self, task_name: str) -> TaskResult:
        """Execute a named task immediately (blocking).

        Args:
            task_name: One of 'tick', 'session_close', 'reset'.

        Returns:
            TaskResult with execution details.
        """
        task_map = {
            TASK_TICK: self._task_tick,
            TASK_SESSION_CLOSE: self._task_session_close,
            TASK_RESET: self._task_reset,
        }
        fn = task_map.get(task_name)
        if fn is None:
            return TaskResult(
                task_name=task_name,
                status=TaskStatus.FAILED,
                started_at=datetime.now(timezone.utc).isoformat(),
                error=f"Unknown task: {task_name}. "
                      f"Available: {list(task_map.keys())}",
            )
        return fn()

    # ------------------------------------------------------------------
    # Task implementations
    # ------------------------------------------------------------------

    def _task_tick(self) -> TaskResult:
        def tick() -> dict:
            snapshot = self._market.run_cycle()
            return {
                "cycle": snapshot.cycle,
                "index": round(snapshot.index.value, 4),
                "degraded": self._market.is_degraded,
            }

        # Ticks are frequent; keep them out of the broadcast channel.
        return self._execute(TASK_TICK, tick, announce=False)

    def _task_session_close(self) -> TaskResult:
        def close() -> dict:
            result = self._close_session.execute()
            return {"cycle": result.cycle, "archived": result.archived_symbols}

        return self._execute(TASK_SESSION_CLOSE, close)

    def _task_reset(self) -> TaskResult:
        def reset() -> dict:
            result = self._reset_market.execute()
            return {"cycle": result.cycle, "index": result.index_value}

        return self._execute(TASK_RESET, reset)

    def _execute(
        self,
        task_name: str,
        fn: Callable[[], dict],
        announce: bool = True,
    ) -> TaskResult:
        start = time.monotonic()
        started_at = datetime.now(timezone.utc).isoformat()
        try:
            details = fn()
            task_result = TaskResult(
                task_name=task_name,
                status=TaskStatus.COMPLETED,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc).isoformat(),
                duration_seconds=round(time.monotonic() - start, 4),
                details=details,
            )
        except Exception as exc:
            task_result = TaskResult(
                task_name=task_name,
                status=TaskStatus.FAILED,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc).isoformat(),
                duration_seconds=round(time.monotonic() - start, 4),
                error=str(exc),
            )
            logger.exception("Scheduled task %s failed.", task_name)

        self._record_result(task_result, announce or task_result.status is TaskStatus.FAILED)
        return task_result

    def _record_result(self, result: TaskResult, announce: bool) -> None:
        with self._lock:
            self._task_history.append(result)
            if len(self._task_history) > self._max_history:
                self._task_history = self._task_history[-self._max_history:]

        if self._stream is None or not announce:
            return
        try:
            self._stream.publish_system_event(
                f"task_{result.status.value}",
                {
                    "task": result.task_name,
                    "status": result.status.value,
                    "duration_seconds": result.duration_seconds,
                    "details": result.details,
                    "error": result.error,
                },
            )
        except ServiceUnavailableError as exc:
            logger.warning("Task event for %s not announced: %s", result.task_name, exc.reason)

    # ------------------------------------------------------------------
    # Status & introspection
    # ------------------------------------------------------------------

    def get_scheduled_jobs(self) -> list[dict]:
        """Return info about all scheduled jobs."""
        if self._scheduler is None:
            return []
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run": str(job.next_run_time),
                "trigger": str(job.trigger),
            }
            for job in self._scheduler.get_jobs()
        ]

    def get_status(self) -> dict:
        """Return the scheduler status summary."""
        recent = self.task_history[-10:]
        return {
            "running": self.is_running,
            "tick_interval_seconds": self._tick_interval,
            "timezone": self._timezone,
            "market": self._market.status(),
            "jobs": self.get_scheduled_jobs(),
            "recent_tasks": [
                {
                    "task": r.task_name,
                    "status": r.status.value,
                    "duration": r.duration_seconds,
                    "started_at": r.started_at,
                    "error": r.error,
                }
                for r in recent
            ],
        }
