"""
Deadline Sweep Scheduler

Runs DeadlineSweepEngine.run_sweep() on a fixed interval in a daemon thread.

CONFIGURATION:
- EDITORIAL_SWEEP_ENABLED: Run sweeps in the background (default: false)
- EDITORIAL_SWEEP_INTERVAL_SECONDS: Seconds between sweeps (default: 900)
- EDITORIAL_SWEEP_FAN_OUT: Rows handled concurrently per pass (default: 4)
- EDITORIAL_DISPATCH_TIMEOUT_SECONDS: Per-message send timeout (default: 10)

USAGE:
    scheduler = SweepScheduler(engine)
    scheduler.start()

    # Or trigger one sweep by hand (API, CLI, tests)
    result = scheduler.tick()

    scheduler.stop()

Sweeps are idempotent, so a tick that fires late, twice, or on several
instances at once is harmless. On ONE instance a tick that arrives while
the previous one is still running is skipped outright.
"""

import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from ..observability import get_logger
from .sweep import DeadlineSweepEngine, SweepResult

logger = get_logger("editorial.scheduler")


@dataclass
class SweepConfig:
    """Configuration for the sweep scheduler and engine."""
    enabled: bool = False
    interval_seconds: int = 900  # 15 minutes
    fan_out: int = 4
    dispatch_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "SweepConfig":
        return cls(
            enabled=os.environ.get("EDITORIAL_SWEEP_ENABLED", "").lower() in ("1", "true", "yes"),
            interval_seconds=int(os.environ.get("EDITORIAL_SWEEP_INTERVAL_SECONDS", "900")),
            fan_out=int(os.environ.get("EDITORIAL_SWEEP_FAN_OUT", "4")),
            dispatch_timeout_seconds=float(os.environ.get("EDITORIAL_DISPATCH_TIMEOUT_SECONDS", "10")),
        )


class SweepScheduler:
    """
    Periodic driver for the deadline sweep.

    One tick at a time per instance; cross-instance safety comes from the
    repository's compare-and-set, not from here.
    """

    def __init__(self, engine: DeadlineSweepEngine, config: Optional[SweepConfig] = None):
        self._engine = engine
        self._config = config or SweepConfig.from_env()

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._tick_lock = threading.Lock()

        self._last_result: Optional[SweepResult] = None
        self._last_error: Optional[str] = None
        self._last_tick_at: Optional[datetime] = None
        self._ticks_skipped = 0

    @property
    def engine(self) -> DeadlineSweepEngine:
        return self._engine

    @property
    def config(self) -> SweepConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_result(self) -> Optional[SweepResult]:
        return self._last_result

    def start(self) -> None:
        """Start the background thread. No-op when disabled or already running."""
        if not self._config.enabled:
            logger.info("Sweep scheduler disabled (set EDITORIAL_SWEEP_ENABLED=1 to enable)")
            return

        if self._running:
            logger.warning("Sweep scheduler already running")
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="deadline-sweep", daemon=True)
        self._thread.start()

        logger.info(
            "Sweep scheduler started",
            interval_seconds=self._config.interval_seconds,
            fan_out=self._config.fan_out,
        )

    def stop(self, timeout: float = 5.0) -> None:
        if not self._running:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)

        self._running = False
        logger.info("Sweep scheduler stopped")

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                # Already logged and recorded by tick()
                logger.debug("Retrying sweep at next interval", interval_seconds=self._config.interval_seconds)

            self._stop_event.wait(timeout=self._config.interval_seconds)

    def tick(self) -> Optional[SweepResult]:
        """
        Run one sweep now.

        Returns None if a sweep is already in progress on this instance.
        Storage errors propagate after being logged and recorded.
        """
        if not self._tick_lock.acquire(blocking=False):
            self._ticks_skipped += 1
            logger.info("Sweep already in progress, skipping tick")
            return None

        try:
            self._last_tick_at = datetime.now(timezone.utc)
            result = self._engine.run_sweep()
            self._last_result = result
            self._last_error = None
            return result
        except Exception as e:
            self._last_error = f"{type(e).__name__}: {e}"
            logger.exception("Deadline sweep failed", error=str(e))
            raise
        finally:
            self._tick_lock.release()

    def get_status(self) -> dict:
        return {
            "enabled": self._config.enabled,
            "running": self._running,
            "interval_seconds": self._config.interval_seconds,
            "fan_out": self._config.fan_out,
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "last_result": self._last_result.to_dict() if self._last_result else None,
            "last_error": self._last_error,
            "ticks_skipped": self._ticks_skipped,
        }
