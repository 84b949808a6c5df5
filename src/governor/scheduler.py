"""Periodic governance tick: auto-heal sweeps and draining buffered signals."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from .config import SchedulerConfig
from .healing import SelfHealingMonitor
from .orchestrator import CycleStats, GovernanceEngine
from .redaction import redact_text
from .telemetry import TelemetrySink
from .types import RollbackAction


@dataclass
class TickResult:
    run_id: str
    started_at: float
    rollbacks: list[RollbackAction] = field(default_factory=list)
    cycle: CycleStats | None = None
    skipped: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "rollbacks": [a.to_dict() for a in self.rollbacks],
            "cycle": self.cycle.to_dict() if self.cycle else None,
            "skipped": self.skipped,
            "error": self.error,
        }


class GovernanceScheduler:
    """Runs ``tick()`` every ``interval_seconds`` while started.

    A tick is idempotent: with nothing buffered and nothing due for
    evaluation it does no work. Ticks never overlap.
    """

    def __init__(
        self,
        engine: GovernanceEngine | None = None,
        monitor: SelfHealingMonitor | None = None,
        config: SchedulerConfig | None = None,
        telemetry: TelemetrySink | None = None,
    ):
        self.engine = engine
        self.monitor = monitor if monitor is not None else (engine.monitor if engine else None)
        self.config = config or SchedulerConfig()
        self.telemetry = telemetry or TelemetrySink.disabled()

        self._running = False
        self._paused = False
        self._task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()
        self.tick_count = 0
        self.last_tick: TickResult | None = None

    async def tick(self) -> TickResult:
        """Run one auto-heal sweep, then a cycle if signals are buffered."""
        result = TickResult(run_id=str(uuid.uuid4())[:8], started_at=time.time())
        if self._paused:
            result.skipped = "paused"
            return result

        async with self._lock:
            try:
                if self.monitor is not None:
                    result.rollbacks = self.monitor.run_auto_heal()
                if self.engine is not None and self.engine.pending_signals:
                    result.cycle = await self.engine.run_cycle()
            except Exception as e:
                result.error = redact_text(str(e) or type(e).__name__, max_len=200)
                self.telemetry.log(result.run_id, "scheduler_tick_failed", {"error": result.error})

            self.tick_count += 1
            self.last_tick = result
            self.telemetry.log(
                result.run_id,
                "scheduler_tick",
                {
                    "rollbacks": len(result.rollbacks),
                    "cycle_ran": result.cycle is not None,
                    "error": result.error,
                },
            )
        return result

    async def _loop(self) -> None:
        interval = max(0.1, float(self.config.interval_seconds))
        while self._running:
            await asyncio.sleep(interval)
            if self._running:
                await self.tick()

    def start(self) -> None:
        """Schedule the periodic loop on the running event loop."""
        if self._running or not self.config.enabled:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        self.telemetry.log("scheduler", "scheduler_started", {"interval_seconds": self.config.interval_seconds})

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.telemetry.log("scheduler", "scheduler_stopped", {"ticks": self.tick_count})

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    @property
    def is_running(self) -> bool:
        return self._running

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "paused": self._paused,
            "interval_seconds": self.config.interval_seconds,
            "tick_count": self.tick_count,
            "last_tick": self.last_tick.to_dict() if self.last_tick else None,
        }
