"""Unit tests for the periodic governance scheduler."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from governor.config import AutonomyConfig, GovernorConfig, SchedulerConfig
from governor.orchestrator import GovernanceEngine
from governor.scheduler import GovernanceScheduler
from governor.types import Signal, SignalType


class CountingGenerator:
    def __init__(self):
        self.calls = 0

    def generate_from_signals(self, signals):
        self.calls += 1
        return []


class StubMonitor:
    def __init__(self, fail: bool = False):
        self.sweeps = 0
        self.fail = fail

    def run_auto_heal(self):
        self.sweeps += 1
        if self.fail:
            raise RuntimeError("sweep failed")
        return []


def _engine(tmp_path: Path, generator: CountingGenerator) -> GovernanceEngine:
    # A high threshold keeps signals buffered until the scheduler drains them.
    config = GovernorConfig(autonomy=AutonomyConfig(signal_threshold=100))
    return GovernanceEngine(tmp_path, generator, config=config)


class TestTick:
    """Test a single scheduler tick."""

    @pytest.mark.asyncio
    async def test_idle_tick_does_nothing(self, tmp_path: Path):
        generator = CountingGenerator()
        monitor = StubMonitor()
        scheduler = GovernanceScheduler(_engine(tmp_path, generator), monitor=monitor)

        result = await scheduler.tick()

        assert result.cycle is None
        assert result.rollbacks == []
        assert generator.calls == 0
        assert monitor.sweeps == 1
        assert scheduler.tick_count == 1

    @pytest.mark.asyncio
    async def test_tick_drains_buffered_signals(self, tmp_path: Path):
        generator = CountingGenerator()
        engine = _engine(tmp_path, generator)
        await engine.add_signal(Signal(id="s1", type=SignalType.INEFFICIENCY, confidence=0.5, description="slow"))
        scheduler = GovernanceScheduler(engine)

        first = await scheduler.tick()
        second = await scheduler.tick()

        assert first.cycle.signals_processed == 1
        assert second.cycle is None
        assert generator.calls == 1

    @pytest.mark.asyncio
    async def test_paused_tick_skipped(self):
        monitor = StubMonitor()
        scheduler = GovernanceScheduler(monitor=monitor)
        scheduler.pause()

        result = await scheduler.tick()

        assert result.skipped == "paused"
        assert monitor.sweeps == 0
        scheduler.resume()
        assert (await scheduler.tick()).skipped is None

    @pytest.mark.asyncio
    async def test_errors_are_reported(self):
        scheduler = GovernanceScheduler(monitor=StubMonitor(fail=True))
        result = await scheduler.tick()
        assert result.error == "sweep failed"
        assert scheduler.status()["last_tick"]["error"] == "sweep failed"

    @pytest.mark.asyncio
    async def test_ticks_do_not_overlap(self):
        class SlowEngine:
            """Always has signals buffered; each cycle yields to the loop."""

            def __init__(self):
                self.pending_signals = ["s"]
                self.monitor = None
                self.active = 0
                self.peak = 0

            async def run_cycle(self):
                self.active += 1
                self.peak = max(self.peak, self.active)
                await asyncio.sleep(0.01)
                self.active -= 1
                return None

        engine = SlowEngine()
        scheduler = GovernanceScheduler(engine)
        await asyncio.gather(*(scheduler.tick() for _ in range(5)))

        assert engine.peak == 1
        assert scheduler.tick_count == 5


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        monitor = StubMonitor()
        scheduler = GovernanceScheduler(monitor=monitor, config=SchedulerConfig(interval_seconds=0))

        scheduler.start()
        scheduler.start()
        assert scheduler.is_running
        await asyncio.sleep(0.35)
        await scheduler.stop()

        assert not scheduler.is_running
        assert monitor.sweeps >= 2

    @pytest.mark.asyncio
    async def test_disabled_never_starts(self):
        scheduler = GovernanceScheduler(monitor=StubMonitor(), config=SchedulerConfig(enabled=False))
        scheduler.start()
        assert not scheduler.is_running
        await scheduler.stop()
