"""Unit tests for degradation detection and the self-healing monitor."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from governor.application import ProposalApplicationEngine
from governor.config import SelfHealingConfig
from governor.errors import AlreadyRolledBackError, ApplicationNotFoundError, RollbackRateLimitError
from governor.events import EventType
from governor.healing import (
    SELF_HEALING_DIR,
    RollbackRateLimitState,
    SelfHealingMonitor,
    calculate_percent_change,
    check_rollback_rate_limit,
    detect_degradation,
    update_rollback_rate_limit_state,
)
from governor.telemetry import TelemetrySink
from governor.types import ApplicationStatus, PerformanceMetrics, RollbackOutcome


# 2025-03-01T12:00:00Z
DAY_ONE = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc).timestamp()
HOUR = 3600.0

MODIFY_GUIDE = """--- a/docs/guide.md
+++ b/docs/guide.md
@@ -1,3 +1,3 @@
 # Guide
-Old advice.
+New advice.
 End.
"""


class Clock:
    def __init__(self, now: float = DAY_ONE):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _metrics(success: float = 0.9, cost: float = 1.0, duration: float = 1000.0, tasks: int = 10) -> PerformanceMetrics:
    return PerformanceMetrics(
        success_rate=success,
        average_cost=cost,
        average_duration_ms=duration,
        task_count=tasks,
        timestamp=DAY_ONE,
    )


class TestDetectDegradation:
    """Test severity scoring and recommendations."""

    def test_success_drop_triggers_rollback(self):
        result = detect_degradation(_metrics(success=0.9), _metrics(success=0.75))
        assert result.degraded
        assert result.severity == 50
        assert result.recommendation == "rollback"
        assert result.explanation == (
            "Significant degradation detected (severity: 50/100). Immediate rollback recommended."
        )

    def test_cost_increase_alone_is_monitored(self):
        result = detect_degradation(_metrics(cost=1.0), _metrics(cost=1.5))
        assert result.severity == 25
        assert result.recommendation == "monitor"
        assert [m.name for m in result.degraded_metrics] == ["average_cost"]

    def test_cost_and_duration_combine(self):
        result = detect_degradation(_metrics(cost=1.0, duration=100), _metrics(cost=1.5, duration=200))
        assert result.severity == 50
        assert result.recommendation == "rollback"

    def test_severity_capped(self):
        result = detect_degradation(
            _metrics(success=0.9, cost=1.0, duration=100),
            _metrics(success=0.1, cost=9.0, duration=900),
        )
        assert result.severity == 100

    def test_within_thresholds_ignored(self):
        result = detect_degradation(_metrics(), _metrics(success=0.85, cost=1.2, duration=1400))
        assert not result.degraded
        assert result.recommendation == "ignore"
        assert result.explanation == "No significant degradation detected."

    def test_improvement_ignored(self):
        assert detect_degradation(_metrics(), _metrics(success=1.0, cost=0.5)).recommendation == "ignore"

    @pytest.mark.parametrize(
        "before,after,expected",
        [(0, 0, 0.0), (0, 5, 100.0), (2, 3, 50.0), (4, 2, -50.0)],
    )
    def test_percent_change(self, before, after, expected):
        assert calculate_percent_change(before, after) == expected


class TestRateLimit:
    """Test the daily automatic rollback quota."""

    def test_quota_exhausts(self):
        state = RollbackRateLimitState()
        for _ in range(3):
            assert check_rollback_rate_limit(state, 3, DAY_ONE)
            state = update_rollback_rate_limit_state(state, DAY_ONE)
        assert state.daily_rollback_count == 3
        assert not check_rollback_rate_limit(state, 3, DAY_ONE)

    def test_resets_on_new_utc_day(self):
        state = RollbackRateLimitState(daily_rollback_count=3, daily_rollback_date="2025-03-01")
        assert not check_rollback_rate_limit(state, 3, DAY_ONE + 11 * HOUR)
        # 2025-03-02T00:30Z
        assert check_rollback_rate_limit(state, 3, DAY_ONE + 12.5 * HOUR)
        assert update_rollback_rate_limit_state(state, DAY_ONE + 12.5 * HOUR).daily_rollback_count == 1


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def monitor(project: Path, clock: Clock) -> SelfHealingMonitor:
    return SelfHealingMonitor(project, config=SelfHealingConfig(), clock=clock)


def _degrade(monitor: SelfHealingMonitor, application_id: str) -> None:
    monitor.update_metrics(application_id, _metrics(success=0.6))


class TestRecording:
    """Test recording applications and their backups."""

    def test_backups_taken_before_change(self, project: Path, monitor: SelfHealingMonitor):
        app = monitor.record_application("p1", "proposals/p1", ["docs/guide.md", "docs/new.md"], _metrics())

        assert app.status == ApplicationStatus.MONITORING
        assert app.backup_paths["docs/new.md"] is None
        backup = app.backup_paths["docs/guide.md"]
        assert backup.startswith(f"{SELF_HEALING_DIR}/backups/{app.id}/")
        assert (project / backup).read_text() == "# Guide\nOld advice.\nEnd.\n"

    def test_state_persisted_and_reloaded(self, project: Path, monitor: SelfHealingMonitor, clock: Clock):
        app = monitor.record_application("p1", "proposals/p1", ["docs/guide.md"], _metrics())

        reloaded = SelfHealingMonitor(project, clock=clock)

        assert reloaded.get_application(app.id).before_metrics == _metrics()
        data = json.loads((project / SELF_HEALING_DIR / "applications.json").read_text())
        assert data[0]["status"] == "monitoring"

    def test_engine_backed_application_skips_backups(self, project: Path, monitor: SelfHealingMonitor):
        app = monitor.record_application("p1", "proposals/p1", ["docs/guide.md"], _metrics(), applied_record_id="applied.x")
        assert app.backup_paths == {}
        assert not (project / SELF_HEALING_DIR / "backups" / app.id).exists()

    def test_corrupt_state_starts_empty(self, project: Path, clock: Clock, tmp_path: Path):
        data_dir = project / SELF_HEALING_DIR
        data_dir.mkdir(parents=True)
        (data_dir / "applications.json").write_text("{not json")
        telemetry = TelemetrySink(enabled=True, path=tmp_path / "t.jsonl")

        assert SelfHealingMonitor(project, telemetry=telemetry, clock=clock).get_applications() == []
        assert "self_healing_state_invalid" in (tmp_path / "t.jsonl").read_text()

    def test_evaluation_waits_for_enough_tasks(self, monitor: SelfHealingMonitor):
        app = monitor.record_application("p1", "proposals/p1", ["docs/guide.md"], _metrics())
        assert monitor.evaluate_application(app.id) is None
        monitor.update_metrics(app.id, _metrics(success=0.5, tasks=2))
        assert monitor.evaluate_application(app.id) is None
        monitor.update_metrics(app.id, _metrics(success=0.5, tasks=5))
        assert monitor.evaluate_application(app.id).recommendation == "rollback"


class TestRollback:
    """Test manual and automatic rollback."""

    def test_restores_from_own_backups(self, project: Path, monitor: SelfHealingMonitor):
        app = monitor.record_application("p1", "proposals/p1", ["docs/guide.md", "docs/new.md"], _metrics())
        (project / "docs" / "guide.md").write_text("changed\n")
        (project / "docs" / "new.md").write_text("created\n")

        action = monitor.rollback(app.id, "looked wrong")

        assert action.result == RollbackOutcome.SUCCESS
        assert not action.automatic
        assert (project / "docs" / "guide.md").read_text() == "# Guide\nOld advice.\nEnd.\n"
        assert not (project / "docs" / "new.md").exists()
        assert app.rolled_back
        assert app.status == ApplicationStatus.ROLLED_BACK
        assert monitor.get_rollback_log() == [action]

    def test_restores_through_engine(self, project: Path, write_policy, write_proposal, clock: Clock):
        write_policy(auto_apply_patterns=["docs/**"])
        engine = ProposalApplicationEngine(project)
        result = engine.apply_proposal(engine.parse_proposal(write_proposal("p1", {"a.diff": MODIFY_GUIDE})))
        monitor = SelfHealingMonitor(project, config=SelfHealingConfig(), engine=engine, clock=clock)
        app = monitor.record_application(
            "p1", "proposals/p1", result.changed_files, _metrics(), applied_record_id=result.applied_record_id
        )

        action = monitor.rollback(app.id, "manual")

        assert action.result == RollbackOutcome.SUCCESS
        assert action.restored_files == ["docs/guide.md"]
        assert (project / "docs" / "guide.md").read_text() == "# Guide\nOld advice.\nEnd.\n"

    def test_unknown_and_repeated(self, monitor: SelfHealingMonitor):
        with pytest.raises(ApplicationNotFoundError):
            monitor.rollback("app-missing", "x")
        app = monitor.record_application("p1", "proposals/p1", ["docs/guide.md"], _metrics())
        monitor.rollback(app.id, "first")
        with pytest.raises(AlreadyRolledBackError):
            monitor.rollback(app.id, "second")

    def test_nothing_restored_needs_review(self, monitor: SelfHealingMonitor):
        app = monitor.record_application("p1", "proposals/p1", [], _metrics())

        action = monitor.rollback(app.id, "empty")

        assert action.result == RollbackOutcome.FAILED
        assert action.error == "No files were restored"
        assert app.status == ApplicationStatus.NEEDS_REVIEW
        assert not app.rolled_back

    def test_listeners_hear_successful_rollbacks_only(self, project: Path, monitor: SelfHealingMonitor):
        seen = []
        monitor.on(lambda e: seen.append((e.type, e.data["application"]["proposal_id"], e.data["action"]["result"])))
        empty = monitor.record_application("p0", "proposals/p0", [], _metrics())
        app = monitor.record_application("p1", "proposals/p1", ["docs/guide.md"], _metrics())

        monitor.rollback(empty.id, "nothing to restore")
        monitor.rollback(app.id, "looked wrong")

        assert seen == [(EventType.APPLICATION_ROLLED_BACK, "p1", "success")]

    def test_automatic_quota(self, project: Path, clock: Clock):
        monitor = SelfHealingMonitor(project, config=SelfHealingConfig(max_daily_rollbacks=1), clock=clock)
        first = monitor.record_application("p1", "proposals/p1", ["docs/guide.md"], _metrics())
        second = monitor.record_application("p2", "proposals/p2", ["docs/guide.md"], _metrics())

        monitor.rollback(first.id, "auto", automatic=True)
        with pytest.raises(RollbackRateLimitError):
            monitor.rollback(second.id, "auto", automatic=True)
        # Manual rollbacks are not rate limited.
        assert monitor.rollback(second.id, "manual").result == RollbackOutcome.SUCCESS

    def test_quota_rebuilt_from_log(self, project: Path, clock: Clock):
        config = SelfHealingConfig(max_daily_rollbacks=1)
        monitor = SelfHealingMonitor(project, config=config, clock=clock)
        app = monitor.record_application("p1", "proposals/p1", ["docs/guide.md"], _metrics())
        monitor.rollback(app.id, "auto", automatic=True)

        assert SelfHealingMonitor(project, config=config, clock=clock).rate_limit_state.daily_rollback_count == 1
        clock.now += 24 * HOUR
        assert SelfHealingMonitor(project, config=config, clock=clock).rate_limit_state.daily_rollback_count == 0


class TestAutoHeal:
    """Test the periodic evaluation pass."""

    def test_grace_period(self, monitor: SelfHealingMonitor, clock: Clock):
        app = monitor.record_application("p1", "proposals/p1", ["docs/guide.md"], _metrics())
        _degrade(monitor, app.id)

        clock.now += 5 * HOUR
        assert monitor.run_auto_heal() == []
        assert app.status == ApplicationStatus.MONITORING

    def test_degraded_application_rolled_back(self, project: Path, monitor: SelfHealingMonitor, clock: Clock):
        app = monitor.record_application("p1", "proposals/p1", ["docs/guide.md"], _metrics())
        (project / "docs" / "guide.md").write_text("worse\n")
        _degrade(monitor, app.id)

        clock.now += 6 * HOUR
        actions = monitor.run_auto_heal()

        assert len(actions) == 1
        assert actions[0].automatic
        assert actions[0].triggered_by == "auto-heal"
        assert actions[0].reason.startswith("Significant degradation detected")
        assert (project / "docs" / "guide.md").read_text() == "# Guide\nOld advice.\nEnd.\n"
        assert app.status == ApplicationStatus.ROLLED_BACK

    def test_rate_limited_stays_monitoring(self, project: Path, clock: Clock, tmp_path: Path):
        telemetry = TelemetrySink(enabled=True, path=tmp_path / "t.jsonl")
        monitor = SelfHealingMonitor(
            project, config=SelfHealingConfig(max_daily_rollbacks=1), telemetry=telemetry, clock=clock
        )
        apps = [monitor.record_application(f"p{i}", f"proposals/p{i}", ["docs/guide.md"], _metrics()) for i in (1, 2)]
        for app in apps:
            _degrade(monitor, app.id)

        clock.now += 6 * HOUR
        actions = monitor.run_auto_heal()

        assert len(actions) == 1
        assert apps[1].status == ApplicationStatus.MONITORING
        assert "auto_rollback_rate_limited" in (tmp_path / "t.jsonl").read_text()

    def test_auto_rollback_disabled_marks_degraded(self, project: Path, clock: Clock):
        monitor = SelfHealingMonitor(project, config=SelfHealingConfig(auto_rollback_enabled=False), clock=clock)
        app = monitor.record_application("p1", "proposals/p1", ["docs/guide.md"], _metrics())
        _degrade(monitor, app.id)

        clock.now += 6 * HOUR
        assert monitor.run_auto_heal() == []
        assert app.status == ApplicationStatus.DEGRADED
        assert not app.rolled_back

    def test_healthy_application_becomes_effective(self, monitor: SelfHealingMonitor, clock: Clock):
        app = monitor.record_application("p1", "proposals/p1", ["docs/guide.md"], _metrics())
        monitor.update_metrics(app.id, _metrics(success=0.95))

        clock.now += 12 * HOUR
        monitor.run_auto_heal()
        assert app.status == ApplicationStatus.MONITORING

        clock.now += 12 * HOUR
        monitor.run_auto_heal()
        assert app.status == ApplicationStatus.EFFECTIVE

    def test_disabled_monitor_does_nothing(self, project: Path, clock: Clock):
        monitor = SelfHealingMonitor(project, config=SelfHealingConfig(enabled=False), clock=clock)
        app = monitor.record_application("p1", "proposals/p1", ["docs/guide.md"], _metrics())
        _degrade(monitor, app.id)
        clock.now += 48 * HOUR
        assert monitor.run_auto_heal() == []


class TestMaintenance:
    def test_update_config_persists(self, project: Path, monitor: SelfHealingMonitor, clock: Clock):
        monitor.update_config(max_daily_rollbacks=9)
        assert SelfHealingMonitor(project, clock=clock).config.max_daily_rollbacks == 9

    def test_cleanup_old_backups(self, project: Path, monitor: SelfHealingMonitor, clock: Clock):
        old = monitor.record_application("p1", "proposals/p1", ["docs/guide.md"], _metrics())
        kept = monitor.record_application("p2", "proposals/p2", ["docs/guide.md"], _metrics())
        monitor.rollback(old.id, "old")

        clock.now += 31 * 24 * HOUR
        assert monitor.cleanup_old_backups() == 1

        backups = project / SELF_HEALING_DIR / "backups"
        assert not (backups / old.id).exists()
        assert (backups / kept.id).exists()
