"""Self-healing monitor: watch applied proposals and roll back regressions.

Each applied proposal is recorded with the metrics observed before it landed.
Once enough post-application tasks have run, the before/after metrics are
compared; a severe regression triggers an automatic rollback, bounded by a
daily quota. State lives under ``.governor/self-healing/``:

- ``config.yaml``: persisted ``SelfHealingConfig``
- ``applications.json``: monitored applications
- ``rollback-log.json``: every rollback attempt, manual or automatic
- ``backups/<application id>/``: pre-application file copies
"""

from __future__ import annotations

import json
import shutil
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import yaml
from pydantic import ValidationError

from .application.engine import ProposalApplicationEngine, atomic_write_bytes, atomic_write_text
from .application.safe_paths import safe_resolve
from .config import GOVERNOR_DIR, DegradationThresholds, SelfHealingConfig
from .errors import (
    AlreadyRolledBackError,
    ApplicationNotFoundError,
    GovernorError,
    IntegrityError,
    RollbackRateLimitError,
)
from .events import EventBus, EventType, GovernanceEvent
from .redaction import redact_text
from .telemetry import TelemetrySink
from .types import (
    ApplicationStatus,
    PerformanceMetrics,
    ProposalApplication,
    RollbackAction,
    RollbackOutcome,
)

SELF_HEALING_DIR = f"{GOVERNOR_DIR}/self-healing"
APPLICATIONS_FILE = "applications.json"
ROLLBACK_LOG_FILE = "rollback-log.json"
BACKUPS_DIR = "backups"
CONFIG_FILE = "config.yaml"

ROLLBACK_SEVERITY = 50.0


@dataclass(frozen=True)
class DegradedMetric:
    name: str
    before: float
    after: float
    change_percent: float
    significant: bool = True


@dataclass(frozen=True)
class DegradationResult:
    degraded: bool
    severity: float
    degraded_metrics: list[DegradedMetric]
    recommendation: str  # "rollback" | "monitor" | "ignore"
    explanation: str


@dataclass
class RollbackRateLimitState:
    daily_rollback_count: int = 0
    daily_rollback_date: str | None = None
    last_rollback_timestamp: float | None = None


def calculate_percent_change(before: float, after: float) -> float:
    """Relative change in percent; a change away from zero counts as +100%."""
    if before == 0:
        return 0.0 if after == 0 else 100.0
    return (after - before) / before * 100.0


def detect_degradation(
    before: PerformanceMetrics,
    after: PerformanceMetrics,
    thresholds: DegradationThresholds | None = None,
) -> DegradationResult:
    """Compare two metric snapshots and recommend rollback, monitor or ignore.

    Success rate is compared in percentage points and is worth up to 50
    severity points; cost and duration are compared in percent and are worth
    up to 25 points each.
    """
    thresholds = thresholds or DegradationThresholds()
    degraded_metrics: list[DegradedMetric] = []

    success_change = (after.success_rate - before.success_rate) * 100.0
    if success_change < -thresholds.success_rate_drop_percent:
        degraded_metrics.append(
            DegradedMetric("success_rate", before.success_rate, after.success_rate, success_change)
        )

    cost_change = calculate_percent_change(before.average_cost, after.average_cost)
    if cost_change > thresholds.cost_increase_percent:
        degraded_metrics.append(
            DegradedMetric("average_cost", before.average_cost, after.average_cost, cost_change)
        )

    duration_change = calculate_percent_change(before.average_duration_ms, after.average_duration_ms)
    if duration_change > thresholds.duration_increase_percent:
        degraded_metrics.append(
            DegradedMetric(
                "average_duration_ms",
                before.average_duration_ms,
                after.average_duration_ms,
                duration_change,
            )
        )

    significant = [m for m in degraded_metrics if m.significant]
    severity = 0.0
    for m in significant:
        if m.name == "success_rate":
            severity += min(50.0, abs(m.change_percent) * 5)
        else:
            severity += min(25.0, abs(m.change_percent) / 2)
    severity = min(100.0, severity)

    if severity >= ROLLBACK_SEVERITY:
        recommendation = "rollback"
        explanation = (
            f"Significant degradation detected (severity: {severity:g}/100). "
            "Immediate rollback recommended."
        )
    elif severity > 0:
        recommendation = "monitor"
        explanation = f"Minor degradation detected (severity: {severity:g}/100). Continue monitoring."
    else:
        recommendation = "ignore"
        explanation = "No significant degradation detected."

    return DegradationResult(
        degraded=bool(significant),
        severity=severity,
        degraded_metrics=degraded_metrics,
        recommendation=recommendation,
        explanation=explanation,
    )


def utc_date(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


def check_rollback_rate_limit(state: RollbackRateLimitState, max_daily: int, now: float) -> bool:
    """True if another automatic rollback fits in today's (UTC) quota."""
    count = state.daily_rollback_count if state.daily_rollback_date == utc_date(now) else 0
    return count < max_daily


def update_rollback_rate_limit_state(state: RollbackRateLimitState, now: float) -> RollbackRateLimitState:
    today = utc_date(now)
    count = state.daily_rollback_count + 1 if state.daily_rollback_date == today else 1
    return RollbackRateLimitState(
        daily_rollback_count=count,
        daily_rollback_date=today,
        last_rollback_timestamp=now,
    )


def _new_id(prefix: str, now: float) -> str:
    return f"{prefix}-{int(now * 1000)}-{uuid.uuid4().hex[:7]}"


@dataclass
class _RestoreOutcome:
    restored: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class SelfHealingMonitor:
    """Tracks applied proposals and rolls back the ones that made things worse."""

    def __init__(
        self,
        project_root: Path | str,
        config: SelfHealingConfig | None = None,
        engine: ProposalApplicationEngine | None = None,
        telemetry: TelemetrySink | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.project_root = Path(project_root).resolve()
        self.data_dir = self.project_root / SELF_HEALING_DIR
        self.backups_dir = self.data_dir / BACKUPS_DIR
        self.engine = engine
        self.telemetry = telemetry or TelemetrySink.disabled()
        self._clock = clock or time.time

        self.config = config if config is not None else self._load_config()
        self.applications: list[ProposalApplication] = self._load_list(
            APPLICATIONS_FILE, ProposalApplication.from_dict
        )
        self.rollback_log: list[RollbackAction] = self._load_list(ROLLBACK_LOG_FILE, RollbackAction.from_dict)
        self.rate_limit_state = self._rate_limit_from_log()
        self.events = EventBus(self.telemetry, source="self_healing")

    def on(self, listener: Callable[[GovernanceEvent], None]) -> Callable[[], None]:
        """Listen for successful rollbacks (``application_rolled_back``)."""
        return self.events.on(listener)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_config(self) -> SelfHealingConfig:
        path = self.data_dir / CONFIG_FILE
        if not path.exists():
            return SelfHealingConfig()
        try:
            with open(path, encoding="utf-8") as f:
                return SelfHealingConfig(**(yaml.safe_load(f) or {}))
        except (yaml.YAMLError, ValidationError, TypeError, OSError) as e:
            self.telemetry.log(
                "self_healing",
                "self_healing_config_invalid",
                {"path": str(path), "error": redact_text(str(e), max_len=200)},
            )
            return SelfHealingConfig()

    def _load_list(self, name: str, parse: Callable[[dict[str, Any]], Any]) -> list[Any]:
        path = self.data_dir / name
        if not path.exists():
            return []
        try:
            return [parse(item) for item in json.loads(path.read_text(encoding="utf-8"))]
        except (json.JSONDecodeError, TypeError, KeyError, ValueError, OSError) as e:
            self.telemetry.log(
                "self_healing",
                "self_healing_state_invalid",
                {"path": str(path), "error": redact_text(str(e), max_len=200)},
            )
            return []

    def _rate_limit_from_log(self) -> RollbackRateLimitState:
        today = utc_date(self._clock())
        automatic_today = [a for a in self.rollback_log if a.automatic and utc_date(a.timestamp) == today]
        if not automatic_today:
            return RollbackRateLimitState()
        return RollbackRateLimitState(
            daily_rollback_count=len(automatic_today),
            daily_rollback_date=today,
            last_rollback_timestamp=max(a.timestamp for a in automatic_today),
        )

    def _save_state(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        atomic_write_text(
            self.data_dir / APPLICATIONS_FILE,
            json.dumps([a.to_dict() for a in self.applications], indent=2),
        )
        atomic_write_text(
            self.data_dir / ROLLBACK_LOG_FILE,
            json.dumps([a.to_dict() for a in self.rollback_log], indent=2),
        )

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def get_application(self, application_id: str) -> ProposalApplication | None:
        return next((a for a in self.applications if a.id == application_id), None)

    def get_applications(self) -> list[ProposalApplication]:
        return list(self.applications)

    def get_rollback_log(self) -> list[RollbackAction]:
        return list(self.rollback_log)

    def create_backup(self, files: list[str], application_id: str) -> dict[str, str | None]:
        """Copy the current content of ``files``; absent files map to None."""
        backup_dir = self.backups_dir / application_id
        backup_dir.mkdir(parents=True, exist_ok=True)

        backup_paths: dict[str, str | None] = {}
        for rel in files:
            source = safe_resolve(self.project_root, rel)
            if not source.is_file():
                backup_paths[rel] = None
                continue
            dest = backup_dir / rel.replace("/", "_").replace("\\", "_")
            dest.write_bytes(source.read_bytes())
            backup_paths[rel] = dest.relative_to(self.project_root).as_posix()
        return backup_paths

    def record_application(
        self,
        proposal_id: str,
        proposal_path: str,
        changed_files: list[str],
        before_metrics: PerformanceMetrics,
        applied_record_id: str | None = None,
    ) -> ProposalApplication:
        """Start monitoring an application.

        With an ``applied_record_id`` the application engine already holds the
        pre-images, so no copies are taken here. Otherwise the files are
        backed up now, which must happen before they are modified.
        """
        now = self._clock()
        application_id = _new_id("app", now)
        backup_paths = {} if applied_record_id else self.create_backup(changed_files, application_id)

        application = ProposalApplication(
            id=application_id,
            proposal_id=proposal_id,
            proposal_path=proposal_path,
            changed_files=list(changed_files),
            before_metrics=before_metrics,
            applied_at=now,
            backup_paths=backup_paths,
            applied_record_id=applied_record_id,
        )
        self.applications.append(application)
        self._save_state()
        self.telemetry.log(
            "self_healing",
            "application_recorded",
            {"application_id": application_id, "proposal_id": proposal_id, "applied_record_id": applied_record_id},
        )
        return application

    def update_metrics(self, application_id: str, after_metrics: PerformanceMetrics) -> None:
        application = self.get_application(application_id)
        if application is None:
            return
        application.after_metrics = after_metrics
        self._save_state()

    def evaluate_application(self, application_id: str) -> DegradationResult | None:
        """Degradation verdict, or None until enough tasks have been observed."""
        application = self.get_application(application_id)
        if application is None or application.after_metrics is None:
            return None
        if application.after_metrics.task_count < self.config.min_tasks_for_evaluation:
            return None
        return detect_degradation(
            application.before_metrics,
            application.after_metrics,
            self.config.degradation_thresholds,
        )

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback(
        self,
        application_id: str,
        reason: str,
        automatic: bool = False,
        triggered_by: str = "self-healing",
    ) -> RollbackAction:
        """Restore the files an application changed.

        Raises:
            ApplicationNotFoundError: Unknown application id.
            AlreadyRolledBackError: The application was already rolled back.
            RollbackRateLimitError: Automatic rollback quota for today is used up.
            IntegrityError: The applied record or one of its backups is missing.
        """
        application = self.get_application(application_id)
        if application is None:
            raise ApplicationNotFoundError(f"Application not found: {application_id}")
        if application.rolled_back:
            raise AlreadyRolledBackError(f"Application already rolled back: {application_id}")

        now = self._clock()
        if automatic and not check_rollback_rate_limit(
            self.rate_limit_state, self.config.max_daily_rollbacks, now
        ):
            raise RollbackRateLimitError(self.config.max_daily_rollbacks)

        try:
            outcome = self._restore(application)
        except IntegrityError as e:
            self._finish_rollback(
                application,
                reason,
                automatic,
                triggered_by,
                _RestoreOutcome(errors=[redact_text(str(e), max_len=200)]),
            )
            raise

        return self._finish_rollback(application, reason, automatic, triggered_by, outcome)

    def _restore(self, application: ProposalApplication) -> _RestoreOutcome:
        if application.applied_record_id and self.engine is not None:
            report = self.engine.rollback_proposal(application.applied_record_id)
            return _RestoreOutcome(restored=report.restored_files + report.deleted_files)

        outcome = _RestoreOutcome()
        for rel, backup in application.backup_paths.items():
            try:
                target = safe_resolve(self.project_root, rel)
                if backup is None:
                    target.unlink(missing_ok=True)
                else:
                    atomic_write_bytes(target, (self.project_root / backup).read_bytes())
                outcome.restored.append(rel)
            except (OSError, GovernorError) as e:
                outcome.errors.append(f"Failed to restore {rel}: {e}")
        return outcome

    def _finish_rollback(
        self,
        application: ProposalApplication,
        reason: str,
        automatic: bool,
        triggered_by: str,
        outcome: _RestoreOutcome,
    ) -> RollbackAction:
        now = self._clock()
        errors = list(outcome.errors)
        if not outcome.restored:
            result = RollbackOutcome.FAILED
            if not errors:
                errors.append("No files were restored")
        elif errors:
            result = RollbackOutcome.PARTIAL
        else:
            result = RollbackOutcome.SUCCESS

        if result == RollbackOutcome.SUCCESS:
            application.status = ApplicationStatus.ROLLED_BACK
            application.rolled_back = True
            application.rolled_back_at = now
        else:
            application.status = ApplicationStatus.NEEDS_REVIEW
        application.rollback_reason = reason

        action = RollbackAction(
            id=_new_id("rb", now),
            application_id=application.id,
            timestamp=now,
            reason=reason,
            restored_files=outcome.restored,
            automatic=automatic,
            triggered_by=triggered_by,
            result=result,
            error="; ".join(errors) if errors else None,
        )
        self.rollback_log.append(action)
        if automatic:
            self.rate_limit_state = update_rollback_rate_limit_state(self.rate_limit_state, now)
        self._save_state()

        self.telemetry.log(
            "self_healing",
            "auto_rollback" if automatic else "manual_rollback",
            {
                "application_id": application.id,
                "proposal_id": application.proposal_id,
                "result": result.value,
                "restored_files": outcome.restored,
                "triggered_by": triggered_by,
                "error": action.error,
            },
        )
        if result == RollbackOutcome.SUCCESS:
            self.events.emit(
                EventType.APPLICATION_ROLLED_BACK,
                {"application": application.to_dict(), "action": action.to_dict()},
            )
        return action

    def run_auto_heal(self) -> list[RollbackAction]:
        """Evaluate every monitored application once and act on the verdicts."""
        if not self.config.enabled:
            return []

        now = self._clock()
        period = self.config.monitoring_period_seconds
        actions: list[RollbackAction] = []

        for app in [a for a in self.applications if a.status == ApplicationStatus.MONITORING and not a.rolled_back]:
            elapsed = now - app.applied_at
            if elapsed < period / 4:
                continue

            verdict = self.evaluate_application(app.id)
            if verdict is None:
                continue

            if verdict.recommendation == "rollback":
                if not self.config.auto_rollback_enabled:
                    app.status = ApplicationStatus.DEGRADED
                    self._save_state()
                    self.telemetry.log(
                        "self_healing",
                        "application_degraded",
                        {"application_id": app.id, "severity": verdict.severity},
                    )
                    continue
                try:
                    actions.append(self.rollback(app.id, verdict.explanation, automatic=True, triggered_by="auto-heal"))
                except RollbackRateLimitError as e:
                    self.telemetry.log(
                        "self_healing",
                        "auto_rollback_rate_limited",
                        {"application_id": app.id, "error": str(e)},
                    )
            elif elapsed >= period and verdict.recommendation == "ignore":
                app.status = ApplicationStatus.EFFECTIVE
                self._save_state()
                self.telemetry.log("self_healing", "application_effective", {"application_id": app.id})

        return actions

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def update_config(self, **updates: Any) -> SelfHealingConfig:
        """Merge ``updates`` into the config and persist it as YAML."""
        self.config = SelfHealingConfig(**{**self.config.model_dump(), **updates})
        self.data_dir.mkdir(parents=True, exist_ok=True)
        atomic_write_text(
            self.data_dir / CONFIG_FILE,
            yaml.safe_dump(self.config.model_dump(), sort_keys=False),
        )
        return self.config

    def cleanup_old_backups(self) -> int:
        """Delete backups of applications rolled back before the retention cutoff."""
        if not self.backups_dir.exists():
            return 0

        cutoff = self._clock() - self.config.backup_retention_days * 86400
        cleaned = 0
        for entry in sorted(self.backups_dir.iterdir()):
            if not entry.is_dir():
                continue
            app = self.get_application(entry.name)
            if app is None or not app.rolled_back:
                continue
            if (app.rolled_back_at or 0.0) < cutoff:
                try:
                    shutil.rmtree(entry)
                except OSError as e:
                    self.telemetry.log(
                        "self_healing",
                        "backup_cleanup_failed",
                        {"path": str(entry), "error": redact_text(str(e), max_len=200)},
                    )
                    continue
                cleaned += 1
        return cleaned
