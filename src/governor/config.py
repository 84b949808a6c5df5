"""Configuration schema for Agent Governor.

Two layers are loaded from the project:

- ``.governor.yml`` in the project root configures the pipeline itself
  (autonomy, council, self-healing, completion backend, telemetry).
- ``.governor/config.yaml`` is the site policy that decides which paths may be
  auto-applied. It is re-read on every eligibility check so edits take effect
  immediately.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .telemetry import TelemetrySink

GOVERNOR_DIR = ".governor"
SITE_POLICY_PATH = f"{GOVERNOR_DIR}/config.yaml"

VALID_POLICIES = {"unanimity", "majority", "any_approve", "weighted"}
SIMULATED_ROLES = {"analyst", "reviewer", "security", "user"}
MULTI_AGENT_ROLES = {"analyst", "reviewer", "security", "performance"}


class AutomationLevel:
    """Site policy automation levels."""

    MANUAL = 0
    AUTO_TRIGGER = 1
    AUTO_APPLY_LOW_RISK = 2
    FULL_CLOSED_LOOP = 3


class AutonomyConfig(BaseModel):
    """Orchestration loop behavior."""

    enabled: bool = True
    # 0 = manual, 1 = assisted (low risk only), 2 = auto.
    autonomy_level: int = 0
    council_enabled: bool = True
    signal_threshold: int = 5

    @field_validator("autonomy_level")
    @classmethod
    def validate_autonomy_level(cls, v: int) -> int:
        if v not in {0, 1, 2}:
            raise ValueError(f"Invalid autonomy_level: {v}. Must be 0, 1 or 2")
        return v

    @field_validator("signal_threshold")
    @classmethod
    def validate_signal_threshold(cls, v: int) -> int:
        if v < 1:
            raise ValueError("signal_threshold must be >= 1")
        return v


class CouncilConfig(BaseModel):
    """Simulated council settings."""

    voting_policy: str = "majority"
    active_roles: list[str] = Field(default_factory=lambda: ["analyst", "reviewer", "security"])
    require_human_review: bool = False

    @field_validator("voting_policy")
    @classmethod
    def validate_voting_policy(cls, v: str) -> str:
        # Weighted voting needs per-vote confidence, which only delegated reviews carry.
        valid = VALID_POLICIES - {"weighted"}
        if v not in valid:
            raise ValueError(f"Invalid voting_policy: {v}. Must be one of {sorted(valid)}")
        return v

    @field_validator("active_roles")
    @classmethod
    def validate_active_roles(cls, v: list[str]) -> list[str]:
        unknown = [r for r in v if r not in SIMULATED_ROLES]
        if unknown:
            raise ValueError(f"Unknown council roles: {unknown}")
        return v


class MultiAgentConfig(BaseModel):
    """Delegated multi-agent council settings."""

    enabled: bool = True
    agent_timeout_seconds: float = 300.0
    max_concurrent_agents: int = 4
    active_roles: list[str] = Field(
        default_factory=lambda: ["analyst", "reviewer", "security", "performance"]
    )
    review_mode: str = "ask"
    min_confidence_threshold: float = 0.5
    voting_policy: str = "majority"
    continue_on_agent_failure: bool = True
    fallback_to_simulated: bool = True
    require_human_review: bool = False

    @field_validator("voting_policy")
    @classmethod
    def validate_voting_policy(cls, v: str) -> str:
        if v not in VALID_POLICIES:
            raise ValueError(f"Invalid voting_policy: {v}. Must be one of {sorted(VALID_POLICIES)}")
        return v

    @field_validator("active_roles")
    @classmethod
    def validate_active_roles(cls, v: list[str]) -> list[str]:
        unknown = [r for r in v if r not in MULTI_AGENT_ROLES]
        if unknown:
            raise ValueError(f"Unknown multi-agent roles: {unknown}")
        return v

    @field_validator("min_confidence_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("min_confidence_threshold must be within [0, 1]")
        return v

    @field_validator("max_concurrent_agents")
    @classmethod
    def validate_max_concurrent(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_concurrent_agents must be >= 1")
        return v


class DegradationThresholds(BaseModel):
    """Regression thresholds that flag an application as degraded."""

    success_rate_drop_percent: float = 10.0
    cost_increase_percent: float = 30.0
    duration_increase_percent: float = 50.0


class SelfHealingConfig(BaseModel):
    """Self-healing monitor settings (persisted under .governor/self-healing/)."""

    enabled: bool = True
    auto_rollback_enabled: bool = True
    max_daily_rollbacks: int = 3
    monitoring_period_hours: float = 24.0
    min_tasks_for_evaluation: int = 5
    degradation_thresholds: DegradationThresholds = Field(default_factory=DegradationThresholds)
    backup_retention_days: int = 30

    @property
    def monitoring_period_seconds(self) -> float:
        return self.monitoring_period_hours * 3600.0


class CompletionConfig(BaseModel):
    """OpenAI-compatible chat completion backend used for delegated reviews."""

    base_url: str = "http://localhost:11434/v1"
    model_id: str = "llama3.1"
    api_key: str | None = None
    max_concurrency: int = 4
    temperature: float = 0.2
    timeout_seconds: int = 300


class SchedulerConfig(BaseModel):
    """Periodic governance tick."""

    enabled: bool = True
    interval_seconds: int = 300


class TelemetryConfig(BaseModel):
    """Telemetry and logging configuration."""

    enabled: bool = True
    log_path: str = f"{GOVERNOR_DIR}/telemetry.jsonl"
    retention_days: int = 30


class GovernorConfig(BaseModel):
    """Complete governance pipeline configuration."""

    autonomy: AutonomyConfig = Field(default_factory=AutonomyConfig)
    council: CouncilConfig = Field(default_factory=CouncilConfig)
    multi_agent: MultiAgentConfig = Field(default_factory=MultiAgentConfig)
    self_healing: SelfHealingConfig = Field(default_factory=SelfHealingConfig)
    completion: CompletionConfig = Field(default_factory=CompletionConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    @classmethod
    def load_from_file(cls, config_path: Path | str) -> GovernorConfig:
        """Load configuration from YAML file."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load_from_project(cls, project_path: Path | str) -> GovernorConfig:
        """Load configuration from the project's .governor.yml."""
        config_path = Path(project_path) / ".governor.yml"

        if not config_path.exists():
            return cls()

        return cls.load_from_file(config_path)

    def apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        if v := os.getenv("GOVERNOR_AUTONOMY_LEVEL"):
            self.autonomy.autonomy_level = int(v)
        if os.getenv("GOVERNOR_DISABLED") == "1":
            self.autonomy.enabled = False
        if os.getenv("GOVERNOR_COUNCIL_DISABLED") == "1":
            self.autonomy.council_enabled = False
        if v := os.getenv("GOVERNOR_SIGNAL_THRESHOLD"):
            self.autonomy.signal_threshold = int(v)

        if os.getenv("GOVERNOR_MULTI_AGENT_DISABLED") == "1":
            self.multi_agent.enabled = False
        if v := os.getenv("GOVERNOR_AGENT_TIMEOUT_SECONDS"):
            self.multi_agent.agent_timeout_seconds = float(v)

        if os.getenv("GOVERNOR_AUTO_ROLLBACK_DISABLED") == "1":
            self.self_healing.auto_rollback_enabled = False
        if v := os.getenv("GOVERNOR_MAX_DAILY_ROLLBACKS"):
            self.self_healing.max_daily_rollbacks = int(v)

        if url := os.getenv("GOVERNOR_COMPLETION_BASE_URL"):
            self.completion.base_url = url
        if model := os.getenv("GOVERNOR_COMPLETION_MODEL"):
            self.completion.model_id = model
        if key := os.getenv("GOVERNOR_COMPLETION_API_KEY"):
            self.completion.api_key = key

        if log_path := os.getenv("GOVERNOR_TELEMETRY_PATH"):
            self.telemetry.log_path = log_path


def load_config(project_path: Path | str) -> GovernorConfig:
    """
    Load configuration for a project.

    Args:
        project_path: Path to the project root

    Returns:
        Loaded and validated configuration
    """
    config = GovernorConfig.load_from_project(project_path)
    config.apply_env_overrides()
    return config


# ---------------------------------------------------------------------------
# Site policy
# ---------------------------------------------------------------------------


class PolicyTriggers(BaseModel):
    model_config = ConfigDict(extra="forbid")

    failure_rate: float = Field(default=0.3, ge=0.0, le=1.0)
    cost_threshold: float = Field(default=100.0, ge=0.0)
    cooldown_seconds: int = Field(default=3600, ge=0)


class PolicySafety(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_daily_runs: int = Field(default=5, ge=0)
    auto_apply_types: list[Literal["mode-map", "docs", "memory", "rubric"]] = Field(
        default_factory=lambda: ["mode-map", "docs"]
    )


class SitePolicy(BaseModel):
    """Auto-apply policy read from .governor/config.yaml. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    version: Literal[1] = 1
    automation_level: int = Field(default=AutomationLevel.MANUAL, ge=0, le=3)
    last_review_date: str | None = None
    ab_test_active: bool = False
    auto_apply_patterns: list[str] = Field(default_factory=list)
    auto_apply_exclusions: list[str] = Field(default_factory=list)
    triggers: PolicyTriggers | None = None
    safety: PolicySafety | None = None


def load_site_policy(
    project_root: Path,
    policy_path: Path | None = None,
    telemetry: TelemetrySink | None = None,
) -> SitePolicy:
    """Read the site policy fresh from disk.

    A missing, unparsable or invalid file yields the default-deny policy
    (manual automation, no allowed patterns).
    """
    path = policy_path or (project_root / SITE_POLICY_PATH)
    if not path.exists():
        return SitePolicy()

    try:
        with open(path, encoding="utf-8") as f:
            data: Any = yaml.safe_load(f) or {}
        return SitePolicy(**data)
    except (yaml.YAMLError, ValidationError, TypeError, OSError) as e:
        if telemetry:
            telemetry.log(
                "policy",
                "site_policy_invalid",
                {"path": str(path), "error": str(e)[:200]},
            )
        return SitePolicy()
