"""Core data types for the governance pipeline."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class SignalType(str, Enum):
    """Patterns the host detects from agent traces."""

    DOOM_LOOP = "doom_loop"
    INSTRUCTION_DRIFT = "instruction_drift"
    CAPABILITY_GAP = "capability_gap"
    SUCCESS_PATTERN = "success_pattern"
    INEFFICIENCY = "inefficiency"
    USER_PREFERENCE = "user_preference"


class ProposalType(str, Enum):
    RULE_UPDATE = "rule_update"
    MODE_INSTRUCTION = "mode_instruction"
    TOOL_CREATION = "tool_creation"
    CONFIG_CHANGE = "config_change"
    PROMPT_REFINEMENT = "prompt_refinement"


class Risk(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ProposalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


# Allowed lifecycle moves; every other transition is refused by the store.
PROPOSAL_TRANSITIONS: dict[ProposalStatus, frozenset[ProposalStatus]] = {
    ProposalStatus.PENDING: frozenset({ProposalStatus.APPROVED, ProposalStatus.REJECTED}),
    ProposalStatus.APPROVED: frozenset({ProposalStatus.APPLIED, ProposalStatus.FAILED}),
    ProposalStatus.APPLIED: frozenset({ProposalStatus.ROLLED_BACK}),
    ProposalStatus.REJECTED: frozenset(),
    ProposalStatus.FAILED: frozenset(),
    ProposalStatus.ROLLED_BACK: frozenset(),
}


class VoteValue(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    ABSTAIN = "abstain"
    REQUEST_CHANGES = "request_changes"


class ApplicationStatus(str, Enum):
    MONITORING = "monitoring"
    EFFECTIVE = "effective"
    DEGRADED = "degraded"
    ROLLED_BACK = "rolled-back"
    NEEDS_REVIEW = "needs-review"


class RollbackOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(frozen=True)
class Signal:
    """A detected pattern that may warrant a proposal."""

    id: str
    type: SignalType
    confidence: float
    description: str
    source_event_ids: list[str] = field(default_factory=list)
    detected_at: float = field(default_factory=time.time)
    suggested_action: str | None = None
    context: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Invalid confidence: {self.confidence}. Must be within [0, 1]")
        object.__setattr__(self, "type", SignalType(self.type))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Signal:
        return cls(**data)


@dataclass
class Proposal:
    """A candidate change to the agent's configuration or behavior."""

    id: str
    type: ProposalType
    risk: Risk
    title: str
    description: str
    payload: dict[str, Any] = field(default_factory=dict)
    source_signal_id: str | None = None
    status: ProposalStatus = ProposalStatus.PENDING
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    reviewed_by: str | None = None
    review_notes: str | None = None
    rollback_data: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        self.type = ProposalType(self.type)
        self.risk = Risk(self.risk)
        self.status = ProposalStatus(self.status)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["risk"] = self.risk.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Proposal:
        return cls(**data)


@dataclass(frozen=True)
class Vote:
    """One council member's verdict on a proposal."""

    proposal_id: str
    role: str
    vote: VoteValue
    reason: str
    timestamp: float = field(default_factory=time.time)
    suggested_changes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["vote"] = self.vote.value
        return data


@dataclass(frozen=True)
class Decision:
    """Aggregated council outcome for a proposal."""

    proposal_id: str
    approved: bool
    reason: str
    votes: list[Vote] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)
    suggested_changes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "approved": self.approved,
            "reason": self.reason,
            "votes": [v.to_dict() for v in self.votes],
            "timestamp": self.timestamp,
            "suggested_changes": self.suggested_changes,
        }


@dataclass(frozen=True)
class AgentReviewResult:
    """Outcome of one delegated role review."""

    role: str
    vote: VoteValue
    confidence: float
    reasoning: str
    suggestions: list[str] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    duration_ms: float = 0.0
    completed_at: float = field(default_factory=time.time)
    error: str | None = None
    task_id: str | None = None


@dataclass(frozen=True)
class PerformanceMetrics:
    """Aggregate task performance over a measurement window."""

    success_rate: float
    average_cost: float
    average_duration_ms: float
    task_count: int
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PerformanceMetrics:
        return cls(**data)


@dataclass
class ProposalApplication:
    """A proposal that has been applied and is being watched for regressions."""

    id: str
    proposal_id: str
    proposal_path: str
    changed_files: list[str]
    before_metrics: PerformanceMetrics
    applied_at: float
    after_metrics: PerformanceMetrics | None = None
    status: ApplicationStatus = ApplicationStatus.MONITORING
    rolled_back: bool = False
    rollback_reason: str | None = None
    rolled_back_at: float | None = None
    # changed file -> backup file, or None when the file did not exist before.
    backup_paths: dict[str, str | None] = field(default_factory=dict)
    applied_record_id: str | None = None

    def __post_init__(self) -> None:
        self.status = ApplicationStatus(self.status)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProposalApplication:
        data = dict(data)
        data["before_metrics"] = PerformanceMetrics.from_dict(data["before_metrics"])
        if data.get("after_metrics") is not None:
            data["after_metrics"] = PerformanceMetrics.from_dict(data["after_metrics"])
        return cls(**data)


@dataclass(frozen=True)
class RollbackAction:
    """Audit entry for one rollback attempt."""

    id: str
    application_id: str
    timestamp: float
    reason: str
    restored_files: list[str]
    automatic: bool
    triggered_by: str
    result: RollbackOutcome
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["result"] = self.result.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollbackAction:
        data = dict(data)
        data["result"] = RollbackOutcome(data["result"])
        return cls(**data)
