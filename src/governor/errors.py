"""Exception hierarchy for the governance pipeline."""

from __future__ import annotations


class GovernorError(Exception):
    """Base class for all governance errors."""


class ProposalValidationError(GovernorError):
    """Proposal metadata or site policy failed validation."""


class PatchApplyError(GovernorError):
    """A unified diff could not be applied to its pre-image."""


class UnsafePathError(GovernorError):
    """A change targets a protected path or a path outside the project root."""


class DelegationError(GovernorError):
    """A delegated council review could not be started or completed."""


class AgentTimeoutError(DelegationError):
    """A delegated council review did not finish in time."""

    def __init__(self, role: str, timeout_seconds: float):
        super().__init__(f"Agent {role} timed out after {timeout_seconds}s")
        self.role = role
        self.timeout_seconds = timeout_seconds


class RollbackRateLimitError(GovernorError):
    """The daily automatic rollback quota is exhausted."""

    def __init__(self, limit: int):
        super().__init__(f"Daily rollback limit ({limit}) reached")
        self.limit = limit


class IntegrityError(GovernorError):
    """An applied record or its backups are missing or malformed."""


class InvalidTransitionError(GovernorError):
    """A proposal status change is not allowed by the lifecycle."""

    def __init__(self, proposal_id: str, current: str, target: str):
        super().__init__(f"Proposal {proposal_id}: cannot move from {current} to {target}")
        self.proposal_id = proposal_id
        self.current = current
        self.target = target


class ProposalNotFoundError(GovernorError):
    """No stored proposal has the requested id."""


class ApplicationNotFoundError(GovernorError):
    """No monitored application has the requested id."""


class AlreadyRolledBackError(GovernorError):
    """The monitored application has already been rolled back."""
