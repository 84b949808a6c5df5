"""JSON persistence for proposals and recent signals.

Layout under ``.governor/state/``:

- ``state.json``: pending ids, applied history, recent signals and counters
- ``proposals/<id>.json``: one file per proposal

Every status change goes through ``update_status``, which refuses moves the
proposal lifecycle does not allow.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .application.engine import atomic_write_text
from .config import GOVERNOR_DIR
from .errors import InvalidTransitionError, ProposalNotFoundError
from .redaction import redact_text
from .telemetry import TelemetrySink
from .types import PROPOSAL_TRANSITIONS, Proposal, ProposalStatus, Signal, SignalType

STATE_DIR = f"{GOVERNOR_DIR}/state"
STATE_FILE = "state.json"
PROPOSALS_DIR = "proposals"


@dataclass
class StoreStats:
    total_proposals: int = 0
    approved_proposals: int = 0
    rejected_proposals: int = 0
    doom_loops_detected: int = 0


@dataclass
class StoreState:
    pending_proposals: list[str] = field(default_factory=list)
    applied_proposals: list[str] = field(default_factory=list)
    recent_signals: list[dict[str, Any]] = field(default_factory=list)
    stats: StoreStats = field(default_factory=StoreStats)
    last_updated: float = 0.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoreState:
        data = dict(data)
        data["stats"] = StoreStats(**data.get("stats", {}))
        return cls(**data)


class ProposalStore:
    """File-backed proposal store with lifecycle enforcement."""

    def __init__(
        self,
        project_root: Path | str,
        telemetry: TelemetrySink | None = None,
        max_applied_history: int = 100,
        max_recent_signals: int = 100,
    ):
        self.state_dir = Path(project_root).resolve() / STATE_DIR
        self.proposals_dir = self.state_dir / PROPOSALS_DIR
        self.telemetry = telemetry or TelemetrySink.disabled()
        self.max_applied_history = max_applied_history
        self.max_recent_signals = max_recent_signals

        self.state = self._load_state()
        self._proposals: dict[str, Proposal] = self._load_proposals()

    def _load_state(self) -> StoreState:
        path = self.state_dir / STATE_FILE
        if not path.exists():
            return StoreState()
        try:
            return StoreState.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, TypeError, OSError) as e:
            self.telemetry.log(
                "store",
                "state_invalid",
                {"path": str(path), "error": redact_text(str(e), max_len=200)},
            )
            return StoreState()

    def _load_proposals(self) -> dict[str, Proposal]:
        proposals: dict[str, Proposal] = {}
        if not self.proposals_dir.exists():
            return proposals
        for path in sorted(self.proposals_dir.glob("*.json")):
            try:
                proposal = Proposal.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (json.JSONDecodeError, TypeError, ValueError, OSError) as e:
                self.telemetry.log(
                    "store",
                    "proposal_invalid",
                    {"path": str(path), "error": redact_text(str(e), max_len=200)},
                )
                continue
            proposals[proposal.id] = proposal
        return proposals

    def _save_state(self) -> None:
        self.state.last_updated = time.time()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        atomic_write_text(self.state_dir / STATE_FILE, json.dumps(asdict(self.state), indent=2))

    def _save_proposal(self, proposal: Proposal) -> None:
        self.proposals_dir.mkdir(parents=True, exist_ok=True)
        atomic_write_text(
            self.proposals_dir / f"{proposal.id}.json",
            json.dumps(proposal.to_dict(), indent=2, default=str),
        )

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    def add_proposal(self, proposal: Proposal) -> None:
        self._proposals[proposal.id] = proposal
        if proposal.status == ProposalStatus.PENDING:
            self.state.pending_proposals.append(proposal.id)
        self.state.stats.total_proposals += 1
        self._save_proposal(proposal)
        self._save_state()

    def get(self, proposal_id: str) -> Proposal | None:
        return self._proposals.get(proposal_id)

    def require(self, proposal_id: str) -> Proposal:
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise ProposalNotFoundError(f"Proposal not found: {proposal_id}")
        return proposal

    def all(self) -> list[Proposal]:
        return sorted(self._proposals.values(), key=lambda p: p.created_at)

    def get_pending(self) -> list[Proposal]:
        return [self._proposals[pid] for pid in self.state.pending_proposals if pid in self._proposals]

    def update_status(
        self,
        proposal_id: str,
        status: ProposalStatus,
        reviewed_by: str | None = None,
        review_notes: str | None = None,
        rollback_data: dict[str, Any] | None = None,
    ) -> Proposal:
        """Move a proposal to ``status``.

        Raises:
            ProposalNotFoundError: Unknown proposal id.
            InvalidTransitionError: The lifecycle does not allow the move.
        """
        proposal = self.require(proposal_id)
        status = ProposalStatus(status)
        if status not in PROPOSAL_TRANSITIONS[proposal.status]:
            raise InvalidTransitionError(proposal_id, proposal.status.value, status.value)

        proposal.status = status
        proposal.updated_at = time.time()
        if reviewed_by:
            proposal.reviewed_by = reviewed_by
        if review_notes:
            proposal.review_notes = review_notes
        if rollback_data is not None:
            proposal.rollback_data = rollback_data

        if status != ProposalStatus.PENDING and proposal_id in self.state.pending_proposals:
            self.state.pending_proposals.remove(proposal_id)

        if status == ProposalStatus.APPLIED:
            self.state.applied_proposals.append(proposal_id)
            self.state.stats.approved_proposals += 1
            del self.state.applied_proposals[: -self.max_applied_history]
        elif status == ProposalStatus.REJECTED:
            self.state.stats.rejected_proposals += 1

        self._save_proposal(proposal)
        self._save_state()
        return proposal

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def add_signal(self, signal: Signal) -> None:
        self.state.recent_signals.append(signal.to_dict())
        if signal.type == SignalType.DOOM_LOOP:
            self.state.stats.doom_loops_detected += 1
        del self.state.recent_signals[: -self.max_recent_signals]
        self._save_state()

    def get_recent_signals(self) -> list[Signal]:
        return [Signal.from_dict(s) for s in self.state.recent_signals]

    def stats(self) -> dict[str, int]:
        return {
            **asdict(self.state.stats),
            "pending_proposals": len(self.state.pending_proposals),
            "applied_proposals": len(self.state.applied_proposals),
        }
