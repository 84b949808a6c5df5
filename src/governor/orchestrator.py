"""Governance orchestrator - the signal -> proposal -> review -> apply loop.

The engine manages the full lifecycle:
1. Buffer learning signals until the threshold is reached
2. Generate proposals from the buffered signals
3. Review each proposal (autonomy gate, then council)
4. Apply approved proposals one at a time
5. Hand applied proposals to the self-healing monitor
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

from .application.engine import ProposalApplicationEngine
from .config import GovernorConfig
from .council.multi_agent import MultiAgentCouncil
from .council.simulated import Council
from .errors import GovernorError, InvalidTransitionError
from .events import COUNCIL_EVENT_FORWARDING, CouncilEventType, EventBus, EventType, GovernanceEvent
from .healing import SelfHealingMonitor
from .redaction import redact_text
from .store import ProposalStore
from .telemetry import TelemetrySink
from .types import PerformanceMetrics, Proposal, ProposalApplication, ProposalStatus, Risk, RollbackOutcome, Signal


@runtime_checkable
class ProposalGenerator(Protocol):
    def generate_from_signals(self, signals: list[Signal]) -> list[Proposal]: ...


@dataclass
class ApplyOutcome:
    success: bool
    changed_files: list[str] = field(default_factory=list)
    rollback_data: dict[str, Any] | None = None
    applied_record_id: str | None = None
    error: str | None = None


@runtime_checkable
class Applier(Protocol):
    def apply(self, proposal: Proposal) -> ApplyOutcome: ...


@runtime_checkable
class MetricsProvider(Protocol):
    def current_metrics(self) -> PerformanceMetrics: ...


class DirectoryApplier:
    """Applies proposals whose payload points at a proposal directory.

    The proposal has already been approved, so only the approval-tier
    eligibility check is enforced here.
    """

    def __init__(self, engine: ProposalApplicationEngine):
        self.engine = engine

    def apply(self, proposal: Proposal) -> ApplyOutcome:
        proposal_dir = proposal.payload.get("proposal_dir")
        if not proposal_dir:
            return ApplyOutcome(success=False, error="Proposal payload has no proposal_dir")

        parsed = self.engine.parse_proposal(self.engine.project_root / str(proposal_dir))
        if not self.engine.can_apply_with_approval(parsed):
            return ApplyOutcome(success=False, error=f"Proposal {proposal.id} is not eligible under site policy")

        result = self.engine.apply_proposal(parsed)
        if not result.applied:
            return ApplyOutcome(
                success=False,
                changed_files=result.changed_files,
                error="; ".join(result.errors or []) or "apply failed",
            )
        return ApplyOutcome(
            success=True,
            changed_files=result.changed_files,
            rollback_data={"applied_record_id": result.applied_record_id, "proposal_dir": str(proposal_dir)},
            applied_record_id=result.applied_record_id,
        )


@dataclass
class CycleStats:
    run_id: str
    signals_processed: int = 0
    proposals_generated: int = 0
    proposals_approved: int = 0
    proposals_rejected: int = 0
    proposals_pending: int = 0
    proposals_applied: int = 0
    proposals_failed: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


AnyCouncil = Council | MultiAgentCouncil


class GovernanceEngine:
    """
    Main orchestrator for the governance loop.

    Proposals are reviewed and applied strictly one at a time; only the
    multi-agent council fans out internally.
    """

    def __init__(
        self,
        project_root: Path | str,
        generator: ProposalGenerator,
        config: GovernorConfig | None = None,
        council: AnyCouncil | None = None,
        applier: Applier | None = None,
        engine: ProposalApplicationEngine | None = None,
        store: ProposalStore | None = None,
        monitor: SelfHealingMonitor | None = None,
        metrics: MetricsProvider | None = None,
        telemetry: TelemetrySink | None = None,
    ):
        self.project_root = Path(project_root).resolve()
        self.config = config or GovernorConfig()
        self.telemetry = telemetry or TelemetrySink.disabled()
        self.generator = generator
        self.applier = applier
        if engine is None and isinstance(applier, DirectoryApplier):
            engine = applier.engine
        self.engine = engine
        self.store = store or ProposalStore(self.project_root, telemetry=self.telemetry)
        self.monitor = monitor
        self.metrics = metrics
        self.events = EventBus(self.telemetry, source="governance")
        self._monitor_unsubscribe: Callable[[], None] | None = None
        if monitor is not None:
            self._monitor_unsubscribe = monitor.on(self._on_application_rolled_back)

        self.pending_signals: list[Signal] = []
        self.council: AnyCouncil | None = None
        self._council_unsubscribe: Callable[[], None] | None = None
        self.set_council(council if council is not None else Council(self.config.council, telemetry=self.telemetry))

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def on(self, listener: Callable[[GovernanceEvent], None]) -> Callable[[], None]:
        return self.events.on(listener)

    def set_council(self, council: AnyCouncil | None) -> None:
        """Swap the reviewing council; multi-agent events are re-published here."""
        if self._council_unsubscribe is not None:
            self._council_unsubscribe()
            self._council_unsubscribe = None

        self.council = council
        if isinstance(council, MultiAgentCouncil):
            self._council_unsubscribe = council.on(self._forward_council_event)

    def _forward_council_event(self, event: GovernanceEvent) -> None:
        if isinstance(event.type, CouncilEventType):
            self.events.emit(COUNCIL_EVENT_FORWARDING[event.type], event.data)

    def _reviewer_name(self) -> str:
        return "multi-agent-council" if isinstance(self.council, MultiAgentCouncil) else "council"

    def _on_application_rolled_back(self, event: GovernanceEvent) -> None:
        # The monitor restored the files; keep the store in step.
        application = event.data.get("application") or {}
        action = event.data.get("action") or {}
        proposal = self.store.get(str(application.get("proposal_id", "")))
        if proposal is None or proposal.status != ProposalStatus.APPLIED:
            return
        self._mark_rolled_back(
            proposal.id,
            application.get("applied_record_id"),
            triggered_by=str(action.get("triggered_by", "self-healing")),
        )

    def close(self) -> None:
        self.set_council(None)
        if self._monitor_unsubscribe is not None:
            self._monitor_unsubscribe()
            self._monitor_unsubscribe = None
        self.events.clear()

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    async def add_signal(self, signal: Signal) -> CycleStats | None:
        """Buffer a signal; runs a cycle once ``signal_threshold`` are pending."""
        if not self.config.autonomy.enabled:
            return None

        self.store.add_signal(signal)
        self.pending_signals.append(signal)
        self.events.emit(EventType.SIGNAL_DETECTED, {"signal": signal.to_dict()})

        if len(self.pending_signals) >= self.config.autonomy.signal_threshold:
            return await self.run_cycle()
        return None

    async def add_signals(self, signals: list[Signal]) -> list[CycleStats]:
        cycles: list[CycleStats] = []
        for signal in signals:
            stats = await self.add_signal(signal)
            if stats is not None:
                cycles.append(stats)
        return cycles

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleStats:
        """Turn all buffered signals into proposals and push each through review."""
        run_id = str(uuid.uuid4())[:8]
        stats = CycleStats(run_id=run_id)

        if not self.config.autonomy.enabled or not self.pending_signals:
            return stats

        self.telemetry.log(run_id, "cycle_started", {"pending_signals": len(self.pending_signals)})

        try:
            signals = list(self.pending_signals)
            self.pending_signals = []
            stats.signals_processed = len(signals)

            proposals = self.generator.generate_from_signals(signals)
            stats.proposals_generated = len(proposals)

            for proposal in proposals:
                self.store.add_proposal(proposal)
                self.events.emit(EventType.PROPOSAL_GENERATED, {"proposal": proposal.to_dict()})

            for proposal in proposals:
                verdict = await self._review_proposal(proposal)
                if verdict == ProposalStatus.APPROVED:
                    stats.proposals_approved += 1
                    if await self._apply_proposal(proposal, run_id):
                        stats.proposals_applied += 1
                    else:
                        stats.proposals_failed += 1
                elif verdict == ProposalStatus.REJECTED:
                    stats.proposals_rejected += 1
                else:
                    stats.proposals_pending += 1

            self.events.emit(EventType.CYCLE_COMPLETE, {"stats": stats.to_dict()})
            self.telemetry.log(run_id, "cycle_completed", {"status": "success", **stats.to_dict()})
        except Exception as e:
            stats.error = redact_text(str(e) or type(e).__name__, max_len=200)
            self.events.emit(EventType.ERROR, {"error": stats.error, "stats": stats.to_dict()})
            self.telemetry.log(run_id, "cycle_completed", {"status": "error", "error": stats.error})

        return stats

    def can_auto_apply(self, proposal: Proposal) -> bool:
        """Autonomy gate: level 2 applies all, level 1 low risk only, level 0 never."""
        level = self.config.autonomy.autonomy_level
        if level == 2:
            return True
        if level == 1:
            return proposal.risk == Risk.LOW
        return False

    async def _review_proposal(self, proposal: Proposal) -> ProposalStatus:
        if self.can_auto_apply(proposal) and not self.config.autonomy.council_enabled:
            self.store.update_status(
                proposal.id,
                ProposalStatus.APPROVED,
                reviewed_by="auto",
                review_notes="Auto-approved based on risk level and autonomy settings",
            )
            self.events.emit(EventType.PROPOSAL_APPROVED, {"proposal": proposal.to_dict()})
            return ProposalStatus.APPROVED

        if self.council is not None and self.config.autonomy.council_enabled:
            decision = await self.council.review_proposal(proposal)
            status = ProposalStatus.APPROVED if decision.approved else ProposalStatus.REJECTED
            self.store.update_status(
                proposal.id,
                status,
                reviewed_by=self._reviewer_name(),
                review_notes=decision.reason,
            )
            event = EventType.PROPOSAL_APPROVED if decision.approved else EventType.PROPOSAL_REJECTED
            self.events.emit(event, {"proposal": proposal.to_dict(), "decision": decision.to_dict()})
            return status

        # Needs a human: stays pending.
        return ProposalStatus.PENDING

    async def _apply_proposal(self, proposal: Proposal, run_id: str) -> bool:
        before = self.metrics.current_metrics() if self.metrics is not None else None
        try:
            if self.applier is None:
                outcome = ApplyOutcome(success=True, rollback_data=dict(proposal.payload))
            else:
                outcome = self.applier.apply(proposal)
        except Exception as e:
            outcome = ApplyOutcome(success=False, error=redact_text(str(e) or type(e).__name__, max_len=200))

        if not outcome.success:
            self.store.update_status(proposal.id, ProposalStatus.FAILED)
            self.events.emit(EventType.PROPOSAL_FAILED, {"proposal": proposal.to_dict(), "error": outcome.error})
            self.telemetry.log(run_id, "proposal_failed", {"proposal_id": proposal.id, "error": outcome.error})
            return False

        self.store.update_status(proposal.id, ProposalStatus.APPLIED, rollback_data=outcome.rollback_data)
        self.events.emit(EventType.PROPOSAL_APPLIED, {"proposal": proposal.to_dict()})
        self.telemetry.log(
            run_id,
            "proposal_applied",
            {"proposal_id": proposal.id, "applied_record_id": outcome.applied_record_id},
        )

        if self.monitor is not None and before is not None:
            self.monitor.record_application(
                proposal.id,
                str(proposal.payload.get("proposal_dir", "")),
                outcome.changed_files,
                before,
                applied_record_id=outcome.applied_record_id,
            )
        return True

    # ------------------------------------------------------------------
    # Manual actions
    # ------------------------------------------------------------------

    def get_pending_proposals(self) -> list[Proposal]:
        return self.store.get_pending()

    async def approve_proposal(self, proposal_id: str, notes: str | None = None) -> bool:
        """Approve a pending proposal; applies it right away when autonomy > 0."""
        proposal = self.store.get(proposal_id)
        if proposal is None or proposal.status != ProposalStatus.PENDING:
            return False

        self.store.update_status(
            proposal_id,
            ProposalStatus.APPROVED,
            reviewed_by="user",
            review_notes=notes or "Manually approved",
        )
        self.events.emit(EventType.PROPOSAL_APPROVED, {"proposal": proposal.to_dict()})

        if self.config.autonomy.autonomy_level > 0:
            return await self._apply_proposal(proposal, run_id="manual")
        return True

    def reject_proposal(self, proposal_id: str, reason: str | None = None) -> bool:
        proposal = self.store.get(proposal_id)
        if proposal is None or proposal.status != ProposalStatus.PENDING:
            return False

        self.store.update_status(
            proposal_id,
            ProposalStatus.REJECTED,
            reviewed_by="user",
            review_notes=reason or "Manually rejected",
        )
        self.events.emit(EventType.PROPOSAL_REJECTED, {"proposal": proposal.to_dict()})
        return True

    def rollback_proposal(self, proposal_id: str) -> Proposal:
        """Undo an applied proposal and move it to ``rolled_back``.

        Raises:
            ProposalNotFoundError: Unknown proposal id.
            InvalidTransitionError: The proposal is not applied.
            IntegrityError: The applied record or its backups are missing, or it was already rolled back.
            GovernorError: A monitored rollback restored only some files, or none.
        """
        proposal = self.store.require(proposal_id)
        if proposal.status != ProposalStatus.APPLIED:
            raise InvalidTransitionError(proposal_id, proposal.status.value, ProposalStatus.ROLLED_BACK.value)

        monitor = self.monitor
        application = self._monitored_application(proposal_id)
        if monitor is not None and application is not None:
            # Route through the monitor so its application state and rollback log stay current.
            action = monitor.rollback(application.id, "Manual rollback", triggered_by="user")
            if action.result != RollbackOutcome.SUCCESS:
                raise GovernorError(f"Rollback of proposal {proposal_id} was {action.result.value}: {action.error}")
            return self.store.require(proposal_id)

        record_id = (proposal.rollback_data or {}).get("applied_record_id")
        if record_id:
            if self.engine is None:
                raise GovernorError(f"Proposal {proposal_id} has an applied record but no application engine")
            self.engine.rollback_proposal(str(record_id))
        return self._mark_rolled_back(proposal_id, record_id, triggered_by="user")

    def _monitored_application(self, proposal_id: str) -> ProposalApplication | None:
        if self.monitor is None:
            return None
        candidates = [a for a in self.monitor.get_applications() if a.proposal_id == proposal_id and not a.rolled_back]
        return candidates[-1] if candidates else None

    def _mark_rolled_back(self, proposal_id: str, record_id: Any, triggered_by: str) -> Proposal:
        proposal = self.store.update_status(proposal_id, ProposalStatus.ROLLED_BACK)
        data = {"proposal_id": proposal_id, "record_id": record_id, "triggered_by": triggered_by}
        self.events.emit(EventType.PROPOSAL_ROLLED_BACK, {"proposal": proposal.to_dict(), **data})
        self.telemetry.log(triggered_by, "proposal_rolled_back", data)
        return proposal

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self.config.autonomy.enabled,
            "autonomy_level": self.config.autonomy.autonomy_level,
            "council": self._reviewer_name() if self.council is not None else None,
            "pending_signals": len(self.pending_signals),
            "store": self.store.stats(),
            "timestamp": time.time(),
        }
