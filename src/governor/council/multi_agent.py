"""Multi-agent council: each role reviews the proposal as a delegated task.

Roles run concurrently (bounded by ``max_concurrent_agents``) and each review
is raced against ``agent_timeout_seconds``. When delegation is unavailable or
the whole review fails, the council falls back to the simulated heuristics or,
if that is disabled, rejects the proposal outright.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from ..config import CouncilConfig, MultiAgentConfig
from ..errors import AgentTimeoutError, DelegationError
from ..events import CouncilEventType, EventBus, GovernanceEvent
from ..redaction import redact_text
from ..telemetry import TelemetrySink
from ..types import AgentReviewResult, Decision, Proposal, Risk, VoteValue
from .aggregate import aggregate_results, tally_votes
from .delegation import TaskDelegator, TodoItem
from .prompts import AGENT_PROMPTS, AgentRole, build_agent_prompt, parse_agent_response
from .simulated import Council, CouncilRole


@dataclass
class CouncilExecution:
    """Progress of one multi-agent review."""

    id: str
    proposal_id: str
    roles: list[str]
    status: str = "pending"  # pending | running | completed | failed
    results: list[AgentReviewResult] = field(default_factory=list)
    in_progress: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    duration_ms: float | None = None
    used_fallback: bool = False
    error: str | None = None
    decision: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["results"] = [
            {**asdict(r), "vote": r.vote.value} for r in self.results
        ]
        return data


def fallback_council_config(config: MultiAgentConfig) -> CouncilConfig:
    """Simulated council settings that mirror a multi-agent configuration."""
    simulated_roles = {r.value for r in CouncilRole}
    return CouncilConfig(
        voting_policy="majority" if config.voting_policy == "weighted" else config.voting_policy,
        active_roles=[r for r in config.active_roles if r in simulated_roles],
        require_human_review=config.require_human_review,
    )


class MultiAgentCouncil:
    """Council whose members are delegated agent tasks."""

    def __init__(
        self,
        delegator: TaskDelegator | None,
        config: MultiAgentConfig | None = None,
        telemetry: TelemetrySink | None = None,
        fallback: Council | None = None,
    ):
        self.delegator = delegator
        self.config = config or MultiAgentConfig()
        self.telemetry = telemetry or TelemetrySink.disabled()
        self.fallback_council = fallback or Council(fallback_council_config(self.config), telemetry=self.telemetry)
        self.events = EventBus(self.telemetry, source="council")
        self.active_execution: CouncilExecution | None = None
        self.last_execution: CouncilExecution | None = None

    def on(self, listener: Callable[[GovernanceEvent], None]) -> Callable[[], None]:
        return self.events.on(listener)

    def set_delegator(self, delegator: TaskDelegator | None) -> None:
        self.delegator = delegator

    def is_multi_agent_enabled(self) -> bool:
        return self.config.enabled and self.delegator is not None

    def update_config(self, config: MultiAgentConfig) -> None:
        self.config = config
        self.fallback_council = Council(fallback_council_config(config), telemetry=self.telemetry)

    async def review_proposal(self, proposal: Proposal) -> Decision:
        if proposal.risk == Risk.HIGH and self.config.require_human_review:
            return Decision(
                proposal_id=proposal.id,
                approved=False,
                reason="High-risk proposal requires human review",
                votes=[],
                timestamp=time.time(),
            )

        if self.delegator is None or not self.config.enabled:
            self.telemetry.log("council", "council_fallback", {"proposal_id": proposal.id, "reason": "delegation_unavailable"})
            return await self.fallback_council.review_proposal(proposal)

        current = self.delegator.get_current_task()
        if current is None:
            self.telemetry.log("council", "council_fallback", {"proposal_id": proposal.id, "reason": "no_current_task"})
            return await self.fallback_council.review_proposal(proposal)

        start = time.monotonic()
        execution = CouncilExecution(
            id=f"exec-{proposal.id}-{int(time.time() * 1000)}",
            proposal_id=proposal.id,
            roles=list(self.config.active_roles),
        )
        self.active_execution = execution
        self.events.emit(CouncilEventType.EXECUTION_STARTED, {"execution": execution.to_dict()})

        try:
            execution.status = "running"
            execution.in_progress = list(self.config.active_roles)
            results = await self._run_roles(execution, proposal, current.task_id)

            decision = aggregate_results(
                proposal.id,
                results,
                self.config.voting_policy,
                self.config.min_confidence_threshold,
            )

            execution.status = "completed"
            execution.completed_at = time.time()
            execution.duration_ms = (time.monotonic() - start) * 1000
            execution.decision = {
                "approved": decision.approved,
                "reason": decision.reason,
                "total_confidence": sum(r.confidence for r in results) / len(results) if results else 0.0,
                "vote_breakdown": tally_votes([v.vote for v in decision.votes]).to_dict(),
            }
            self.events.emit(
                CouncilEventType.EXECUTION_COMPLETED,
                {"execution": execution.to_dict(), "decision": decision.to_dict()},
            )
            self.telemetry.log(
                "council",
                "council_decision",
                {
                    "proposal_id": proposal.id,
                    "approved": decision.approved,
                    "reason": decision.reason,
                    "reviewer": "multi-agent-council",
                },
            )
            return decision
        except Exception as e:
            execution.status = "failed"
            execution.error = redact_text(str(e) or type(e).__name__, max_len=200)
            execution.completed_at = time.time()
            execution.duration_ms = (time.monotonic() - start) * 1000
            self.events.emit(CouncilEventType.EXECUTION_FAILED, {"execution": execution.to_dict()})
            self.telemetry.log(
                "council",
                "council_execution_failed",
                {"proposal_id": proposal.id, "error": execution.error},
            )

            if self.config.fallback_to_simulated:
                execution.used_fallback = True
                return await self.fallback_council.review_proposal(proposal)

            return Decision(
                proposal_id=proposal.id,
                approved=False,
                reason=f"Multi-agent council execution failed: {execution.error}",
                votes=[],
                timestamp=time.time(),
            )
        finally:
            self.last_execution = execution
            self.active_execution = None

    async def _run_roles(
        self,
        execution: CouncilExecution,
        proposal: Proposal,
        parent_task_id: str,
    ) -> list[AgentReviewResult]:
        semaphore = asyncio.Semaphore(self.config.max_concurrent_agents)

        async def run_role(role: str) -> AgentReviewResult:
            async with semaphore:
                self.events.emit(CouncilEventType.AGENT_STARTED, {"role": role, "execution_id": execution.id})
                try:
                    result = await asyncio.wait_for(
                        self._execute_agent_review(AgentRole(role), proposal, parent_task_id),
                        timeout=self.config.agent_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    error: Exception = AgentTimeoutError(role, self.config.agent_timeout_seconds)
                    return self._record_failure(execution, role, error)
                except Exception as e:
                    return self._record_failure(execution, role, e)

                execution.completed.append(role)
                execution.in_progress = [r for r in execution.in_progress if r != role]
                execution.results.append(result)
                self.events.emit(
                    CouncilEventType.AGENT_COMPLETED,
                    {"role": role, "execution_id": execution.id, "vote": result.vote.value, "confidence": result.confidence},
                )
                return result

        tasks = [asyncio.create_task(run_role(role)) for role in self.config.active_roles]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    def _record_failure(self, execution: CouncilExecution, role: str, error: Exception) -> AgentReviewResult:
        message = redact_text(str(error) or type(error).__name__, max_len=200)
        execution.failed.append(role)
        execution.in_progress = [r for r in execution.in_progress if r != role]
        self.events.emit(CouncilEventType.AGENT_FAILED, {"role": role, "execution_id": execution.id, "error": message})
        self.telemetry.log("council", "agent_failed", {"role": role, "proposal_id": execution.proposal_id, "error": message})

        if not self.config.continue_on_agent_failure:
            raise error

        return AgentReviewResult(
            role=role,
            vote=VoteValue.ABSTAIN,
            confidence=0.0,
            reasoning=f"Agent review failed: {message}",
            error=message,
        )

    async def _execute_agent_review(
        self,
        role: AgentRole,
        proposal: Proposal,
        parent_task_id: str,
    ) -> AgentReviewResult:
        if self.delegator is None:
            raise DelegationError(f"No task delegator to run the {role.value} review")
        start = time.monotonic()
        prompt_config = AGENT_PROMPTS[role]
        message = build_agent_prompt(prompt_config, proposal)

        task = await self.delegator.delegate(
            parent_task_id=parent_task_id,
            message=message,
            initial_todos=[TodoItem(content=f"Review proposal as {role.value} agent")],
            mode=self.config.review_mode or prompt_config.mode,
        )
        response = await self.delegator.wait_for_completion(task.task_id)
        parsed = parse_agent_response(role.value, response)

        return dataclasses.replace(
            parsed,
            duration_ms=(time.monotonic() - start) * 1000,
            completed_at=time.time(),
            task_id=task.task_id,
        )
