"""Simulated council: deterministic heuristic reviewers."""

from __future__ import annotations

import time
from enum import Enum
from typing import Callable

from ..config import CouncilConfig
from ..telemetry import TelemetrySink
from ..types import Decision, Proposal, ProposalType, Risk, Vote, VoteValue
from .aggregate import aggregate_votes


class CouncilRole(str, Enum):
    ANALYST = "analyst"
    REVIEWER = "reviewer"
    SECURITY = "security"
    USER = "user"


def analyst_vote(proposal: Proposal, timestamp: float) -> Vote:
    """Approve proposals grounded in a signal and described in some detail."""
    if proposal.source_signal_id and len(proposal.description) > 20:
        return Vote(
            proposal_id=proposal.id,
            role=CouncilRole.ANALYST.value,
            vote=VoteValue.APPROVE,
            reason="Proposal is well-grounded in detected signals",
            timestamp=timestamp,
        )
    return Vote(
        proposal_id=proposal.id,
        role=CouncilRole.ANALYST.value,
        vote=VoteValue.REQUEST_CHANGES,
        reason="Proposal needs more detail or clearer signal connection",
        timestamp=timestamp,
        suggested_changes="Add more context about the triggering pattern",
    )


def reviewer_vote(proposal: Proposal, timestamp: float) -> Vote:
    """Approve proposals with a clear title and description."""
    clear_title = len(proposal.title) >= 10 and "undefined" not in proposal.title
    clear_description = len(proposal.description) >= 30
    if clear_title and clear_description:
        return Vote(
            proposal_id=proposal.id,
            role=CouncilRole.REVIEWER.value,
            vote=VoteValue.APPROVE,
            reason="Proposal is clear and well-documented",
            timestamp=timestamp,
        )
    return Vote(
        proposal_id=proposal.id,
        role=CouncilRole.REVIEWER.value,
        vote=VoteValue.REQUEST_CHANGES,
        reason="Proposal needs clearer title or description",
        timestamp=timestamp,
        suggested_changes="Improve title and description clarity",
    )


def security_vote(proposal: Proposal, timestamp: float) -> Vote:
    """Reject high risk; ask for constraints on medium-risk tool creation."""
    if proposal.risk == Risk.HIGH:
        return Vote(
            proposal_id=proposal.id,
            role=CouncilRole.SECURITY.value,
            vote=VoteValue.REJECT,
            reason="High-risk proposal requires additional review",
            timestamp=timestamp,
        )
    if proposal.risk == Risk.MEDIUM and proposal.type == ProposalType.TOOL_CREATION:
        return Vote(
            proposal_id=proposal.id,
            role=CouncilRole.SECURITY.value,
            vote=VoteValue.REQUEST_CHANGES,
            reason="Tool creation requires security review",
            timestamp=timestamp,
            suggested_changes="Add security constraints to tool specification",
        )
    return Vote(
        proposal_id=proposal.id,
        role=CouncilRole.SECURITY.value,
        vote=VoteValue.APPROVE,
        reason="No security concerns identified",
        timestamp=timestamp,
    )


def user_vote(proposal: Proposal, timestamp: float) -> Vote:
    # Human votes arrive out of band through add_user_vote().
    return Vote(
        proposal_id=proposal.id,
        role=CouncilRole.USER.value,
        vote=VoteValue.ABSTAIN,
        reason="Awaiting user input",
        timestamp=timestamp,
    )


ROLE_HEURISTICS: dict[CouncilRole, Callable[[Proposal, float], Vote]] = {
    CouncilRole.ANALYST: analyst_vote,
    CouncilRole.REVIEWER: reviewer_vote,
    CouncilRole.SECURITY: security_vote,
    CouncilRole.USER: user_vote,
}


class Council:
    """Heuristic council used when delegated review is unavailable."""

    def __init__(self, config: CouncilConfig | None = None, telemetry: TelemetrySink | None = None):
        config = config or CouncilConfig()
        self.voting_policy = config.voting_policy
        self.active_roles = [CouncilRole(r) for r in config.active_roles]
        self.require_human_review = config.require_human_review
        self.telemetry = telemetry or TelemetrySink.disabled()

    async def review_proposal(self, proposal: Proposal) -> Decision:
        timestamp = time.time()

        if proposal.risk == Risk.HIGH and self.require_human_review:
            decision = Decision(
                proposal_id=proposal.id,
                approved=False,
                reason="High-risk proposal requires human review",
                votes=[],
                timestamp=timestamp,
            )
        else:
            votes = [ROLE_HEURISTICS[role](proposal, time.time()) for role in self.active_roles]
            decision = aggregate_votes(proposal.id, votes, self.voting_policy)

        self.telemetry.log(
            "council",
            "council_decision",
            {
                "proposal_id": proposal.id,
                "approved": decision.approved,
                "reason": decision.reason,
                "reviewer": "council",
            },
        )
        return decision

    def add_user_vote(
        self,
        proposal_id: str,
        vote: VoteValue,
        reason: str,
        suggested_changes: str | None = None,
    ) -> Vote:
        return Vote(
            proposal_id=proposal_id,
            role=CouncilRole.USER.value,
            vote=VoteValue(vote),
            reason=reason,
            timestamp=time.time(),
            suggested_changes=suggested_changes,
        )

    def set_voting_policy(self, policy: str) -> None:
        if policy not in {"unanimity", "majority", "any_approve"}:
            raise ValueError(f"Invalid voting policy for simulated council: {policy}")
        self.voting_policy = policy
