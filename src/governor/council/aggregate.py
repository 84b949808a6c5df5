"""Vote aggregation shared by the simulated and multi-agent councils.

Everything here is pure: votes in, a ``Decision`` out.
"""

from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass

from ..types import AgentReviewResult, Decision, Vote, VoteValue


@dataclass(frozen=True)
class VoteTally:
    approve: int = 0
    reject: int = 0
    abstain: int = 0
    request_changes: int = 0

    @property
    def active(self) -> int:
        """Voters that did not abstain."""
        return self.approve + self.reject + self.request_changes

    def to_dict(self) -> dict[str, int]:
        return dataclasses.asdict(self)


def tally_votes(values: list[VoteValue]) -> VoteTally:
    return VoteTally(
        approve=sum(1 for v in values if v == VoteValue.APPROVE),
        reject=sum(1 for v in values if v == VoteValue.REJECT),
        abstain=sum(1 for v in values if v == VoteValue.ABSTAIN),
        request_changes=sum(1 for v in values if v == VoteValue.REQUEST_CHANGES),
    )


def decide(
    policy: str,
    tally: VoteTally,
    *,
    weighted_approve: float = 0.0,
    weighted_reject: float = 0.0,
    unanimous_reason: str = "All council members approved",
) -> tuple[bool, str]:
    """Apply a voting policy to a tally and return ``(approved, reason)``."""
    if policy == "unanimity":
        approved = tally.approve == tally.active and tally.active > 0
        if approved:
            return True, unanimous_reason
        return False, f"Unanimity not reached: {tally.approve}/{tally.active} approved"

    if policy == "majority":
        if tally.approve > tally.active / 2:
            return True, f"Majority approved: {tally.approve}/{tally.active}"
        return False, f"Majority not reached: {tally.approve}/{tally.active} approved"

    if policy == "any_approve":
        if tally.approve > 0 and tally.reject == 0:
            return True, f"Approved with no rejections: {tally.approve} votes"
        if tally.reject > 0:
            return False, f"Blocked by {tally.reject} rejection(s)"
        return False, "No approvals received"

    if policy == "weighted":
        if weighted_approve > weighted_reject:
            return True, f"Weighted approval: {weighted_approve:.2f} vs {weighted_reject:.2f}"
        return False, f"Weighted rejection: {weighted_reject:.2f} vs {weighted_approve:.2f}"

    raise ValueError(f"Unknown voting policy: {policy}")


def aggregate_votes(
    proposal_id: str,
    votes: list[Vote],
    policy: str,
    *,
    weights: dict[str, float] | None = None,
) -> Decision:
    """Aggregate plain votes.

    ``weights`` maps a role to the weight of its vote and is required for the
    ``weighted`` policy; roles missing from it weigh nothing.
    """
    if policy == "weighted" and weights is None:
        raise ValueError("Weighted voting needs per-role weights")
    weights = weights or {}
    tally = tally_votes([v.vote for v in votes])
    approved, reason = decide(
        policy,
        tally,
        weighted_approve=sum(weights.get(v.role, 0.0) for v in votes if v.vote == VoteValue.APPROVE),
        weighted_reject=sum(weights.get(v.role, 0.0) for v in votes if v.vote == VoteValue.REJECT),
    )

    suggested_changes = None
    if tally.request_changes > 0:
        suggested_changes = "; ".join(
            f"[{v.role}] {v.suggested_changes}" for v in votes if v.suggested_changes
        ) or None

    return Decision(
        proposal_id=proposal_id,
        approved=approved,
        reason=reason,
        votes=list(votes),
        timestamp=time.time(),
        suggested_changes=suggested_changes,
    )


def coerce_low_confidence(results: list[AgentReviewResult], threshold: float) -> list[AgentReviewResult]:
    """Turn votes below ``threshold`` into abstentions, returning new results."""
    return [
        dataclasses.replace(r, vote=VoteValue.ABSTAIN)
        if r.confidence < threshold and r.vote != VoteValue.ABSTAIN
        else r
        for r in results
    ]


def aggregate_results(
    proposal_id: str,
    results: list[AgentReviewResult],
    policy: str,
    min_confidence: float,
) -> Decision:
    """Aggregate delegated agent reviews, with confidence coercion and weighting."""
    coerced = coerce_low_confidence(results, min_confidence)
    tally = tally_votes([r.vote for r in coerced])

    weighted_approve = sum(r.confidence for r in coerced if r.vote == VoteValue.APPROVE)
    weighted_reject = sum(r.confidence for r in coerced if r.vote == VoteValue.REJECT)
    approved, reason = decide(
        policy,
        tally,
        weighted_approve=weighted_approve,
        weighted_reject=weighted_reject,
        unanimous_reason="All agents approved the proposal",
    )

    avg_confidence = sum(r.confidence for r in coerced) / len(coerced) if coerced else 0.0

    votes = [
        Vote(
            proposal_id=proposal_id,
            role=r.role,
            vote=r.vote,
            reason=r.reasoning,
            timestamp=r.completed_at,
            suggested_changes="; ".join(r.suggestions) if r.suggestions else None,
        )
        for r in coerced
    ]

    suggested = "\n".join(f"[{r.role}] {'; '.join(r.suggestions)}" for r in coerced if r.suggestions)

    return Decision(
        proposal_id=proposal_id,
        approved=approved,
        reason=f"{reason} (confidence: {avg_confidence * 100:.0f}%)",
        votes=votes,
        timestamp=time.time(),
        suggested_changes=suggested or None,
    )
