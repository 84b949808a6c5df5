"""Review prompts for delegated council agents and parsing of their replies."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..types import AgentReviewResult, Proposal, VoteValue


class AgentRole(str, Enum):
    ANALYST = "analyst"
    REVIEWER = "reviewer"
    SECURITY = "security"
    PERFORMANCE = "performance"


@dataclass(frozen=True)
class AgentPromptConfig:
    role: AgentRole
    system_prompt: str
    user_prompt_template: str
    mode: str = "ask"


_PROPOSAL_DETAILS = """## Proposal Details
- **ID**: {{proposalId}}
- **Type**: {{proposalType}}
- **Title**: {{title}}
- **Description**: {{description}}
- **Risk Level**: {{risk}}"""

_SUGGESTIONS_FORMAT = """Respond in this exact JSON format:
```json
{
  "vote": "approve|reject|abstain|request_changes",
  "confidence": 0.85,
  "reasoning": "Your detailed reasoning here",
  "suggestions": ["Optional improvement suggestions"]
}
```"""

_ISSUES_FORMAT = """Respond in this exact JSON format:
```json
{
  "vote": "approve|reject|abstain|request_changes",
  "confidence": 0.85,
  "reasoning": "Your detailed reasoning here",
  "issues": [{"severity": "low|medium|high|critical", "description": "Issue description"}]
}
```"""


AGENT_PROMPTS: dict[AgentRole, AgentPromptConfig] = {
    AgentRole.ANALYST: AgentPromptConfig(
        role=AgentRole.ANALYST,
        system_prompt="You are a technical analyst reviewing evolution proposals for a self-improving agent.",
        user_prompt_template=f"""Review this evolution proposal for technical feasibility and impact.

{_PROPOSAL_DETAILS}
- **Intent**: {{{{intent}}}}

## Your Task
Analyze this proposal and provide:
1. **Technical Feasibility**: Can this change be safely implemented?
2. **Impact Assessment**: What are the potential positive and negative effects?
3. **Vote**: approve, reject, abstain, or request_changes
4. **Confidence**: A number between 0 and 1 indicating your confidence in this assessment

{_SUGGESTIONS_FORMAT}""",
    ),
    AgentRole.REVIEWER: AgentPromptConfig(
        role=AgentRole.REVIEWER,
        system_prompt="You are a quality reviewer ensuring evolution proposals meet maintainability standards.",
        user_prompt_template=f"""Review this evolution proposal for quality and maintainability.

{_PROPOSAL_DETAILS}

## Your Task
Evaluate this proposal for:
1. **Clarity**: Is the proposal clear and well-documented?
2. **Maintainability**: Will this change be easy to maintain?
3. **Standards Compliance**: Does it follow established conventions?
4. **Vote**: approve, reject, abstain, or request_changes
5. **Confidence**: A number between 0 and 1

{_SUGGESTIONS_FORMAT}""",
    ),
    AgentRole.SECURITY: AgentPromptConfig(
        role=AgentRole.SECURITY,
        system_prompt="You are a security expert reviewing evolution proposals for potential security implications.",
        user_prompt_template=f"""Review this evolution proposal for security implications.

{_PROPOSAL_DETAILS}

## Your Task
Assess this proposal for:
1. **Security Risks**: Are there any security vulnerabilities introduced?
2. **Data Safety**: Does it properly handle sensitive data?
3. **Access Control**: Are permissions appropriately scoped?
4. **Vote**: approve, reject, abstain, or request_changes
5. **Confidence**: A number between 0 and 1

{_ISSUES_FORMAT}""",
    ),
    AgentRole.PERFORMANCE: AgentPromptConfig(
        role=AgentRole.PERFORMANCE,
        system_prompt="You are a performance engineer reviewing evolution proposals for performance impact.",
        user_prompt_template=f"""Review this evolution proposal for performance impact.

{_PROPOSAL_DETAILS}

## Your Task
Evaluate this proposal for:
1. **Performance Impact**: Will this affect agent latency or cost?
2. **Resource Usage**: Does it use tokens, memory and CPU efficiently?
3. **Scalability**: Will it hold up on larger tasks?
4. **Vote**: approve, reject, abstain, or request_changes
5. **Confidence**: A number between 0 and 1

{_SUGGESTIONS_FORMAT}""",
    ),
}


def build_agent_prompt(config: AgentPromptConfig, proposal: Proposal) -> str:
    replacements = {
        "proposalId": proposal.id,
        "proposalType": proposal.type.value,
        "title": proposal.title,
        "description": proposal.description,
        "risk": proposal.risk.value,
        "intent": proposal.source_signal_id or "General improvement",
    }
    prompt = config.user_prompt_template
    for key, value in replacements.items():
        prompt = prompt.replace("{{" + key + "}}", value)
    return f"{config.system_prompt}\n\n{prompt}"


def normalize_vote(vote: Any) -> VoteValue:
    normalized = str(vote or "").lower().strip()
    if normalized == "approve":
        return VoteValue.APPROVE
    if normalized == "reject":
        return VoteValue.REJECT
    if normalized in ("request_changes", "changes"):
        return VoteValue.REQUEST_CHANGES
    return VoteValue.ABSTAIN


def _clamp_confidence(value: Any) -> float:
    try:
        confidence = 0.5 if value is None else float(value)
    except (TypeError, ValueError):
        confidence = 0.5
    return min(1.0, max(0.0, confidence))


def _as_strings(items: Any) -> list[str]:
    if not isinstance(items, list):
        return []
    out: list[str] = []
    for item in items:
        if isinstance(item, dict):
            severity = item.get("severity")
            description = str(item.get("description", "")).strip()
            out.append(f"{severity}: {description}" if severity else description)
        elif item is not None:
            out.append(str(item))
    return [s for s in out if s]


def parse_agent_response(role: str, response: str) -> AgentReviewResult:
    """Parse a reviewer reply into a result.

    The reply may contain a fenced ```json block, a bare JSON object, or
    plain prose; prose is scanned for a vote keyword at confidence 0.5.
    """
    fenced = re.search(r"```json\s*([\s\S]*?)\s*```", response)
    bare = None if fenced else re.search(r"\{[\s\S]*\}", response)

    if fenced or bare:
        json_str = fenced.group(1) if fenced else bare.group(0)  # type: ignore[union-attr]
        try:
            parsed = json.loads(json_str)
            if not isinstance(parsed, dict):
                raise ValueError("response JSON is not an object")
        except (json.JSONDecodeError, ValueError) as e:
            return AgentReviewResult(
                role=role,
                vote=VoteValue.ABSTAIN,
                confidence=0.0,
                reasoning=f"Failed to parse response: {e}",
                error=str(e),
            )
        return AgentReviewResult(
            role=role,
            vote=normalize_vote(parsed.get("vote")),
            confidence=_clamp_confidence(parsed.get("confidence")),
            reasoning=str(parsed.get("reasoning") or "No reasoning provided"),
            suggestions=_as_strings(parsed.get("suggestions")),
            issues=_as_strings(parsed.get("issues")),
        )

    lower = response.lower()
    vote = VoteValue.ABSTAIN
    if "approve" in lower:
        vote = VoteValue.APPROVE
    elif "reject" in lower:
        vote = VoteValue.REJECT
    elif "changes" in lower:
        vote = VoteValue.REQUEST_CHANGES
    return AgentReviewResult(role=role, vote=vote, confidence=0.5, reasoning=response[:500])
