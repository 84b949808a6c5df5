"""Unit tests for council review prompts and reply parsing."""

import pytest

from governor.council.prompts import (
    AGENT_PROMPTS,
    AgentRole,
    build_agent_prompt,
    normalize_vote,
    parse_agent_response,
)
from governor.types import Proposal, ProposalType, Risk, VoteValue


@pytest.fixture
def proposal():
    return Proposal(
        id="p-42",
        type=ProposalType.MODE_INSTRUCTION,
        risk=Risk.MEDIUM,
        title="Tighten test mode",
        description="Run the focused test first.",
    )


class TestBuildPrompt:
    def test_placeholders_filled(self, proposal):
        prompt = build_agent_prompt(AGENT_PROMPTS[AgentRole.ANALYST], proposal)
        assert prompt.startswith("You are a technical analyst")
        assert "- **ID**: p-42" in prompt
        assert "- **Type**: mode_instruction" in prompt
        assert "- **Risk Level**: medium" in prompt
        assert "- **Intent**: General improvement" in prompt
        assert "{{" not in prompt

    def test_every_role_has_prompt(self, proposal):
        for role in AgentRole:
            assert '"vote"' in build_agent_prompt(AGENT_PROMPTS[role], proposal)

    def test_security_asks_for_issues(self, proposal):
        assert '"issues"' in build_agent_prompt(AGENT_PROMPTS[AgentRole.SECURITY], proposal)


class TestParseResponse:
    """Test the three reply shapes."""

    def test_fenced_json(self):
        reply = 'Here:\n```json\n{"vote": "APPROVE", "confidence": 0.8, "reasoning": "ok", "suggestions": ["x"]}\n```'
        result = parse_agent_response("analyst", reply)
        assert result.vote == VoteValue.APPROVE
        assert result.confidence == 0.8
        assert result.suggestions == ["x"]

    def test_bare_json_with_clamped_confidence(self):
        result = parse_agent_response("reviewer", 'verdict {"vote": "reject", "confidence": 7}')
        assert result.vote == VoteValue.REJECT
        assert result.confidence == 1.0

    def test_missing_confidence_defaults(self):
        result = parse_agent_response("reviewer", '{"vote": "changes"}')
        assert result.vote == VoteValue.REQUEST_CHANGES
        assert result.confidence == 0.5
        assert result.reasoning == "No reasoning provided"

    @pytest.mark.parametrize("raw", ["0", "0.0", "null"])
    def test_explicit_zero_kept_null_defaults(self, raw):
        result = parse_agent_response("analyst", '{"vote": "approve", "confidence": ' + raw + "}")
        assert result.confidence == (0.5 if raw == "null" else 0.0)

    def test_invalid_json_abstains(self):
        result = parse_agent_response("security", "```json\n{not json}\n```")
        assert result.vote == VoteValue.ABSTAIN
        assert result.confidence == 0.0
        assert result.error

    def test_prose_keyword_scan(self):
        result = parse_agent_response("analyst", "I would approve this change.")
        assert result.vote == VoteValue.APPROVE
        assert result.confidence == 0.5

    def test_prose_without_keyword_abstains(self):
        assert parse_agent_response("analyst", "No opinion.").vote == VoteValue.ABSTAIN


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("approve", VoteValue.APPROVE),
        (" Reject ", VoteValue.REJECT),
        ("request_changes", VoteValue.REQUEST_CHANGES),
        ("maybe", VoteValue.ABSTAIN),
        (None, VoteValue.ABSTAIN),
    ],
)
def test_normalize_vote(raw, expected):
    assert normalize_vote(raw) == expected
