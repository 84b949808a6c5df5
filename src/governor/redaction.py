"""Credential scrubbing for text headed to telemetry, stores and error messages.

Council replies, completion errors and patch failures can all echo a key that
was in a prompt or in ``.governor.yml``. Each ``SecretRule`` names one shape of
credential; rules run in order, so broad rules come last.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

TRUNCATION_MARKER = "...(truncated)"


@dataclass(frozen=True)
class SecretRule:
    name: str
    pattern: re.Pattern[str]
    replacement: str


SECRET_RULES: tuple[SecretRule, ...] = (
    SecretRule("completion_api_key", re.compile(r"\bsk-[A-Za-z0-9_-]{16,}\b"), "sk-REDACTED"),
    SecretRule("aws_access_key", re.compile(r"\bAKIA[0-9A-Z]{16}\b"), "AKIA_REDACTED"),
    SecretRule("github_token", re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"), "gh_REDACTED"),
    SecretRule(
        "private_key",
        re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.S),
        "PRIVATE_KEY_REDACTED",
    ),
    SecretRule("bearer_header", re.compile(r"(?i)\b(bearer)\s+[A-Za-z0-9._~+/=-]{16,}"), r"\1 REDACTED"),
    # api_key: value / token="value" as found in YAML, env dumps and query strings.
    SecretRule(
        "key_assignment",
        re.compile(r"(?i)\b((?:api[_-]?key|secret|token|password)\s*[:=]\s*)([\"']?)[^\s\"',;&]{8,}\2"),
        r"\1\2REDACTED\2",
    ),
)


def redact_text(text: str, *, max_len: int = 400) -> str:
    """Replace every ``SECRET_RULES`` match, strip, and cap at ``max_len`` characters."""
    if not text:
        return ""
    for rule in SECRET_RULES:
        text = rule.pattern.sub(rule.replacement, text)
    text = text.strip()
    if len(text) <= max_len:
        return text
    return text[:max_len] + TRUNCATION_MARKER
