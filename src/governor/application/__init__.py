"""Transactional application of proposal directories to a project."""

from .engine import ProposalApplicationEngine
from .records import AppliedRecord, ApplyResult, ParsedChange, ParsedProposal, RollbackReport

__all__ = [
    "AppliedRecord",
    "ApplyResult",
    "ParsedChange",
    "ParsedProposal",
    "ProposalApplicationEngine",
    "RollbackReport",
]
