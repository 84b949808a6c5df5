"""Council review: simulated heuristics and delegated multi-agent panels."""

from .aggregate import aggregate_results, aggregate_votes, coerce_low_confidence
from .delegation import CompletionDelegator, TaskDelegator, create_task_delegator_adapter
from .multi_agent import CouncilExecution, MultiAgentCouncil
from .simulated import Council, CouncilRole

__all__ = [
    "CompletionDelegator",
    "Council",
    "CouncilExecution",
    "CouncilRole",
    "MultiAgentCouncil",
    "TaskDelegator",
    "aggregate_results",
    "aggregate_votes",
    "coerce_low_confidence",
    "create_task_delegator_adapter",
]
