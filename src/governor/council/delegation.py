"""Task delegation seam between the multi-agent council and its host.

The host owns the notion of a "current task" and can open child tasks that run
a review prompt to completion. ``TaskDelegator`` is the protocol the council
depends on; ``create_task_delegator_adapter`` bridges host objects that expose
the same capabilities under their own names, and ``CompletionDelegator`` runs
each child task as a direct chat completion for hosts with no task runtime.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from ..completion import CompletionClient
from ..errors import DelegationError


@dataclass(frozen=True)
class TaskRef:
    task_id: str


@dataclass(frozen=True)
class TodoItem:
    content: str
    status: str = "pending"  # "pending" | "in_progress" | "completed"


@runtime_checkable
class TaskDelegator(Protocol):
    def get_current_task(self) -> TaskRef | None: ...

    async def delegate(
        self,
        parent_task_id: str,
        message: str,
        initial_todos: list[TodoItem],
        mode: str,
    ) -> TaskRef: ...

    async def wait_for_completion(self, task_id: str) -> str: ...


def is_task_provider_like(obj: Any) -> bool:
    """True if ``obj`` exposes the host task API the adapter needs."""
    if obj is None:
        return False
    return all(
        callable(getattr(obj, name, None))
        for name in ("get_current_task", "delegate_parent_and_open_child", "wait_for_task_completion")
    )


class _ProviderAdapter:
    def __init__(self, provider: Any):
        self._provider = provider

    def get_current_task(self) -> TaskRef | None:
        task = self._provider.get_current_task()
        if task is None:
            return None
        task_id = task.get("task_id") if isinstance(task, dict) else getattr(task, "task_id", None)
        return TaskRef(task_id=str(task_id)) if task_id else None

    async def delegate(
        self,
        parent_task_id: str,
        message: str,
        initial_todos: list[TodoItem],
        mode: str,
    ) -> TaskRef:
        result = await self._provider.delegate_parent_and_open_child(
            parent_task_id=parent_task_id,
            message=message,
            initial_todos=initial_todos,
            mode=mode,
        )
        task_id = result.get("task_id") if isinstance(result, dict) else getattr(result, "task_id", None)
        if not task_id:
            raise DelegationError("Host returned no task id for delegated review")
        return TaskRef(task_id=str(task_id))

    async def wait_for_completion(self, task_id: str) -> str:
        return str(await self._provider.wait_for_task_completion(task_id))


def create_task_delegator_adapter(provider: Any) -> TaskDelegator:
    if not is_task_provider_like(provider):
        raise DelegationError(f"{type(provider).__name__} does not expose the task delegation API")
    return _ProviderAdapter(provider)


class CompletionDelegator:
    """Runs each delegated review as a chat completion in the current event loop."""

    def __init__(self, client: CompletionClient, session_id: str | None = None):
        self.client = client
        self.session = TaskRef(task_id=session_id or f"session-{uuid.uuid4().hex[:8]}")
        self._tasks: dict[str, asyncio.Task[str]] = {}

    def get_current_task(self) -> TaskRef | None:
        return self.session

    async def delegate(
        self,
        parent_task_id: str,
        message: str,
        initial_todos: list[TodoItem],
        mode: str,
    ) -> TaskRef:
        task_id = f"{parent_task_id}.{uuid.uuid4().hex[:8]}"
        self._tasks[task_id] = asyncio.create_task(self.client.complete(message))
        return TaskRef(task_id=task_id)

    async def wait_for_completion(self, task_id: str) -> str:
        task = self._tasks.get(task_id)
        if task is None:
            raise DelegationError(f"Unknown delegated task: {task_id}")
        try:
            return await task
        finally:
            # The completion request must not outlive the wait.
            if not task.done():
                task.cancel()
            self._tasks.pop(task_id, None)
