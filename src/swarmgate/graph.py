"""Task graph: declared tasks, their dependencies and write-sets, and lifecycle status.

The graph is the single owner of task records. The scheduler, reaper and retry
controller mutate status only through the ``mark_*`` operations, which reject
transitions the lifecycle does not allow.
"""

from __future__ import annotations

import tomllib
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path, PurePosixPath
from typing import Any


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    RETRYING = "retrying"
    ABANDONED = "abandoned"


class Complexity(StrEnum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.ABANDONED})
DISPATCHABLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.RETRYING})

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING}),
    TaskStatus.RUNNING: frozenset({TaskStatus.DONE, TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset({TaskStatus.RETRYING, TaskStatus.ABANDONED}),
    TaskStatus.RETRYING: frozenset({TaskStatus.RUNNING}),
    TaskStatus.DONE: frozenset(),
    TaskStatus.ABANDONED: frozenset(),
}


class TaskGraphError(RuntimeError):
    """Raised when the task graph is used inconsistently."""


class DuplicateTaskId(TaskGraphError):
    """Raised when a task id is registered twice."""


class UnknownTask(TaskGraphError):
    """Raised when an operation names a task that was never registered."""


class IllegalTransition(TaskGraphError):
    """Raised when a status change is not allowed from the current status."""

    def __init__(self, task_id: str, current: TaskStatus, target: TaskStatus) -> None:
        super().__init__(f"Task '{task_id}' cannot move from {current} to {target}.")
        self.task_id = task_id
        self.current = current
        self.target = target


def normalize_path(path: str) -> str:
    normalized = str(path).strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    if not normalized:
        return ""
    return str(PurePosixPath(normalized))


def normalize_paths(paths: Iterable[str]) -> frozenset[str]:
    return frozenset(item for item in (normalize_path(path) for path in paths) if item)


def check_task_id(task_id: str) -> str:
    """Reject ids that cannot name a single run directory entry."""
    if "/" in task_id or "\\" in task_id or ".." in task_id or task_id == ".":
        raise TaskGraphError(f"Task id '{task_id}' must not contain '/', '\\' or '..'.")
    return task_id


@dataclass(slots=True)
class Task:
    id: str
    prompt: str
    depends_on: frozenset[str] = field(default_factory=frozenset)
    writes: frozenset[str] = field(default_factory=frozenset)
    reads: frozenset[str] = field(default_factory=frozenset)
    complexity: Complexity = Complexity.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    retry_context: str = ""
    output_path: Path | None = None
    started_at: str | None = None
    completed_at: str | None = None
    failure_reason: str | None = None

    def __post_init__(self) -> None:
        self.depends_on = frozenset(str(dep) for dep in self.depends_on)
        self.writes = normalize_paths(self.writes)
        self.reads = normalize_paths(self.reads)
        self.complexity = Complexity(self.complexity)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def conflicts_with(self, other: Task) -> bool:
        return not self.writes.isdisjoint(other.writes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": str(self.status),
            "complexity": str(self.complexity),
            "depends_on": sorted(self.depends_on),
            "writes": sorted(self.writes),
            "reads": sorted(self.reads),
            "attempts": self.attempts,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "failure_reason": self.failure_reason,
            "output_path": str(self.output_path) if self.output_path else None,
        }


class TaskGraph:
    def __init__(self, tasks: Iterable[Task] = ()) -> None:
        self._tasks: dict[str, Task] = {}
        for task in tasks:
            self.register(task)

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def register(self, task: Task) -> None:
        check_task_id(task.id)
        if task.id in self._tasks:
            raise DuplicateTaskId(f"Task id already registered: {task.id}")
        self._tasks[task.id] = task

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError as exc:
            raise UnknownTask(f"Unknown task: {task_id}") from exc

    def dependencies_satisfied(self, task_id: str) -> bool:
        task = self.get(task_id)
        for dep_id in task.depends_on:
            dep = self._tasks.get(dep_id)
            if dep is None or dep.status != TaskStatus.DONE:
                return False
        return True

    def _transition(self, task_id: str, target: TaskStatus) -> Task:
        task = self.get(task_id)
        if target not in ALLOWED_TRANSITIONS[task.status]:
            raise IllegalTransition(task_id, task.status, target)
        task.status = target
        return task

    def mark_running(self, task_id: str) -> Task:
        if not self.dependencies_satisfied(task_id):
            task = self.get(task_id)
            raise IllegalTransition(task_id, task.status, TaskStatus.RUNNING)
        task = self._transition(task_id, TaskStatus.RUNNING)
        task.attempts += 1
        task.started_at = _utcnow_iso()
        task.completed_at = None
        return task

    def mark_done(self, task_id: str) -> Task:
        task = self._transition(task_id, TaskStatus.DONE)
        task.completed_at = _utcnow_iso()
        task.failure_reason = None
        return task

    def mark_failed(self, task_id: str, reason: str | None = None) -> Task:
        task = self._transition(task_id, TaskStatus.FAILED)
        task.completed_at = _utcnow_iso()
        if reason:
            task.failure_reason = reason
        return task

    def mark_retrying(self, task_id: str) -> Task:
        return self._transition(task_id, TaskStatus.RETRYING)

    def mark_abandoned(self, task_id: str) -> Task:
        task = self._transition(task_id, TaskStatus.ABANDONED)
        task.completed_at = _utcnow_iso()
        return task

    def running(self) -> list[Task]:
        return [task for task in self._tasks.values() if task.status == TaskStatus.RUNNING]

    def ready(self) -> list[Task]:
        return [
            task
            for task in self._tasks.values()
            if task.status in DISPATCHABLE_STATUSES and self.dependencies_satisfied(task.id)
        ]

    def is_finished(self) -> bool:
        return all(task.is_terminal for task in self._tasks.values())

    def unknown_dependencies(self) -> dict[str, list[str]]:
        missing: dict[str, list[str]] = {}
        for task in self._tasks.values():
            unknown = sorted(dep for dep in task.depends_on if dep not in self._tasks)
            if unknown:
                missing[task.id] = unknown
        return missing

    def find_cycle(self) -> list[str] | None:
        visiting: set[str] = set()
        visited: set[str] = set()
        stack: list[str] = []

        def _visit(task_id: str) -> list[str] | None:
            visiting.add(task_id)
            stack.append(task_id)
            for dep_id in sorted(self._tasks[task_id].depends_on):
                if dep_id not in self._tasks or dep_id in visited:
                    continue
                if dep_id in visiting:
                    return stack[stack.index(dep_id) :] + [dep_id]
                cycle = _visit(dep_id)
                if cycle:
                    return cycle
            visiting.discard(task_id)
            visited.add(task_id)
            stack.pop()
            return None

        for task_id in self._tasks:
            if task_id in visited:
                continue
            cycle = _visit(task_id)
            if cycle:
                return cycle
        return None

    def blocked_tasks(self) -> dict[str, list[str]]:
        """Pending tasks that can never run, mapped to the dependencies blocking them.

        A dependency blocks when it is abandoned, unknown, or itself blocked.
        """
        blocked: dict[str, list[str]] = {}
        memo: dict[str, bool] = {}

        def _dead(task_id: str, trail: frozenset[str]) -> bool:
            if task_id in memo:
                return memo[task_id]
            task = self._tasks.get(task_id)
            if task is None or task.status == TaskStatus.ABANDONED:
                memo[task_id] = True
                return True
            if task.status == TaskStatus.DONE or task_id in trail:
                return task_id in trail
            result = any(_dead(dep, trail | {task_id}) for dep in task.depends_on)
            memo[task_id] = result
            return result

        for task in self._tasks.values():
            if task.status != TaskStatus.PENDING:
                continue
            culprits = sorted(
                dep for dep in task.depends_on if _dead(dep, frozenset({task.id}))
            )
            if culprits:
                blocked[task.id] = culprits
        return blocked

    def counts(self) -> dict[str, int]:
        counts = {str(status): 0 for status in TaskStatus}
        for task in self._tasks.values():
            counts[str(task.status)] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": [task.to_dict() for task in self._tasks.values()],
            "counts": self.counts(),
        }


def _as_str_list(value: Any, *, key: str, task_id: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return value.split()
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return list(value)
    raise TaskGraphError(f"Task '{task_id}': '{key}' must be a list of strings.")


def task_from_dict(payload: dict[str, Any]) -> Task:
    task_id = str(payload.get("id", "")).strip()
    if not task_id:
        raise TaskGraphError("Every task needs a non-empty 'id'.")
    check_task_id(task_id)
    prompt = payload.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise TaskGraphError(f"Task '{task_id}' needs a non-empty 'prompt'.")
    try:
        complexity = Complexity(str(payload.get("complexity", Complexity.MEDIUM)))
    except ValueError as exc:
        raise TaskGraphError(
            f"Task '{task_id}': complexity must be one of small, medium, large."
        ) from exc
    return Task(
        id=task_id,
        prompt=prompt,
        depends_on=frozenset(
            _as_str_list(payload.get("depends_on"), key="depends_on", task_id=task_id)
        ),
        writes=frozenset(_as_str_list(payload.get("writes"), key="writes", task_id=task_id)),
        reads=frozenset(_as_str_list(payload.get("reads"), key="reads", task_id=task_id)),
        complexity=complexity,
    )


def load_tasks(path: Path) -> TaskGraph:
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise TaskGraphError(f"Could not parse task file {path}: {exc}") from exc
    entries = data.get("task", [])
    if not isinstance(entries, list):
        raise TaskGraphError("Task file must declare tasks as [[task]] tables.")
    graph = TaskGraph()
    for entry in entries:
        if not isinstance(entry, dict):
            raise TaskGraphError("Task file must declare tasks as [[task]] tables.")
        graph.register(task_from_dict(entry))
    return graph
