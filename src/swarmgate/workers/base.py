from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from swarmgate.graph import Task

TIMEOUT_EXIT_CODE = 124


class WorkerExecutionError(RuntimeError):
    """Raised when a worker process cannot be run at all."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.retriable = retriable


class WorkerProcessError(WorkerExecutionError):
    """Raised when the worker process lifecycle fails (e.g. missing binary)."""


@dataclass(slots=True)
class WorkerResult:
    task_id: str
    attempt: int
    exit_code: int
    output: str
    timed_out: bool = False
    duration_seconds: float = 0.0
    sink_path: Path | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def tail(self, chars: int) -> str:
        if chars <= 0:
            return ""
        return self.output[-chars:]


class Worker(ABC):
    @abstractmethod
    async def invoke(
        self,
        task: Task,
        prompt: str,
        timeout_seconds: float,
        sink_path: Path,
    ) -> WorkerResult:
        """Run one attempt of ``task`` and return its captured output and exit code."""
