from __future__ import annotations

import logging
from dataclasses import dataclass, field

from swarmgate.graph import TaskGraph, TaskStatus
from swarmgate.verify.gate import FailureKind

logger = logging.getLogger("swarmgate.retry")


@dataclass(slots=True)
class AttemptFailure:
    kind: FailureKind
    details: list[str] = field(default_factory=list)
    output_tail: str = ""
    changed_summary: str = ""

    @property
    def retriable(self) -> bool:
        return self.kind.retriable

    def describe(self) -> str:
        if not self.details:
            return str(self.kind)
        return f"{self.kind}: {'; '.join(self.details)}"


def build_retry_context(attempt: int, failure: AttemptFailure) -> str:
    lines = [f"Previous attempt {attempt} failed ({failure.kind}). Its changes were reverted."]
    if failure.details:
        lines.append("")
        lines.append("Failure details:")
        lines.extend(f"- {detail}" for detail in failure.details)
    lines.append("")
    lines.append("Files changed by the previous attempt:")
    lines.append(failure.changed_summary or "No files changed.")
    if failure.output_tail.strip():
        lines.append("")
        lines.append("Tail of the previous attempt's output:")
        lines.append(failure.output_tail.rstrip())
    return "\n".join(lines)


def compose_prompt(prompt: str, retry_context: str) -> str:
    if not retry_context:
        return prompt
    return f"{prompt}\n\n## Retry context\n\n{retry_context}"


class RetryController:
    """Decides between another attempt and abandonment after a failure.

    A failed attempt is retried when its failure kind is retriable and the
    task has not yet used up ``max_retries`` extra attempts. The retry goes
    back through the scheduler like any other dispatch.
    """

    def __init__(self, graph: TaskGraph, *, max_retries: int = 1, output_tail_chars: int = 2000):
        self.graph = graph
        self.max_retries = max(0, int(max_retries))
        self.output_tail_chars = max(0, int(output_tail_chars))

    def handle_failure(self, task_id: str, failure: AttemptFailure) -> TaskStatus:
        task = self.graph.mark_failed(task_id, failure.describe())
        if failure.retriable and task.attempts <= self.max_retries:
            tail = failure.output_tail[-self.output_tail_chars :] if self.output_tail_chars else ""
            trimmed = AttemptFailure(
                kind=failure.kind,
                details=list(failure.details),
                output_tail=tail,
                changed_summary=failure.changed_summary,
            )
            task.retry_context = build_retry_context(task.attempts, trimmed)
            self.graph.mark_retrying(task_id)
            logger.info(
                "Retrying %s after attempt %d (%s)", task_id, task.attempts, failure.kind
            )
            return TaskStatus.RETRYING

        self.graph.mark_abandoned(task_id)
        logger.warning(
            "Abandoned %s after %d attempt(s): %s", task_id, task.attempts, failure.describe()
        )
        return TaskStatus.ABANDONED
