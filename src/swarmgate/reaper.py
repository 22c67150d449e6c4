from __future__ import annotations

import asyncio
import logging

from swarmgate.verify.gate import FailureKind
from swarmgate.workers.base import WorkerExecutionError, WorkerResult

logger = logging.getLogger("swarmgate.reaper")

Completion = WorkerResult | WorkerExecutionError


def classify_exit(result: Completion) -> FailureKind | None:
    """Failure kind of a finished invocation, or None when it may be gated."""
    if isinstance(result, WorkerExecutionError):
        if result.retriable:
            return FailureKind.WORKER_NONZERO_EXIT
        return FailureKind.WORKER_LAUNCH_FAILED
    if result.timed_out:
        return FailureKind.WORKER_TIMEOUT
    if result.exit_code != 0:
        return FailureKind.WORKER_NONZERO_EXIT
    return None


class Reaper:
    """Collects finished worker invocations.

    Waits on all in-flight invocations at once and wakes on the first
    completion, or after ``poll_interval`` when none finishes. Finished
    invocations are removed from ``inflight`` and returned in dispatch order.
    """

    def __init__(self, poll_interval: float = 1.0) -> None:
        self.poll_interval = max(0.0, float(poll_interval))

    async def reap(
        self,
        inflight: dict[str, asyncio.Task[WorkerResult]],
        timeout: float | None = None,
    ) -> list[tuple[str, Completion]]:
        if not inflight:
            return []
        wait_for = self.poll_interval if timeout is None else timeout
        done, _ = await asyncio.wait(
            set(inflight.values()),
            timeout=wait_for,
            return_when=asyncio.FIRST_COMPLETED,
        )
        finished: list[tuple[str, Completion]] = []
        for task_id, future in list(inflight.items()):
            if future not in done:
                continue
            del inflight[task_id]
            error = future.exception()
            if error is None:
                result = future.result()
                logger.debug("Reaped %s with exit code %d", task_id, result.exit_code)
                finished.append((task_id, result))
            elif isinstance(error, WorkerExecutionError):
                logger.warning("Worker for %s could not run: %s", task_id, error)
                finished.append((task_id, error))
            else:
                raise error
        return finished
