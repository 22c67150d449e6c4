from __future__ import annotations

import logging
from dataclasses import dataclass

from swarmgate.graph import TaskGraph, TaskStatus

logger = logging.getLogger("swarmgate.scheduler")

DEFAULT_MAX_PARALLEL = 6


@dataclass(slots=True)
class Wave:
    index: int
    task_ids: list[str]


class Scheduler:
    """Chooses which ready tasks to launch on each tick.

    Candidates are considered in registration order. A candidate launches only
    while the concurrency cap has room and its declared write-set is disjoint
    from the write-set of every running task, including the ones picked
    earlier in the same tick. Write-sets are advisory bookkeeping, not locks.
    """

    def __init__(self, max_parallel: int = DEFAULT_MAX_PARALLEL) -> None:
        self.max_parallel = max(1, int(max_parallel))

    def select(self, graph: TaskGraph) -> list[str]:
        active = graph.running()
        if len(active) >= self.max_parallel:
            return []

        claimed: set[str] = set()
        for task in active:
            claimed.update(task.writes)

        selected: list[str] = []
        for task in graph.ready():
            if len(active) + len(selected) >= self.max_parallel:
                break
            if not claimed.isdisjoint(task.writes):
                logger.debug(
                    "Deferring %s: write-set overlaps %s",
                    task.id,
                    sorted(claimed & task.writes),
                )
                continue
            selected.append(task.id)
            claimed.update(task.writes)
        return selected

    def dispatch(self, graph: TaskGraph) -> list[str]:
        launched: list[str] = []
        for task_id in self.select(graph):
            graph.mark_running(task_id)
            launched.append(task_id)
        return launched

    @staticmethod
    def stalled(graph: TaskGraph) -> bool:
        if graph.running() or graph.ready():
            return False
        return not graph.is_finished()

    def plan_waves(self, graph: TaskGraph) -> tuple[list[Wave], list[str]]:
        """Simulate dispatch assuming every task succeeds.

        Returns the waves and the ids that could never be scheduled.
        """
        done: set[str] = set()
        remaining = [task for task in graph if task.status != TaskStatus.DONE]
        done.update(task.id for task in graph if task.status == TaskStatus.DONE)
        waves: list[Wave] = []
        while remaining:
            claimed: set[str] = set()
            batch: list[str] = []
            for task in remaining:
                if len(batch) >= self.max_parallel:
                    break
                if not task.depends_on <= done:
                    continue
                if not claimed.isdisjoint(task.writes):
                    continue
                batch.append(task.id)
                claimed.update(task.writes)
            if not batch:
                break
            waves.append(Wave(index=len(waves) + 1, task_ids=batch))
            done.update(batch)
            remaining = [task for task in remaining if task.id not in done]
        return waves, [task.id for task in remaining]
