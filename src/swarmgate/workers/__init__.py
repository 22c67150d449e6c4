from swarmgate.workers.base import (
    Worker,
    WorkerExecutionError,
    WorkerProcessError,
    WorkerResult,
)
from swarmgate.workers.process import ProcessWorker

__all__ = [
    "ProcessWorker",
    "Worker",
    "WorkerExecutionError",
    "WorkerProcessError",
    "WorkerResult",
]
