from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from swarmgate.config import SwarmgateConfig
from swarmgate.graph import TaskGraph
from swarmgate.reaper import Completion, Reaper, classify_exit
from swarmgate.retry import AttemptFailure, RetryController, compose_prompt
from swarmgate.revert import RevertController
from swarmgate.scheduler import Scheduler
from swarmgate.verify.gate import Accepted, GateOutcome, QualityGatePipeline
from swarmgate.workers.base import Worker, WorkerResult
from swarmgate.workspace import GitWorkspace

logger = logging.getLogger("swarmgate.orchestrator")

EventHook = Callable[[dict[str, Any]], None]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class AttemptRecord:
    task_id: str
    attempt: int
    outcome: str
    exit_code: int | None = None
    timed_out: bool = False
    reason: str | None = None
    details: list[str] = field(default_factory=list)
    score: int | None = None
    duration_seconds: float = 0.0
    artifacts_dir: str | None = None


@dataclass(slots=True)
class RunSummary:
    run_id: str
    started_at: str
    ended_at: str
    total_tasks: int
    done: list[str] = field(default_factory=list)
    abandoned: list[str] = field(default_factory=list)
    blocked: dict[str, list[str]] = field(default_factory=dict)
    stalled: bool = False
    attempts: list[AttemptRecord] = field(default_factory=list)
    tasks: list[dict[str, Any]] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return len(self.done) == self.total_tasks

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["succeeded"] = self.succeeded
        return payload


class Orchestrator:
    """The single cooperative control loop: reap, route, dispatch, wait.

    Worker processes run concurrently; gating, reverting and retry decisions
    all happen on this loop, one completion at a time.
    """

    def __init__(
        self,
        graph: TaskGraph,
        workspace: GitWorkspace,
        worker: Worker,
        pipeline: QualityGatePipeline,
        config: SwarmgateConfig,
        *,
        scheduler: Scheduler | None = None,
        reaper: Reaper | None = None,
        retry: RetryController | None = None,
        reverter: RevertController | None = None,
        event_hook: EventHook | None = None,
        run_id: str | None = None,
    ) -> None:
        self.graph = graph
        self.workspace = workspace
        self.worker = worker
        self.pipeline = pipeline
        self.config = config
        self.scheduler = scheduler or Scheduler(config.scheduler.max_parallel)
        self.reaper = reaper or Reaper(config.scheduler.poll_interval_seconds)
        self.retry = retry or RetryController(
            graph,
            max_retries=config.scheduler.max_retries,
            output_tail_chars=config.scheduler.output_tail_chars,
        )
        self.reverter = reverter or pipeline.reverter
        self.event_hook = event_hook
        self.run_id = run_id or uuid4().hex[:12]
        self.attempts: list[AttemptRecord] = []
        self.events: list[dict[str, Any]] = []

    @property
    def run_dir(self) -> Path:
        return self.workspace.root / self.config.workspace.state_dir / "runs" / self.run_id

    def _emit(self, payload: dict[str, Any]) -> None:
        event = {**payload, "run_id": self.run_id, "at": _utcnow_iso()}
        self.events.append(event)
        if self.event_hook is not None:
            self.event_hook(event)

    def _attempt_dir(self, task_id: str, attempt: int) -> Path:
        return self.run_dir / task_id / f"attempt-{attempt}"

    def _protected_paths(self, task_id: str) -> set[str]:
        protected: set[str] = set()
        for task in self.graph.running():
            if task.id != task_id:
                protected.update(task.writes)
        return protected

    def _validate_graph(self) -> None:
        unknown = self.graph.unknown_dependencies()
        if unknown:
            logger.warning("Tasks depend on unknown ids and will stay pending: %s", unknown)
        cycle = self.graph.find_cycle()
        if cycle:
            logger.warning("Dependency cycle will stay pending: %s", " -> ".join(cycle))

    async def _invoke(self, task_id: str) -> WorkerResult:
        task = self.graph.get(task_id)
        prompt = compose_prompt(task.prompt, task.retry_context)
        sink_path = self._attempt_dir(task_id, task.attempts) / "output.log"
        task.output_path = sink_path
        return await self.worker.invoke(
            task, prompt, self.config.worker.timeout_seconds, sink_path
        )

    def _dispatch(self, inflight: dict[str, asyncio.Task[WorkerResult]]) -> None:
        for task_id in self.scheduler.dispatch(self.graph):
            task = self.graph.get(task_id)
            logger.info("Dispatching %s (attempt %d)", task_id, task.attempts)
            self._emit({"event": "task_dispatched", "task_id": task_id, "attempt": task.attempts})
            inflight[task_id] = asyncio.create_task(self._invoke(task_id))

    def _record(self, record: AttemptRecord) -> None:
        self.attempts.append(record)

    def _route(self, task_id: str, completion: Completion) -> None:
        task = self.graph.get(task_id)
        attempt = task.attempts
        attempt_dir = self._attempt_dir(task_id, attempt)
        protected = self._protected_paths(task_id)
        failure_kind = classify_exit(completion)
        exit_code = completion.exit_code if isinstance(completion, WorkerResult) else None
        self._emit(
            {
                "event": "task_reaped",
                "task_id": task_id,
                "attempt": attempt,
                "exit_code": exit_code,
                "failure": str(failure_kind) if failure_kind else None,
            }
        )

        if failure_kind is not None:
            # Nothing trustworthy to gate: drop the attempt's footprint and fail it.
            change_set = self.workspace.change_set(exclude=protected)
            self.reverter.revert(protected=protected)
            if isinstance(completion, WorkerResult):
                details = [f"worker exited with code {completion.exit_code}"]
                if completion.timed_out:
                    details = [
                        f"worker timed out after {self.config.worker.timeout_seconds:g}s"
                    ]
                tail = completion.tail(self.config.scheduler.output_tail_chars)
                duration = completion.duration_seconds
                timed_out = completion.timed_out
            else:
                details = [str(completion)]
                tail = ""
                duration = 0.0
                timed_out = False
            failure = AttemptFailure(
                kind=failure_kind,
                details=details,
                output_tail=tail,
                changed_summary=change_set.summary(),
            )
            self._record(
                AttemptRecord(
                    task_id=task_id,
                    attempt=attempt,
                    outcome="worker_failed",
                    exit_code=exit_code,
                    timed_out=timed_out,
                    reason=str(failure_kind),
                    details=details,
                    duration_seconds=duration,
                    artifacts_dir=str(attempt_dir),
                )
            )
            self._fail(task_id, failure)
            return

        assert isinstance(completion, WorkerResult)
        outcome = self.pipeline.evaluate(
            task.writes,
            task.complexity,
            exclude=protected,
            results_dir=attempt_dir,
        )
        self._emit(
            {
                "event": "gate_outcome",
                "task_id": task_id,
                "attempt": attempt,
                "status": outcome.status_token,
                "exit_code": outcome.exit_code,
            }
        )
        self._record(self._outcome_record(task_id, attempt, completion, outcome, attempt_dir))

        if isinstance(outcome, Accepted):
            changed = outcome.verification.changed_files
            self.workspace.accept(
                changed,
                message=f"swarmgate: {task_id} (attempt {attempt})",
                commit=self.config.workspace.commit_on_accept,
            )
            self.graph.mark_done(task_id)
            logger.info("Accepted %s at %d/10", task_id, outcome.score.score)
            return

        verification = outcome.verification
        summary = "No files changed."
        if verification is not None and verification.changed_files:
            summary = "\n".join(
                f"{path} (+{verification.stats[path][0]}/-{verification.stats[path][1]})"
                for path in verification.changed_files
            )
        self._fail(
            task_id,
            AttemptFailure(
                kind=outcome.reason,
                details=list(outcome.details),
                output_tail=completion.tail(self.config.scheduler.output_tail_chars),
                changed_summary=summary,
            ),
        )

    @staticmethod
    def _outcome_record(
        task_id: str,
        attempt: int,
        result: WorkerResult,
        outcome: GateOutcome,
        attempt_dir: Path,
    ) -> AttemptRecord:
        score = getattr(outcome, "score", None)
        return AttemptRecord(
            task_id=task_id,
            attempt=attempt,
            outcome=outcome.status_token,
            exit_code=result.exit_code,
            reason=None if isinstance(outcome, Accepted) else str(outcome.reason),
            details=[] if isinstance(outcome, Accepted) else list(outcome.details),
            score=score.score if score is not None else 0,
            duration_seconds=result.duration_seconds,
            artifacts_dir=str(attempt_dir),
        )

    def _fail(self, task_id: str, failure: AttemptFailure) -> None:
        status = self.retry.handle_failure(task_id, failure)
        event = "task_retrying" if status == "retrying" else "task_abandoned"
        self._emit(
            {
                "event": event,
                "task_id": task_id,
                "reason": str(failure.kind),
                "details": list(failure.details),
            }
        )

    async def run(self) -> RunSummary:
        started_at = _utcnow_iso()
        self._validate_graph()
        self.run_dir.mkdir(parents=True, exist_ok=True)
        preexisting = self.workspace.capture_worktree()
        if preexisting:
            self._emit({"event": "baseline_captured", "paths": preexisting})
        inflight: dict[str, asyncio.Task[WorkerResult]] = {}
        try:
            while True:
                for task_id, completion in await self.reaper.reap(inflight):
                    self._route(task_id, completion)
                self._dispatch(inflight)
                if not inflight:
                    break
        finally:
            for future in inflight.values():
                future.cancel()
            if inflight:
                await asyncio.gather(*inflight.values(), return_exceptions=True)

        stalled = Scheduler.stalled(self.graph)
        blocked = self.graph.blocked_tasks()
        if stalled:
            pending = [task.id for task in self.graph if not task.is_terminal]
            logger.warning("Run %s stalled with non-terminal tasks: %s", self.run_id, pending)
            self._emit({"event": "run_stalled", "task_ids": pending, "blocked": blocked})

        tasks = list(self.graph)
        summary = RunSummary(
            run_id=self.run_id,
            started_at=started_at,
            ended_at=_utcnow_iso(),
            total_tasks=len(tasks),
            done=[task.id for task in tasks if task.status == "done"],
            abandoned=[task.id for task in tasks if task.status == "abandoned"],
            blocked=blocked,
            stalled=stalled,
            attempts=list(self.attempts),
            tasks=[task.to_dict() for task in tasks],
            events=list(self.events),
        )
        self.write_summary(summary)
        return summary

    def write_summary(self, summary: RunSummary) -> Path:
        self.run_dir.mkdir(parents=True, exist_ok=True)
        path = self.run_dir / "summary.json"
        path.write_text(
            json.dumps(summary.to_dict(), ensure_ascii=False, indent=2) + "\n",
            encoding="utf-8",
        )
        return path
