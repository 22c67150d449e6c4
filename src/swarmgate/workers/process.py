from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from swarmgate.graph import Task
from swarmgate.workers.base import (
    TIMEOUT_EXIT_CODE,
    Worker,
    WorkerProcessError,
    WorkerResult,
)

logger = logging.getLogger("swarmgate.workers")

PROMPT_PLACEHOLDER = "{prompt}"


class ProcessWorker(Worker):
    """Runs an external command per attempt.

    The command is an argv template. ``{task_id}`` and ``{attempt}`` are
    substituted in every argument and ``{prompt}`` receives the payload; when
    no argument mentions ``{prompt}`` the payload is written to stdin instead.
    Combined stdout/stderr goes to the per-attempt sink file. The process runs
    in its own session so a timeout can terminate the whole process group.
    """

    def __init__(
        self,
        command_template: list[str],
        working_directory: Path | None = None,
        *,
        kill_grace_seconds: float = 5.0,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        if not command_template:
            raise WorkerProcessError("Worker command is empty.", retriable=False)
        self.command_template = list(command_template)
        self.working_directory = working_directory
        self.kill_grace_seconds = max(0.0, float(kill_grace_seconds))
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @property
    def prompt_on_stdin(self) -> bool:
        return not any(PROMPT_PLACEHOLDER in arg for arg in self.command_template)

    def build_command(self, prompt: str, task_id: str, attempt: int) -> list[str]:
        command: list[str] = []
        for arg in self.command_template:
            rendered = arg.replace("{task_id}", task_id).replace("{attempt}", str(attempt))
            command.append(rendered.replace(PROMPT_PLACEHOLDER, prompt))
        return command

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace_seconds)
        except TimeoutError:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await process.wait()

    def _reap_stragglers(self, process: asyncio.subprocess.Process) -> None:
        # Children the worker left running share its process group.
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        logger.debug("Terminated leftover processes in group %d", process.pid)

    async def invoke(
        self,
        task: Task,
        prompt: str,
        timeout_seconds: float,
        sink_path: Path,
    ) -> WorkerResult:
        attempt = max(1, task.attempts)
        command = self.build_command(prompt, task.id, attempt)
        use_stdin = self.prompt_on_stdin
        sink_path.parent.mkdir(parents=True, exist_ok=True)
        deadline = timeout_seconds if timeout_seconds > 0 else None
        started = time.monotonic()
        timed_out = False

        self._emit({"event": "worker_start", "task_id": task.id, "attempt": attempt})
        with sink_path.open("wb") as sink:
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(self.working_directory) if self.working_directory else None,
                    stdin=asyncio.subprocess.PIPE if use_stdin else asyncio.subprocess.DEVNULL,
                    stdout=sink,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
            except FileNotFoundError as exc:
                raise WorkerProcessError(
                    f"Worker binary not found: {command[0]}", retriable=False
                ) from exc
            except PermissionError as exc:
                raise WorkerProcessError(
                    f"Worker binary is not executable: {command[0]}", retriable=False
                ) from exc

            try:
                if use_stdin:
                    await asyncio.wait_for(
                        process.communicate(input=prompt.encode("utf-8")), timeout=deadline
                    )
                else:
                    await asyncio.wait_for(process.wait(), timeout=deadline)
            except TimeoutError:
                timed_out = True
                logger.warning(
                    "Worker for %s exceeded %.1fs; terminating process group %d",
                    task.id,
                    timeout_seconds,
                    process.pid,
                )
                await self._terminate(process)
            except asyncio.CancelledError:
                await self._terminate(process)
                raise
            else:
                self._reap_stragglers(process)

        duration = time.monotonic() - started
        if timed_out:
            with sink_path.open("a", encoding="utf-8") as sink:
                sink.write(f"\n[swarmgate] worker timed out after {timeout_seconds:g}s\n")
        output = sink_path.read_text(encoding="utf-8", errors="replace")
        exit_code = TIMEOUT_EXIT_CODE if timed_out else int(process.returncode or 0)
        self._emit(
            {
                "event": "worker_exit",
                "task_id": task.id,
                "attempt": attempt,
                "exit_code": exit_code,
                "timed_out": timed_out,
            }
        )
        return WorkerResult(
            task_id=task.id,
            attempt=attempt,
            exit_code=exit_code,
            output=output,
            timed_out=timed_out,
            duration_seconds=duration,
            sink_path=sink_path,
        )
