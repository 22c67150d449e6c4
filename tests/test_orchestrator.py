import asyncio
import json
import subprocess
import sys
from pathlib import Path
from typing import Any

import pytest

from swarmgate.config import SwarmgateConfig
from swarmgate.graph import Task, TaskGraph, TaskStatus
from swarmgate.orchestrator import Orchestrator, RunSummary
from swarmgate.verify.gate import QualityGatePipeline
from swarmgate.workers import ProcessWorker
from swarmgate.workspace import GitWorkspace

WORKER_SCRIPT = """
import json
import pathlib
import sys
import time

task_id, attempt, plan_path = sys.argv[1], sys.argv[2], sys.argv[3]
plan = json.loads(pathlib.Path(plan_path).read_text(encoding="utf-8"))
step = plan.get(f"{task_id}:{attempt}", plan.get(task_id, {}))
print(sys.stdin.read())
for path, content in step.get("write", {}).items():
    target = pathlib.Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
time.sleep(step.get("sleep", 0))
sys.exit(step.get("exit", 0))
"""


def _init_git_repo(repo: Path) -> None:
    for cmd in (
        ["git", "init"],
        ["git", "config", "user.email", "test@example.com"],
        ["git", "config", "user.name", "Test User"],
    ):
        subprocess.run(cmd, cwd=repo, check=True, text=True, capture_output=True)
    (repo / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(["git", "add", "."], cwd=repo, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "seed"], cwd=repo, check=True, text=True, capture_output=True
    )


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    _init_git_repo(path)
    return path


def _run(
    repo: Path,
    tasks: list[Task],
    plan: dict[str, Any],
    *,
    max_parallel: int = 6,
    max_retries: int = 1,
) -> tuple[RunSummary, Orchestrator]:
    scratch = repo.parent
    script = scratch / "worker.py"
    script.write_text(WORKER_SCRIPT, encoding="utf-8")
    plan_path = scratch / "plan.json"
    plan_path.write_text(json.dumps(plan), encoding="utf-8")

    config = SwarmgateConfig.default()
    config.worker.command = [sys.executable, str(script), "{task_id}", "{attempt}", str(plan_path)]
    config.worker.timeout_seconds = 20.0
    config.scheduler.poll_interval_seconds = 0.05
    config.scheduler.max_parallel = max_parallel
    config.scheduler.max_retries = max_retries

    workspace = GitWorkspace(repo, state_dir=config.workspace.state_dir)
    worker = ProcessWorker(config.worker.command, workspace.root, kill_grace_seconds=1.0)
    pipeline = QualityGatePipeline.from_config(workspace, config)
    orchestrator = Orchestrator(TaskGraph(tasks), workspace, worker, pipeline, config)
    return asyncio.run(orchestrator.run()), orchestrator


def _task(task_id: str, writes: set[str], depends_on: set[str] | None = None) -> Task:
    return Task(
        id=task_id,
        prompt=f"Implement {task_id}",
        writes=frozenset(writes),
        depends_on=frozenset(depends_on or set()),
        complexity="small",
    )


def _event_index(summary: RunSummary, event: str, task_id: str) -> int:
    for index, item in enumerate(summary.events):
        if item["event"] == event and item.get("task_id") == task_id:
            return index
    raise AssertionError(f"No {event} event for {task_id}")


def test_successful_run_accepts_every_task_in_dependency_order(repo: Path) -> None:
    tasks = [
        _task("model", {"src/model.py"}),
        _task("api", {"src/api.py"}, {"model"}),
        _task("cli", {"src/cli.py"}),
    ]
    plan = {
        "model": {"write": {"src/model.py": "class Model:\n    pass\n"}},
        "api": {"write": {"src/api.py": "from model import Model\n"}},
        "cli": {"write": {"src/cli.py": "print('cli')\n"}},
    }

    summary, orchestrator = _run(repo, tasks, plan)

    assert summary.succeeded
    assert sorted(summary.done) == ["api", "cli", "model"]
    assert summary.abandoned == []
    assert not summary.stalled
    assert _event_index(summary, "task_dispatched", "api") > _event_index(
        summary, "gate_outcome", "model"
    )
    assert (repo / "src" / "api.py").exists()
    assert orchestrator.workspace.changed_files() == frozenset()

    saved = json.loads((orchestrator.run_dir / "summary.json").read_text(encoding="utf-8"))
    assert saved["succeeded"] is True
    assert saved["run_id"] == summary.run_id
    assert (orchestrator.run_dir / "model" / "attempt-1" / "quality_score").exists()
    assert (orchestrator.run_dir / "model" / "attempt-1" / "output.log").exists()


def test_overlapping_write_sets_run_one_after_another(repo: Path) -> None:
    tasks = [
        _task("first", {"src/shared.py"}),
        _task("second", {"src/shared.py"}),
        _task("other", {"src/other.py"}),
    ]
    plan = {
        "first": {"write": {"src/shared.py": "x = 1\n"}, "sleep": 0.3},
        "second": {"write": {"src/shared.py": "x = 2\n"}},
        "other": {"write": {"src/other.py": "y = 1\n"}},
    }

    summary, _ = _run(repo, tasks, plan)

    assert summary.succeeded
    dispatched = [item["task_id"] for item in summary.events if item["event"] == "task_dispatched"]
    assert dispatched[:2] == ["first", "other"]
    assert _event_index(summary, "task_dispatched", "second") > _event_index(
        summary, "task_reaped", "first"
    )
    assert (repo / "src" / "shared.py").read_text(encoding="utf-8") == "x = 2\n"


def test_concurrent_task_files_are_not_rogue_edits(repo: Path) -> None:
    tasks = [_task("quick", {"src/quick.py"}), _task("slow", {"src/slow.py"})]
    plan = {
        "quick": {"write": {"src/quick.py": "quick = 1\n"}, "sleep": 0.2},
        "slow": {"write": {"src/slow.py": "slow = 1\n"}, "sleep": 1.5},
    }

    summary, _ = _run(repo, tasks, plan)

    assert summary.succeeded
    assert all(record.outcome == "PASSED" for record in summary.attempts)


def test_rejected_attempt_is_retried_with_context(repo: Path) -> None:
    tasks = [_task("api", {"src/api.py"})]
    plan = {
        "api:1": {"write": {"src/api.py": "v = 1\n", "src/rogue.py": "oops\n"}},
        "api:2": {"write": {"src/api.py": "v = 2\n"}},
    }

    summary, orchestrator = _run(repo, tasks, plan)

    assert summary.done == ["api"]
    assert [record.outcome for record in summary.attempts] == ["FAILED", "PASSED"]
    assert summary.attempts[0].reason == "rogue_edit"
    assert not (repo / "src" / "rogue.py").exists()
    second_output = (orchestrator.run_dir / "api" / "attempt-2" / "output.log").read_text(
        encoding="utf-8"
    )
    assert "## Retry context" in second_output
    assert "src/rogue.py" in second_output
    assert orchestrator.graph.get("api").attempts == 2


def test_failing_worker_is_abandoned_and_blocks_dependents(repo: Path) -> None:
    tasks = [
        _task("base", {"src/base.py"}),
        _task("child", {"src/child.py"}, {"base"}),
        _task("independent", {"src/independent.py"}),
    ]
    plan = {
        "base": {"write": {"src/base.py": "half written\n"}, "exit": 3},
        "independent": {"write": {"src/independent.py": "ok = True\n"}},
    }

    summary, orchestrator = _run(repo, tasks, plan)

    assert not summary.succeeded
    assert summary.abandoned == ["base"]
    assert summary.done == ["independent"]
    assert summary.blocked == {"child": ["base"]}
    assert summary.stalled
    assert [record.reason for record in summary.attempts if record.task_id == "base"] == [
        "worker_nonzero_exit",
        "worker_nonzero_exit",
    ]
    assert orchestrator.graph.get("child").status == TaskStatus.PENDING
    assert not (repo / "src" / "base.py").exists()
    assert any(item["event"] == "run_stalled" for item in summary.events)


def test_secret_is_abandoned_without_retry(repo: Path) -> None:
    tasks = [_task("config", {"src/config.py"})]
    plan = {"config": {"write": {"src/config.py": 'password = "supersecretvalue123"\n'}}}

    summary, orchestrator = _run(repo, tasks, plan, max_retries=3)

    assert summary.abandoned == ["config"]
    assert len(summary.attempts) == 1
    assert summary.attempts[0].outcome == "SECRETS_FOUND"
    assert orchestrator.workspace.changed_files() == frozenset()


def test_missing_worker_binary_abandons_task(repo: Path) -> None:
    config = SwarmgateConfig.default()
    config.worker.command = ["definitely-not-a-real-worker-binary", "{prompt}"]
    config.scheduler.poll_interval_seconds = 0.05
    workspace = GitWorkspace(repo)
    worker = ProcessWorker(config.worker.command, workspace.root)
    pipeline = QualityGatePipeline.from_config(workspace, config)
    graph = TaskGraph([_task("a", {"a.py"})])

    summary = asyncio.run(Orchestrator(graph, workspace, worker, pipeline, config).run())

    assert summary.abandoned == ["a"]
    assert summary.attempts[0].reason == "worker_launch_failed"


def _dirty_workspace(repo: Path) -> None:
    (repo / "swarmgate.toml").write_text("[scheduler]\nmax_parallel = 2\n", encoding="utf-8")
    (repo / "tasks.toml").write_text('[[task]]\nid = "a"\nprompt = "a"\n', encoding="utf-8")
    (repo / "README.md").write_text("edited before the run\n", encoding="utf-8")


def test_preexisting_worktree_changes_are_not_blamed_on_tasks(repo: Path) -> None:
    _dirty_workspace(repo)
    tasks = [_task("a", {"a.txt"})]
    plan = {"a": {"write": {"a.txt": "a\n"}}}

    summary, _ = _run(repo, tasks, plan)

    assert summary.done == ["a"]
    assert [record.outcome for record in summary.attempts] == ["PASSED"]
    assert summary.events[0]["event"] == "baseline_captured"
    assert summary.events[0]["paths"] == ["README.md", "swarmgate.toml", "tasks.toml"]
    assert (repo / "swarmgate.toml").exists()
    assert (repo / "tasks.toml").exists()
    assert (repo / "README.md").read_text(encoding="utf-8") == "edited before the run\n"


def test_reverting_a_failed_attempt_keeps_preexisting_changes(repo: Path) -> None:
    _dirty_workspace(repo)
    tasks = [_task("a", {"a.txt"})]
    plan = {
        "a": {
            "write": {"a.txt": "a\n", "README.md": "clobbered\n", "tasks.toml": "gone\n"},
            "exit": 1,
        }
    }

    summary, orchestrator = _run(repo, tasks, plan, max_retries=0)

    assert summary.abandoned == ["a"]
    assert not (repo / "a.txt").exists()
    assert (repo / "swarmgate.toml").read_text(encoding="utf-8") == (
        "[scheduler]\nmax_parallel = 2\n"
    )
    assert (repo / "tasks.toml").read_text(encoding="utf-8") == '[[task]]\nid = "a"\nprompt = "a"\n'
    assert (repo / "README.md").read_text(encoding="utf-8") == "edited before the run\n"
    assert orchestrator.workspace.changed_files() == frozenset()
