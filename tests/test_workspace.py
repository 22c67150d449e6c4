import subprocess
from pathlib import Path

import pytest

from swarmgate.revert import RevertController
from swarmgate.workspace import GitWorkspace, WorkspaceError


def _run(cmd: list[str], cwd: Path) -> str:
    proc = subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True)
    return proc.stdout.strip()


def _init_git_repo(repo: Path) -> None:
    _run(["git", "init"], cwd=repo)
    _run(["git", "config", "user.email", "test@example.com"], cwd=repo)
    _run(["git", "config", "user.name", "Test User"], cwd=repo)
    (repo / "src").mkdir()
    (repo / "src" / "app.py").write_text("a = 1\nb = 2\nc = 3\n", encoding="utf-8")
    (repo / "README.md").write_text("seed\n", encoding="utf-8")
    _run(["git", "add", "."], cwd=repo)
    _run(["git", "commit", "-m", "seed"], cwd=repo)


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    _init_git_repo(path)
    return path


def test_rejects_non_repository(tmp_path: Path) -> None:
    with pytest.raises(WorkspaceError):
        GitWorkspace(tmp_path)


def test_change_set_counts_tracked_and_untracked_changes(repo: Path) -> None:
    workspace = GitWorkspace(repo)
    (repo / "src" / "app.py").write_text("a = 1\nb = 20\nc = 3\nd = 4\n", encoding="utf-8")
    (repo / "src" / "new.py").write_text("x = 1\ny = 2\n", encoding="utf-8")
    (repo / "README.md").unlink()

    change_set = workspace.change_set()

    assert change_set.files == frozenset({"src/app.py", "src/new.py", "README.md"})
    assert change_set.stats["src/app.py"] == (2, 1)
    assert change_set.stats["src/new.py"] == (2, 0)
    assert change_set.stats["README.md"] == (0, 1)
    assert change_set.total_changed == 6
    assert sorted(change_set.added_lines) == ["b = 20", "d = 4", "x = 1", "y = 2"]
    assert "src/new.py" in workspace.diff()


def test_removed_lines_are_not_added_lines(repo: Path) -> None:
    workspace = GitWorkspace(repo)
    (repo / "src" / "app.py").write_text("a = 1\n", encoding="utf-8")

    assert workspace.added_lines() == []
    assert workspace.line_stats() == {"src/app.py": (0, 2)}


def test_exclusions_and_state_dir_are_invisible(repo: Path) -> None:
    workspace = GitWorkspace(repo)
    (repo / ".swarmgate" / "runs").mkdir(parents=True)
    (repo / ".swarmgate" / "runs" / "log.txt").write_text("noise\n", encoding="utf-8")
    (repo / "other.py").write_text("owned elsewhere\n", encoding="utf-8")
    (repo / "mine.py").write_text("mine\n", encoding="utf-8")

    assert workspace.changed_files(exclude=["other.py"]) == frozenset({"mine.py"})


def test_full_revert_restores_tree_and_is_idempotent(repo: Path) -> None:
    workspace = GitWorkspace(repo)
    (repo / "src" / "app.py").write_text("broken\n", encoding="utf-8")
    (repo / "src" / "deep" / "nested").mkdir(parents=True)
    (repo / "src" / "deep" / "nested" / "new.py").write_text("new\n", encoding="utf-8")
    (repo / "README.md").unlink()
    (repo / ".swarmgate").mkdir()
    (repo / ".swarmgate" / "keep.txt").write_text("state\n", encoding="utf-8")

    reverted = RevertController(workspace).revert()

    assert set(reverted) == {"src/app.py", "src/deep/nested/new.py", "README.md"}
    assert workspace.changed_files() == frozenset()
    assert (repo / "src" / "app.py").read_text(encoding="utf-8") == "a = 1\nb = 2\nc = 3\n"
    assert (repo / "README.md").exists()
    assert not (repo / "src" / "deep").exists()
    assert (repo / ".swarmgate" / "keep.txt").exists()

    assert RevertController(workspace).revert() == []
    assert workspace.changed_files() == frozenset()


def test_full_revert_discards_staged_additions(repo: Path) -> None:
    workspace = GitWorkspace(repo)
    (repo / "staged.py").write_text("staged\n", encoding="utf-8")
    _run(["git", "add", "staged.py"], cwd=repo)
    assert workspace.changed_files() == frozenset({"staged.py"})

    workspace.revert()

    assert not (repo / "staged.py").exists()
    assert workspace.changed_files() == frozenset()


def test_protected_paths_survive_scoped_revert(repo: Path) -> None:
    workspace = GitWorkspace(repo)
    (repo / "src" / "app.py").write_text("rejected\n", encoding="utf-8")
    (repo / "rogue.py").write_text("rogue\n", encoding="utf-8")
    (repo / "neighbour.py").write_text("someone else's work\n", encoding="utf-8")

    reverted = RevertController(workspace).revert(protected=["neighbour.py"])

    assert reverted == ["rogue.py", "src/app.py"]
    assert workspace.changed_files() == frozenset({"neighbour.py"})
    assert not (repo / "rogue.py").exists()


def test_accept_advances_the_known_good_point(repo: Path) -> None:
    workspace = GitWorkspace(repo)
    (repo / "src" / "feature.py").write_text("feature = True\n", encoding="utf-8")
    (repo / "pending.py").write_text("not accepted\n", encoding="utf-8")

    workspace.accept(["src/feature.py"])

    assert workspace.changed_files() == frozenset({"pending.py"})
    workspace.revert()
    assert (repo / "src" / "feature.py").exists()
    assert not (repo / "pending.py").exists()


def test_accept_can_commit(repo: Path) -> None:
    workspace = GitWorkspace(repo)
    (repo / "README.md").write_text("updated\n", encoding="utf-8")

    workspace.accept(["README.md"], message="docs: update readme", commit=True)

    assert _run(["git", "log", "-1", "--pretty=%s"], cwd=repo) == "docs: update readme"
    assert _run(["git", "status", "--porcelain"], cwd=repo) == ""


def test_captured_worktree_survives_full_revert(repo: Path) -> None:
    workspace = GitWorkspace(repo)
    (repo / "README.md").write_text("local edit\n", encoding="utf-8")
    (repo / "notes.txt").write_text("untracked notes\n", encoding="utf-8")
    (repo / ".swarmgate").mkdir()
    (repo / ".swarmgate" / "log.txt").write_text("state\n", encoding="utf-8")

    pending = workspace.capture_worktree()

    assert pending == ["README.md", "notes.txt"]
    assert workspace.changed_files() == frozenset()
    (repo / "README.md").write_text("worker damage\n", encoding="utf-8")
    (repo / "worker.py").write_text("x = 1\n", encoding="utf-8")

    assert RevertController(workspace).revert() == ["README.md", "worker.py"]
    assert (repo / "README.md").read_text(encoding="utf-8") == "local edit\n"
    assert (repo / "notes.txt").read_text(encoding="utf-8") == "untracked notes\n"
    assert not (repo / "worker.py").exists()
    assert (repo / ".swarmgate" / "log.txt").exists()
    assert "notes.txt" in _run(["git", "ls-tree", "-r", "--name-only", workspace.baseline], repo)
    assert ".swarmgate/log.txt" not in _run(
        ["git", "ls-tree", "-r", "--name-only", workspace.baseline], repo
    )


def test_scoped_revert_restores_captured_content(repo: Path) -> None:
    workspace = GitWorkspace(repo)
    (repo / "notes.txt").write_text("untracked notes\n", encoding="utf-8")
    workspace.capture_worktree()
    (repo / "notes.txt").write_text("overwritten\n", encoding="utf-8")
    (repo / "neighbour.py").write_text("other task\n", encoding="utf-8")

    RevertController(workspace).revert(protected=["neighbour.py"])

    assert (repo / "notes.txt").read_text(encoding="utf-8") == "untracked notes\n"
    assert (repo / "neighbour.py").exists()
