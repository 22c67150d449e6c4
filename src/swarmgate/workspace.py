from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from swarmgate.graph import normalize_path

logger = logging.getLogger("swarmgate.workspace")

BINARY_SNIFF_BYTES = 8000


class WorkspaceError(RuntimeError):
    """Raised when the versioned workspace cannot be inspected or restored."""


@dataclass(slots=True)
class WorkspaceChangeSet:
    files: frozenset[str] = field(default_factory=frozenset)
    stats: dict[str, tuple[int, int]] = field(default_factory=dict)
    added_lines: list[str] = field(default_factory=list)

    @property
    def insertions(self) -> int:
        return sum(item[0] for item in self.stats.values())

    @property
    def deletions(self) -> int:
        return sum(item[1] for item in self.stats.values())

    @property
    def total_changed(self) -> int:
        return self.insertions + self.deletions

    def summary(self) -> str:
        if not self.files:
            return "No files changed."
        lines = []
        for path in sorted(self.files):
            insertions, deletions = self.stats.get(path, (0, 0))
            lines.append(f"{path} (+{insertions}/-{deletions})")
        return "\n".join(lines)


class GitWorkspace:
    """The shared file tree, seen through git.

    The last known-good point is a git tree object recorded when the workspace
    is opened (the current index). ``capture_worktree`` widens it to the whole
    working tree and ``accept`` advances it. Every change query compares the
    working tree against that tree; untracked files count as additions.
    """

    def __init__(self, root: Path, *, state_dir: str = ".swarmgate") -> None:
        self.requested_root = root.resolve()
        self.state_dir = normalize_path(state_dir)
        self.internal_dirs: list[str] = [self.state_dir] if self.state_dir else []
        if not self._is_git_repo():
            raise WorkspaceError(f"Not a git repository: {self.requested_root}")
        toplevel = self._run_git(["rev-parse", "--show-toplevel"], cwd=self.requested_root)
        self.root = Path(toplevel.stdout.strip()).resolve()
        self.baseline = self._write_tree()

    def _is_git_repo(self) -> bool:
        proc = subprocess.run(
            ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
            cwd=self.requested_root,
            text=True,
            capture_output=True,
        )
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(
        self,
        args: list[str],
        check: bool = True,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        proc = subprocess.run(
            ["git", "--no-pager", "-c", "core.quotepath=off", *args],
            cwd=cwd or self.root,
            env=env,
            text=True,
            encoding="utf-8",
            errors="replace",
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise WorkspaceError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def _write_tree(self) -> str:
        return self._run_git(["write-tree"]).stdout.strip()

    def _is_internal(self, path: str) -> bool:
        return any(
            path == internal or path.startswith(f"{internal}/") for internal in self.internal_dirs
        )

    def ignore_directory(self, directory: Path) -> None:
        """Keep a directory inside the tree (e.g. a results directory) out of every query."""
        try:
            relative = directory.resolve().relative_to(self.root)
        except ValueError:
            return
        path = normalize_path(relative.as_posix())
        if path and path != "." and path not in self.internal_dirs:
            self.internal_dirs.append(path)

    def capture_worktree(self) -> list[str]:
        """Make the working tree as it stands the known-good point.

        Unstaged edits and untracked files that exist before a run are folded
        into the baseline so no later revert discards them. Ignored files and
        internal directories stay out. The index is reset to the new baseline.
        Returns the paths that differed from the previous baseline.
        """
        pending = sorted(self.changed_files())
        pathspec = ["."] + [f":(exclude){internal}" for internal in self.internal_dirs]
        with tempfile.NamedTemporaryFile(prefix="swarmgate-index-", delete=False) as index_file:
            index_path = index_file.name
        try:
            env = os.environ.copy()
            env["GIT_INDEX_FILE"] = index_path
            Path(index_path).unlink()
            self._run_git(["read-tree", self.baseline], env=env)
            self._run_git(["add", "--all", "--", *pathspec], env=env)
            self.baseline = self._run_git(["write-tree"], env=env).stdout.strip()
        finally:
            try:
                os.unlink(index_path)
            except OSError:
                pass
        self._run_git(["read-tree", self.baseline])
        if pending:
            logger.warning(
                "Keeping %d pre-existing change(s) in the known-good point: %s",
                len(pending),
                ", ".join(pending),
            )
        return pending

    def _keep(self, path: str, exclude: frozenset[str]) -> bool:
        return bool(path) and not self._is_internal(path) and path not in exclude

    def _baseline_files(self) -> set[str]:
        proc = self._run_git(["ls-tree", "-r", "--name-only", self.baseline])
        return {line for line in proc.stdout.splitlines() if line}

    def _tracked_numstat(self) -> dict[str, tuple[int, int]]:
        proc = self._run_git(["diff", "--numstat", "--no-renames", self.baseline])
        stats: dict[str, tuple[int, int]] = {}
        for line in proc.stdout.splitlines():
            parts = line.split("\t", maxsplit=2)
            if len(parts) != 3:
                continue
            raw_ins, raw_del, path = parts
            insertions = int(raw_ins) if raw_ins.isdigit() else 0
            deletions = int(raw_del) if raw_del.isdigit() else 0
            stats[normalize_path(path)] = (insertions, deletions)
        return stats

    def _untracked_files(self) -> list[str]:
        proc = self._run_git(["ls-files", "--others", "--exclude-standard"])
        return [normalize_path(line) for line in proc.stdout.splitlines() if line.strip()]

    def _untracked_text_lines(self, path: str) -> list[str]:
        file_path = self.root / path
        try:
            raw = file_path.read_bytes()
        except OSError:
            return []
        if b"\0" in raw[:BINARY_SNIFF_BYTES]:
            return []
        return raw.decode("utf-8", errors="replace").splitlines()

    def _tracked_added_lines(self, keep: frozenset[str] | None) -> list[str]:
        proc = self._run_git(["diff", "--no-renames", "--no-color", "-U0", self.baseline])
        added: list[str] = []
        current: str | None = None
        in_hunk = False
        for line in proc.stdout.splitlines():
            if line.startswith("diff --git "):
                current = None
                in_hunk = False
                continue
            if not in_hunk and line.startswith("+++ "):
                target = line[4:]
                current = normalize_path(target[2:]) if target.startswith("b/") else None
                continue
            if line.startswith("@@"):
                in_hunk = True
                continue
            if in_hunk and line.startswith("+"):
                if current is not None and (keep is None or current in keep):
                    added.append(line[1:])
        return added

    def diff(self) -> str:
        """Unified description of every change since the known-good point."""
        tracked = self._run_git(["diff", "--no-renames", "--no-color", self.baseline]).stdout
        untracked = [path for path in self._untracked_files() if not self._is_internal(path)]
        if not untracked:
            return tracked
        listing = "\n".join(f"?? {path}" for path in untracked)
        return f"{tracked.rstrip()}\n{listing}\n".lstrip("\n")

    def line_stats(self, exclude: Iterable[str] = ()) -> dict[str, tuple[int, int]]:
        excluded = frozenset(normalize_path(path) for path in exclude)
        stats = {
            path: counts
            for path, counts in self._tracked_numstat().items()
            if self._keep(path, excluded)
        }
        for path in self._untracked_files():
            if self._keep(path, excluded) and path not in stats:
                stats[path] = (len(self._untracked_text_lines(path)), 0)
        return stats

    def changed_files(self, exclude: Iterable[str] = ()) -> frozenset[str]:
        return frozenset(self.line_stats(exclude))

    def added_lines(self, exclude: Iterable[str] = ()) -> list[str]:
        return self.change_set(exclude).added_lines

    def change_set(self, exclude: Iterable[str] = ()) -> WorkspaceChangeSet:
        excluded = frozenset(normalize_path(path) for path in exclude)
        tracked = {
            path: counts
            for path, counts in self._tracked_numstat().items()
            if self._keep(path, excluded)
        }
        added = self._tracked_added_lines(frozenset(tracked))
        stats = dict(tracked)
        for path in self._untracked_files():
            if not self._keep(path, excluded) or path in stats:
                continue
            lines = self._untracked_text_lines(path)
            stats[path] = (len(lines), 0)
            added.extend(lines)
        return WorkspaceChangeSet(files=frozenset(stats), stats=stats, added_lines=added)

    def revert(self, paths: Iterable[str] | None = None) -> list[str]:
        """Restore the known-good tree.

        With ``paths`` of None every tracked file is restored and every
        untracked addition removed. Otherwise only the given paths are
        restored (or deleted when the known-good tree lacks them). Returns the
        paths that were changed before the revert.
        """
        if paths is None:
            changed = sorted(self.changed_files())
            self._run_git(["read-tree", self.baseline])
            self._run_git(["checkout-index", "--all", "--force"])
            clean_args = ["clean", "-f", "-d"]
            for internal in self.internal_dirs:
                clean_args.extend(["-e", f"/{internal}"])
            self._run_git(clean_args)
            if changed:
                logger.info("Reverted %d path(s) in %s", len(changed), self.root)
            return changed

        targets = sorted({normalize_path(path) for path in paths} - {""})
        targets = [path for path in targets if not self._is_internal(path)]
        if not targets:
            return []
        known = self._baseline_files()
        restored: list[str] = []
        removed: list[str] = []
        for path in targets:
            if path in known:
                restored.append(path)
            else:
                removed.append(path)
        if restored:
            self._run_git(["checkout", self.baseline, "--", *restored])
        if removed:
            self._run_git(["rm", "--cached", "--quiet", "--ignore-unmatch", "--", *removed])
            for path in removed:
                self._remove_file(path)
        logger.info(
            "Reverted %d path(s) in %s (%d restored, %d removed)",
            len(targets),
            self.root,
            len(restored),
            len(removed),
        )
        return targets

    def _remove_file(self, path: str) -> None:
        file_path = self.root / path
        if file_path.is_file() or file_path.is_symlink():
            file_path.unlink()
        parent = file_path.parent
        while parent != self.root and parent.is_dir() and not any(parent.iterdir()):
            parent.rmdir()
            parent = parent.parent

    def accept(
        self,
        paths: Iterable[str],
        *,
        message: str | None = None,
        commit: bool = False,
    ) -> str:
        """Fold the given paths into the known-good tree and return its id."""
        targets = sorted({normalize_path(path) for path in paths} - {""})
        self._run_git(["read-tree", self.baseline])
        if targets:
            self._run_git(["add", "--all", "--", *targets])
        self.baseline = self._write_tree()
        if commit and targets:
            self._run_git(["commit", "--quiet", "-m", message or "swarmgate: accept changes"])
        return self.baseline
