"""Phase 0 of the gate: secrets, rogue edits and diff proportionality."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from swarmgate.graph import Complexity, normalize_paths
from swarmgate.revert import RevertController
from swarmgate.verify.secrets import SecretFinding, SecretScanner, render_findings
from swarmgate.workspace import GitWorkspace

logger = logging.getLogger("swarmgate.verify.diff")

SECRET_FINDINGS_FILE = "secret_findings.txt"
ROGUE_EDITS_FILE = "rogue_edits.txt"
REPORT_FILE = "diff_verify_report.txt"
STATUS_FILE = "diff_verify_status"


class VerificationDecision(StrEnum):
    PASS = "pass"
    REJECT = "reject"
    SECRETS_BLOCKED = "secrets_blocked"


STATUS_TOKENS = {
    VerificationDecision.PASS: "PASSED",
    VerificationDecision.REJECT: "FAILED",
    VerificationDecision.SECRETS_BLOCKED: "SECRETS_FOUND",
}


def find_rogue_edits(changed: Iterable[str], declared: Iterable[str]) -> list[str]:
    allowed = normalize_paths(declared)
    return sorted(normalize_paths(changed) - allowed)


def missing_files(changed: Iterable[str], declared: Iterable[str]) -> list[str]:
    return sorted(normalize_paths(declared) - normalize_paths(changed))


def check_proportionality(
    total_changed: int,
    complexity: Complexity | str,
    ceilings: Mapping[Complexity, int],
) -> bool:
    """True when the change stays within the ceiling; the ceiling itself passes."""
    return total_changed <= ceilings[Complexity(complexity)]


@dataclass(slots=True)
class VerificationResult:
    decision: VerificationDecision
    complexity: Complexity
    ceiling: int
    declared: list[str] = field(default_factory=list)
    changed_files: list[str] = field(default_factory=list)
    stats: dict[str, tuple[int, int]] = field(default_factory=dict)
    findings: list[SecretFinding] = field(default_factory=list)
    rogue_edits: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    reverted: list[str] = field(default_factory=list)

    @property
    def insertions(self) -> int:
        return sum(item[0] for item in self.stats.values())

    @property
    def deletions(self) -> int:
        return sum(item[1] for item in self.stats.values())

    @property
    def total_changed(self) -> int:
        return self.insertions + self.deletions

    @property
    def oversized(self) -> bool:
        return self.total_changed > self.ceiling

    @property
    def passed(self) -> bool:
        return self.decision == VerificationDecision.PASS

    @property
    def status_token(self) -> str:
        return STATUS_TOKENS[self.decision]

    def reasons(self) -> list[str]:
        reasons: list[str] = []
        if self.findings:
            reasons.append(f"{len(self.findings)} potential secret(s) in added lines")
        if self.rogue_edits:
            reasons.append(
                f"{len(self.rogue_edits)} rogue edit(s): {', '.join(self.rogue_edits)}"
            )
        if self.oversized:
            reasons.append(
                f"{self.total_changed} changed lines (+{self.insertions}/-{self.deletions}) "
                f"exceeds max {self.ceiling} for {self.complexity}"
            )
        return reasons

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": str(self.decision),
            "status": self.status_token,
            "complexity": str(self.complexity),
            "ceiling": self.ceiling,
            "total_changed": self.total_changed,
            "insertions": self.insertions,
            "deletions": self.deletions,
            "changed_files": list(self.changed_files),
            "rogue_edits": list(self.rogue_edits),
            "missing": list(self.missing),
            "findings": [
                {"pattern_id": finding.pattern_id, "line": finding.line}
                for finding in self.findings
            ],
            "reverted": list(self.reverted),
        }


def _decide(
    findings: list[SecretFinding], rogue_edits: list[str], proportional: bool
) -> VerificationDecision:
    if findings:
        return VerificationDecision.SECRETS_BLOCKED
    if rogue_edits or not proportional:
        return VerificationDecision.REJECT
    return VerificationDecision.PASS


def _render_stats(result: VerificationResult) -> str:
    if not result.stats:
        return "N/A"
    lines = [
        f"{path} | +{result.stats[path][0]} -{result.stats[path][1]}"
        for path in result.changed_files
    ]
    lines.append(
        f"{len(result.changed_files)} file(s) changed, "
        f"{result.insertions} insertion(s), {result.deletions} deletion(s)"
    )
    return "\n".join(lines)


def render_report(result: VerificationResult, workspace_root: Path) -> str:
    checks = [
        "[1/3] Secrets: "
        + (f"FOUND {len(result.findings)}" if result.findings else "PASS"),
        "[2/3] Scope: "
        + (f"FOUND {len(result.rogue_edits)} rogue edit(s)" if result.rogue_edits else "PASS"),
        "[3/3] Proportionality: "
        + (
            f"FAIL {result.total_changed} lines (+{result.insertions}/-{result.deletions}) "
            f"exceeds max {result.ceiling}"
            if result.oversized
            else f"PASS {result.total_changed} lines (+{result.insertions}/-{result.deletions}) "
            f"within {result.ceiling}"
        ),
    ]
    sections = [
        "Diff Verification Report",
        "========================",
        f"Directory: {workspace_root}",
        f"Expected Files: {' '.join(result.declared)}",
        f"Task Complexity: {result.complexity}",
        f"Status: {result.status_token}",
        "",
        "Results:",
        *checks,
        "",
        "Modified Files:",
        "\n".join(result.changed_files) or "None",
        "",
        "Diff Stats:",
        _render_stats(result),
        "",
        "Secret Findings:",
        render_findings(result.findings).rstrip("\n"),
        "",
        "Rogue Edits:",
        "\n".join(result.rogue_edits) or "None",
        "",
    ]
    if result.reverted:
        sections.extend(["Reverted:", "\n".join(result.reverted), ""])
    return "\n".join(sections)


def write_artifacts(result: VerificationResult, results_dir: Path, workspace_root: Path) -> None:
    results_dir.mkdir(parents=True, exist_ok=True)
    (results_dir / SECRET_FINDINGS_FILE).write_text(
        render_findings(result.findings), encoding="utf-8"
    )
    (results_dir / ROGUE_EDITS_FILE).write_text(
        "".join(f"ROGUE: {path}\n" for path in result.rogue_edits),
        encoding="utf-8",
    )
    (results_dir / REPORT_FILE).write_text(
        render_report(result, workspace_root), encoding="utf-8"
    )
    (results_dir / STATUS_FILE).write_text(f"{result.status_token}\n", encoding="utf-8")


class DiffVerifier:
    def __init__(
        self,
        workspace: GitWorkspace,
        scanner: SecretScanner,
        ceilings: Mapping[Complexity, int],
        reverter: RevertController | None = None,
    ) -> None:
        self.workspace = workspace
        self.scanner = scanner
        self.ceilings = dict(ceilings)
        self.reverter = reverter or RevertController(workspace)

    def inspect(
        self,
        declared: Iterable[str],
        complexity: Complexity | str,
        *,
        exclude: Iterable[str] = (),
    ) -> VerificationResult:
        """Classify the current change without touching the workspace."""
        complexity = Complexity(complexity)
        declared_paths = normalize_paths(declared)
        excluded = normalize_paths(exclude) - declared_paths
        change_set = self.workspace.change_set(exclude=excluded)
        findings = self.scanner.scan(change_set.added_lines)
        rogue = find_rogue_edits(change_set.files, declared_paths)
        proportional = check_proportionality(
            change_set.total_changed, complexity, self.ceilings
        )
        return VerificationResult(
            decision=_decide(findings, rogue, proportional),
            complexity=complexity,
            ceiling=self.ceilings[complexity],
            declared=sorted(declared_paths),
            changed_files=sorted(change_set.files),
            stats=dict(change_set.stats),
            findings=findings,
            rogue_edits=rogue,
            missing=missing_files(change_set.files, declared_paths),
        )

    def verify(
        self,
        declared: Iterable[str],
        complexity: Complexity | str,
        *,
        exclude: Iterable[str] = (),
        results_dir: Path | None = None,
    ) -> VerificationResult:
        """Run Phase 0 and revert the workspace on anything but a pass.

        ``exclude`` names paths owned by other running tasks; they are neither
        judged nor reverted.
        """
        declared = list(declared)
        protected = normalize_paths(exclude) - normalize_paths(declared)
        result = self.inspect(declared, complexity, exclude=protected)
        if result.passed:
            logger.info(
                "Diff verification passed: %d file(s), %d line(s)",
                len(result.changed_files),
                result.total_changed,
            )
        else:
            logger.warning(
                "Diff verification %s: %s", result.status_token, "; ".join(result.reasons())
            )
            result.reverted = self.reverter.revert(protected=protected)
        if results_dir is not None:
            write_artifacts(result, results_dir, self.workspace.root)
        return result
