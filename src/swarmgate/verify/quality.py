"""Phase 1 of the gate: a 0-10 quality score with itemised deductions."""

from __future__ import annotations

import json
import logging
import re
import shlex
import subprocess
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from swarmgate.config import QualityConfig, ValidationConfig
from swarmgate.graph import Complexity, normalize_paths

logger = logging.getLogger("swarmgate.verify.quality")

MAX_SCORE = 10
TIMEOUT_EXIT_CODE = 124
SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
QUALITY_SCORE_FILE = "quality_score"
QUALITY_REPORT_FILE = "quality_report.txt"
LOCAL_TSC = Path("node_modules") / ".bin" / "tsc"


@dataclass(frozen=True, slots=True)
class ValidationSignal:
    name: str
    command: str
    weight: int


@dataclass(slots=True)
class ValidationResult:
    name: str
    command: str
    exit_code: int
    output_tail: str = ""
    used_shell: bool = False

    @property
    def passed(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True, slots=True)
class Deduction:
    check: str
    points: int
    detail: str


@dataclass(slots=True)
class QualityScore:
    score: int
    threshold: int
    complexity: Complexity
    ceiling: int
    total_changed: int
    unexpected: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    no_changes: bool = False
    validations: list[ValidationResult] = field(default_factory=list)
    deductions: list[Deduction] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.score >= self.threshold

    @property
    def file_scope_ok(self) -> bool:
        return not (self.no_changes or self.unexpected or self.missing)

    @property
    def validation_ok(self) -> bool:
        return all(result.passed for result in self.validations)

    @property
    def diff_size_ok(self) -> bool:
        return self.total_changed <= self.ceiling

    def failures(self) -> list[str]:
        return [f"{item.check}: {item.detail} (-{item.points})" for item in self.deductions]

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "threshold": self.threshold,
            "accepted": self.accepted,
            "complexity": str(self.complexity),
            "ceiling": self.ceiling,
            "total_changed": self.total_changed,
            "unexpected": list(self.unexpected),
            "missing": list(self.missing),
            "validations": [
                {"name": item.name, "command": item.command, "exit_code": item.exit_code}
                for item in self.validations
            ],
            "deductions": [
                {"check": item.check, "points": item.points, "detail": item.detail}
                for item in self.deductions
            ],
        }


ValidationRunner = Callable[[ValidationSignal, Path, float], ValidationResult]


def _package_scripts(package_json: Path) -> dict[str, Any]:
    try:
        data = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable %s: %s", package_json, exc)
        return {}
    scripts = data.get("scripts") if isinstance(data, dict) else None
    return scripts if isinstance(scripts, dict) else {}


def detect_tooling(root: Path) -> dict[str, str]:
    """Validation commands implied by the project files under ``root``.

    ``tsconfig.json`` enables a type check (the project's own ``tsc`` when
    installed, ``npx tsc`` otherwise). ``lint`` and ``test`` scripts in
    ``package.json`` enable ``npm run lint`` and ``npm test``.
    """
    detected: dict[str, str] = {}
    if (root / "tsconfig.json").is_file():
        if (root / LOCAL_TSC).is_file():
            detected["type_check"] = f"./{LOCAL_TSC.as_posix()} --noEmit"
        else:
            detected["type_check"] = "npx tsc --noEmit"
    package_json = root / "package.json"
    if package_json.is_file():
        scripts = _package_scripts(package_json)
        if "lint" in scripts:
            detected["lint"] = "npm run lint"
        if "test" in scripts:
            detected["test"] = "npm test"
    if detected:
        logger.debug("Detected validation tooling in %s: %s", root, detected)
    return detected


def signals_from_config(
    config: ValidationConfig, root: Path | None = None
) -> list[ValidationSignal]:
    """Validation signals to run; an empty command means the signal is off.

    With ``root`` and ``detect_tooling`` enabled, a signal left unset in the
    configuration falls back to the command detected in the project. A
    configured command always wins.
    """
    detected = detect_tooling(root) if root is not None and config.detect_tooling else {}
    commands = {
        "type_check": config.type_check_command,
        "lint": config.lint_command,
        "test": config.test_command,
    }
    for name, command in commands.items():
        if not command.strip():
            commands[name] = detected.get(name, "")
    candidates = [
        ValidationSignal("type_check", commands["type_check"], config.type_check_weight),
        ValidationSignal("lint", commands["lint"], config.lint_weight),
        ValidationSignal("test", commands["test"], config.test_weight),
    ]
    return [signal for signal in candidates if signal.command.strip()]


def run_validation_command(
    signal: ValidationSignal, cwd: Path, timeout_seconds: float
) -> ValidationResult:
    command_text = signal.command.strip()
    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text

    try:
        proc = subprocess.run(
            command_payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            errors="replace",
            capture_output=True,
            timeout=timeout_seconds if timeout_seconds > 0 else None,
        )
    except FileNotFoundError as exc:
        return ValidationResult(signal.name, signal.command, 127, str(exc), used_shell)
    except subprocess.TimeoutExpired:
        return ValidationResult(
            signal.name,
            signal.command,
            TIMEOUT_EXIT_CODE,
            f"Timed out after {timeout_seconds:g}s.",
            used_shell,
        )
    output = f"{proc.stdout.strip()}\n{proc.stderr.strip()}".strip()
    return ValidationResult(
        signal.name, signal.command, proc.returncode, output[-1000:], used_shell
    )


def score_change(
    *,
    changed: Iterable[str],
    declared: Iterable[str],
    total_changed: int,
    complexity: Complexity | str,
    validations: Iterable[ValidationResult],
    weights: Mapping[str, int],
    config: QualityConfig,
) -> QualityScore:
    """Score a change from the facts alone; no side effects."""
    complexity = Complexity(complexity)
    changed_paths = normalize_paths(changed)
    declared_paths = normalize_paths(declared)
    ceiling = config.ceilings()[complexity]
    result = QualityScore(
        score=MAX_SCORE,
        threshold=config.accept_threshold,
        complexity=complexity,
        ceiling=ceiling,
        total_changed=total_changed,
        unexpected=sorted(changed_paths - declared_paths),
        missing=sorted(declared_paths - changed_paths),
        no_changes=not changed_paths,
        validations=list(validations),
    )

    if not result.file_scope_ok:
        if result.no_changes:
            detail = "no files modified"
        else:
            detail = f"{len(result.unexpected)} unexpected, {len(result.missing)} missing"
        result.deductions.append(Deduction("file_scope", config.file_scope_penalty, detail))

    for validation in result.validations:
        if not validation.passed:
            result.deductions.append(
                Deduction(
                    validation.name,
                    int(weights.get(validation.name, 1)),
                    f"`{validation.command}` exited {validation.exit_code}",
                )
            )

    if not result.diff_size_ok:
        result.deductions.append(
            Deduction(
                "diff_size",
                config.diff_size_penalty,
                f"{total_changed} lines exceeds threshold ({ceiling})",
            )
        )

    penalty = sum(item.points for item in result.deductions)
    result.score = max(0, min(MAX_SCORE, MAX_SCORE - penalty))
    return result


def render_report(
    score: QualityScore,
    *,
    phase0_status: str,
    changed_summary: str,
) -> str:
    diff_line = f"{score.total_changed} lines " + (
        "(PASS)" if score.diff_size_ok else f"(FAIL - max {score.ceiling})"
    )
    lines = [
        "Quality Gate Report",
        "===================",
        f"Score: {score.score}/10",
        f"Verdict: {'ACCEPT' if score.accepted else 'REJECT'} (threshold {score.threshold})",
        "",
        f"Phase 0 - Diff Verification: {phase0_status}",
        "",
        "Phase 1 - Quality Scoring:",
        f"- File Scope: {'PASS' if score.file_scope_ok else 'FAIL'} "
        f"({len(score.unexpected)} unexpected, {len(score.missing)} missing)",
        f"- Validation: {'PASS' if score.validation_ok else 'FAIL'}",
    ]
    for validation in score.validations:
        lines.append(
            f"  - {validation.name}: {'PASS' if validation.passed else 'FAIL'} "
            f"(`{validation.command}`)"
        )
    lines.extend(
        [
            f"- Diff Size: {diff_line}",
            "",
            "Failures:",
            "\n".join(score.failures()) or "None",
            "",
            "Modified Files:",
            changed_summary,
            "",
        ]
    )
    return "\n".join(lines)


def write_score(results_dir: Path, score: int, report: str) -> None:
    results_dir.mkdir(parents=True, exist_ok=True)
    (results_dir / QUALITY_SCORE_FILE).write_text(f"{score}\n", encoding="utf-8")
    (results_dir / QUALITY_REPORT_FILE).write_text(report, encoding="utf-8")


class QualityGate:
    def __init__(
        self,
        workspace_root: Path,
        config: QualityConfig,
        signals: list[ValidationSignal] | None = None,
        *,
        validation_timeout: float = 600.0,
        runner: ValidationRunner = run_validation_command,
    ) -> None:
        self.workspace_root = workspace_root
        self.config = config
        self.signals = list(signals or [])
        self.validation_timeout = validation_timeout
        self.runner = runner

    def run_validations(self) -> list[ValidationResult]:
        results: list[ValidationResult] = []
        for signal in self.signals:
            result = self.runner(signal, self.workspace_root, self.validation_timeout)
            if result.passed:
                logger.info("Validation %s passed", signal.name)
            else:
                logger.warning("Validation %s failed with exit code %d", signal.name, result.exit_code)
            results.append(result)
        return results

    def evaluate(
        self,
        *,
        changed: Iterable[str],
        declared: Iterable[str],
        total_changed: int,
        complexity: Complexity | str,
    ) -> QualityScore:
        score = score_change(
            changed=changed,
            declared=declared,
            total_changed=total_changed,
            complexity=complexity,
            validations=self.run_validations(),
            weights={signal.name: signal.weight for signal in self.signals},
            config=self.config,
        )
        logger.info(
            "Quality score %d/10 (%s)", score.score, "accept" if score.accepted else "reject"
        )
        return score
