import json
import sys
from pathlib import Path

import pytest

from swarmgate.config import QualityConfig, ValidationConfig
from swarmgate.verify.quality import (
    QualityGate,
    ValidationResult,
    ValidationSignal,
    detect_tooling,
    run_validation_command,
    score_change,
    signals_from_config,
)

WEIGHTS = {"type_check": 2, "lint": 1, "test": 1}


def _validations(**failing: bool) -> list[ValidationResult]:
    return [
        ValidationResult(name, f"run {name}", 1 if failing.get(name) else 0)
        for name in ("type_check", "lint", "test")
    ]


def _score(
    *,
    changed: set[str] | None = None,
    declared: set[str] | None = None,
    total: int = 10,
    complexity: str = "medium",
    **failing: bool,
) -> int:
    declared = {"src/a.py"} if declared is None else declared
    changed = set(declared) if changed is None else changed
    return score_change(
        changed=changed,
        declared=declared,
        total_changed=total,
        complexity=complexity,
        validations=_validations(**failing),
        weights=WEIGHTS,
        config=QualityConfig(),
    ).score


def test_medium_change_with_everything_passing_scores_ten() -> None:
    result = score_change(
        changed={"src/a.py", "src/b.py"},
        declared={"src/a.py", "src/b.py"},
        total_changed=150,
        complexity="medium",
        validations=_validations(),
        weights=WEIGHTS,
        config=QualityConfig(),
    )

    assert result.score == 10
    assert result.accepted
    assert result.deductions == []


def test_deductions_are_itemised() -> None:
    result = score_change(
        changed={"src/a.py", "src/extra.py"},
        declared={"src/a.py", "src/missing.py"},
        total_changed=60,
        complexity="small",
        validations=_validations(type_check=True, lint=True),
        weights=WEIGHTS,
        config=QualityConfig(),
    )

    assert [item.check for item in result.deductions] == [
        "file_scope",
        "type_check",
        "lint",
        "diff_size",
    ]
    assert result.score == 10 - 4 - 2 - 1 - 2
    assert not result.accepted
    assert result.unexpected == ["src/extra.py"]
    assert result.missing == ["src/missing.py"]


def test_no_files_modified_is_a_scope_violation() -> None:
    assert _score(changed=set(), total=0) == 6


def test_threshold_is_inclusive() -> None:
    result = score_change(
        changed=set(),
        declared={"src/a.py"},
        total_changed=0,
        complexity="medium",
        validations=[],
        weights=WEIGHTS,
        config=QualityConfig(),
    )

    assert result.score == 6
    assert result.accepted


def test_score_is_clamped_at_zero() -> None:
    config = QualityConfig(file_scope_penalty=9, diff_size_penalty=9)
    result = score_change(
        changed={"x.py"},
        declared={"y.py"},
        total_changed=10_000,
        complexity="large",
        validations=_validations(type_check=True, lint=True, test=True),
        weights=WEIGHTS,
        config=config,
    )

    assert result.score == 0


@pytest.mark.parametrize(
    "fixed",
    ["scope", "type_check", "lint", "test", "size"],
)
def test_resolving_one_check_never_lowers_the_score(fixed: str) -> None:
    broken = {
        "changed": {"src/a.py", "src/extra.py"},
        "total": 500,
        "lint": True,
        "test": True,
    }
    before = _score(**broken)
    repaired = dict(broken)
    if fixed == "scope":
        repaired["changed"] = {"src/a.py"}
    elif fixed == "size":
        repaired["total"] = 10
    else:
        repaired[fixed] = False

    assert _score(**repaired) >= before


def test_signals_from_config_skips_empty_commands() -> None:
    config = ValidationConfig(lint_command="ruff check .", test_command="  ")

    signals = signals_from_config(config)

    assert signals == [ValidationSignal("lint", "ruff check .", 1)]


def test_run_validation_command_reports_exit_codes(tmp_path: Path) -> None:
    ok = ValidationSignal("lint", f'{sys.executable} -c "print(1)"', 1)
    bad = ValidationSignal("test", f'{sys.executable} -c "import sys; sys.exit(3)"', 1)
    missing = ValidationSignal("type_check", "definitely-not-a-real-binary-xyz", 2)

    assert run_validation_command(ok, tmp_path, 30).passed
    assert run_validation_command(bad, tmp_path, 30).exit_code == 3
    assert run_validation_command(missing, tmp_path, 30).exit_code == 127


def test_run_validation_command_times_out(tmp_path: Path) -> None:
    slow = ValidationSignal("test", f'{sys.executable} -c "import time; time.sleep(5)"', 1)

    result = run_validation_command(slow, tmp_path, 0.5)

    assert result.exit_code == 124
    assert not result.passed


def test_quality_gate_uses_signal_weights(tmp_path: Path) -> None:
    calls: list[str] = []

    def fake_runner(signal: ValidationSignal, cwd: Path, timeout: float) -> ValidationResult:
        calls.append(signal.name)
        return ValidationResult(signal.name, signal.command, 1 if signal.name == "type_check" else 0)

    gate = QualityGate(
        tmp_path,
        QualityConfig(),
        [ValidationSignal("type_check", "tsc", 3), ValidationSignal("test", "pytest", 1)],
        runner=fake_runner,
    )

    score = gate.evaluate(
        changed={"src/a.py"}, declared={"src/a.py"}, total_changed=5, complexity="small"
    )

    assert calls == ["type_check", "test"]
    assert score.score == 7
    assert [item.check for item in score.deductions] == ["type_check"]


def _node_project(root: Path, scripts: dict[str, str] | None = None) -> None:
    (root / "tsconfig.json").write_text("{}\n", encoding="utf-8")
    (root / "package.json").write_text(
        json.dumps({"name": "demo", "scripts": scripts or {}}), encoding="utf-8"
    )


def test_detect_tooling_reads_tsconfig_and_package_scripts(tmp_path: Path) -> None:
    _node_project(tmp_path, {"lint": "eslint .", "test": "vitest run", "build": "tsc"})

    assert detect_tooling(tmp_path) == {
        "type_check": "npx tsc --noEmit",
        "lint": "npm run lint",
        "test": "npm test",
    }


def test_detect_tooling_prefers_installed_tsc(tmp_path: Path) -> None:
    _node_project(tmp_path)
    local_bin = tmp_path / "node_modules" / ".bin"
    local_bin.mkdir(parents=True)
    (local_bin / "tsc").write_text("", encoding="utf-8")

    assert detect_tooling(tmp_path) == {"type_check": "./node_modules/.bin/tsc --noEmit"}


@pytest.mark.parametrize("body", ["{not json", "[1, 2]", '{"scripts": ["lint"]}'])
def test_detect_tooling_ignores_unusable_package_json(tmp_path: Path, body: str) -> None:
    (tmp_path / "package.json").write_text(body, encoding="utf-8")

    assert detect_tooling(tmp_path) == {}


def test_detected_commands_fill_unset_signals(tmp_path: Path) -> None:
    _node_project(tmp_path, {"lint": "eslint .", "test": "vitest run"})

    signals = signals_from_config(ValidationConfig(), tmp_path)

    assert signals == [
        ValidationSignal("type_check", "npx tsc --noEmit", 2),
        ValidationSignal("lint", "npm run lint", 1),
        ValidationSignal("test", "npm test", 1),
    ]


def test_configured_commands_override_detection(tmp_path: Path) -> None:
    _node_project(tmp_path, {"lint": "eslint .", "test": "vitest run"})
    config = ValidationConfig(lint_command="biome check", test_weight=3)

    signals = signals_from_config(config, tmp_path)

    assert [(signal.name, signal.command) for signal in signals] == [
        ("type_check", "npx tsc --noEmit"),
        ("lint", "biome check"),
        ("test", "npm test"),
    ]
    assert signals[-1].weight == 3


def test_detection_can_be_switched_off(tmp_path: Path) -> None:
    _node_project(tmp_path, {"lint": "eslint .", "test": "vitest run"})
    config = ValidationConfig(detect_tooling=False, test_command="make check")

    assert signals_from_config(config, tmp_path) == [ValidationSignal("test", "make check", 1)]
