from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from swarmgate.graph import Complexity


class ConfigError(RuntimeError):
    """Raised when a configuration file or data table is malformed."""


@dataclass(slots=True)
class WorkerConfig:
    command: list[str] = field(default_factory=lambda: ["claude", "-p", "{prompt}"])
    timeout_seconds: float = 600.0
    kill_grace_seconds: float = 5.0


@dataclass(slots=True)
class SchedulerConfig:
    max_parallel: int = 6
    poll_interval_seconds: float = 1.0
    max_retries: int = 1
    output_tail_chars: int = 2000


@dataclass(slots=True)
class VerifyConfig:
    small_max_lines: int = 100
    medium_max_lines: int = 400
    large_max_lines: int = 1000
    secret_patterns_file: str = ""

    def ceilings(self) -> dict[Complexity, int]:
        return {
            Complexity.SMALL: self.small_max_lines,
            Complexity.MEDIUM: self.medium_max_lines,
            Complexity.LARGE: self.large_max_lines,
        }


@dataclass(slots=True)
class QualityConfig:
    accept_threshold: int = 6
    file_scope_penalty: int = 4
    diff_size_penalty: int = 2
    small_max_lines: int = 50
    medium_max_lines: int = 200
    large_max_lines: int = 500

    def ceilings(self) -> dict[Complexity, int]:
        return {
            Complexity.SMALL: self.small_max_lines,
            Complexity.MEDIUM: self.medium_max_lines,
            Complexity.LARGE: self.large_max_lines,
        }


@dataclass(slots=True)
class ValidationConfig:
    type_check_command: str = ""
    lint_command: str = ""
    test_command: str = ""
    type_check_weight: int = 2
    lint_weight: int = 1
    test_weight: int = 1
    timeout_seconds: float = 600.0
    detect_tooling: bool = True


@dataclass(slots=True)
class WorkspaceConfig:
    state_dir: str = ".swarmgate"
    commit_on_accept: bool = False


@dataclass(slots=True)
class SwarmgateConfig:
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    verify: VerifyConfig = field(default_factory=VerifyConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)

    @classmethod
    def default(cls) -> SwarmgateConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> SwarmgateConfig:
        return cls(
            worker=WorkerConfig(**data.get("worker", {})),
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            verify=VerifyConfig(**data.get("verify", {})),
            quality=QualityConfig(**data.get("quality", {})),
            validation=ValidationConfig(**data.get("validation", {})),
            workspace=WorkspaceConfig(**data.get("workspace", {})),
        )

    def to_dict(self) -> dict:
        return {
            "worker": {
                "command": list(self.worker.command),
                "timeout_seconds": self.worker.timeout_seconds,
                "kill_grace_seconds": self.worker.kill_grace_seconds,
            },
            "scheduler": {
                "max_parallel": self.scheduler.max_parallel,
                "poll_interval_seconds": self.scheduler.poll_interval_seconds,
                "max_retries": self.scheduler.max_retries,
                "output_tail_chars": self.scheduler.output_tail_chars,
            },
            "verify": {
                "small_max_lines": self.verify.small_max_lines,
                "medium_max_lines": self.verify.medium_max_lines,
                "large_max_lines": self.verify.large_max_lines,
                "secret_patterns_file": self.verify.secret_patterns_file,
            },
            "quality": {
                "accept_threshold": self.quality.accept_threshold,
                "file_scope_penalty": self.quality.file_scope_penalty,
                "diff_size_penalty": self.quality.diff_size_penalty,
                "small_max_lines": self.quality.small_max_lines,
                "medium_max_lines": self.quality.medium_max_lines,
                "large_max_lines": self.quality.large_max_lines,
            },
            "validation": {
                "type_check_command": self.validation.type_check_command,
                "lint_command": self.validation.lint_command,
                "test_command": self.validation.test_command,
                "type_check_weight": self.validation.type_check_weight,
                "lint_weight": self.validation.lint_weight,
                "test_weight": self.validation.test_weight,
                "timeout_seconds": self.validation.timeout_seconds,
                "detect_tooling": self.validation.detect_tooling,
            },
            "workspace": {
                "state_dir": self.workspace.state_dir,
                "commit_on_accept": self.workspace.commit_on_accept,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: SwarmgateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["worker", "scheduler", "verify", "quality", "validation", "workspace"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> SwarmgateConfig:
    if not path.exists():
        return SwarmgateConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    try:
        return SwarmgateConfig.from_dict(data)
    except TypeError as exc:
        raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc


def save_config(path: Path, config: SwarmgateConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
