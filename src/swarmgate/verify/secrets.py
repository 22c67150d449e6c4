"""Secret scanning over the lines an attempt added to the workspace.

The pattern and allowlist tables are data. The bundled table lives in
``swarmgate/data/secret_patterns.toml``; a replacement can be supplied through
``verify.secret_patterns_file``.
"""

from __future__ import annotations

import logging
import re
import tomllib
from collections.abc import Iterable
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any

from swarmgate.config import ConfigError

logger = logging.getLogger("swarmgate.verify.secrets")

REDACTION_MARKER = "***REDACTED***"
ASSIGNED_VALUE_PATTERN = re.compile(r"""([=:]\s*["'])[^"']+(["'])""")


@dataclass(frozen=True, slots=True)
class SecretPattern:
    id: str
    regex: re.Pattern[str]
    description: str = ""
    redact_rest_of_line: bool = False


@dataclass(frozen=True, slots=True)
class SecretFinding:
    pattern_id: str
    line: str

    def render(self) -> str:
        return f"PATTERN: {self.pattern_id}\nLINE: {self.line}\n"


def _compile_entries(entries: Any, *, table: str) -> list[SecretPattern]:
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise ConfigError(f"Secret table '{table}' must be an array of tables.")
    compiled: list[SecretPattern] = []
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ConfigError(f"Secret table '{table}' entry {index} is not a table.")
        pattern_id = entry.get("id")
        raw = entry.get("regex")
        if not isinstance(pattern_id, str) or not pattern_id.strip():
            raise ConfigError(f"Secret table '{table}' entry {index} needs an 'id'.")
        if not isinstance(raw, str) or not raw:
            raise ConfigError(f"Secret pattern '{pattern_id}' needs a 'regex'.")
        if pattern_id in seen:
            raise ConfigError(f"Secret pattern id repeated in '{table}': {pattern_id}")
        seen.add(pattern_id)
        try:
            regex = re.compile(raw, re.IGNORECASE)
        except re.error as exc:
            raise ConfigError(f"Secret pattern '{pattern_id}' does not compile: {exc}") from exc
        compiled.append(
            SecretPattern(
                id=pattern_id,
                regex=regex,
                description=str(entry.get("description", "")),
                redact_rest_of_line=bool(entry.get("redact_rest_of_line", False)),
            )
        )
    return compiled


def _combine(patterns: list[SecretPattern], *, table: str) -> re.Pattern[str] | None:
    if not patterns:
        return None
    joined = "|".join(f"(?:{pattern.regex.pattern})" for pattern in patterns)
    try:
        return re.compile(joined, re.IGNORECASE)
    except re.error as exc:
        # Patterns that compile alone can still clash once joined (repeated
        # group names, inline flags not at the start).
        raise ConfigError(f"Secret table '{table}' patterns cannot be combined: {exc}") from exc


class SecretScanner:
    """Compiled secret and allowlist tables.

    A line is a finding when it matches any secret pattern and no allowlist
    pattern. Each offending line yields exactly one finding, attributed to the
    first pattern in table order that matches it.
    """

    def __init__(
        self,
        patterns: list[SecretPattern],
        allowlist: list[SecretPattern] | None = None,
    ) -> None:
        self.patterns = list(patterns)
        self.allowlist = list(allowlist or [])
        self._any_secret = _combine(self.patterns, table="secret")
        self._any_allowed = _combine(self.allowlist, table="allow")

    @classmethod
    def from_table(cls, data: dict[str, Any]) -> SecretScanner:
        patterns = _compile_entries(data.get("secret"), table="secret")
        if not patterns:
            raise ConfigError("Secret table declares no [[secret]] patterns.")
        return cls(patterns, _compile_entries(data.get("allow"), table="allow"))

    @classmethod
    def load(cls, path: Path | None = None) -> SecretScanner:
        if path is None:
            source = resources.files("swarmgate").joinpath("data", "secret_patterns.toml")
            text = source.read_text(encoding="utf-8")
            origin = "bundled secret patterns"
        else:
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as exc:
                raise ConfigError(f"Could not read secret patterns from {path}: {exc}") from exc
            origin = str(path)
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Could not parse {origin}: {exc}") from exc
        scanner = cls.from_table(data)
        logger.debug(
            "Loaded %d secret pattern(s) and %d allowlist entr(ies) from %s",
            len(scanner.patterns),
            len(scanner.allowlist),
            origin,
        )
        return scanner

    def is_allowed(self, line: str) -> bool:
        return self._any_allowed is not None and self._any_allowed.search(line) is not None

    def match(self, line: str) -> SecretPattern | None:
        if self._any_secret is None or self._any_secret.search(line) is None:
            return None
        if self.is_allowed(line):
            return None
        for pattern in self.patterns:
            if pattern.regex.search(line):
                return pattern
        return None

    def redact(self, line: str, pattern: SecretPattern | None = None) -> str:
        redacted = ASSIGNED_VALUE_PATTERN.sub(rf"\g<1>{REDACTION_MARKER}\g<2>", line)
        candidates = [pattern] if pattern is not None else self.patterns
        for candidate in candidates:
            if candidate.redact_rest_of_line:
                found = candidate.regex.search(redacted)
                if found is not None:
                    redacted = redacted[: found.start()] + REDACTION_MARKER
                continue
            redacted = candidate.regex.sub(
                lambda m: m.group(0) if REDACTION_MARKER in m.group(0) else REDACTION_MARKER,
                redacted,
            )
        return redacted.strip()

    def scan(self, lines: Iterable[str]) -> list[SecretFinding]:
        findings: list[SecretFinding] = []
        for line in lines:
            pattern = self.match(line)
            if pattern is None:
                continue
            findings.append(SecretFinding(pattern_id=pattern.id, line=self.redact(line, pattern)))
        return findings


def render_findings(findings: list[SecretFinding]) -> str:
    if not findings:
        return "None\n"
    return "\n".join(finding.render() for finding in findings)
