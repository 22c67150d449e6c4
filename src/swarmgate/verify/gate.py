from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, ClassVar

from swarmgate.config import SwarmgateConfig
from swarmgate.graph import Complexity, normalize_paths
from swarmgate.revert import RevertController
from swarmgate.verify.diff import DiffVerifier, VerificationResult
from swarmgate.verify.quality import (
    QualityGate,
    QualityScore,
    render_report,
    signals_from_config,
    write_score,
)
from swarmgate.verify.secrets import SecretFinding, SecretScanner
from swarmgate.workspace import GitWorkspace

logger = logging.getLogger("swarmgate.verify.gate")


class FailureKind(StrEnum):
    SECRET_DETECTED = "secret_detected"
    ROGUE_EDIT = "rogue_edit"
    OVERSIZED_DIFF = "oversized_diff"
    QUALITY_REJECTED = "quality_rejected"
    WORKER_TIMEOUT = "worker_timeout"
    WORKER_NONZERO_EXIT = "worker_nonzero_exit"
    WORKER_LAUNCH_FAILED = "worker_launch_failed"

    @property
    def retriable(self) -> bool:
        return self not in {FailureKind.SECRET_DETECTED, FailureKind.WORKER_LAUNCH_FAILED}


@dataclass(slots=True)
class Accepted:
    score: QualityScore
    verification: VerificationResult

    exit_code: ClassVar[int] = 0
    status_token: ClassVar[str] = "PASSED"

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": "accepted",
            "score": self.score.to_dict(),
            "verification": self.verification.to_dict(),
        }


@dataclass(slots=True)
class Rejected:
    reason: FailureKind
    details: list[str] = field(default_factory=list)
    verification: VerificationResult | None = None
    score: QualityScore | None = None
    reverted: list[str] = field(default_factory=list)

    exit_code: ClassVar[int] = 1
    status_token: ClassVar[str] = "FAILED"

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": "rejected",
            "reason": str(self.reason),
            "details": list(self.details),
            "verification": self.verification.to_dict() if self.verification else None,
            "score": self.score.to_dict() if self.score else None,
            "reverted": list(self.reverted),
        }


@dataclass(slots=True)
class SecretsBlocked:
    findings: list[SecretFinding]
    verification: VerificationResult

    exit_code: ClassVar[int] = 2
    status_token: ClassVar[str] = "SECRETS_FOUND"
    reason: ClassVar[FailureKind] = FailureKind.SECRET_DETECTED

    @property
    def details(self) -> list[str]:
        return [f"{finding.pattern_id}: {finding.line}" for finding in self.findings]

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": "secrets_blocked",
            "findings": [
                {"pattern_id": finding.pattern_id, "line": finding.line}
                for finding in self.findings
            ],
            "verification": self.verification.to_dict(),
        }


GateOutcome = Accepted | Rejected | SecretsBlocked


def _phase0_report(verification: VerificationResult, results_dir: Path) -> str:
    if verification.findings:
        status = "BLOCKED - secrets detected in diff"
    else:
        status = "REJECTED - diff verification failed"
    return "\n".join(
        [
            "Quality Gate Report",
            "===================",
            "Score: 0/10",
            f"Status: {status}",
            *verification.reasons(),
            "Changes were auto-reverted.",
            f"See: {results_dir / 'diff_verify_report.txt'}",
            "",
        ]
    )


class QualityGatePipeline:
    """Phase 0 (diff verification) followed, only on a pass, by Phase 1 (quality score)."""

    def __init__(
        self,
        verifier: DiffVerifier,
        quality: QualityGate,
        reverter: RevertController | None = None,
    ) -> None:
        self.verifier = verifier
        self.quality = quality
        self.reverter = reverter or verifier.reverter

    @classmethod
    def from_config(
        cls,
        workspace: GitWorkspace,
        config: SwarmgateConfig,
        *,
        scanner: SecretScanner | None = None,
    ) -> QualityGatePipeline:
        if scanner is None:
            patterns_file = config.verify.secret_patterns_file.strip()
            path = None
            if patterns_file:
                path = Path(patterns_file)
                if not path.is_absolute():
                    path = workspace.root / path
            scanner = SecretScanner.load(path)
        reverter = RevertController(workspace)
        verifier = DiffVerifier(workspace, scanner, config.verify.ceilings(), reverter)
        quality = QualityGate(
            workspace.root,
            config.quality,
            signals_from_config(config.validation, workspace.root),
            validation_timeout=config.validation.timeout_seconds,
        )
        return cls(verifier, quality, reverter)

    def verify_diff(
        self,
        declared: Iterable[str],
        complexity: Complexity | str,
        *,
        exclude: Iterable[str] = (),
        results_dir: Path | None = None,
    ) -> GateOutcome | None:
        """Phase 0 only. Returns None on a pass, the failure outcome otherwise."""
        verification = self.verifier.verify(
            declared, complexity, exclude=exclude, results_dir=results_dir
        )
        return self._phase0_outcome(verification)

    def _phase0_outcome(self, verification: VerificationResult) -> GateOutcome | None:
        if verification.passed:
            return None
        if verification.findings:
            return SecretsBlocked(findings=list(verification.findings), verification=verification)
        reason = FailureKind.ROGUE_EDIT if verification.rogue_edits else FailureKind.OVERSIZED_DIFF
        return Rejected(
            reason=reason,
            details=verification.reasons(),
            verification=verification,
            reverted=list(verification.reverted),
        )

    def evaluate(
        self,
        declared: Iterable[str],
        complexity: Complexity | str,
        *,
        exclude: Iterable[str] = (),
        results_dir: Path | None = None,
    ) -> GateOutcome:
        declared = sorted(normalize_paths(declared))
        complexity = Complexity(complexity)
        verification = self.verifier.verify(
            declared, complexity, exclude=exclude, results_dir=results_dir
        )
        failure = self._phase0_outcome(verification)
        if failure is not None:
            if results_dir is not None:
                write_score(results_dir, 0, _phase0_report(verification, results_dir))
            return failure

        score = self.quality.evaluate(
            changed=verification.changed_files,
            declared=declared,
            total_changed=verification.total_changed,
            complexity=complexity,
        )
        if results_dir is not None:
            summary = "\n".join(verification.changed_files) or "None"
            write_score(
                results_dir,
                score.score,
                render_report(
                    score, phase0_status=verification.status_token, changed_summary=summary
                ),
            )
        if score.accepted:
            return Accepted(score=score, verification=verification)

        protected = normalize_paths(exclude) - set(declared)
        reverted = self.reverter.revert(protected=protected)
        logger.warning("Quality gate rejected change at %d/10", score.score)
        return Rejected(
            reason=FailureKind.QUALITY_REJECTED,
            details=score.failures(),
            verification=verification,
            score=score,
            reverted=reverted,
        )
