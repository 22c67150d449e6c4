from swarmgate.verify.diff import (
    DiffVerifier,
    VerificationDecision,
    VerificationResult,
    check_proportionality,
    find_rogue_edits,
    missing_files,
)
from swarmgate.verify.gate import (
    Accepted,
    FailureKind,
    GateOutcome,
    QualityGatePipeline,
    Rejected,
    SecretsBlocked,
)
from swarmgate.verify.quality import QualityGate, QualityScore, ValidationSignal
from swarmgate.verify.secrets import SecretFinding, SecretScanner

__all__ = [
    "Accepted",
    "DiffVerifier",
    "FailureKind",
    "GateOutcome",
    "QualityGate",
    "QualityGatePipeline",
    "QualityScore",
    "Rejected",
    "SecretFinding",
    "SecretScanner",
    "SecretsBlocked",
    "ValidationSignal",
    "VerificationDecision",
    "VerificationResult",
    "check_proportionality",
    "find_rogue_edits",
    "missing_files",
]
