"""
Post-deploy verification: typed evidence and the deterministic GREEN/RED verdict.
"""

from afu9.verification.models import (
    DeploymentObservation,
    ErrorRates,
    HealthCheck,
    IntegrationTestResults,
    Verdict,
    VerdictResult,
    VerdictRule,
    VerificationEvidence,
)
from afu9.verification.verdict import (
    compute_evidence_hash,
    evaluate_verdict,
    validate_verification_evidence,
)

__all__ = [
    "DeploymentObservation",
    "ErrorRates",
    "HealthCheck",
    "IntegrationTestResults",
    "Verdict",
    "VerdictResult",
    "VerdictRule",
    "VerificationEvidence",
    "compute_evidence_hash",
    "evaluate_verdict",
    "validate_verification_evidence",
]
