"""
Deterministic verdict evaluation.

``evaluate_verdict`` is a pure function of its evidence: every applicable
rule is evaluated, in a fixed order, and the verdict is GREEN only when all
of them pass. Missing deployment evidence is never treated as success.
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError as PydanticValidationError

from afu9.core.errors import ValidationError
from afu9.lawbook.schema import canonical_json, sha256_hex
from afu9.verification.models import (
    Verdict,
    VerdictResult,
    VerdictRule,
    VerificationEvidence,
)

ALL_PASSED_RATIONALE = "All verification checks passed"

_RULE_RATIONALES = {
    VerdictRule.AUTHENTIC_DEPLOYMENT: (
        "Deployment verification failed: No authentic successful deployment"
    ),
    VerdictRule.HEALTH_CHECKS: "Health checks failed",
    VerdictRule.INTEGRATION_TESTS: "Integration tests failed",
    VerdictRule.ERROR_RATES: "Error rate threshold exceeded",
}


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def evaluate_verdict(evidence: VerificationEvidence) -> VerdictResult:
    failed_checks: list[str] = []
    rules: list[VerdictRule] = []
    failed_rules: list[VerdictRule] = []

    rules.append(VerdictRule.AUTHENTIC_DEPLOYMENT)
    if not any(
        obs.is_authentic and obs.status == "success" for obs in evidence.deployment_observations
    ):
        failed_checks.append("No authentic successful deployment found")
        failed_rules.append(VerdictRule.AUTHENTIC_DEPLOYMENT)

    if evidence.health_checks:
        rules.append(VerdictRule.HEALTH_CHECKS)
        unhealthy = [hc for hc in evidence.health_checks if not 200 <= hc.status < 300]
        for hc in unhealthy:
            failed_checks.append(f"Health check failed: {hc.endpoint} returned {hc.status}")
        if unhealthy:
            failed_rules.append(VerdictRule.HEALTH_CHECKS)

    if evidence.integration_tests is not None:
        rules.append(VerdictRule.INTEGRATION_TESTS)
        if evidence.integration_tests.failed > 0:
            failed_checks.append(
                f"Integration tests failed: {evidence.integration_tests.failed} failures"
            )
            failed_rules.append(VerdictRule.INTEGRATION_TESTS)

    if evidence.error_rates is not None:
        rules.append(VerdictRule.ERROR_RATES)
        rates = evidence.error_rates
        if rates.current > rates.threshold:
            failed_checks.append(
                f"Error rate {_format_number(rates.current)} exceeds threshold "
                f"{_format_number(rates.threshold)}"
            )
            failed_rules.append(VerdictRule.ERROR_RATES)

    if failed_rules:
        return VerdictResult(
            verdict=Verdict.RED,
            rationale="; ".join(_RULE_RATIONALES[rule] for rule in failed_rules),
            failed_checks=tuple(failed_checks),
            evaluation_rules=tuple(rule.value for rule in rules),
        )

    return VerdictResult(
        verdict=Verdict.GREEN,
        rationale=ALL_PASSED_RATIONALE,
        failed_checks=(),
        evaluation_rules=tuple(rule.value for rule in rules),
    )


def validate_verification_evidence(raw: Any) -> VerificationEvidence:
    """Validate untrusted evidence JSON.

    Raises:
        ValidationError: with one message per invalid field.
    """
    if not isinstance(raw, dict):
        raise ValidationError("Evidence must be an object", code="INVALID_EVIDENCE")
    try:
        return VerificationEvidence.model_validate(raw)
    except PydanticValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        ]
        raise ValidationError(
            "Invalid verification evidence",
            details={"errors": errors},
            code="INVALID_EVIDENCE",
        ) from exc


def compute_evidence_hash(evidence: VerificationEvidence) -> str:
    return sha256_hex(canonical_json(evidence.to_document()))
