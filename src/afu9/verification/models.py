"""
Verification evidence and verdict models.

Evidence arrives as untrusted JSON and is validated into these frozen models
before any rule looks at it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Verdict(StrEnum):
    GREEN = "GREEN"
    RED = "RED"


class VerdictRule(StrEnum):
    AUTHENTIC_DEPLOYMENT = "RULE_AUTHENTIC_DEPLOYMENT"
    HEALTH_CHECKS = "RULE_HEALTH_CHECKS"
    INTEGRATION_TESTS = "RULE_INTEGRATION_TESTS"
    ERROR_RATES = "RULE_ERROR_RATES"


class _EvidenceModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


class DeploymentObservation(_EvidenceModel):
    deployment_id: int | str = Field(alias="deploymentId")
    environment: str
    sha: str
    status: str
    is_authentic: bool = Field(alias="isAuthentic")
    observed_at: datetime | None = Field(default=None, alias="observedAt")


class HealthCheck(_EvidenceModel):
    endpoint: str
    status: int
    response_time_ms: float | None = Field(default=None, alias="responseTime")
    timestamp: datetime | None = None


class IntegrationTestResults(_EvidenceModel):
    passed: int = Field(ge=0)
    failed: int = Field(ge=0)
    skipped: int = Field(default=0, ge=0)
    duration_ms: float | None = Field(default=None, alias="duration")


class ErrorRates(_EvidenceModel):
    current: float = Field(ge=0)
    threshold: float = Field(ge=0)


class VerificationEvidence(_EvidenceModel):
    deployment_observations: tuple[DeploymentObservation, ...] = Field(
        alias="deploymentObservations"
    )
    health_checks: tuple[HealthCheck, ...] | None = Field(default=None, alias="healthChecks")
    integration_tests: IntegrationTestResults | None = Field(
        default=None, alias="integrationTests"
    )
    error_rates: ErrorRates | None = Field(default=None, alias="errorRates")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


@dataclass(frozen=True)
class VerdictResult:
    verdict: Verdict
    rationale: str
    failed_checks: tuple[str, ...]
    evaluation_rules: tuple[str, ...]

    @property
    def is_green(self) -> bool:
        return self.verdict == Verdict.GREEN

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "rationale": self.rationale,
            "failedChecks": list(self.failed_checks),
            "evaluationRules": list(self.evaluation_rules),
        }
