"""
Re-run post-deploy verification playbook.

``run-verification`` executes the verification playbook for the environment
named by the incident's verification or deploy-status evidence.
``ingest-incident-update`` marks the incident MITIGATED when verification
passed for the incident's own environment. An incident whose environment is
unknown is treated as matching; a known mismatch never mitigates.
"""

from __future__ import annotations

from typing import Sequence

import structlog

from afu9.core.clock import isoformat, utcnow
from afu9.core.errors import InvalidEnvironmentError
from afu9.domain.models import EvidenceRecord, IncidentStatus
from afu9.environment import DeployEnvironment, normalize_environment, try_normalize_environment
from afu9.incidents.evidence import Evidence, find_evidence
from afu9.incidents.repository import IncidentRepository
from afu9.playbooks.models import PlaybookDefinition, StepResult
from afu9.playbooks.remediation import RemediationContext, RemediationPlaybook, RemediationStep
from afu9.playbooks.verification import VerificationRunner

logger = structlog.get_logger()

RUN_STEP = "run-verification"
INGEST_STEP = "ingest-incident-update"


def incident_environment(evidence: Sequence[Evidence]) -> DeployEnvironment | None:
    """Environment named by the incident's deploy evidence, or None when absent or unknown."""
    item = find_evidence(evidence, "deploy_status", "verification")
    return try_normalize_environment(item.ref.env if item else None)


RERUN_POST_DEPLOY_VERIFICATION = PlaybookDefinition.model_validate(
    {
        "id": "rerun-post-deploy-verification",
        "version": "1.0.0",
        "title": "Re-run post-deploy verification",
        "applicableCategories": ["DEPLOY_VERIFICATION_FAILED", "ALB_TARGET_UNHEALTHY"],
        "requiredEvidence": [
            {"kinds": ["verification", "deploy_status"], "requiredFields": ["ref.env"]}
        ],
        "steps": [
            {
                "stepId": RUN_STEP,
                "title": "Run post-deploy verification",
                "input": {"type": "RUN_VERIFICATION"},
            },
            {
                "stepId": INGEST_STEP,
                "title": "Mark incident MITIGATED if verification passed",
                "input": {"type": "UPDATE_INCIDENT_STATUS"},
            },
        ],
    }
)


class RunVerificationStep(RemediationStep):
    failure_code = "VERIFICATION_EXECUTION_ERROR"

    def __init__(self, verifier: VerificationRunner) -> None:
        self._verifier = verifier

    async def execute(self, context: RemediationContext) -> StepResult:
        item = find_evidence(context.evidence, "verification", "deploy_status")
        if item is None:
            return StepResult.failure(
                "EVIDENCE_MISSING", "No verification or deploy_status evidence found"
            )

        raw_env = item.ref.env or context.inputs.get("env")
        deploy_id = item.ref.deploy_id or context.inputs.get("deployId")
        if not raw_env:
            return StepResult.failure(
                "INVALID_EVIDENCE",
                "Missing required verification parameter: env",
                {"deployId": deploy_id},
            )
        try:
            env = normalize_environment(raw_env)
        except InvalidEnvironmentError as exc:
            return StepResult.failure(
                "INVALID_ENVIRONMENT", f"Invalid environment value: {exc.message}", {"env": raw_env}
            )

        outcome = await self._verifier.run(env=env.value, deploy_id=deploy_id)
        output = {
            "playbookRunId": outcome.playbook_run_id,
            "status": "success" if outcome.passed else "failed",
            "summary": dict(outcome.summary),
            "reportHash": outcome.report_hash,
            "env": env.value,
            "deployId": deploy_id,
        }
        if not outcome.passed:
            return StepResult.failure(
                "VERIFICATION_FAILED", "Post-deploy verification failed", output=output
            )
        return StepResult.success(output)


class IngestIncidentUpdateStep(RemediationStep):
    failure_code = "INCIDENT_UPDATE_FAILED"

    def __init__(self, incidents: IncidentRepository) -> None:
        self._incidents = incidents

    async def execute(self, context: RemediationContext) -> StepResult:
        verification = context.output_of(RUN_STEP)
        if not verification:
            return StepResult.failure(
                "MISSING_VERIFICATION_OUTPUT", f"No output from step '{RUN_STEP}'"
            )

        incident_id = context.incident.id
        if verification.get("status") != "success":
            return StepResult.success(
                {
                    "message": "Verification did not pass, skipping incident update",
                    "incidentId": incident_id,
                    "currentStatus": "unchanged",
                }
            )

        incident = await self._incidents.get_incident(incident_id)
        if incident is None:
            return StepResult.failure("INCIDENT_NOT_FOUND", f"Incident {incident_id} not found")

        raw_verification_env = verification.get("env")
        try:
            verification_env = normalize_environment(raw_verification_env)
        except InvalidEnvironmentError as exc:
            return StepResult.failure(
                "INVALID_VERIFICATION_ENV",
                f"Verification environment could not be normalized: {exc.message}",
                {"verificationEnv": raw_verification_env},
            )

        incident_env = incident_environment(context.evidence)

        if incident_env is not None and incident_env != verification_env:
            logger.warning(
                "verification_env_mismatch",
                incident_id=incident_id,
                incident_env=incident_env.value,
                verification_env=verification_env.value,
            )
            return StepResult.success(
                {
                    "message": (
                        f"Verification passed for {verification_env.value} but incident is for "
                        f"{incident_env.value}, not marking MITIGATED"
                    ),
                    "incidentId": incident_id,
                    "currentStatus": "unchanged",
                    "envMismatch": True,
                    "incidentEnv": incident_env.value,
                    "verificationEnv": verification_env.value,
                }
            )

        await self._incidents.update_status(incident_id, IncidentStatus.MITIGATED)
        await self._incidents.add_evidence(
            incident_id,
            [
                EvidenceRecord(
                    kind="verification",
                    ref={
                        "playbookRunId": verification.get("playbookRunId"),
                        "reportHash": verification.get("reportHash"),
                        "env": verification_env.value,
                        "deployId": verification.get("deployId"),
                        "status": verification.get("status"),
                    },
                    sha256=verification.get("reportHash"),
                )
            ],
        )
        return StepResult.success(
            {
                "message": "Incident marked as MITIGATED",
                "incidentId": incident_id,
                "newStatus": IncidentStatus.MITIGATED.value,
                "verificationRunId": verification.get("playbookRunId"),
                "env": verification_env.value,
                "updatedAt": isoformat(utcnow()),
            }
        )


def build_rerun_post_deploy_verification(
    verifier: VerificationRunner, incidents: IncidentRepository
) -> RemediationPlaybook:
    return RemediationPlaybook(
        RERUN_POST_DEPLOY_VERIFICATION,
        {
            RUN_STEP: RunVerificationStep(verifier),
            INGEST_STEP: IngestIncidentUpdateStep(incidents),
        },
    )
