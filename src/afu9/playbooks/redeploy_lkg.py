"""
Redeploy Last Known Good playbook.

Rolls an environment back to its most recent GREEN deploy whose verification
passed with a report hash, in four steps:

1. ``select-lkg`` finds the Last Known Good for the incident's environment and
   refuses anything not pinned by image digest.
2. ``dispatch-deploy`` dispatches the deploy through the policy-guarded
   ``DeployAdapter`` (``redeploy_lkg`` must be allowed by the lawbook).
3. ``post-deploy-verification`` verifies the redeployed environment.
4. ``update-deploy-status`` reports GREEN or RED and marks the incident
   MITIGATED on GREEN when the environments match.

The dispatch idempotency key carries the environment and the UTC hour, so an
incident redeploys an environment at most once per hour.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Mapping, Sequence

import structlog

from afu9.adapters.deploy import DeployAdapter, LastKnownGood
from afu9.core.clock import isoformat, utcnow
from afu9.core.errors import InvalidEnvironmentError
from afu9.domain.models import EvidenceRecord, IncidentStatus
from afu9.environment import normalize_environment, try_normalize_environment
from afu9.incidents.evidence import Evidence, find_evidence
from afu9.incidents.repository import IncidentRepository
from afu9.playbooks.models import PlaybookDefinition, StepResult
from afu9.playbooks.post_deploy_verification import incident_environment
from afu9.playbooks.remediation import (
    RemediationContext,
    RemediationPlaybook,
    RemediationStep,
    adapter_failure,
    step_idempotency_key,
)
from afu9.playbooks.verification import VerificationRunner

logger = structlog.get_logger()

SELECT_STEP = "select-lkg"
DISPATCH_STEP = "dispatch-deploy"
VERIFY_STEP = "post-deploy-verification"
STATUS_STEP = "update-deploy-status"

REDEPLOY_LKG = PlaybookDefinition.model_validate(
    {
        "id": "redeploy-lkg",
        "version": "1.0.0",
        "title": "Redeploy Last Known Good",
        "applicableCategories": [
            "DEPLOY_VERIFICATION_FAILED",
            "ALB_TARGET_UNHEALTHY",
            "ECS_TASK_CRASHLOOP",
        ],
        "requiredEvidence": [
            {"kinds": ["deploy_status", "verification"], "requiredFields": ["ref.env"]}
        ],
        "steps": [
            {
                "stepId": SELECT_STEP,
                "title": "Select Last Known Good deployment",
                "input": {"type": "ROLLBACK_DEPLOY"},
            },
            {
                "stepId": DISPATCH_STEP,
                "title": "Dispatch deploy of the Last Known Good",
                "input": {"type": "ROLLBACK_DEPLOY"},
            },
            {
                "stepId": VERIFY_STEP,
                "title": "Run post-deploy verification",
                "input": {"type": "RUN_VERIFICATION"},
            },
            {
                "stepId": STATUS_STEP,
                "title": "Update deploy status",
                "input": {"type": "UPDATE_INCIDENT_STATUS"},
            },
        ],
    }
)


def _deploy_target(
    evidence: Sequence[Evidence], inputs: Mapping[str, Any]
) -> tuple[str | None, str | None]:
    item = find_evidence(evidence, "deploy_status", "verification")
    env = (item.ref.env if item else None) or inputs.get("env")
    service = (item.ref.service if item else None) or inputs.get("service")
    return env, service


class SelectLkgStep(RemediationStep):
    failure_code = "SELECT_LKG_ERROR"

    def __init__(self, deploy: DeployAdapter) -> None:
        self._deploy = deploy

    async def execute(self, context: RemediationContext) -> StepResult:
        if find_evidence(context.evidence, "deploy_status", "verification") is None:
            return StepResult.failure(
                "EVIDENCE_MISSING", "No deploy_status or verification evidence found"
            )
        raw_env, service = _deploy_target(context.evidence, context.inputs)
        if not raw_env:
            return StepResult.failure(
                "INVALID_EVIDENCE", "Missing required parameter: env", {"service": service}
            )
        try:
            env = normalize_environment(raw_env)
        except InvalidEnvironmentError as exc:
            return StepResult.failure(
                "INVALID_ENVIRONMENT", f"Invalid environment value: {exc.message}", {"env": raw_env}
            )

        found = await self._deploy.find_last_known_good(env.value, service)
        lkg = found.value
        if not found.success or lkg is None:
            return adapter_failure(found.error)

        if not lkg.is_pinned:
            if lkg.cfn_change_set_id:
                message = (
                    "LKG has cfnChangeSetId but no imageDigest; change sets may reference "
                    "mutable tags"
                )
            else:
                message = "LKG has no immutable artifact pin (imageDigest required)"
            return StepResult.failure(
                "DETERMINISM_REQUIRED", message, {"snapshotId": lkg.snapshot_id}
            )

        return StepResult.success({"lkg": lkg.to_dict(), "env": env.value, "service": service})


class DispatchDeployStep(RemediationStep):
    mutating = True
    failure_code = "DISPATCH_DEPLOY_ERROR"

    def __init__(self, deploy: DeployAdapter, clock: Callable[[], datetime] = utcnow) -> None:
        self._deploy = deploy
        self._clock = clock

    def idempotency_key(
        self,
        incident_key: str,
        step_id: str,
        evidence: Sequence[Evidence],
        inputs: Mapping[str, Any],
    ) -> str:
        raw_env, _ = _deploy_target(evidence, inputs)
        env = try_normalize_environment(raw_env)
        scope = env.value if env else (raw_env or "unknown")
        hour = self._clock().strftime("%Y-%m-%dT%H")
        return f"{step_idempotency_key(incident_key, step_id)}:{scope}:{hour}"

    async def execute(self, context: RemediationContext) -> StepResult:
        selected = (context.output_of(SELECT_STEP) or {}).get("lkg")
        if not selected:
            return StepResult.failure("MISSING_LKG_OUTPUT", "No LKG output from previous step")
        lkg = LastKnownGood.from_api(selected)

        dispatched = await self._deploy.dispatch_redeploy(
            lkg,
            correlation_id=f"{context.incident.incident_key}:redeploy-lkg",
            request_id=f"{context.run_id}:{context.step_id}",
        )
        result = dispatched.value
        if not dispatched.success or result is None:
            return adapter_failure(dispatched.error)
        return StepResult.success(
            {
                "dispatchId": result.dispatch_id,
                "env": lkg.env,
                "service": lkg.service,
                "lkgReference": lkg.artifact,
                "dispatchedAt": isoformat(utcnow()),
            }
        )


class PostDeployVerificationStep(RemediationStep):
    failure_code = "VERIFICATION_EXECUTION_ERROR"

    def __init__(self, verifier: VerificationRunner) -> None:
        self._verifier = verifier

    async def execute(self, context: RemediationContext) -> StepResult:
        dispatch = context.output_of(DISPATCH_STEP)
        if not dispatch:
            return StepResult.failure(
                "MISSING_DISPATCH_OUTPUT", "No dispatch output from previous step"
            )
        env = dispatch.get("env")
        if not env:
            return StepResult.failure("INVALID_INPUT", "Dispatch output carries no environment")

        outcome = await self._verifier.run(env=env, deploy_id=dispatch.get("dispatchId"))
        # A failing verification is reported as data so the status step can record RED.
        return StepResult.success(
            {
                "playbookRunId": outcome.playbook_run_id,
                "status": "success" if outcome.passed else "failed",
                "reportHash": outcome.report_hash,
                "summary": dict(outcome.summary),
                "env": env,
                "dispatchId": dispatch.get("dispatchId"),
            }
        )


class UpdateDeployStatusStep(RemediationStep):
    failure_code = "UPDATE_STATUS_ERROR"

    def __init__(self, incidents: IncidentRepository) -> None:
        self._incidents = incidents

    async def execute(self, context: RemediationContext) -> StepResult:
        verification = context.output_of(VERIFY_STEP)
        if not verification:
            return StepResult.failure(
                "MISSING_VERIFICATION_OUTPUT", "No verification output from previous step"
            )

        incident_id = context.incident.id
        if verification.get("status") != "success":
            logger.warning(
                "lkg_redeploy_status",
                incident_id=incident_id,
                status="RED",
                dispatch_id=verification.get("dispatchId"),
            )
            return StepResult.success(
                {
                    "newStatus": "RED",
                    "env": verification.get("env"),
                    "incidentId": incident_id,
                    "message": "LKG redeploy verification failed, status RED",
                }
            )

        raw_env = verification.get("env")
        try:
            verification_env = normalize_environment(raw_env)
        except InvalidEnvironmentError as exc:
            return StepResult.failure(
                "INVALID_VERIFICATION_ENV",
                f"Verification environment could not be normalized: {exc.message}",
                {"verificationEnv": raw_env},
            )

        incident_env = incident_environment(context.evidence)
        if incident_env is not None and incident_env != verification_env:
            return StepResult.success(
                {
                    "newStatus": "GREEN",
                    "env": verification_env.value,
                    "incidentId": incident_id,
                    "envMismatch": True,
                    "incidentEnv": incident_env.value,
                    "verificationEnv": verification_env.value,
                    "message": (
                        f"LKG redeploy verified for {verification_env.value} but incident is "
                        f"for {incident_env.value}, not marking MITIGATED"
                    ),
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
                        "dispatchId": verification.get("dispatchId"),
                        "status": "success",
                        "redeployType": "LKG",
                    },
                    sha256=verification.get("reportHash"),
                )
            ],
        )
        logger.info(
            "lkg_redeploy_status",
            incident_id=incident_id,
            status="GREEN",
            dispatch_id=verification.get("dispatchId"),
        )
        return StepResult.success(
            {
                "newStatus": "GREEN",
                "env": verification_env.value,
                "incidentId": incident_id,
                "message": "LKG redeploy verified GREEN, incident marked MITIGATED",
                "updatedAt": isoformat(utcnow()),
            }
        )


def build_redeploy_lkg(
    deploy: DeployAdapter,
    incidents: IncidentRepository,
    verifier: VerificationRunner,
    *,
    clock: Callable[[], datetime] = utcnow,
) -> RemediationPlaybook:
    return RemediationPlaybook(
        REDEPLOY_LKG,
        {
            SELECT_STEP: SelectLkgStep(deploy),
            DISPATCH_STEP: DispatchDeployStep(deploy, clock),
            VERIFY_STEP: PostDeployVerificationStep(verifier),
            STATUS_STEP: UpdateDeployStatusStep(incidents),
        },
    )
