"""
Service health reset playbook.

Five steps against one ECS service: snapshot the current state, force a new
deployment, wait for the service to settle, run post-deploy verification and
finally move the incident to MITIGATED or back to ACKED.

ALB evidence without an explicit ``{cluster, service}`` is resolved through
the lawbook parameter ``alb_to_ecs_mapping_<env>``, a JSON object mapping
target group ARNs to ``{"cluster": ..., "service": ...}``. There is no
guessing beyond that mapping.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping

from afu9.adapters.ecs import EcsAdapter
from afu9.core.clock import isoformat, utcnow
from afu9.core.errors import InvalidEnvironmentError
from afu9.domain.models import IncidentStatus
from afu9.environment import normalize_environment
from afu9.incidents.evidence import find_evidence
from afu9.incidents.repository import IncidentRepository
from afu9.playbooks.models import PlaybookDefinition, StepResult
from afu9.playbooks.remediation import (
    RemediationContext,
    RemediationPlaybook,
    RemediationStep,
    adapter_failure,
)
from afu9.playbooks.verification import VerificationRunner

ParameterSource = Callable[[str], Awaitable[Any]]

SNAPSHOT_STEP = "snapshot-state"
RESET_STEP = "apply-reset"
OBSERVE_STEP = "wait-observe"
VERIFY_STEP = "post-verification"
STATUS_STEP = "update-status"

SERVICE_HEALTH_RESET = PlaybookDefinition.model_validate(
    {
        "id": "service-health-reset",
        "version": "1.0.0",
        "title": "Service Health Reset (safe bounce)",
        "applicableCategories": ["ALB_TARGET_UNHEALTHY", "ECS_TASK_CRASHLOOP"],
        "requiredEvidence": [{"kinds": ["ecs", "alb"]}],
        "steps": [
            {
                "stepId": SNAPSHOT_STEP,
                "title": "Snapshot current ECS service state",
                "input": {"type": "SNAPSHOT_SERVICE_STATE"},
            },
            {
                "stepId": RESET_STEP,
                "title": "Force new deployment",
                "input": {"type": "FORCE_NEW_DEPLOYMENT"},
            },
            {
                "stepId": OBSERVE_STEP,
                "title": "Wait for service stability",
                "input": {"type": "POLL_SERVICE_HEALTH"},
            },
            {
                "stepId": VERIFY_STEP,
                "title": "Run post-deploy verification",
                "input": {"type": "RUN_VERIFICATION"},
            },
            {
                "stepId": STATUS_STEP,
                "title": "Update incident status",
                "input": {"type": "UPDATE_INCIDENT_STATUS"},
            },
        ],
    }
)


class SnapshotStateStep(RemediationStep):
    failure_code = "SNAPSHOT_FAILED"

    def __init__(self, ecs: EcsAdapter, parameters: ParameterSource) -> None:
        self._ecs = ecs
        self._parameters = parameters

    async def execute(self, context: RemediationContext) -> StepResult:
        item = find_evidence(context.evidence, "ecs", "alb")
        if item is None:
            return StepResult.failure("EVIDENCE_MISSING", "No ECS or ALB evidence found")

        ref = item.ref
        cluster = ref.cluster or context.inputs.get("cluster")
        service = ref.service or context.inputs.get("service")
        raw_env = ref.env or context.inputs.get("env")
        if not raw_env:
            return StepResult.failure(
                "ENVIRONMENT_REQUIRED",
                "Environment is required for service health reset",
                {"evidenceKind": item.kind},
            )
        try:
            env = normalize_environment(raw_env)
        except InvalidEnvironmentError as exc:
            return StepResult.failure(
                "INVALID_ENVIRONMENT", f"Invalid environment value: {exc.message}", {"env": raw_env}
            )

        if item.kind == "alb" and (not cluster or not service):
            target_group = item.ref.target_group_arn
            if not target_group:
                return StepResult.failure(
                    "EVIDENCE_INSUFFICIENT",
                    "ALB evidence requires targetGroupArn or explicit {cluster,service}",
                )
            parameter = f"alb_to_ecs_mapping_{env.value}"
            mapping = await self._parameters(parameter)
            target = mapping.get(target_group) if isinstance(mapping, Mapping) else None
            if not isinstance(target, Mapping) or not (
                target.get("cluster") and target.get("service")
            ):
                return StepResult.failure(
                    "ALB_MAPPING_REQUIRED",
                    f"No lawbook mapping found for ALB target group {target_group} "
                    f"in environment {env.value}",
                    {
                        "targetGroupArn": target_group,
                        "env": env.value,
                        "requiredLawbookParam": parameter,
                    },
                )
            cluster, service = target["cluster"], target["service"]

        if not cluster or not service:
            return StepResult.failure(
                "INVALID_EVIDENCE",
                "Missing required parameters: cluster and service",
                {"cluster": cluster, "service": service, "env": env.value},
            )

        described = await self._ecs.describe_service(cluster, service)
        info = described.value
        if not described.success or info is None:
            return adapter_failure(described.error)
        return StepResult.success(
            {
                "cluster": cluster,
                "service": service,
                "env": env.value,
                "serviceArn": info.service_arn,
                "desiredCount": info.desired_count,
                "runningCount": info.running_count,
                "taskDefinition": info.task_definition,
                "deployments": [dict(d) for d in info.deployments],
                "snapshotAt": isoformat(utcnow()),
            }
        )


class ApplyResetStep(RemediationStep):
    mutating = True
    failure_code = "RESET_FAILED"

    def __init__(self, ecs: EcsAdapter) -> None:
        self._ecs = ecs

    async def execute(self, context: RemediationContext) -> StepResult:
        snapshot = context.output_of(SNAPSHOT_STEP) or {}
        cluster = snapshot.get("cluster") or context.inputs.get("cluster")
        service = snapshot.get("service") or context.inputs.get("service")
        env = snapshot.get("env") or context.inputs.get("env")
        if not cluster or not service:
            return StepResult.failure(
                "INVALID_INPUT",
                "Missing cluster or service from snapshot step",
                {"cluster": cluster, "service": service},
            )
        if not env:
            return StepResult.failure(
                "ENVIRONMENT_REQUIRED", "Environment is required for force new deployment"
            )

        result = await self._ecs.force_new_deployment(
            cluster=cluster,
            service=service,
            env=env,
            correlation_id=f"{context.incident.incident_key}:health-reset",
            request_id=f"{context.run_id}:{context.step_id}",
        )
        reset = result.value
        if not result.success or reset is None:
            # LAWBOOK_DENIED and adapter errors are passed through unchanged.
            return adapter_failure(result.error)
        return StepResult.success(
            {
                "cluster": cluster,
                "service": service,
                "env": env,
                "serviceArn": reset.service_arn,
                "deploymentId": reset.deployment_id,
                "resetAt": isoformat(utcnow()),
            }
        )


class WaitObserveStep(RemediationStep):
    failure_code = "OBSERVE_FAILED"

    def __init__(
        self, ecs: EcsAdapter, *, max_wait_seconds: float = 300, check_interval_seconds: float = 10
    ) -> None:
        self._ecs = ecs
        self._max_wait = max_wait_seconds
        self._interval = check_interval_seconds

    async def execute(self, context: RemediationContext) -> StepResult:
        reset = context.output_of(RESET_STEP) or {}
        cluster = reset.get("cluster") or context.inputs.get("cluster")
        service = reset.get("service") or context.inputs.get("service")
        if not cluster or not service:
            return StepResult.failure(
                "INVALID_INPUT",
                "Missing cluster or service from reset step",
                {"cluster": cluster, "service": service},
            )

        max_wait = float(context.inputs.get("maxWaitSeconds") or self._max_wait)
        polled = await self._ecs.poll_service_stability(
            cluster=cluster,
            service=service,
            max_wait_seconds=max_wait,
            check_interval_seconds=self._interval,
        )
        stability = polled.value
        if not polled.success or stability is None:
            return adapter_failure(polled.error)
        # Not settling within the bound is a result, not an error.
        return StepResult.success(
            {
                "stable": stability.stable,
                "finalState": stability.final_state.to_dict() if stability.final_state else None,
                "polls": stability.polls,
                "maxWaitSeconds": max_wait,
                "observedAt": isoformat(utcnow()),
            }
        )


class PostVerificationStep(RemediationStep):
    failure_code = "VERIFICATION_FAILED"

    def __init__(self, verifier: VerificationRunner | None) -> None:
        self._verifier = verifier

    async def execute(self, context: RemediationContext) -> StepResult:
        env = (context.output_of(SNAPSHOT_STEP) or {}).get("env")
        if not env:
            return StepResult.skipped("No environment specified, skipping verification")
        if self._verifier is None:
            return StepResult.skipped("No verification runner configured", {"env": env})

        outcome = await self._verifier.run(env=env, deploy_id=context.inputs.get("deployId"))
        return StepResult.success(
            {
                "status": "success" if outcome.passed else "failed",
                "env": env,
                "playbookRunId": outcome.playbook_run_id,
                "reportHash": outcome.report_hash,
                "summary": dict(outcome.summary),
                "verifiedAt": isoformat(utcnow()),
            }
        )


class UpdateStatusStep(RemediationStep):
    failure_code = "STATUS_UPDATE_FAILED"

    def __init__(self, incidents: IncidentRepository) -> None:
        self._incidents = incidents

    async def execute(self, context: RemediationContext) -> StepResult:
        snapshot = context.output_of(SNAPSHOT_STEP) or {}
        observe = context.output_of(OBSERVE_STEP) or {}
        verification = context.output_of(VERIFY_STEP) or {}

        stable = observe.get("stable") is True
        verified = verification.get("status") == "success"

        env_matches = True
        if verified:
            target_env = snapshot.get("env")
            verification_env = verification.get("env")
            if target_env and verification_env:
                try:
                    env_matches = normalize_environment(target_env) == normalize_environment(
                        verification_env
                    )
                except InvalidEnvironmentError as exc:
                    return StepResult.failure(
                        "INVALID_ENV",
                        f"Invalid environment in verification: {exc.message}",
                        {"targetEnv": target_env, "verificationEnv": verification_env},
                    )
            elif not verification_env:
                env_matches = False

        mitigated = stable and verified and env_matches
        status = IncidentStatus.MITIGATED if mitigated else IncidentStatus.ACKED
        await self._incidents.update_status(context.incident.id, status)
        return StepResult.success(
            {
                "incidentStatus": status.value,
                "remediationSuccessful": mitigated,
                "serviceStable": stable,
                "verificationPassed": verified,
                "envMatches": env_matches,
                "updatedAt": isoformat(utcnow()),
            }
        )


def build_service_health_reset(
    ecs: EcsAdapter,
    incidents: IncidentRepository,
    parameters: ParameterSource,
    verifier: VerificationRunner | None = None,
    *,
    max_wait_seconds: float = 300,
    check_interval_seconds: float = 10,
) -> RemediationPlaybook:
    return RemediationPlaybook(
        SERVICE_HEALTH_RESET,
        {
            SNAPSHOT_STEP: SnapshotStateStep(ecs, parameters),
            RESET_STEP: ApplyResetStep(ecs),
            OBSERVE_STEP: WaitObserveStep(
                ecs,
                max_wait_seconds=max_wait_seconds,
                check_interval_seconds=check_interval_seconds,
            ),
            VERIFY_STEP: PostVerificationStep(verifier),
            STATUS_STEP: UpdateStatusStep(incidents),
        },
    )
