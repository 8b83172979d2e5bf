"""
ECS adapter.

Wraps an opaque ECS client (the AWS SDK is out of scope) and puts the
automation policy evaluator in front of the only mutating call,
``force_new_deployment``. Results are returned as data; a policy denial comes
back as a ``LAWBOOK_DENIED`` error that callers propagate unchanged.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Protocol

import structlog

from afu9.adapters.base import AdapterError, AdapterResult
from afu9.automation.evaluator import AutomationPolicyEvaluator
from afu9.automation.models import PolicyEvaluationContext

logger = structlog.get_logger()

FORCE_NEW_DEPLOYMENT_ACTION = "ecs_force_new_deployment"


class EcsClient(Protocol):
    async def describe_service(self, cluster: str, service: str) -> Mapping[str, Any] | None: ...

    async def update_service(
        self, cluster: str, service: str, *, force_new_deployment: bool
    ) -> Mapping[str, Any]: ...


@dataclass(frozen=True)
class EcsServiceInfo:
    service_arn: str
    status: str
    desired_count: int
    running_count: int
    pending_count: int
    task_definition: str | None
    deployments: tuple[Mapping[str, Any], ...] = ()

    @property
    def is_stable(self) -> bool:
        return (
            self.running_count == self.desired_count
            and self.pending_count == 0
            and len(self.deployments) <= 1
        )

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> EcsServiceInfo:
        return cls(
            service_arn=str(data.get("serviceArn", "")),
            status=str(data.get("status", "UNKNOWN")),
            desired_count=int(data.get("desiredCount", 0)),
            running_count=int(data.get("runningCount", 0)),
            pending_count=int(data.get("pendingCount", 0)),
            task_definition=data.get("taskDefinition"),
            deployments=tuple(data.get("deployments") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "serviceArn": self.service_arn,
            "status": self.status,
            "desiredCount": self.desired_count,
            "runningCount": self.running_count,
            "pendingCount": self.pending_count,
            "taskDefinition": self.task_definition,
            "deployments": [dict(d) for d in self.deployments],
        }


@dataclass(frozen=True)
class ForceDeploymentResult:
    service_arn: str
    deployment_id: str | None
    policy: Mapping[str, Any]


@dataclass(frozen=True)
class StabilityResult:
    stable: bool
    final_state: EcsServiceInfo | None
    polls: int
    waited_seconds: float


class EcsAdapter:
    """Policy-enforcing facade over an ECS client."""

    def __init__(
        self,
        client: EcsClient,
        policy: AutomationPolicyEvaluator,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._policy = policy
        self._sleep = sleep
        self._clock = clock

    async def describe_service(self, cluster: str, service: str) -> AdapterResult[EcsServiceInfo]:
        try:
            data = await self._client.describe_service(cluster, service)
        except Exception as exc:
            logger.warning(
                "ecs_describe_failed", cluster=cluster, service=service, error=str(exc)
            )
            return AdapterResult(error=AdapterError("ECS_API_ERROR", str(exc)))
        if not data:
            return AdapterResult(
                error=AdapterError(
                    "SERVICE_NOT_FOUND",
                    f"ECS service {service} not found in cluster {cluster}",
                    {"cluster": cluster, "service": service},
                )
            )
        return AdapterResult(value=EcsServiceInfo.from_api(data))

    async def force_new_deployment(
        self,
        *,
        cluster: str,
        service: str,
        env: str,
        correlation_id: str,
        request_id: str | None = None,
    ) -> AdapterResult[ForceDeploymentResult]:
        decision = await self._policy.evaluate_and_record(
            PolicyEvaluationContext(
                request_id=request_id or str(uuid.uuid4()),
                action_type=FORCE_NEW_DEPLOYMENT_ACTION,
                target_identifier=f"{cluster}/{service}",
                deployment_env=env,
                action_context={
                    "cluster": cluster,
                    "service": service,
                    "env": env,
                    "correlationId": correlation_id,
                },
            )
        )
        if not decision.allowed:
            return AdapterResult(
                error=AdapterError("LAWBOOK_DENIED", decision.reason, decision.to_dict())
            )

        try:
            response = await self._client.update_service(
                cluster, service, force_new_deployment=True
            )
        except Exception as exc:
            logger.error(
                "ecs_force_new_deployment_failed",
                cluster=cluster,
                service=service,
                correlation_id=correlation_id,
                error=str(exc),
            )
            return AdapterResult(error=AdapterError("ECS_API_ERROR", str(exc)))

        deployments = response.get("deployments") or []
        primary = next((d for d in deployments if d.get("status") == "PRIMARY"), None)
        logger.info(
            "ecs_force_new_deployment_issued",
            cluster=cluster,
            service=service,
            correlation_id=correlation_id,
        )
        return AdapterResult(
            value=ForceDeploymentResult(
                service_arn=str(response.get("serviceArn", "")),
                deployment_id=primary.get("id") if primary else None,
                policy=decision.to_dict(),
            )
        )

    async def poll_service_stability(
        self,
        *,
        cluster: str,
        service: str,
        max_wait_seconds: float,
        check_interval_seconds: float,
    ) -> AdapterResult[StabilityResult]:
        """Poll until stable or ``max_wait_seconds`` elapses. A timeout is not an error."""
        started = self._clock()
        polls = 0
        last: EcsServiceInfo | None = None
        while True:
            described = await self.describe_service(cluster, service)
            polls += 1
            if not described.success:
                return AdapterResult(error=described.error)
            last = described.value
            waited = self._clock() - started
            if last is not None and last.is_stable:
                return AdapterResult(value=StabilityResult(True, last, polls, waited))
            if waited + check_interval_seconds > max_wait_seconds:
                logger.info(
                    "ecs_stability_timeout",
                    cluster=cluster,
                    service=service,
                    waited_seconds=waited,
                    polls=polls,
                )
                return AdapterResult(value=StabilityResult(False, last, polls, waited))
            await self._sleep(check_interval_seconds)
