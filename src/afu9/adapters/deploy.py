"""
Deploy adapter.

Wraps an opaque deploy client that knows the deploy status history and can
dispatch deploy workflows. Dispatching a redeploy is the only mutating call
and sits behind the automation policy evaluator under ``redeploy_lkg``, so a
lawbook without that action denies every redeploy.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

import structlog

from afu9.adapters.base import AdapterError, AdapterResult
from afu9.automation.evaluator import AutomationPolicyEvaluator
from afu9.automation.models import PolicyEvaluationContext

logger = structlog.get_logger()

REDEPLOY_LKG_ACTION = "redeploy_lkg"


class DeployClient(Protocol):
    async def find_last_known_good(
        self, env: str, service: str | None
    ) -> Mapping[str, Any] | None: ...

    async def dispatch_deploy(
        self,
        *,
        env: str,
        service: str | None,
        artifact: Mapping[str, Any],
        correlation_id: str,
    ) -> Mapping[str, Any]: ...


@dataclass(frozen=True)
class LastKnownGood:
    """Most recent GREEN deploy whose verification passed with a report hash."""

    snapshot_id: str
    env: str
    service: str | None = None
    deploy_event_id: str | None = None
    version: str | None = None
    commit_hash: str | None = None
    image_digest: str | None = None
    image_digests: tuple[str, ...] = ()
    cfn_change_set_id: str | None = None
    observed_at: str | None = None
    verification_run_id: str | None = None
    verification_report_hash: str | None = None

    @property
    def is_pinned(self) -> bool:
        """Only image digests pin an artifact; change sets may point at mutable tags."""
        return bool(self.image_digests or self.image_digest)

    @property
    def artifact(self) -> dict[str, Any]:
        return {
            "imageDigest": self.image_digest,
            "imageDigests": list(self.image_digests),
            "commitHash": self.commit_hash,
            "version": self.version,
        }

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> LastKnownGood:
        return cls(
            snapshot_id=str(data.get("snapshotId", "")),
            env=str(data.get("env", "")),
            service=data.get("service"),
            deploy_event_id=data.get("deployEventId"),
            version=data.get("version"),
            commit_hash=data.get("commitHash"),
            image_digest=data.get("imageDigest"),
            image_digests=tuple(data.get("imageDigests") or ()),
            cfn_change_set_id=data.get("cfnChangeSetId"),
            observed_at=data.get("observedAt"),
            verification_run_id=data.get("verificationRunId"),
            verification_report_hash=data.get("verificationReportHash"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshotId": self.snapshot_id,
            "deployEventId": self.deploy_event_id,
            "env": self.env,
            "service": self.service,
            "version": self.version,
            "commitHash": self.commit_hash,
            "imageDigest": self.image_digest,
            "imageDigests": list(self.image_digests),
            "cfnChangeSetId": self.cfn_change_set_id,
            "observedAt": self.observed_at,
            "verificationRunId": self.verification_run_id,
            "verificationReportHash": self.verification_report_hash,
        }


@dataclass(frozen=True)
class DispatchResult:
    dispatch_id: str
    policy: Mapping[str, Any]


class DeployAdapter:
    """Policy-enforcing facade over a deploy client."""

    def __init__(self, client: DeployClient, policy: AutomationPolicyEvaluator) -> None:
        self._client = client
        self._policy = policy

    async def find_last_known_good(
        self, env: str, service: str | None = None
    ) -> AdapterResult[LastKnownGood]:
        try:
            data = await self._client.find_last_known_good(env, service)
        except Exception as exc:
            logger.warning("lkg_query_failed", env=env, service=service, error=str(exc))
            return AdapterResult(error=AdapterError("LKG_QUERY_FAILED", str(exc)))
        if not data:
            scope = f"env={env}" + (f", service={service}" if service else "")
            return AdapterResult(
                error=AdapterError(
                    "NO_LKG_FOUND",
                    f"No Last Known Good deployment found for {scope}",
                    {
                        "env": env,
                        "service": service,
                        "requires": "status=GREEN and verification=PASS with reportHash",
                    },
                )
            )
        return AdapterResult(value=LastKnownGood.from_api(data))

    async def dispatch_redeploy(
        self,
        lkg: LastKnownGood,
        *,
        correlation_id: str,
        request_id: str | None = None,
    ) -> AdapterResult[DispatchResult]:
        decision = await self._policy.evaluate_and_record(
            PolicyEvaluationContext(
                request_id=request_id or str(uuid.uuid4()),
                action_type=REDEPLOY_LKG_ACTION,
                target_identifier=f"{lkg.env}/{lkg.service or '*'}",
                deployment_env=lkg.env,
                action_context={
                    "env": lkg.env,
                    "service": lkg.service,
                    "snapshotId": lkg.snapshot_id,
                    "correlationId": correlation_id,
                },
            )
        )
        if not decision.allowed:
            return AdapterResult(
                error=AdapterError("LAWBOOK_DENIED", decision.reason, decision.to_dict())
            )

        try:
            response = await self._client.dispatch_deploy(
                env=lkg.env,
                service=lkg.service,
                artifact=lkg.artifact,
                correlation_id=correlation_id,
            )
        except Exception as exc:
            logger.error(
                "lkg_dispatch_failed",
                env=lkg.env,
                service=lkg.service,
                correlation_id=correlation_id,
                error=str(exc),
            )
            return AdapterResult(error=AdapterError("DEPLOY_DISPATCH_FAILED", str(exc)))

        dispatch_id = response.get("dispatchId")
        if not dispatch_id:
            return AdapterResult(
                error=AdapterError(
                    "DEPLOY_DISPATCH_FAILED", "Deploy dispatch returned no dispatchId"
                )
            )
        logger.info(
            "lkg_redeploy_dispatched",
            env=lkg.env,
            service=lkg.service,
            dispatch_id=dispatch_id,
            correlation_id=correlation_id,
        )
        return AdapterResult(
            value=DispatchResult(dispatch_id=str(dispatch_id), policy=decision.to_dict())
        )
