"""
Automation policy domain models.

Contexts are built per call; results are plain data that serialize to the
JSON shape returned to API callers.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Mapping

from afu9.core.clock import isoformat


class PolicyDecision(StrEnum):
    allowed = "allowed"
    denied = "denied"


@dataclass(frozen=True)
class PolicyEvaluationContext:
    request_id: str
    action_type: str
    target_identifier: str
    deployment_env: str | None = None
    action_context: Mapping[str, Any] = field(default_factory=dict)
    has_approval: bool = False
    approval_fingerprint: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "actionType": self.action_type,
            "targetIdentifier": self.target_identifier,
            "deploymentEnv": self.deployment_env,
            "actionContext": dict(self.action_context),
            "hasApproval": self.has_approval,
            "approvalFingerprint": self.approval_fingerprint,
        }


@dataclass(frozen=True)
class PolicyEvaluationResult:
    decision: PolicyDecision
    reason: str
    action_type: str
    idempotency_key: str
    idempotency_key_hash: str
    requires_approval: bool = False
    lawbook_version: str | None = None
    lawbook_hash: str | None = None
    next_allowed_at: datetime | None = None
    enforcement_data: Mapping[str, Any] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.decision == PolicyDecision.allowed

    def denied(self, reason: str, **enforcement: Any) -> PolicyEvaluationResult:
        """Copy of this result downgraded to a denial."""
        return dataclasses.replace(
            self,
            decision=PolicyDecision.denied,
            reason=reason,
            enforcement_data={**self.enforcement_data, **enforcement},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision": self.decision.value,
            "reason": self.reason,
            "actionType": self.action_type,
            "requiresApproval": self.requires_approval,
            "idempotencyKey": self.idempotency_key,
            "idempotencyKeyHash": self.idempotency_key_hash,
            "lawbookVersion": self.lawbook_version,
            "lawbookHash": self.lawbook_hash,
            "nextAllowedAt": isoformat(self.next_allowed_at),
            "enforcementData": dict(self.enforcement_data),
        }


@dataclass(frozen=True)
class PolicyExecutionRecord:
    """One row of the append-only policy audit trail."""

    id: int
    request_id: str
    action_type: str
    target_identifier: str
    deployment_env: str | None
    decision: PolicyDecision
    reason: str
    idempotency_key: str
    idempotency_key_hash: str
    created_at: datetime
    lawbook_version: str | None = None
    lawbook_hash: str | None = None
    next_allowed_at: datetime | None = None
    action_fingerprint: str | None = None
    enforcement_data: Mapping[str, Any] = field(default_factory=dict)
