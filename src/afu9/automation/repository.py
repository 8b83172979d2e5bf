"""
Automation policy audit repository.

All rows are insert-only. The same table serves as the source of truth for
cooldown and rate-limit lookups, which only ever consider ``allowed`` rows.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from afu9.automation.models import (
    PolicyDecision,
    PolicyEvaluationContext,
    PolicyEvaluationResult,
    PolicyExecutionRecord,
)
from afu9.core.clock import utcnow
from afu9.db.models import AutomationPolicyExecutionModel


class AutomationPolicyAuditRepository:
    """Repository for automation policy audit records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record_execution(
        self,
        context: PolicyEvaluationContext,
        result: PolicyEvaluationResult,
        action_fingerprint: str | None = None,
    ) -> PolicyExecutionRecord:
        """Insert an audit row for an evaluated action, whatever the decision."""
        model = AutomationPolicyExecutionModel(
            request_id=context.request_id,
            action_type=context.action_type,
            target_identifier=context.target_identifier,
            deployment_env=context.deployment_env,
            decision=result.decision.value,
            reason=result.reason,
            requires_approval=result.requires_approval,
            idempotency_key=result.idempotency_key,
            idempotency_key_hash=result.idempotency_key_hash,
            action_fingerprint=action_fingerprint,
            lawbook_version=result.lawbook_version,
            lawbook_hash=result.lawbook_hash,
            next_allowed_at=result.next_allowed_at,
            enforcement_data=dict(result.enforcement_data),
            action_context=context.to_dict(),
            created_at=utcnow(),
        )
        self.session.add(model)
        await self.session.flush()
        return self._to_domain(model)

    async def get_last_allowed_execution(
        self, action_type: str, target_identifier: str
    ) -> PolicyExecutionRecord | None:
        result = await self.session.execute(
            select(AutomationPolicyExecutionModel)
            .where(
                AutomationPolicyExecutionModel.action_type == action_type,
                AutomationPolicyExecutionModel.target_identifier == target_identifier,
                AutomationPolicyExecutionModel.decision == PolicyDecision.allowed.value,
            )
            .order_by(
                AutomationPolicyExecutionModel.created_at.desc(),
                AutomationPolicyExecutionModel.id.desc(),
            )
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return self._to_domain(model) if model else None

    async def count_allowed_executions_in_window(
        self,
        action_type: str,
        target_identifier: str,
        window_seconds: int,
        *,
        now: datetime | None = None,
    ) -> int:
        cutoff = (now or utcnow()) - timedelta(seconds=window_seconds)
        result = await self.session.execute(
            select(func.count(AutomationPolicyExecutionModel.id)).where(
                AutomationPolicyExecutionModel.action_type == action_type,
                AutomationPolicyExecutionModel.target_identifier == target_identifier,
                AutomationPolicyExecutionModel.decision == PolicyDecision.allowed.value,
                AutomationPolicyExecutionModel.created_at >= cutoff,
            )
        )
        return int(result.scalar_one())

    async def list_by_idempotency_key_hash(
        self, action_type: str, idempotency_key_hash: str, limit: int = 50
    ) -> list[PolicyExecutionRecord]:
        result = await self.session.execute(
            select(AutomationPolicyExecutionModel)
            .where(
                AutomationPolicyExecutionModel.action_type == action_type,
                AutomationPolicyExecutionModel.idempotency_key_hash == idempotency_key_hash,
            )
            .order_by(
                AutomationPolicyExecutionModel.created_at.desc(),
                AutomationPolicyExecutionModel.id.desc(),
            )
            .limit(limit)
        )
        return [self._to_domain(m) for m in result.scalars().all()]

    @staticmethod
    def _to_domain(model: AutomationPolicyExecutionModel) -> PolicyExecutionRecord:
        return PolicyExecutionRecord(
            id=model.id,
            request_id=model.request_id,
            action_type=model.action_type,
            target_identifier=model.target_identifier,
            deployment_env=model.deployment_env,
            decision=PolicyDecision(model.decision),
            reason=model.reason,
            idempotency_key=model.idempotency_key,
            idempotency_key_hash=model.idempotency_key_hash,
            created_at=model.created_at,
            lawbook_version=model.lawbook_version,
            lawbook_hash=model.lawbook_hash,
            next_allowed_at=model.next_allowed_at,
            action_fingerprint=model.action_fingerprint,
            enforcement_data=model.enforcement_data or {},
        )
