"""
Automation policy evaluator.

Decides whether an automated action may run. Checks run in a fixed order and
the first failing check denies; anything unexpected also denies. The
evaluator only reads the lawbook and writes audit rows.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from afu9.automation.idempotency import (
    build_idempotency_key,
    generate_action_fingerprint,
    hash_idempotency_key,
)
from afu9.automation.models import (
    PolicyDecision,
    PolicyEvaluationContext,
    PolicyEvaluationResult,
)
from afu9.automation.repository import AutomationPolicyAuditRepository
from afu9.config import get_settings
from afu9.core.clock import utcnow
from afu9.db.repositories import IdempotencyConflict, IdempotencyRepository
from afu9.environment import try_normalize_environment
from afu9.lawbook.cache import LawbookCache
from afu9.lawbook.repository import LawbookRepository, LawbookVersionRecord

logger = structlog.get_logger()

LawbookSource = Callable[[], Awaitable[LawbookVersionRecord | None]]

ALLOWED_REASON = "All policy checks passed"


class AutomationPolicyEvaluator:
    """Fail-closed gatekeeper for automated actions."""

    def __init__(
        self,
        lawbook_source: LawbookSource,
        audit: AutomationPolicyAuditRepository,
        *,
        idempotency: IdempotencyRepository | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._lawbook_source = lawbook_source
        self._audit = audit
        self._idempotency = idempotency
        self._clock = clock

    @classmethod
    def for_session(
        cls, session: AsyncSession, *, lawbook_cache: LawbookCache | None = None
    ) -> AutomationPolicyEvaluator:
        """Wire the evaluator against the database behind ``session``."""
        settings = get_settings()
        lawbooks = LawbookRepository(session)
        source: LawbookSource
        if lawbook_cache is not None:
            source = lawbook_cache.get
        else:
            async def source() -> LawbookVersionRecord | None:
                return await lawbooks.get_active(settings.lawbook_id)

        return cls(
            source,
            AutomationPolicyAuditRepository(session),
            idempotency=IdempotencyRepository(session),
        )

    async def evaluate(self, context: PolicyEvaluationContext) -> PolicyEvaluationResult:
        result = await self._evaluate(context)
        self._log(context, result)
        return result

    async def evaluate_and_record(
        self, context: PolicyEvaluationContext
    ) -> PolicyEvaluationResult:
        """Evaluate, claim the idempotency key when allowed, and append an audit row."""
        result = await self._evaluate(context)

        if result.allowed and self._idempotency is not None:
            result = await self._claim(self._idempotency, context, result)

        fingerprint = generate_action_fingerprint(
            context.action_type, context.target_identifier, context.action_context
        )
        try:
            await self._audit.record_execution(context, result, fingerprint)
        except Exception:
            logger.error(
                "policy_audit_record_failed",
                request_id=context.request_id,
                action_type=context.action_type,
                exc_info=True,
            )
            if result.allowed:
                result = result.denied("Audit record failed (fail-closed)", auditFailed=True)

        self._log(context, result)
        return result

    async def _claim(
        self,
        idempotency: IdempotencyRepository,
        context: PolicyEvaluationContext,
        result: PolicyEvaluationResult,
    ) -> PolicyEvaluationResult:
        # Claims are keyed on the predecessor allowed execution, so two racing
        # evaluators that observed the same history cannot both proceed.
        try:
            last = await self._audit.get_last_allowed_execution(
                context.action_type, context.target_identifier
            )
            await idempotency.register(
                f"automation:{context.action_type}",
                f"{result.idempotency_key_hash}:after:{last.id if last else 0}",
            )
        except IdempotencyConflict:
            return result.denied(
                "Concurrent execution already claimed for this idempotency key",
                concurrentClaim=True,
            )
        except Exception as exc:
            logger.error(
                "policy_idempotency_claim_failed",
                request_id=context.request_id,
                action_type=context.action_type,
                exc_info=True,
            )
            return result.denied(f"Policy evaluation failed: {exc} (fail-closed)")
        return result

    async def _evaluate(self, context: PolicyEvaluationContext) -> PolicyEvaluationResult:
        key = build_idempotency_key(
            (),
            context.action_context,
            action_type=context.action_type,
            target_identifier=context.target_identifier,
        )
        base = PolicyEvaluationResult(
            decision=PolicyDecision.denied,
            reason="",
            action_type=context.action_type,
            idempotency_key=key,
            idempotency_key_hash=hash_idempotency_key(key),
        )

        try:
            return await self._run_checks(context, base)
        except Exception as exc:
            logger.error(
                "policy_evaluation_error",
                request_id=context.request_id,
                action_type=context.action_type,
                exc_info=True,
            )
            return base.denied(f"Policy evaluation failed: {exc} (fail-closed)")

    async def _run_checks(
        self, context: PolicyEvaluationContext, base: PolicyEvaluationResult
    ) -> PolicyEvaluationResult:
        active = await self._lawbook_source()
        if active is None:
            return base.denied("No active lawbook configured (fail-closed)")

        policy = active.lawbook.automation_policy.find(context.action_type)
        key = build_idempotency_key(
            policy.idempotency_key_template if policy else (),
            context.action_context,
            action_type=context.action_type,
            target_identifier=context.target_identifier,
        )
        result = PolicyEvaluationResult(
            decision=PolicyDecision.denied,
            reason="",
            action_type=context.action_type,
            idempotency_key=key,
            idempotency_key_hash=hash_idempotency_key(key),
            lawbook_version=active.lawbook_version,
            lawbook_hash=active.lawbook_hash,
        )

        if policy is None:
            return result.denied(
                f"No policy defined for action type '{context.action_type}' (fail-closed)"
            )

        if policy.rate_limit_misconfigured:
            return result.denied(
                "Invalid policy configuration: maxRunsPerWindow is set but windowSeconds "
                "is missing (fail-closed)"
            )

        allowed_envs = {try_normalize_environment(env) for env in policy.allowed_envs}
        env = try_normalize_environment(context.deployment_env)
        if env is None or env not in allowed_envs:
            return result.denied(
                f"Action not allowed in environment '{context.deployment_env}' "
                f"(allowed: {', '.join(policy.allowed_envs)})",
                deploymentEnv=context.deployment_env,
            )

        if policy.requires_approval and not context.has_approval:
            return replace(
                result.denied("Action requires explicit approval - not granted"),
                requires_approval=True,
            )

        now = self._clock()

        if policy.cooldown_seconds > 0:
            last = await self._audit.get_last_allowed_execution(
                context.action_type, context.target_identifier
            )
            if last is not None:
                elapsed = (now - last.created_at).total_seconds()
                if elapsed < policy.cooldown_seconds:
                    next_allowed_at = last.created_at + timedelta(seconds=policy.cooldown_seconds)
                    return replace(
                        result.denied(
                            f"Cooldown active: {int(elapsed)}s since last execution "
                            f"(cooldown {policy.cooldown_seconds}s)",
                            cooldownSeconds=policy.cooldown_seconds,
                            secondsSinceLastExecution=int(elapsed),
                            lastExecutionId=last.id,
                        ),
                        next_allowed_at=next_allowed_at,
                    )

        enforcement: dict[str, object] = {}
        if policy.max_runs_per_window is not None and policy.window_seconds is not None:
            count = await self._audit.count_allowed_executions_in_window(
                context.action_type,
                context.target_identifier,
                policy.window_seconds,
                now=now,
            )
            enforcement = {
                "currentRunCount": count,
                "maxRunsPerWindow": policy.max_runs_per_window,
                "windowSeconds": policy.window_seconds,
            }
            if count >= policy.max_runs_per_window:
                return replace(
                    result.denied(
                        f"Rate limit exceeded: {count}/{policy.max_runs_per_window} executions "
                        f"in {policy.window_seconds}s window",
                        **enforcement,
                    ),
                    next_allowed_at=now + timedelta(seconds=policy.window_seconds),
                )

        return PolicyEvaluationResult(
            decision=PolicyDecision.allowed,
            reason=ALLOWED_REASON,
            action_type=result.action_type,
            idempotency_key=result.idempotency_key,
            idempotency_key_hash=result.idempotency_key_hash,
            requires_approval=policy.requires_approval,
            lawbook_version=result.lawbook_version,
            lawbook_hash=result.lawbook_hash,
            enforcement_data=enforcement,
        )

    @staticmethod
    def _log(context: PolicyEvaluationContext, result: PolicyEvaluationResult) -> None:
        log = logger.info if result.allowed else logger.warning
        log(
            "policy_evaluated",
            request_id=context.request_id,
            action_type=context.action_type,
            target=context.target_identifier,
            deployment_env=context.deployment_env,
            decision=result.decision.value,
            reason=result.reason,
            idempotency_key_hash=result.idempotency_key_hash,
            lawbook_version=result.lawbook_version,
        )

