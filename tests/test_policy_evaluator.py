"""Tests for the automation policy evaluator (mocked audit repository)."""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from afu9.automation.evaluator import ALLOWED_REASON, AutomationPolicyEvaluator
from afu9.automation.idempotency import build_idempotency_key, hash_idempotency_key
from afu9.automation.models import (
    PolicyDecision,
    PolicyEvaluationContext,
    PolicyExecutionRecord,
)
from afu9.automation.repository import AutomationPolicyAuditRepository
from afu9.lawbook.repository import LawbookVersionRecord
from afu9.lawbook.schema import compute_lawbook_hash

NOW = datetime(2025, 1, 1, 12, 0, 0)


def make_action(**overrides):
    action = {
        "actionType": "ecs_force_new_deployment",
        "allowedEnvs": ["staging", "production"],
        "idempotencyKeyTemplate": ["cluster", "service", "env"],
    }
    action.update(overrides)
    return action


def make_context(**overrides):
    values = {
        "request_id": "req-1",
        "action_type": "ecs_force_new_deployment",
        "target_identifier": "prod-cluster/api",
        "deployment_env": "prod",
        "action_context": {"cluster": "prod-cluster", "service": "api", "env": "production"},
    }
    values.update(overrides)
    return PolicyEvaluationContext(**values)


def make_execution(created_at):
    return PolicyExecutionRecord(
        id=7,
        request_id="req-0",
        action_type="ecs_force_new_deployment",
        target_identifier="prod-cluster/api",
        deployment_env="production",
        decision=PolicyDecision.allowed,
        reason=ALLOWED_REASON,
        idempotency_key="k",
        idempotency_key_hash=hash_idempotency_key("k"),
        created_at=created_at,
    )


@pytest.fixture
def audit():
    repo = MagicMock(spec=AutomationPolicyAuditRepository)
    repo.record_execution = AsyncMock()
    repo.get_last_allowed_execution = AsyncMock(return_value=None)
    repo.count_allowed_executions_in_window = AsyncMock(return_value=0)
    return repo


@pytest.fixture
def build_evaluator(audit, make_lawbook):
    def factory(*actions, lawbook=None):
        if lawbook is None:
            lawbook = make_lawbook(automationPolicy={"actions": list(actions) or [make_action()]})
        record = LawbookVersionRecord(
            id="version-1",
            lawbook=lawbook,
            lawbook_hash=compute_lawbook_hash(lawbook),
            created_at=NOW,
        )

        async def source():
            return record

        return AutomationPolicyEvaluator(source, audit, clock=lambda: NOW)

    return factory


@pytest.mark.asyncio
class TestFailClosed:
    async def test_no_active_lawbook_denies(self, audit):
        async def source():
            return None

        evaluator = AutomationPolicyEvaluator(source, audit, clock=lambda: NOW)
        result = await evaluator.evaluate(make_context())

        assert result.decision == PolicyDecision.denied
        assert result.reason == "No active lawbook configured (fail-closed)"
        assert result.lawbook_version is None

    async def test_lawbook_load_error_denies(self, audit):
        async def source():
            raise ConnectionError("db down")

        evaluator = AutomationPolicyEvaluator(source, audit, clock=lambda: NOW)
        result = await evaluator.evaluate(make_context())

        assert not result.allowed
        assert "db down" in result.reason
        assert "fail-closed" in result.reason

    async def test_unknown_action_type_denies(self, build_evaluator):
        result = await build_evaluator().evaluate(make_context(action_type="delete_everything"))

        assert not result.allowed
        assert result.reason.startswith("No policy defined for action type 'delete_everything'")
        assert result.lawbook_version == "2025-01-01.1"

    async def test_rate_limit_without_window_denies(self, build_evaluator):
        evaluator = build_evaluator(make_action(maxRunsPerWindow=2))

        result = await evaluator.evaluate(make_context())

        assert not result.allowed
        assert result.reason.startswith("Invalid policy configuration")

    async def test_audit_failure_downgrades_allow(self, build_evaluator, audit):
        audit.record_execution.side_effect = RuntimeError("insert failed")

        result = await build_evaluator().evaluate_and_record(make_context())

        assert not result.allowed
        assert result.reason == "Audit record failed (fail-closed)"
        assert result.enforcement_data["auditFailed"] is True


@pytest.mark.asyncio
class TestEnvironment:
    async def test_alias_matches_allowed_env(self, build_evaluator):
        result = await build_evaluator(make_action(allowedEnvs=["production"])).evaluate(
            make_context(deployment_env="prod")
        )

        assert result.allowed
        assert result.reason == ALLOWED_REASON

    async def test_env_not_allowed_short_circuits(self, build_evaluator, audit):
        evaluator = build_evaluator(
            make_action(
                allowedEnvs=["staging"], cooldownSeconds=300, maxRunsPerWindow=1, windowSeconds=60
            )
        )

        result = await evaluator.evaluate(make_context(deployment_env="prod"))

        assert not result.allowed
        assert result.reason.startswith("Action not allowed in environment 'prod'")
        audit.get_last_allowed_execution.assert_not_called()
        audit.count_allowed_executions_in_window.assert_not_called()

    @pytest.mark.parametrize("env", [None, "", "qa"])
    async def test_missing_or_unknown_env_denies(self, build_evaluator, env):
        result = await build_evaluator().evaluate(make_context(deployment_env=env))

        assert not result.allowed


@pytest.mark.asyncio
class TestApproval:
    async def test_approval_required_but_missing(self, build_evaluator):
        result = await build_evaluator(make_action(requiresApproval=True)).evaluate(make_context())

        assert not result.allowed
        assert result.reason == "Action requires explicit approval - not granted"
        assert result.requires_approval is True

    async def test_approval_granted(self, build_evaluator):
        result = await build_evaluator(make_action(requiresApproval=True)).evaluate(
            make_context(has_approval=True, approval_fingerprint="abc")
        )

        assert result.allowed
        assert result.requires_approval is True


@pytest.mark.asyncio
class TestCooldown:
    async def test_within_cooldown_denies(self, build_evaluator, audit):
        audit.get_last_allowed_execution.return_value = make_execution(NOW - timedelta(seconds=60))

        result = await build_evaluator(make_action(cooldownSeconds=300)).evaluate(make_context())

        assert not result.allowed
        assert result.reason.startswith("Cooldown active")
        assert result.next_allowed_at == NOW + timedelta(seconds=240)
        assert result.enforcement_data["secondsSinceLastExecution"] == 60
        assert result.enforcement_data["lastExecutionId"] == 7

    async def test_after_cooldown_allows(self, build_evaluator, audit):
        audit.get_last_allowed_execution.return_value = make_execution(NOW - timedelta(seconds=400))

        result = await build_evaluator(make_action(cooldownSeconds=300)).evaluate(make_context())

        assert result.allowed

    async def test_zero_cooldown_skips_lookup(self, build_evaluator, audit):
        await build_evaluator(make_action(cooldownSeconds=0)).evaluate(make_context())

        audit.get_last_allowed_execution.assert_not_called()


@pytest.mark.asyncio
class TestRateLimit:
    async def test_at_limit_denies(self, build_evaluator, audit):
        audit.count_allowed_executions_in_window.return_value = 3

        result = await build_evaluator(
            make_action(maxRunsPerWindow=3, windowSeconds=3600)
        ).evaluate(make_context())

        assert not result.allowed
        assert result.reason.startswith("Rate limit exceeded: 3/3")
        assert result.next_allowed_at == NOW + timedelta(seconds=3600)
        audit.count_allowed_executions_in_window.assert_awaited_once_with(
            "ecs_force_new_deployment", "prod-cluster/api", 3600, now=NOW
        )

    async def test_below_limit_allows_with_enforcement_data(self, build_evaluator, audit):
        audit.count_allowed_executions_in_window.return_value = 2

        result = await build_evaluator(
            make_action(maxRunsPerWindow=3, windowSeconds=3600)
        ).evaluate(make_context())

        assert result.allowed
        assert result.enforcement_data == {
            "currentRunCount": 2,
            "maxRunsPerWindow": 3,
            "windowSeconds": 3600,
        }


@pytest.mark.asyncio
class TestIdempotencyKey:
    async def test_key_follows_template_order(self, build_evaluator):
        result = await build_evaluator().evaluate(make_context())

        assert result.idempotency_key == "cluster=prod-cluster::service=api::env=production"
        assert result.idempotency_key_hash == hash_idempotency_key(result.idempotency_key)

    async def test_key_ignores_context_order(self, build_evaluator):
        evaluator = build_evaluator()
        forward = await evaluator.evaluate(make_context())
        backward = await evaluator.evaluate(
            make_context(
                action_context={"env": "production", "service": "api", "cluster": "prod-cluster"}
            )
        )

        assert forward.idempotency_key_hash == backward.idempotency_key_hash


class TestBuildIdempotencyKey:
    def test_empty_template_uses_action_and_target(self):
        key = build_idempotency_key(
            (), {"a": 1}, action_type="restart", target_identifier="svc"
        )

        assert key == "restart:svc"

    def test_missing_fields_are_skipped(self):
        key = build_idempotency_key(
            ("cluster", "service"),
            {"cluster": "c1", "service": None},
            action_type="restart",
            target_identifier="svc",
        )

        assert key == "cluster=c1"


@pytest.mark.asyncio
class TestEvaluateAndRecord:
    async def test_records_denials_too(self, audit):
        async def source():
            return None

        evaluator = AutomationPolicyEvaluator(source, audit, clock=lambda: NOW)
        context = make_context()

        result = await evaluator.evaluate_and_record(context)

        audit.record_execution.assert_awaited_once()
        recorded_context, recorded_result, fingerprint = audit.record_execution.await_args.args
        assert recorded_context is context
        assert recorded_result is result
        assert len(fingerprint) == 64

    async def test_result_serializes_camel_case(self, build_evaluator, audit):
        audit.get_last_allowed_execution.return_value = make_execution(NOW - timedelta(seconds=10))

        result = await build_evaluator(make_action(cooldownSeconds=300)).evaluate(make_context())
        payload = result.to_dict()

        assert payload["decision"] == "denied"
        assert payload["nextAllowedAt"] == "2025-01-01T12:04:50.000Z"
        assert payload["lawbookVersion"] == "2025-01-01.1"
