"""Tests for the policy-enforcing ECS adapter."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from afu9.adapters.ecs import FORCE_NEW_DEPLOYMENT_ACTION, EcsAdapter, EcsServiceInfo
from afu9.automation.evaluator import AutomationPolicyEvaluator
from afu9.automation.models import PolicyDecision, PolicyEvaluationResult


def service(running=2, desired=2, pending=0, deployments=1):
    return {
        "serviceArn": "arn:aws:ecs:eu-central-1:123:service/prod/api",
        "status": "ACTIVE",
        "desiredCount": desired,
        "runningCount": running,
        "pendingCount": pending,
        "taskDefinition": "api:42",
        "deployments": [{"id": f"ecs-svc/{i}", "status": "PRIMARY"} for i in range(deployments)],
    }


def decision(allowed=True):
    return PolicyEvaluationResult(
        decision=PolicyDecision.allowed if allowed else PolicyDecision.denied,
        reason=(
            "All policy checks passed" if allowed else "Cooldown active: 10s since last execution"
        ),
        action_type=FORCE_NEW_DEPLOYMENT_ACTION,
        idempotency_key="cluster=prod::service=api::env=production",
        idempotency_key_hash="h",
    )


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.now += seconds


@pytest.fixture
def client():
    fake = MagicMock()
    fake.describe_service = AsyncMock(return_value=service())
    fake.update_service = AsyncMock(
        return_value={
            "serviceArn": "arn:svc",
            "deployments": [{"id": "ecs-svc/9", "status": "PRIMARY"}],
        }
    )
    return fake


@pytest.fixture
def policy():
    evaluator = MagicMock(spec=AutomationPolicyEvaluator)
    evaluator.evaluate_and_record = AsyncMock(return_value=decision())
    return evaluator


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def adapter(client, policy, clock):
    return EcsAdapter(client, policy, sleep=clock.sleep, clock=clock)


class TestEcsServiceInfo:
    def test_stable_when_counts_match_and_single_deployment(self):
        assert EcsServiceInfo.from_api(service()).is_stable

    @pytest.mark.parametrize(
        "data",
        [service(running=1), service(pending=1), service(deployments=2)],
    )
    def test_unstable(self, data):
        assert not EcsServiceInfo.from_api(data).is_stable


@pytest.mark.asyncio
class TestDescribeService:
    async def test_not_found(self, adapter, client):
        client.describe_service.return_value = None

        result = await adapter.describe_service("prod", "api")

        assert not result.success
        assert result.error.code == "SERVICE_NOT_FOUND"

    async def test_api_error(self, adapter, client):
        client.describe_service.side_effect = RuntimeError("throttled")

        result = await adapter.describe_service("prod", "api")

        assert result.error.code == "ECS_API_ERROR"
        assert result.error.message == "throttled"


@pytest.mark.asyncio
class TestForceNewDeployment:
    async def test_policy_is_consulted_with_target(self, adapter, client, policy):
        result = await adapter.force_new_deployment(
            cluster="prod", service="api", env="production", correlation_id="inc-1:health-reset"
        )

        assert result.success
        assert result.value.deployment_id == "ecs-svc/9"
        context = policy.evaluate_and_record.await_args.args[0]
        assert context.action_type == "ecs_force_new_deployment"
        assert context.target_identifier == "prod/api"
        assert context.deployment_env == "production"
        assert context.action_context["correlationId"] == "inc-1:health-reset"
        client.update_service.assert_awaited_once_with("prod", "api", force_new_deployment=True)

    async def test_denial_never_calls_ecs(self, adapter, client, policy):
        policy.evaluate_and_record.return_value = decision(allowed=False)

        result = await adapter.force_new_deployment(
            cluster="prod", service="api", env="production", correlation_id="c"
        )

        assert result.error.code == "LAWBOOK_DENIED"
        assert result.error.message.startswith("Cooldown active")
        assert result.error.details["decision"] == "denied"
        client.update_service.assert_not_called()

    async def test_update_error(self, adapter, client):
        client.update_service.side_effect = RuntimeError("access denied")

        result = await adapter.force_new_deployment(
            cluster="prod", service="api", env="production", correlation_id="c"
        )

        assert result.error.code == "ECS_API_ERROR"


@pytest.mark.asyncio
class TestPollServiceStability:
    async def test_stable_on_first_poll(self, adapter):
        result = await adapter.poll_service_stability(
            cluster="prod", service="api", max_wait_seconds=60, check_interval_seconds=10
        )

        assert result.value.stable
        assert result.value.polls == 1

    async def test_becomes_stable(self, adapter, client):
        client.describe_service.side_effect = [service(running=1), service(running=1), service()]

        result = await adapter.poll_service_stability(
            cluster="prod", service="api", max_wait_seconds=60, check_interval_seconds=10
        )

        assert result.value.stable
        assert result.value.polls == 3
        assert result.value.waited_seconds == 20

    async def test_timeout_is_not_an_error(self, adapter, client):
        client.describe_service.return_value = service(running=0)

        result = await adapter.poll_service_stability(
            cluster="prod", service="api", max_wait_seconds=30, check_interval_seconds=10
        )

        assert result.success
        assert not result.value.stable
        assert result.value.polls == 4
        assert result.value.final_state.running_count == 0

    async def test_describe_error_aborts(self, adapter, client):
        client.describe_service.return_value = None

        result = await adapter.poll_service_stability(
            cluster="prod", service="api", max_wait_seconds=30, check_interval_seconds=10
        )

        assert result.error.code == "SERVICE_NOT_FOUND"
