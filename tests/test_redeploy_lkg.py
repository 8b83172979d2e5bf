"""Tests for the Last Known Good redeploy playbook and its deploy adapter."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from afu9.adapters.deploy import REDEPLOY_LKG_ACTION, DeployAdapter, LastKnownGood
from afu9.automation.evaluator import AutomationPolicyEvaluator
from afu9.automation.models import PolicyDecision, PolicyEvaluationResult
from afu9.domain.models import EvidenceRecord, Incident, IncidentStatus
from afu9.incidents.evidence import parse_evidence
from afu9.incidents.repository import IncidentRepository
from afu9.playbooks.models import RunStatus, StepStatus
from afu9.playbooks.redeploy_lkg import (
    DISPATCH_STEP,
    REDEPLOY_LKG,
    SELECT_STEP,
    STATUS_STEP,
    VERIFY_STEP,
    DispatchDeployStep,
    build_redeploy_lkg,
)
from afu9.playbooks.remediation import RemediationExecutor
from afu9.playbooks.verification import VerificationOutcome


def lkg(**overrides):
    data = {
        "snapshotId": "snap-1",
        "deployEventId": "deploy-1",
        "env": "production",
        "service": "api",
        "version": "v1.2.3",
        "commitHash": "abc123def456",
        "imageDigest": "sha256:abcd1234",
        "observedAt": "2025-01-01T00:00:00Z",
        "verificationRunId": "ver-1",
        "verificationReportHash": "hash123",
    }
    data.update(overrides)
    return data


class FakeVerifier:
    def __init__(self, passed=True):
        self.passed = passed
        self.calls = []

    async def run(self, *, env, deploy_id=None):
        self.calls.append((env, deploy_id))
        return VerificationOutcome(
            playbook_run_id="verify-run-1",
            status=RunStatus.SUCCESS if self.passed else RunStatus.FAILED,
            report_hash="b" * 64,
            summary={"totalSteps": 1},
        )


class FixedClock:
    def __init__(self):
        self.now = datetime(2025, 1, 1, 10, 15, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def decision(allowed=True):
    return PolicyEvaluationResult(
        decision=PolicyDecision.allowed if allowed else PolicyDecision.denied,
        reason="All policy checks passed" if allowed else "Action not allowed",
        action_type=REDEPLOY_LKG_ACTION,
        idempotency_key="redeploy_lkg:production/api",
        idempotency_key_hash="h",
    )


@pytest.fixture
def deploy_client():
    client = MagicMock()
    client.find_last_known_good = AsyncMock(return_value=lkg())
    client.dispatch_deploy = AsyncMock(return_value={"dispatchId": "dispatch-1"})
    return client


@pytest.mark.asyncio
class TestDeployAdapter:
    @pytest.fixture
    def policy(self):
        evaluator = MagicMock(spec=AutomationPolicyEvaluator)
        evaluator.evaluate_and_record = AsyncMock(return_value=decision())
        return evaluator

    @pytest.fixture
    def adapter(self, deploy_client, policy):
        return DeployAdapter(deploy_client, policy)

    async def test_dispatch_consults_policy(self, adapter, deploy_client, policy):
        result = await adapter.dispatch_redeploy(
            LastKnownGood.from_api(lkg()), correlation_id="deploy:prod:api:redeploy-lkg"
        )

        assert result.success
        assert result.value.dispatch_id == "dispatch-1"
        context = policy.evaluate_and_record.await_args.args[0]
        assert context.action_type == "redeploy_lkg"
        assert context.target_identifier == "production/api"
        assert context.deployment_env == "production"
        kwargs = deploy_client.dispatch_deploy.await_args.kwargs
        assert kwargs["env"] == "production"
        assert kwargs["artifact"]["imageDigest"] == "sha256:abcd1234"

    async def test_denial_never_dispatches(self, adapter, deploy_client, policy):
        policy.evaluate_and_record.return_value = decision(allowed=False)

        result = await adapter.dispatch_redeploy(
            LastKnownGood.from_api(lkg()), correlation_id="c"
        )

        assert result.error.code == "LAWBOOK_DENIED"
        deploy_client.dispatch_deploy.assert_not_called()

    async def test_dispatch_without_id_fails(self, adapter, deploy_client):
        deploy_client.dispatch_deploy.return_value = {}

        result = await adapter.dispatch_redeploy(
            LastKnownGood.from_api(lkg()), correlation_id="c"
        )

        assert result.error.code == "DEPLOY_DISPATCH_FAILED"

    async def test_no_lkg(self, adapter, deploy_client):
        deploy_client.find_last_known_good.return_value = None

        result = await adapter.find_last_known_good("production", "api")

        assert result.error.code == "NO_LKG_FOUND"
        assert result.error.message == (
            "No Last Known Good deployment found for env=production, service=api"
        )

    async def test_query_error(self, adapter, deploy_client):
        deploy_client.find_last_known_good.side_effect = RuntimeError("connection reset")

        result = await adapter.find_last_known_good("production")

        assert result.error.code == "LKG_QUERY_FAILED"


def test_definition():
    assert REDEPLOY_LKG.id == "redeploy-lkg"
    assert [s.step_id for s in REDEPLOY_LKG.steps] == [
        SELECT_STEP,
        DISPATCH_STEP,
        VERIFY_STEP,
        STATUS_STEP,
    ]
    assert REDEPLOY_LKG.applies_to("DEPLOY_VERIFICATION_FAILED")
    assert not REDEPLOY_LKG.applies_to("GITHUB_RATE_LIMIT")


class TestDispatchIdempotencyKey:
    def evidence(self, env):
        return parse_evidence([{"kind": "deploy_status", "ref": {"env": env}}])

    def test_scoped_by_environment_and_hour(self):
        clock = FixedClock()
        step = DispatchDeployStep(MagicMock(spec=DeployAdapter), clock)

        prod = step.idempotency_key("inc:1", DISPATCH_STEP, self.evidence("prod"), {})
        stage = step.idempotency_key("inc:1", DISPATCH_STEP, self.evidence("stage"), {})

        assert prod == "inc:1:dispatch-deploy:production:2025-01-01T10"
        assert stage == "inc:1:dispatch-deploy:staging:2025-01-01T10"

    def test_same_key_within_the_hour(self):
        clock = FixedClock()
        step = DispatchDeployStep(MagicMock(spec=DeployAdapter), clock)
        first = step.idempotency_key("inc:1", DISPATCH_STEP, self.evidence("prod"), {})

        clock.now += timedelta(minutes=40)
        same_hour = step.idempotency_key("inc:1", DISPATCH_STEP, self.evidence("prod"), {})
        clock.now += timedelta(minutes=10)
        next_hour = step.idempotency_key("inc:1", DISPATCH_STEP, self.evidence("prod"), {})

        assert same_hour == first
        assert next_hour != first


def redeploy_lawbook(make_lawbook, *, actions=None, playbooks=("redeploy-lkg",), **overrides):
    if actions is None:
        actions = [
            {
                "actionType": "redeploy_lkg",
                "allowedEnvs": ["staging", "production"],
                "cooldownSeconds": 0,
            }
        ]
    return make_lawbook(
        automationPolicy={"actions": actions},
        remediation={
            "enabled": True,
            "allowedPlaybooks": list(playbooks),
            "allowedActions": ["ROLLBACK_DEPLOY", "RUN_VERIFICATION", "UPDATE_INCIDENT_STATUS"],
        },
        **overrides,
    )


@pytest.mark.asyncio
class TestRedeployLkgPlaybook:
    @pytest.fixture(autouse=True)
    async def lawbook(self, make_lawbook, activate_lawbook):
        return await activate_lawbook(redeploy_lawbook(make_lawbook))

    @pytest.fixture(autouse=True)
    async def incident(self, session):
        repo = IncidentRepository(session)
        await repo.create_incident(
            Incident(
                id="inc-1", incident_key="deploy:prod:api", category="DEPLOY_VERIFICATION_FAILED"
            )
        )
        await repo.add_evidence(
            "inc-1",
            [
                EvidenceRecord(
                    kind="deploy_status",
                    ref={"env": "prod", "service": "api", "deployId": "d-9", "status": "RED"},
                )
            ],
        )

    @pytest.fixture
    def clock(self):
        return FixedClock()

    @pytest.fixture
    def run_playbook(self, session, deploy_client, clock):
        async def run(verifier=None, inputs=None):
            adapter = DeployAdapter(deploy_client, AutomationPolicyEvaluator.for_session(session))
            playbook = build_redeploy_lkg(
                adapter, IncidentRepository(session), verifier or FakeVerifier(), clock=clock
            )
            return await RemediationExecutor.for_session(session).execute(
                "inc-1", playbook, inputs
            )

        return run

    async def incident_status(self, session):
        return (await IncidentRepository(session).get_incident("inc-1")).status

    async def test_redeploys_pinned_lkg_and_mitigates(self, session, run_playbook, deploy_client):
        verifier = FakeVerifier()

        result = await run_playbook(verifier)

        assert result.status is RunStatus.SUCCESS
        assert [s.status for s in result.steps] == [StepStatus.SUCCESS] * 4
        assert result.step(SELECT_STEP).output["lkg"]["snapshotId"] == "snap-1"
        deploy_client.find_last_known_good.assert_awaited_once_with("production", "api")
        assert result.step(DISPATCH_STEP).output["dispatchId"] == "dispatch-1"
        assert verifier.calls == [("production", "dispatch-1")]
        assert result.step(STATUS_STEP).output["newStatus"] == "GREEN"
        assert await self.incident_status(session) == IncidentStatus.MITIGATED
        evidence = await IncidentRepository(session).get_evidence("inc-1")
        assert evidence[-1].kind == "verification"
        assert evidence[-1].ref["redeployType"] == "LKG"

    async def test_commit_only_lkg_is_not_deterministic(self, run_playbook, deploy_client):
        deploy_client.find_last_known_good.return_value = lkg(imageDigest=None)

        result = await run_playbook()

        assert result.status is RunStatus.FAILED
        select = result.step(SELECT_STEP)
        assert select.error.code == "DETERMINISM_REQUIRED"
        assert "immutable artifact pin" in select.error.message
        deploy_client.dispatch_deploy.assert_not_called()

    async def test_change_set_only_lkg_is_rejected(self, run_playbook, deploy_client):
        deploy_client.find_last_known_good.return_value = lkg(
            imageDigest=None, commitHash=None, cfnChangeSetId="arn:aws:cloudformation:cs/1"
        )

        result = await run_playbook()

        message = result.step(SELECT_STEP).error.message
        assert "cfnChangeSetId but no imageDigest" in message
        assert "mutable tags" in message

    async def test_per_container_digests_are_accepted(self, run_playbook, deploy_client):
        deploy_client.find_last_known_good.return_value = lkg(
            imageDigest=None, imageDigests=["sha256:abc111", "sha256:abc222"]
        )

        result = await run_playbook()

        assert result.status is RunStatus.SUCCESS
        assert result.step(SELECT_STEP).output["lkg"]["imageDigests"] == [
            "sha256:abc111",
            "sha256:abc222",
        ]

    async def test_no_lkg_found(self, run_playbook, deploy_client):
        deploy_client.find_last_known_good.return_value = None

        result = await run_playbook()

        assert result.status is RunStatus.FAILED
        assert result.step(SELECT_STEP).error.code == "NO_LKG_FOUND"
        assert len(result.steps) == 1

    async def test_failed_verification_reports_red(self, session, run_playbook):
        result = await run_playbook(FakeVerifier(passed=False))

        assert result.status is RunStatus.SUCCESS
        assert result.step(VERIFY_STEP).output["status"] == "failed"
        assert result.step(STATUS_STEP).output["newStatus"] == "RED"
        assert await self.incident_status(session) == IncidentStatus.OPEN

    async def test_environment_mismatch_never_mitigates(
        self, session, run_playbook, deploy_client
    ):
        deploy_client.find_last_known_good.return_value = lkg(env="staging")

        result = await run_playbook()

        status = result.step(STATUS_STEP).output
        assert status["envMismatch"] is True
        assert status["incidentEnv"] == "production"
        assert status["verificationEnv"] == "staging"
        assert await self.incident_status(session) == IncidentStatus.OPEN

    async def test_lawbook_without_redeploy_action_denies_dispatch(
        self, session, run_playbook, deploy_client, make_lawbook, activate_lawbook
    ):
        await activate_lawbook(
            redeploy_lawbook(
                make_lawbook,
                actions=[{"actionType": "ecs_force_new_deployment", "allowedEnvs": ["production"]}],
                lawbookVersion="2025-01-02.1",
            )
        )

        result = await run_playbook()

        assert result.status is RunStatus.FAILED
        assert result.step(DISPATCH_STEP).error.code == "LAWBOOK_DENIED"
        deploy_client.dispatch_deploy.assert_not_called()
        assert await self.incident_status(session) == IncidentStatus.OPEN

    async def test_playbook_not_allowed_is_skipped(
        self, run_playbook, deploy_client, make_lawbook, activate_lawbook
    ):
        await activate_lawbook(
            redeploy_lawbook(
                make_lawbook, playbooks=["service-health-reset"], lawbookVersion="2025-01-02.1"
            )
        )

        result = await run_playbook()

        assert result.status is RunStatus.SKIPPED
        assert result.skip_reason == "LAWBOOK_DENIED"
        deploy_client.find_last_known_good.assert_not_called()

    async def test_dispatches_at_most_once_per_hour(self, run_playbook, deploy_client, clock):
        first = await run_playbook()
        second = await run_playbook(inputs={"attempt": 2})
        clock.now += timedelta(hours=1)
        third = await run_playbook(inputs={"attempt": 3})

        assert len({first.run_id, second.run_id, third.run_id}) == 3
        assert second.step(DISPATCH_STEP).attempts == 0
        assert second.step(DISPATCH_STEP).output["dispatchId"] == "dispatch-1"
        assert third.step(DISPATCH_STEP).attempts == 1
        assert deploy_client.dispatch_deploy.await_count == 2
