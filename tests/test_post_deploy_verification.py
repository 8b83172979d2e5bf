"""Tests for the re-run post-deploy verification playbook."""

import dataclasses
from unittest.mock import AsyncMock, MagicMock

import pytest

from afu9.domain.models import EvidenceRecord, Incident, IncidentStatus
from afu9.incidents.evidence import parse_evidence
from afu9.incidents.repository import IncidentRepository
from afu9.lawbook.repository import LawbookVersionRecord
from afu9.playbooks.models import RunStatus, StepResult, StepStatus
from afu9.playbooks.post_deploy_verification import (
    INGEST_STEP,
    RERUN_POST_DEPLOY_VERIFICATION,
    RUN_STEP,
    IngestIncidentUpdateStep,
    build_rerun_post_deploy_verification,
)
from afu9.playbooks.remediation import (
    RemediationContext,
    RemediationExecutor,
    RemediationPlaybook,
    RemediationStep,
)
from afu9.playbooks.verification import VerificationOutcome


class FakeVerifier:
    def __init__(self, passed=True):
        self.passed = passed
        self.calls = []

    async def run(self, *, env, deploy_id=None):
        self.calls.append((env, deploy_id))
        return VerificationOutcome(
            playbook_run_id="verify-run-1",
            status=RunStatus.SUCCESS if self.passed else RunStatus.FAILED,
            report_hash="a" * 64,
            summary={"totalSteps": 2, "failedCount": 0 if self.passed else 1},
        )


def verification_output(env="production"):
    return {
        "playbookRunId": "verify-run-1",
        "status": "success",
        "reportHash": "a" * 64,
        "env": env,
        "deployId": "d-1",
    }


class ScriptedVerificationStep(RemediationStep):
    """Reports a passing verification for each listed environment in turn."""

    def __init__(self, *envs):
        self.envs = list(envs)

    async def execute(self, context):
        return StepResult.success(verification_output(self.envs.pop(0)))


def make_context(incident_env, verification_env, make_lawbook):
    lawbook = make_lawbook()
    return RemediationContext(
        run_id="run-1",
        step_id=INGEST_STEP,
        incident=Incident(id="inc-1", incident_key="deploy:prod:api"),
        evidence=parse_evidence(
            [{"kind": "deploy_status", "ref": {"env": incident_env, "deployId": "d-1"}}]
        ),
        inputs={},
        outputs={RUN_STEP: verification_output(verification_env)},
        lawbook=LawbookVersionRecord(
            id="v1", lawbook=lawbook, lawbook_hash="h", created_at=None
        ),
        idempotency_key=f"deploy:prod:api:{INGEST_STEP}",
    )


@pytest.fixture
def incidents():
    repo = MagicMock(spec=IncidentRepository)
    repo.get_incident = AsyncMock(
        return_value=Incident(
            id="inc-1", incident_key="deploy:prod:api", status=IncidentStatus.ACKED
        )
    )
    repo.update_status = AsyncMock()
    repo.add_evidence = AsyncMock(return_value=1)
    return repo


@pytest.mark.asyncio
class TestIngestIncidentUpdate:
    async def test_alias_environments_match(self, incidents, make_lawbook):
        step = IngestIncidentUpdateStep(incidents)

        result = await step.run(make_context("prod", "production", make_lawbook))

        assert result.status is StepStatus.SUCCESS
        assert result.output["newStatus"] == "MITIGATED"
        incidents.update_status.assert_awaited_once_with("inc-1", IncidentStatus.MITIGATED)
        [records] = incidents.add_evidence.await_args.args[1:]
        assert records[0].kind == "verification"
        assert records[0].ref["env"] == "production"

    async def test_environment_mismatch_never_mitigates(self, incidents, make_lawbook):
        step = IngestIncidentUpdateStep(incidents)

        result = await step.run(make_context("prod", "stage", make_lawbook))

        assert result.status is StepStatus.SUCCESS
        assert result.output["envMismatch"] is True
        assert result.output["incidentEnv"] == "production"
        assert result.output["verificationEnv"] == "staging"
        incidents.update_status.assert_not_called()
        incidents.add_evidence.assert_not_called()

    async def test_unknown_incident_env_is_treated_as_match(self, incidents, make_lawbook):
        step = IngestIncidentUpdateStep(incidents)

        result = await step.run(make_context("qa", "production", make_lawbook))

        assert result.output["newStatus"] == "MITIGATED"

    async def test_invalid_verification_env_fails(self, incidents, make_lawbook):
        step = IngestIncidentUpdateStep(incidents)

        result = await step.run(make_context("prod", "moon", make_lawbook))

        assert result.status is StepStatus.FAILED
        assert result.error.code == "INVALID_VERIFICATION_ENV"
        incidents.update_status.assert_not_called()

    async def test_missing_verification_output(self, incidents, make_lawbook):
        context = make_context("prod", "production", make_lawbook)
        step = IngestIncidentUpdateStep(incidents)

        result = await step.run(dataclasses.replace(context, outputs={}))

        assert result.error.code == "MISSING_VERIFICATION_OUTPUT"

    async def test_repository_error_becomes_failure(self, incidents, make_lawbook):
        incidents.update_status.side_effect = RuntimeError("connection reset")
        step = IngestIncidentUpdateStep(incidents)

        result = await step.run(make_context("prod", "production", make_lawbook))

        assert result.error.code == "INCIDENT_UPDATE_FAILED"


@pytest.mark.asyncio
class TestRerunPostDeployVerification:
    @pytest.fixture(autouse=True)
    async def lawbook(self, make_lawbook, activate_lawbook):
        return await activate_lawbook(make_lawbook())

    async def create_incident(self, session, *evidence):
        repo = IncidentRepository(session)
        await repo.create_incident(
            Incident(
                id="inc-1",
                incident_key="deploy:prod:api",
                category="DEPLOY_VERIFICATION_FAILED",
                status=IncidentStatus.ACKED,
            )
        )
        await repo.add_evidence("inc-1", list(evidence))

    async def test_passing_verification_mitigates(self, session):
        await self.create_incident(
            session, EvidenceRecord(kind="deploy_status", ref={"env": "prod", "deployId": "d-1"})
        )
        verifier = FakeVerifier()
        playbook = build_rerun_post_deploy_verification(verifier, IncidentRepository(session))

        result = await RemediationExecutor.for_session(session).execute("inc-1", playbook)

        assert result.status is RunStatus.SUCCESS
        assert verifier.calls == [("production", "d-1")]
        assert result.step(RUN_STEP).output["reportHash"] == "a" * 64
        repo = IncidentRepository(session)
        assert (await repo.get_incident("inc-1")).status == IncidentStatus.MITIGATED
        kinds = [record.kind for record in await repo.get_evidence("inc-1")]
        assert kinds == ["deploy_status", "verification"]

    async def test_failed_verification_stops_run(self, session):
        await self.create_incident(
            session, EvidenceRecord(kind="deploy_status", ref={"env": "prod", "deployId": "d-1"})
        )
        playbook = build_rerun_post_deploy_verification(
            FakeVerifier(passed=False), IncidentRepository(session)
        )

        result = await RemediationExecutor.for_session(session).execute("inc-1", playbook)

        assert result.status is RunStatus.FAILED
        assert result.step(RUN_STEP).error.code == "VERIFICATION_FAILED"
        assert result.step(INGEST_STEP) is None
        incident = await IncidentRepository(session).get_incident("inc-1")
        assert incident.status == IncidentStatus.ACKED

    async def test_evidence_without_env_is_skipped(self, session):
        await self.create_incident(
            session, EvidenceRecord(kind="deploy_status", ref={"deployId": "d-1"})
        )
        verifier = FakeVerifier()
        playbook = build_rerun_post_deploy_verification(verifier, IncidentRepository(session))

        result = await RemediationExecutor.for_session(session).execute("inc-1", playbook)

        assert result.status is RunStatus.SKIPPED
        assert result.skip_reason == "EVIDENCE_MISSING"
        assert verifier.calls == []

    async def test_later_run_reapplies_status_after_env_mismatch(self, session):
        await self.create_incident(
            session, EvidenceRecord(kind="deploy_status", ref={"env": "prod", "deployId": "d-1"})
        )
        playbook = RemediationPlaybook(
            RERUN_POST_DEPLOY_VERIFICATION,
            {
                RUN_STEP: ScriptedVerificationStep("staging", "production"),
                INGEST_STEP: IngestIncidentUpdateStep(IncidentRepository(session)),
            },
        )
        executor = RemediationExecutor.for_session(session)

        first = await executor.execute("inc-1", playbook)
        second = await executor.execute("inc-1", playbook, {"deployId": "d-2"})

        assert first.step(INGEST_STEP).output["envMismatch"] is True
        assert second.run_id != first.run_id
        assert second.step(INGEST_STEP).attempts == 1
        assert second.step(INGEST_STEP).output["newStatus"] == "MITIGATED"
        incident = await IncidentRepository(session).get_incident("inc-1")
        assert incident.status == IncidentStatus.MITIGATED
