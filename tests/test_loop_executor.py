"""Tests for the one-step-per-call loop executor."""

import itertools
from unittest.mock import AsyncMock, MagicMock

import pytest

from afu9.clients.github import GitHubClient
from afu9.core.errors import ValidationError
from afu9.domain.models import Issue, LoopRunStatus, RunStepStatus
from afu9.lifecycle.executor import LoopExecutor
from afu9.lifecycle.models import ExecutionMode
from afu9.lifecycle.repository import LoopLockRepository, LoopRunRepository, RunStepRepository
from afu9.lifecycle.state_machine import BlockerCode, LoopStep
from afu9.lifecycle.steps import LoopStores, build_step_executors

PR_URL = "https://github.com/acme/api/pull/42"
OPEN_PR = {"state": "open", "merged": False, "head": {"sha": "headsha"}}
MERGED_PR = {"state": "closed", "merged": True, "merge_commit_sha": "mergesha"}


@pytest.fixture
def github():
    client = MagicMock(spec=GitHubClient)
    client.get_pull_request = AsyncMock(return_value=OPEN_PR)
    client.list_reviews = AsyncMock(return_value=[{"user": {"login": "a"}, "state": "APPROVED"}])
    client.list_check_runs = AsyncMock(
        return_value=[{"name": "build", "status": "completed", "conclusion": "success"}]
    )
    client.merge_pull_request = AsyncMock(return_value={"sha": "mergesha"})
    client.list_deployments = AsyncMock(
        return_value=[{"id": 9, "environment": "production", "sha": "mergesha"}]
    )
    client.list_deployment_statuses = AsyncMock(return_value=[{"state": "success"}])
    return client


@pytest.fixture
def stores(session):
    return LoopStores.for_session(session)


@pytest.fixture
def executor(session, stores, github):
    counter = itertools.count(1)
    return LoopExecutor(
        stores,
        LoopRunRepository(session),
        RunStepRepository(session),
        LoopLockRepository(session),
        build_step_executors(github),
        id_factory=lambda: f"id-{next(counter)}",
    )


@pytest.fixture
def add_issue(stores):
    async def _add(status="CREATED", **fields):
        values = {
            "id": "issue-1",
            "title": "Add retry to webhook sender",
            "status": status,
            "github_url": "https://github.com/acme/api/issues/12",
        }
        values.update(fields)
        await stores.issues.create(Issue(**values))

    return _add


@pytest.mark.asyncio
class TestLoopExecutor:
    async def test_unknown_issue(self, executor):
        with pytest.raises(ValidationError) as exc_info:
            await executor.run_next_step("missing", actor="alice")

        assert exc_info.value.code == "ISSUE_NOT_FOUND"

    async def test_successful_step_writes_run_and_step_log(self, session, executor, add_issue):
        await add_issue(status="SPEC_READY")

        outcome = await executor.run_next_step("issue-1", actor="alice", request_id="req-1")

        assert outcome.success
        assert outcome.step is LoopStep.S3_IMPLEMENT_PREP
        assert outcome.run_id == "id-1"

        run = await LoopRunRepository(session).get("id-1")
        assert run.status is LoopRunStatus.DONE
        assert run.actor == "alice"
        assert run.request_id == "req-1"
        assert run.type == "next_step"

        steps = await RunStepRepository(session).list_for_run("id-1")
        assert [s.status for s in steps] == [RunStepStatus.STARTED, RunStepStatus.SUCCEEDED]
        assert steps[0].step_id == steps[1].step_id
        assert steps[1].evidence_refs == [{"fieldsChanged": ["status"]}]

    async def test_blocked_step_fails_run(self, session, executor, add_issue):
        await add_issue(status="IMPLEMENTING_PREP")

        outcome = await executor.run_next_step("issue-1", actor="alice")

        assert outcome.blocked
        assert outcome.blocker_code is BlockerCode.NO_PR_LINKED
        run = await LoopRunRepository(session).get(outcome.run_id)
        assert run.status is LoopRunStatus.FAILED
        assert run.error_message == "NO_PR_LINKED: S4 requires PR to be linked to issue"
        steps = await RunStepRepository(session).list_for_run(outcome.run_id)
        assert steps[-1].status is RunStepStatus.FAILED
        assert steps[-1].error_message == run.error_message

    async def test_no_step_creates_no_run(self, executor, add_issue):
        await add_issue(status="VERIFIED")

        outcome = await executor.run_next_step("issue-1", actor="alice")

        assert outcome.run_id is None
        assert outcome.step is None
        assert not outcome.blocked
        assert outcome.message == "Issue is in terminal state: VERIFIED"

    async def test_blocked_resolution_reports_blocker(self, executor, add_issue):
        await add_issue(github_url=None)

        outcome = await executor.run_next_step("issue-1", actor="alice")

        assert outcome.run_id is None
        assert outcome.blocker_code is BlockerCode.NO_GITHUB_LINK

    async def test_locked_issue(self, session, executor, add_issue, github):
        await add_issue(status="SPEC_READY")
        locks = LoopLockRepository(session)
        assert await locks.acquire("issue-1", "bob:req-0", 300)

        outcome = await executor.run_next_step("issue-1", actor="alice")

        assert outcome.blocked
        assert outcome.blocker_code is BlockerCode.LOCKED
        assert outcome.run_id is None
        assert outcome.message == "Issue is locked by another execution"

    async def test_lock_is_released(self, session, executor, add_issue):
        await add_issue(status="SPEC_READY")

        await executor.run_next_step("issue-1", actor="alice")

        assert await LoopLockRepository(session).acquire("issue-1", "bob:req-9", 300)

    async def test_step_exception_fails_run(self, session, executor, add_issue, github):
        await add_issue(status="IMPLEMENTING_PREP", pr_url=PR_URL)
        github.get_pull_request.side_effect = RuntimeError("boom")

        outcome = await executor.run_next_step("issue-1", actor="alice")

        assert not outcome.success
        assert outcome.error == "boom"
        run = await LoopRunRepository(session).get(outcome.run_id)
        assert run.status is LoopRunStatus.FAILED
        assert await LoopLockRepository(session).acquire("issue-1", "bob:req-9", 300)

    async def test_dry_run_leaves_issue_untouched(self, stores, executor, add_issue, github):
        await add_issue(status="REVIEW_READY", pr_url=PR_URL)

        outcome = await executor.run_next_step(
            "issue-1", actor="alice", mode=ExecutionMode.DRY_RUN
        )

        assert outcome.success
        assert outcome.step is LoopStep.S5_MERGE
        github.merge_pull_request.assert_not_awaited()
        assert (await stores.issues.get("issue-1")).status == "REVIEW_READY"
        events = await stores.timeline.list_for_issue("issue-1")
        assert events[0].payload["mode"] == "dryRun"

    async def test_full_loop_reaches_verified(self, stores, executor, add_issue, github):
        await add_issue(
            pr_url=PR_URL, current_draft_id="draft-1", draft_validation_status="valid"
        )

        steps = []
        for _ in range(4):
            outcome = await executor.run_next_step("issue-1", actor="alice")
            assert outcome.success, outcome.message
            steps.append(outcome.step)

        github.get_pull_request.return_value = MERGED_PR
        for _ in range(2):
            outcome = await executor.run_next_step("issue-1", actor="alice")
            assert outcome.success, outcome.message
            steps.append(outcome.step)

        assert steps == [
            LoopStep.S2_SPEC_READY,
            LoopStep.S3_IMPLEMENT_PREP,
            LoopStep.S4_REVIEW,
            LoopStep.S5_MERGE,
            LoopStep.S6_DEPLOYMENT_OBSERVE,
            LoopStep.S7_VERIFY_GATE,
        ]
        issue = await stores.issues.get("issue-1")
        assert issue.status == "VERIFIED"
        assert issue.merge_sha == "mergesha"

        final = await executor.run_next_step("issue-1", actor="alice")
        assert final.step is None
        assert final.run_id is None


class AdvancingLockRepository(LoopLockRepository):
    """Lock store that lets another writer move the issue forward before the lock is granted."""

    def __init__(self, session, stores):
        super().__init__(session)
        self.stores = stores

    async def acquire(self, issue_id, owner, ttl_seconds):
        await self.stores.issues.update_fields(
            issue_id, status="IMPLEMENTING_PREP", pr_url=PR_URL
        )
        return await super().acquire(issue_id, owner, ttl_seconds)


@pytest.mark.asyncio
class TestConcurrentAdvance:
    async def test_step_resolved_from_issue_state_under_lock(
        self, session, stores, github, add_issue
    ):
        await add_issue(status="SPEC_READY")
        counter = itertools.count(1)
        executor = LoopExecutor(
            stores,
            LoopRunRepository(session),
            RunStepRepository(session),
            AdvancingLockRepository(session, stores),
            build_step_executors(github),
            id_factory=lambda: f"id-{next(counter)}",
        )

        outcome = await executor.run_next_step("issue-1", actor="alice")

        assert outcome.success, outcome.message
        assert outcome.step is LoopStep.S4_REVIEW
        assert outcome.blocker_code is None
        assert (await stores.issues.get("issue-1")).status == "REVIEW_READY"
