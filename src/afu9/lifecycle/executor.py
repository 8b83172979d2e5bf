"""
Loop executor: runs exactly one lifecycle step per call.

The executor holds a per-issue lock for the duration of the step, resolves
the next step from the issue's projected status, and brackets the step with
an append-only STARTED / SUCCEEDED|FAILED pair in the run step log.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Callable, Mapping

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from afu9.clients.github import GitHubClient
from afu9.config import get_settings
from afu9.core.errors import ValidationError
from afu9.domain.models import LoopRunStatus, RunStepStatus
from afu9.lifecycle.models import ExecutionMode, StepExecutionContext, StepExecutionResult
from afu9.lifecycle.repository import LoopLockRepository, LoopRunRepository, RunStepRepository
from afu9.lifecycle.state_machine import (
    BlockerCode,
    LoopStep,
    draft_from_issue,
    resolve_next_step,
)
from afu9.lifecycle.steps import LoopStores, StepExecutor, build_step_executors

logger = structlog.get_logger()

RUN_TYPE_NEXT_STEP = "next_step"


@dataclass(frozen=True)
class LoopRunOutcome:
    issue_id: str
    run_id: str | None
    step: LoopStep | None
    result: StepExecutionResult | None = None
    blocked: bool = False
    blocker_code: BlockerCode | None = None
    message: str = ""
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.result is not None and self.result.success

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "issueId": self.issue_id,
            "runId": self.run_id,
            "step": self.step.value if self.step else None,
            "success": self.success,
            "blocked": self.blocked,
            "message": self.message,
        }
        if self.blocker_code is not None:
            data["blockerCode"] = self.blocker_code.value
        if self.result is not None:
            data["stepResult"] = self.result.to_dict()
        if self.error is not None:
            data["error"] = self.error
        return data


class LoopExecutor:
    def __init__(
        self,
        stores: LoopStores,
        runs: LoopRunRepository,
        run_steps: RunStepRepository,
        locks: LoopLockRepository,
        executors: Mapping[LoopStep, StepExecutor],
        *,
        lock_ttl_seconds: int = 300,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._stores = stores
        self._runs = runs
        self._run_steps = run_steps
        self._locks = locks
        self._executors = dict(executors)
        self._lock_ttl_seconds = lock_ttl_seconds
        self._id_factory = id_factory

    @classmethod
    def for_session(cls, session: AsyncSession, github: GitHubClient) -> LoopExecutor:
        settings = get_settings()
        return cls(
            LoopStores.for_session(session),
            LoopRunRepository(session),
            RunStepRepository(session),
            LoopLockRepository(session),
            build_step_executors(github),
            lock_ttl_seconds=settings.loop_lock_ttl_seconds,
        )

    async def run_next_step(
        self,
        issue_id: str,
        *,
        actor: str,
        mode: ExecutionMode = ExecutionMode.EXECUTE,
        request_id: str | None = None,
    ) -> LoopRunOutcome:
        request_id = request_id or self._id_factory()
        if await self._stores.issues.get(issue_id) is None:
            raise ValidationError(f"Issue {issue_id} not found", code="ISSUE_NOT_FOUND")

        log = logger.bind(issue_id=issue_id, request_id=request_id, actor=actor, mode=mode.value)
        owner = f"{actor}:{request_id}"
        if not await self._locks.acquire(issue_id, owner, self._lock_ttl_seconds):
            log.warning("loop_issue_locked")
            return LoopRunOutcome(
                issue_id=issue_id,
                run_id=None,
                step=None,
                blocked=True,
                blocker_code=BlockerCode.LOCKED,
                message="Issue is locked by another execution",
            )

        try:
            # Resolve against the row as it is under the lock, not the pre-lock read.
            issue = await self._stores.issues.get(issue_id, fresh=True)
            if issue is None:
                raise ValidationError(f"Issue {issue_id} not found", code="ISSUE_NOT_FOUND")
            resolution = resolve_next_step(
                issue,
                draft_from_issue(issue),
                has_deployment_observations=await self._stores.observations.exists_for_issue(
                    issue_id
                ),
            )
            if resolution.step is None:
                log.info(
                    "loop_no_step",
                    blocked=resolution.blocked,
                    blocker_code=resolution.blocker_code,
                    reason=resolution.blocker_message,
                )
                return LoopRunOutcome(
                    issue_id=issue_id,
                    run_id=None,
                    step=None,
                    blocked=resolution.blocked,
                    blocker_code=resolution.blocker_code,
                    message=resolution.blocker_message or "",
                )
            return await self._run_step(resolution.step, issue_id, actor, mode, request_id)
        finally:
            await self._locks.release(issue_id, owner)

    async def _run_step(
        self,
        step: LoopStep,
        issue_id: str,
        actor: str,
        mode: ExecutionMode,
        request_id: str,
    ) -> LoopRunOutcome:
        executor = self._executors.get(step)
        if executor is None:
            raise ValidationError(f"No executor registered for {step}", code="UNKNOWN_STEP")

        run_id = self._id_factory()
        await self._runs.create(
            run_id,
            issue_id=issue_id,
            run_type=RUN_TYPE_NEXT_STEP,
            actor=actor,
            request_id=request_id,
            mode=mode.value,
        )
        await self._runs.mark_running(run_id)

        step_id = self._id_factory()
        await self._run_steps.append(
            run_id=run_id, step_id=step_id, step_name=step.value, status=RunStepStatus.STARTED
        )

        context = StepExecutionContext(
            issue_id=issue_id, run_id=run_id, request_id=request_id, actor=actor, mode=mode
        )
        try:
            result = await executor.execute(self._stores, context)
        except Exception as exc:
            logger.error("loop_run_failed", run_id=run_id, step=step.value, exc_info=True)
            await self._run_steps.append(
                run_id=run_id,
                step_id=step_id,
                step_name=step.value,
                status=RunStepStatus.FAILED,
                error_message=str(exc),
            )
            await self._runs.mark_finished(run_id, LoopRunStatus.FAILED, str(exc))
            return LoopRunOutcome(
                issue_id=issue_id,
                run_id=run_id,
                step=step,
                message=f"{step.value} failed",
                error=str(exc),
            )

        if result.success:
            await self._run_steps.append(
                run_id=run_id,
                step_id=step_id,
                step_name=step.value,
                status=RunStepStatus.SUCCEEDED,
                evidence_refs=[{"fieldsChanged": list(result.fields_changed)}],
            )
            await self._runs.mark_finished(run_id, LoopRunStatus.DONE)
        else:
            error_message = (
                f"{result.blocker_code.value}: {result.message}"
                if result.blocker_code
                else result.message
            )
            await self._run_steps.append(
                run_id=run_id,
                step_id=step_id,
                step_name=step.value,
                status=RunStepStatus.FAILED,
                error_message=error_message,
            )
            await self._runs.mark_finished(run_id, LoopRunStatus.FAILED, error_message)

        logger.info(
            "loop_run_completed",
            run_id=run_id,
            issue_id=issue_id,
            step=step.value,
            success=result.success,
            blocked=result.blocked,
        )
        return LoopRunOutcome(
            issue_id=issue_id,
            run_id=run_id,
            step=step,
            result=result,
            blocked=result.blocked,
            blocker_code=result.blocker_code,
            message=result.message,
        )
