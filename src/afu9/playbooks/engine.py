"""
Playbook execution engine.

Runs a playbook definition step by step, in declared order, persisting the
run and each step as they transition. A failed step does not stop the run;
the run fails if any step's final attempt failed.
"""

from __future__ import annotations

import time
import uuid
from typing import Callable, Mapping

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from afu9.config import get_settings
from afu9.core.clock import utcnow
from afu9.playbooks.models import (
    PlaybookDefinition,
    PlaybookRunResult,
    PlaybookRunSummary,
    PlaybookStep,
    PlaybookStepResult,
    RunStatus,
    StepContext,
    StepResult,
    StepStatus,
)
from afu9.playbooks.registry import StepActionRegistry
from afu9.playbooks.repository import PlaybookRunRepository
from afu9.playbooks.retry import RetryPolicy

logger = structlog.get_logger()


def _new_id() -> str:
    return str(uuid.uuid4())


class PlaybookEngine:
    """Executes generic playbooks whose steps are registered step actions."""

    def __init__(
        self,
        runs: PlaybookRunRepository,
        registry: StepActionRegistry | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self._runs = runs
        self._registry = registry or StepActionRegistry.with_builtins()
        self._retry = retry_policy or RetryPolicy()
        self._new_id = id_factory

    @classmethod
    def for_session(cls, session: AsyncSession) -> PlaybookEngine:
        settings = get_settings()
        return cls(
            PlaybookRunRepository(session),
            StepActionRegistry.with_builtins(settings),
            retry_policy=RetryPolicy.from_settings(settings),
        )

    async def execute(
        self,
        definition: PlaybookDefinition,
        env: str | None,
        variables: Mapping[str, str] | None = None,
    ) -> PlaybookRunResult:
        run_id = self._new_id()
        variables = dict(variables or {})
        started = time.monotonic()

        await self._runs.create_run(
            run_id,
            playbook_id=definition.id,
            playbook_version=definition.version,
            env=env,
            status=RunStatus.PENDING,
        )
        started_at = utcnow()
        await self._runs.update_run(run_id, status=RunStatus.RUNNING, started_at=started_at)
        logger.info(
            "playbook_run_started",
            run_id=run_id,
            playbook_id=definition.id,
            playbook_version=definition.version,
            env=env,
            steps=len(definition.steps),
        )

        results: list[PlaybookStepResult] = []
        for index, step in enumerate(definition.steps):
            results.append(await self._execute_step(run_id, index, step, env, variables))

        status = (
            RunStatus.FAILED
            if any(r.status is StepStatus.FAILED for r in results)
            else RunStatus.SUCCESS
        )
        summary = PlaybookRunSummary.from_steps(results, int((time.monotonic() - started) * 1000))
        run = PlaybookRunResult(
            run_id=run_id,
            playbook_id=definition.id,
            playbook_version=definition.version,
            env=env,
            status=status,
            steps=results,
            summary=summary,
            started_at=started_at,
            completed_at=utcnow(),
        )
        await self._runs.update_run(
            run_id,
            status=status,
            completed_at=run.completed_at,
            summary=summary.to_dict(),
            result=run.to_dict(),
        )
        logger.info(
            "playbook_run_completed",
            run_id=run_id,
            playbook_id=definition.id,
            status=status.value,
            **summary.to_dict(),
        )
        return run

    async def _execute_step(
        self,
        run_id: str,
        index: int,
        step: PlaybookStep,
        env: str | None,
        variables: Mapping[str, str],
    ) -> PlaybookStepResult:
        row_id = self._new_id()
        await self._runs.create_step(
            row_id,
            run_id=run_id,
            step_id=step.step_id,
            step_index=index,
            action_type=step.action_type,
            input=step.input,
        )
        started_at = utcnow()
        await self._runs.update_step(row_id, status=StepStatus.RUNNING, started_at=started_at)

        context = StepContext(run_id=run_id, step_id=step.step_id, env=env, variables=variables)

        async def attempt(number: int) -> StepResult:
            if number > 1:
                logger.info(
                    "playbook_step_retry", run_id=run_id, step_id=step.step_id, attempt=number
                )
            await self._runs.update_step(row_id, status=StepStatus.RUNNING, attempts=number)
            return await self._run_action(step, context)

        outcome, attempts = await self._retry.run(attempt, step.retries)
        completed_at = utcnow()
        await self._runs.update_step(
            row_id,
            status=outcome.status,
            attempts=attempts,
            output=outcome.output,
            error=outcome.error.to_dict() if outcome.error else None,
            completed_at=completed_at,
        )

        log = logger.info if outcome.status is not StepStatus.FAILED else logger.warning
        log(
            "playbook_step_completed",
            run_id=run_id,
            step_id=step.step_id,
            status=outcome.status.value,
            attempts=attempts,
            error_code=outcome.error.code if outcome.error else None,
        )
        return PlaybookStepResult(
            step_id=step.step_id,
            title=step.title,
            action_type=step.action_type,
            status=outcome.status,
            attempts=attempts,
            output=outcome.output,
            error=outcome.error,
            started_at=started_at,
            completed_at=completed_at,
        )

    async def _run_action(self, step: PlaybookStep, context: StepContext) -> StepResult:
        action = self._registry.get(step.action_type)
        if action is None:
            return StepResult.failure(
                "UNKNOWN_ACTION", f"No action registered for type '{step.action_type}'"
            )
        try:
            step_input = action.input_model.model_validate(step.input)
        except PydanticValidationError as exc:
            return StepResult.failure(
                "INVALID_INPUT",
                f"Invalid input for step '{step.step_id}'",
                {"errors": [err["msg"] for err in exc.errors()]},
            )
        try:
            return await action.run(step_input, context)
        except Exception as exc:
            logger.error(
                "playbook_step_error",
                run_id=context.run_id,
                step_id=step.step_id,
                exc_info=True,
            )
            return StepResult.failure("STEP_EXECUTION_ERROR", str(exc) or type(exc).__name__)
