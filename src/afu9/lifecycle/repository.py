"""
Lifecycle persistence.

``afu9_issues.status`` is the projected current state and the only thing
read for preconditions. Run steps and timeline events are append-only logs;
nothing here updates or deletes them.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Mapping, Sequence

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from afu9.core.clock import utcnow
from afu9.db.models import (
    DeploymentObservationModel,
    IssueModel,
    LoopLockModel,
    LoopRunModel,
    RunStepModel,
    TimelineEventModel,
)
from afu9.db.repositories import insert_or_ignore
from afu9.domain.models import (
    Issue,
    LoopRun,
    LoopRunStatus,
    RunStepEvent,
    RunStepStatus,
    TimelineEvent,
)
from afu9.verification.models import DeploymentObservation

logger = structlog.get_logger()

_ISSUE_FIELDS = frozenset(
    {
        "title",
        "status",
        "github_url",
        "pr_url",
        "current_draft_id",
        "handoff_state",
        "draft_validation_status",
        "assignee",
        "picked_at",
        "merge_sha",
    }
)


class IssueRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, issue: Issue) -> None:
        self.session.add(IssueModel(**issue.model_dump()))
        await self.session.flush()

    async def get(self, issue_id: str, *, fresh: bool = False) -> Issue | None:
        """Load an issue. ``fresh`` bypasses the session identity map and re-reads the row."""
        model = await self.session.get(IssueModel, issue_id, populate_existing=fresh)
        return self._to_domain(model) if model else None

    async def update_fields(self, issue_id: str, **fields: Any) -> list[str]:
        """Set the given columns. Returns the names of fields whose value changed."""
        unknown = set(fields) - _ISSUE_FIELDS
        if unknown:
            raise ValueError(f"unknown issue fields: {', '.join(sorted(unknown))}")
        model = await self.session.get(IssueModel, issue_id)
        if model is None:
            raise LookupError(f"issue {issue_id} not found")
        changed = []
        for name, value in fields.items():
            if getattr(model, name) != value:
                setattr(model, name, value)
                changed.append(name)
        if changed:
            model.updated_at = utcnow()
            await self.session.flush()
        return changed

    @staticmethod
    def _to_domain(model: IssueModel) -> Issue:
        return Issue(
            id=model.id,
            title=model.title,
            status=model.status,
            github_url=model.github_url,
            pr_url=model.pr_url,
            current_draft_id=model.current_draft_id,
            handoff_state=model.handoff_state,
            draft_validation_status=model.draft_validation_status,
            assignee=model.assignee,
            picked_at=model.picked_at,
            merge_sha=model.merge_sha,
        )


class LoopRunRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(
        self,
        run_id: str,
        *,
        issue_id: str,
        run_type: str,
        actor: str | None,
        request_id: str | None,
        mode: str,
    ) -> LoopRun:
        model = LoopRunModel(
            id=run_id,
            issue_id=issue_id,
            type=run_type,
            status=LoopRunStatus.CREATED,
            actor=actor,
            request_id=request_id,
            mode=mode,
            created_at=utcnow(),
        )
        self.session.add(model)
        await self.session.flush()
        return self._to_domain(model)

    async def get(self, run_id: str) -> LoopRun | None:
        model = await self.session.get(LoopRunModel, run_id)
        return self._to_domain(model) if model else None

    async def mark_running(self, run_id: str) -> None:
        model = await self._require(run_id)
        model.status = LoopRunStatus.RUNNING
        model.started_at = utcnow()
        await self.session.flush()

    async def mark_finished(
        self, run_id: str, status: LoopRunStatus, error_message: str | None = None
    ) -> None:
        model = await self._require(run_id)
        model.status = status
        model.error_message = error_message
        model.finished_at = utcnow()
        await self.session.flush()

    async def _require(self, run_id: str) -> LoopRunModel:
        model = await self.session.get(LoopRunModel, run_id)
        if model is None:
            raise LookupError(f"loop run {run_id} not found")
        return model

    @staticmethod
    def _to_domain(model: LoopRunModel) -> LoopRun:
        return LoopRun(
            id=model.id,
            issue_id=model.issue_id,
            type=model.type,
            status=LoopRunStatus(model.status),
            actor=model.actor,
            request_id=model.request_id,
            mode=model.mode,
            error_message=model.error_message,
            started_at=model.started_at,
            finished_at=model.finished_at,
        )


class RunStepRepository:
    """Append-only step event log."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(
        self,
        *,
        run_id: str,
        step_id: str,
        step_name: str,
        status: RunStepStatus,
        evidence_refs: Sequence[Any] = (),
        error_message: str | None = None,
    ) -> None:
        self.session.add(
            RunStepModel(
                run_id=run_id,
                step_id=step_id,
                step_name=step_name,
                status=status,
                evidence_refs=list(evidence_refs),
                error_message=error_message,
                created_at=utcnow(),
            )
        )
        await self.session.flush()

    async def list_for_run(self, run_id: str) -> list[RunStepEvent]:
        result = await self.session.execute(
            select(RunStepModel)
            .where(RunStepModel.run_id == run_id)
            .order_by(RunStepModel.created_at, RunStepModel.id)
        )
        return [
            RunStepEvent(
                run_id=m.run_id,
                step_id=m.step_id,
                step_name=m.step_name,
                status=RunStepStatus(m.status),
                evidence_refs=m.evidence_refs or [],
                error_message=m.error_message,
                created_at=m.created_at,
            )
            for m in result.scalars().all()
        ]


class TimelineRepository:
    """Append-only issue timeline."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(self, event: TimelineEvent) -> None:
        self.session.add(
            TimelineEventModel(
                issue_id=event.issue_id,
                run_id=event.run_id,
                event_type=event.event_type,
                step=event.step,
                state_before=event.state_before,
                state_after=event.state_after,
                blocked=event.blocked,
                blocker_code=event.blocker_code,
                payload=dict(event.payload),
                created_at=event.created_at or utcnow(),
            )
        )
        await self.session.flush()

    async def list_for_issue(self, issue_id: str) -> list[TimelineEvent]:
        result = await self.session.execute(
            select(TimelineEventModel)
            .where(TimelineEventModel.issue_id == issue_id)
            .order_by(TimelineEventModel.created_at, TimelineEventModel.id)
        )
        return [
            TimelineEvent(
                issue_id=m.issue_id,
                run_id=m.run_id,
                event_type=m.event_type,
                step=m.step,
                state_before=m.state_before,
                state_after=m.state_after,
                blocked=m.blocked,
                blocker_code=m.blocker_code,
                payload=m.payload or {},
                created_at=m.created_at,
            )
            for m in result.scalars().all()
        ]


class DeploymentObservationRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(
        self,
        issue_id: str,
        observation: DeploymentObservation,
        *,
        deployed_at: datetime | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> bool:
        """Insert unless already observed for this issue. Returns True when new."""
        return await insert_or_ignore(
            self.session,
            DeploymentObservationModel,
            {
                "issue_id": issue_id,
                "deployment_id": str(observation.deployment_id),
                "environment": observation.environment,
                "sha": observation.sha,
                "status": observation.status,
                "is_authentic": observation.is_authentic,
                "deployed_at": deployed_at,
                "payload": dict(payload or {}),
                "observed_at": observation.observed_at or utcnow(),
            },
            ("issue_id", "deployment_id"),
        )

    async def list_for_issue(self, issue_id: str) -> list[DeploymentObservation]:
        result = await self.session.execute(
            select(DeploymentObservationModel)
            .where(DeploymentObservationModel.issue_id == issue_id)
            .order_by(DeploymentObservationModel.observed_at, DeploymentObservationModel.id)
        )
        return [
            DeploymentObservation(
                deployment_id=m.deployment_id,
                environment=m.environment,
                sha=m.sha,
                status=m.status,
                is_authentic=m.is_authentic,
                observed_at=m.observed_at,
            )
            for m in result.scalars().all()
        ]

    async def exists_for_issue(self, issue_id: str) -> bool:
        result = await self.session.execute(
            select(func.count(DeploymentObservationModel.id)).where(
                DeploymentObservationModel.issue_id == issue_id
            )
        )
        return int(result.scalar_one()) > 0


class LoopLockRepository:
    """Per-issue execution lock with expiry."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def acquire(self, issue_id: str, owner: str, ttl_seconds: int) -> bool:
        now = utcnow()
        await self.session.execute(
            delete(LoopLockModel).where(
                LoopLockModel.issue_id == issue_id, LoopLockModel.expires_at < now
            )
        )
        acquired = await insert_or_ignore(
            self.session,
            LoopLockModel,
            {
                "issue_id": issue_id,
                "lock_owner": owner,
                "acquired_at": now,
                "expires_at": now + timedelta(seconds=ttl_seconds),
            },
            ("issue_id",),
        )
        if not acquired:
            logger.info("loop_lock_contended", issue_id=issue_id, owner=owner)
        return acquired

    async def release(self, issue_id: str, owner: str) -> None:
        await self.session.execute(
            delete(LoopLockModel).where(
                LoopLockModel.issue_id == issue_id, LoopLockModel.lock_owner == owner
            )
        )
