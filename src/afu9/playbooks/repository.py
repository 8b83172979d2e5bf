"""
Playbook run persistence.

Runs and steps are written as they transition. The remediation executor
also looks up succeeded steps by idempotency key to avoid re-applying a
mutating step for the same incident.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from afu9.core.clock import utcnow
from afu9.db.models import PlaybookRunModel, PlaybookStepModel, RemediationAuditEventModel
from afu9.playbooks.models import (
    PlaybookRunRecord,
    PlaybookStepRecord,
    RunStatus,
    StepStatus,
)


class PlaybookRunRepository:
    """Repository for playbook runs, their steps and remediation audit events."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_run(
        self,
        run_id: str,
        *,
        playbook_id: str,
        playbook_version: str,
        env: str | None,
        status: RunStatus = RunStatus.PENDING,
        run_key: str | None = None,
        incident_id: str | None = None,
        inputs_hash: str | None = None,
        lawbook_version: str | None = None,
    ) -> PlaybookRunRecord:
        model = PlaybookRunModel(
            id=run_id,
            playbook_id=playbook_id,
            playbook_version=playbook_version,
            env=env,
            status=status.value,
            run_key=run_key,
            incident_id=incident_id,
            inputs_hash=inputs_hash,
            lawbook_version=lawbook_version,
            created_at=utcnow(),
        )
        self.session.add(model)
        await self.session.flush()
        return self._run_to_domain(model)

    async def get_run(self, run_id: str) -> PlaybookRunRecord | None:
        model = await self.session.get(PlaybookRunModel, run_id)
        return self._run_to_domain(model) if model else None

    async def get_run_by_key(self, run_key: str) -> PlaybookRunRecord | None:
        result = await self.session.execute(
            select(PlaybookRunModel).where(PlaybookRunModel.run_key == run_key)
        )
        model = result.scalar_one_or_none()
        return self._run_to_domain(model) if model else None

    async def update_run(
        self,
        run_id: str,
        *,
        status: RunStatus,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        summary: Mapping[str, Any] | None = None,
        result: Mapping[str, Any] | None = None,
    ) -> None:
        model = await self.session.get(PlaybookRunModel, run_id)
        if model is None:
            raise LookupError(f"playbook run {run_id} not found")
        model.status = status.value
        if started_at is not None:
            model.started_at = started_at
        if completed_at is not None:
            model.completed_at = completed_at
        if summary is not None:
            model.summary = dict(summary)
        if result is not None:
            model.result = dict(result)
        await self.session.flush()

    async def create_step(
        self,
        step_row_id: str,
        *,
        run_id: str,
        step_id: str,
        step_index: int,
        action_type: str,
        input: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
        status: StepStatus = StepStatus.PENDING,
    ) -> PlaybookStepRecord:
        model = PlaybookStepModel(
            id=step_row_id,
            run_id=run_id,
            step_id=step_id,
            step_index=step_index,
            action_type=action_type,
            status=status.value,
            attempts=0,
            idempotency_key=idempotency_key,
            input=dict(input) if input is not None else None,
        )
        self.session.add(model)
        await self.session.flush()
        return self._step_to_domain(model)

    async def update_step(
        self,
        step_row_id: str,
        *,
        status: StepStatus,
        attempts: int | None = None,
        output: Mapping[str, Any] | None = None,
        error: Mapping[str, Any] | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> None:
        model = await self.session.get(PlaybookStepModel, step_row_id)
        if model is None:
            raise LookupError(f"playbook step {step_row_id} not found")
        model.status = status.value
        if attempts is not None:
            model.attempts = attempts
        if output is not None:
            model.output = dict(output)
        if error is not None:
            model.error = dict(error)
        if started_at is not None:
            model.started_at = started_at
        if completed_at is not None:
            model.completed_at = completed_at
        await self.session.flush()

    async def list_steps(self, run_id: str) -> list[PlaybookStepRecord]:
        result = await self.session.execute(
            select(PlaybookStepModel)
            .where(PlaybookStepModel.run_id == run_id)
            .order_by(PlaybookStepModel.step_index)
        )
        return [self._step_to_domain(m) for m in result.scalars().all()]

    async def find_succeeded_step(
        self, incident_id: str, idempotency_key: str
    ) -> PlaybookStepRecord | None:
        """Most recent successful step with this key in any run for the incident."""
        result = await self.session.execute(
            select(PlaybookStepModel)
            .join(PlaybookRunModel, PlaybookRunModel.id == PlaybookStepModel.run_id)
            .where(
                PlaybookRunModel.incident_id == incident_id,
                PlaybookStepModel.idempotency_key == idempotency_key,
                PlaybookStepModel.status == StepStatus.SUCCESS.value,
            )
            .order_by(PlaybookStepModel.completed_at.desc())
            .limit(1)
        )
        model = result.scalar_one_or_none()
        return self._step_to_domain(model) if model else None

    async def record_audit_event(
        self,
        *,
        run_id: str,
        incident_id: str,
        event_type: str,
        lawbook_version: str | None,
        payload: Mapping[str, Any],
    ) -> None:
        self.session.add(
            RemediationAuditEventModel(
                run_id=run_id,
                incident_id=incident_id,
                event_type=event_type,
                lawbook_version=lawbook_version,
                payload=dict(payload),
                created_at=utcnow(),
            )
        )
        await self.session.flush()

    async def list_audit_events(self, run_id: str) -> list[dict[str, Any]]:
        result = await self.session.execute(
            select(RemediationAuditEventModel)
            .where(RemediationAuditEventModel.run_id == run_id)
            .order_by(RemediationAuditEventModel.id)
        )
        return [
            {
                "eventType": m.event_type,
                "incidentId": m.incident_id,
                "lawbookVersion": m.lawbook_version,
                "payload": m.payload,
            }
            for m in result.scalars().all()
        ]

    @staticmethod
    def _run_to_domain(model: PlaybookRunModel) -> PlaybookRunRecord:
        return PlaybookRunRecord(
            id=model.id,
            playbook_id=model.playbook_id,
            playbook_version=model.playbook_version,
            env=model.env,
            status=RunStatus(model.status),
            run_key=model.run_key,
            incident_id=model.incident_id,
            inputs_hash=model.inputs_hash,
            lawbook_version=model.lawbook_version,
            result=model.result,
            created_at=model.created_at,
            started_at=model.started_at,
            completed_at=model.completed_at,
        )

    @staticmethod
    def _step_to_domain(model: PlaybookStepModel) -> PlaybookStepRecord:
        return PlaybookStepRecord(
            id=model.id,
            run_id=model.run_id,
            step_id=model.step_id,
            step_index=model.step_index,
            action_type=model.action_type,
            status=StepStatus(model.status),
            attempts=model.attempts,
            idempotency_key=model.idempotency_key,
            output=model.output,
            error=model.error,
            started_at=model.started_at,
            completed_at=model.completed_at,
        )
