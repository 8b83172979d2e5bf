"""
Incident-anchored remediation runs.

A remediation run is keyed by ``{incidentKey}:{playbookId}:{inputsHash}`` so
repeated invocations for the same incident and inputs converge on one run.
Before any step executes, the active lawbook must allow remediation, the
playbook and every action type it uses, and the incident's evidence must
satisfy the playbook's evidence predicates. Gate failures produce a
``skipped`` run. Steps then run sequentially and the run stops at the first
failed step.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from afu9.adapters.base import AdapterError
from afu9.automation.evaluator import LawbookSource
from afu9.config import get_settings
from afu9.core.clock import utcnow
from afu9.core.errors import EvidenceError, ValidationError
from afu9.domain.models import Incident
from afu9.incidents.evidence import Evidence, check_all_evidence_predicates, parse_evidence
from afu9.incidents.repository import IncidentRepository
from afu9.lawbook.cache import LawbookCache
from afu9.lawbook.repository import LawbookRepository, LawbookVersionRecord
from afu9.lawbook.schema import canonical_json, sha256_hex
from afu9.playbooks.models import (
    PlaybookDefinition,
    PlaybookRunRecord,
    PlaybookRunResult,
    PlaybookRunSummary,
    PlaybookStep,
    PlaybookStepRecord,
    PlaybookStepResult,
    RunStatus,
    StepError,
    StepResult,
    StepStatus,
)
from afu9.playbooks.repository import PlaybookRunRepository
from afu9.playbooks.retry import RetryPolicy

logger = structlog.get_logger()


def compute_inputs_hash(inputs: Mapping[str, Any]) -> str:
    return sha256_hex(canonical_json(dict(inputs)))


def build_run_key(incident_key: str, playbook_id: str, inputs_hash: str) -> str:
    return f"{incident_key}:{playbook_id}:{inputs_hash}"


def step_idempotency_key(incident_key: str, step_id: str) -> str:
    return f"{incident_key}:{step_id}"


def adapter_failure(error: AdapterError | None) -> StepResult:
    """Turn an adapter error into a failed step, passing its code through unchanged."""
    if error is None:
        return StepResult.failure("ADAPTER_ERROR", "Adapter returned neither a result nor an error")
    return StepResult.failure(error.code, error.message, error.details)


@dataclass(frozen=True)
class RemediationContext:
    """What a remediation step sees: the incident, its evidence and earlier outputs."""

    run_id: str
    step_id: str
    incident: Incident
    evidence: Sequence[Evidence]
    inputs: Mapping[str, Any]
    outputs: Mapping[str, Mapping[str, Any]]
    lawbook: LawbookVersionRecord
    idempotency_key: str

    def output_of(self, step_id: str) -> Mapping[str, Any] | None:
        return self.outputs.get(step_id)


class RemediationAction(Protocol):
    mutating: bool

    def idempotency_key(
        self,
        incident_key: str,
        step_id: str,
        evidence: Sequence[Evidence],
        inputs: Mapping[str, Any],
    ) -> str: ...

    async def run(self, context: RemediationContext) -> StepResult: ...


class RemediationStep:
    """
    Base for remediation steps. Unexpected exceptions become ``failure_code``.

    ``mutating`` marks steps that change something outside afu9. A successful
    mutating step is recorded under its idempotency key and later runs for the
    same incident reuse that output instead of applying the change again.
    Steps that only derive state from earlier outputs must stay non-mutating.
    """

    mutating = False
    failure_code = "EXECUTION_ERROR"

    def idempotency_key(
        self,
        incident_key: str,
        step_id: str,
        evidence: Sequence[Evidence],
        inputs: Mapping[str, Any],
    ) -> str:
        return step_idempotency_key(incident_key, step_id)

    async def run(self, context: RemediationContext) -> StepResult:
        try:
            return await self.execute(context)
        except Exception as exc:
            logger.error(
                "remediation_step_failed",
                run_id=context.run_id,
                step_id=context.step_id,
                error_code=self.failure_code,
                exc_info=True,
            )
            return StepResult.failure(self.failure_code, str(exc) or type(exc).__name__)

    async def execute(self, context: RemediationContext) -> StepResult:
        raise NotImplementedError


@dataclass(frozen=True)
class RemediationPlaybook:
    """A playbook definition bound to the actions that implement its steps."""

    definition: PlaybookDefinition
    actions: Mapping[str, RemediationAction] = field(default_factory=dict)

    def __post_init__(self) -> None:
        missing = [s.step_id for s in self.definition.steps if s.step_id not in self.actions]
        if missing:
            raise ValueError(f"no action bound for steps: {', '.join(missing)}")


class RemediationExecutor:
    """Executes remediation playbooks against incidents."""

    def __init__(
        self,
        runs: PlaybookRunRepository,
        incidents: IncidentRepository,
        lawbook_source: LawbookSource,
        *,
        retry_policy: RetryPolicy | None = None,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._runs = runs
        self._incidents = incidents
        self._lawbook_source = lawbook_source
        self._retry = retry_policy or RetryPolicy()
        self._new_id = id_factory

    @classmethod
    def for_session(
        cls, session: AsyncSession, *, lawbook_cache: LawbookCache | None = None
    ) -> RemediationExecutor:
        settings = get_settings()
        lawbooks = LawbookRepository(session)

        async def active_lawbook() -> LawbookVersionRecord | None:
            return await lawbooks.get_active(settings.lawbook_id)

        return cls(
            PlaybookRunRepository(session),
            IncidentRepository(session),
            lawbook_cache.get if lawbook_cache is not None else active_lawbook,
            retry_policy=RetryPolicy.from_settings(settings),
        )

    async def execute(
        self,
        incident_id: str,
        playbook: RemediationPlaybook,
        inputs: Mapping[str, Any] | None = None,
    ) -> PlaybookRunResult:
        incident = await self._incidents.get_incident(incident_id)
        if incident is None:
            raise ValidationError(f"Incident {incident_id} not found", code="INCIDENT_NOT_FOUND")

        definition = playbook.definition
        inputs = dict(inputs or {})
        inputs_hash = compute_inputs_hash(inputs)
        run_key = build_run_key(incident.incident_key, definition.id, inputs_hash)

        existing = await self._runs.get_run_by_key(run_key)
        if existing is not None and existing.status.is_terminal:
            logger.info(
                "remediation_run_reused",
                run_id=existing.id,
                run_key=run_key,
                status=existing.status.value,
            )
            return await self._load_result(existing)

        lawbook = await self._lawbook_source()
        if lawbook is None:
            return await self._skip(
                incident,
                definition,
                inputs_hash,
                None,
                "LAWBOOK_DENIED",
                "No active lawbook configured (fail-closed)",
            )
        denial = self._lawbook_denial(lawbook, definition, incident)
        if denial is not None:
            return await self._skip(
                incident, definition, inputs_hash, lawbook, "LAWBOOK_DENIED", denial
            )

        try:
            evidence = parse_evidence(await self._incidents.get_evidence(incident.id))
        except EvidenceError as exc:
            return await self._skip(
                incident, definition, inputs_hash, lawbook, "INVALID_EVIDENCE", exc.message
            )
        missing = check_all_evidence_predicates(definition.evidence_predicates(), evidence)
        if missing:
            return await self._skip(
                incident,
                definition,
                inputs_hash,
                lawbook,
                "EVIDENCE_MISSING",
                "Required evidence not satisfied",
                {"missingEvidence": [p.to_dict() for p in missing]},
            )

        if existing is None:
            record = await self._runs.create_run(
                self._new_id(),
                playbook_id=definition.id,
                playbook_version=definition.version,
                env=inputs.get("env"),
                run_key=run_key,
                incident_id=incident.id,
                inputs_hash=inputs_hash,
                lawbook_version=lawbook.lawbook_version,
            )
            await self._audit(
                record.id,
                incident.id,
                "PLANNED",
                lawbook.lawbook_version,
                {
                    "playbookId": definition.id,
                    "playbookVersion": definition.version,
                    "inputsHash": inputs_hash,
                    "steps": [
                        {"stepId": s.step_id, "actionType": s.action_type} for s in definition.steps
                    ],
                },
            )
        else:
            record = existing
            logger.info("remediation_run_resumed", run_id=record.id, run_key=run_key)

        return await self._run_steps(record, playbook, incident, evidence, inputs, lawbook)

    async def _run_steps(
        self,
        record: PlaybookRunRecord,
        playbook: RemediationPlaybook,
        incident: Incident,
        evidence: Sequence[Evidence],
        inputs: Mapping[str, Any],
        lawbook: LawbookVersionRecord,
    ) -> PlaybookRunResult:
        definition = playbook.definition
        run_id = record.id
        started = time.monotonic()
        started_at = record.started_at or utcnow()
        await self._runs.update_run(run_id, status=RunStatus.RUNNING, started_at=started_at)

        previous = {s.step_id: s for s in await self._runs.list_steps(run_id)}
        outputs: dict[str, Mapping[str, Any]] = {}
        results: list[PlaybookStepResult] = []

        for index, step in enumerate(definition.steps):
            action = playbook.actions[step.step_id]
            prior = previous.get(step.step_id)
            if prior is not None and prior.status is StepStatus.SUCCESS:
                result = _result_from_record(step, prior)
            else:
                result = await self._execute_step(
                    run_id,
                    index,
                    step,
                    action,
                    prior,
                    RemediationContext(
                        run_id=run_id,
                        step_id=step.step_id,
                        incident=incident,
                        evidence=tuple(evidence),
                        inputs=inputs,
                        outputs=dict(outputs),
                        lawbook=lawbook,
                        idempotency_key=action.idempotency_key(
                            incident.incident_key, step.step_id, evidence, inputs
                        ),
                    ),
                )
            results.append(result)
            outputs[step.step_id] = result.output
            if result.status is StepStatus.FAILED:
                break

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
            env=record.env,
            status=status,
            steps=results,
            summary=summary,
            incident_id=incident.id,
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
        await self._audit(
            run_id,
            incident.id,
            "COMPLETED" if status is RunStatus.SUCCESS else "FAILED",
            lawbook.lawbook_version,
            {"status": status.value, **summary.to_dict()},
        )
        logger.info(
            "remediation_run_completed",
            run_id=run_id,
            incident_id=incident.id,
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
        action: RemediationAction,
        prior: PlaybookStepRecord | None,
        context: RemediationContext,
    ) -> PlaybookStepResult:
        incident = context.incident
        if prior is None:
            row = await self._runs.create_step(
                self._new_id(),
                run_id=run_id,
                step_id=step.step_id,
                step_index=index,
                action_type=step.action_type,
                input=dict(context.inputs),
                idempotency_key=context.idempotency_key,
            )
            row_id = row.id
        else:
            row_id = prior.id

        started_at = utcnow()
        await self._runs.update_step(row_id, status=StepStatus.RUNNING, started_at=started_at)
        await self._audit(
            run_id,
            incident.id,
            "STEP_STARTED",
            context.lawbook.lawbook_version,
            {
                "stepId": step.step_id,
                "actionType": step.action_type,
                "idempotencyKey": context.idempotency_key,
            },
        )

        reused = None
        if action.mutating:
            reused = await self._runs.find_succeeded_step(incident.id, context.idempotency_key)

        if reused is not None:
            logger.info(
                "remediation_step_reused",
                run_id=run_id,
                step_id=step.step_id,
                idempotency_key=context.idempotency_key,
                source_run_id=reused.run_id,
            )
            outcome, attempts = StepResult.success(reused.output or {}), 0
        else:

            async def attempt(number: int) -> StepResult:
                await self._runs.update_step(row_id, status=StepStatus.RUNNING, attempts=number)
                try:
                    return await action.run(context)
                except Exception as exc:
                    logger.error(
                        "remediation_step_error",
                        run_id=run_id,
                        step_id=step.step_id,
                        exc_info=True,
                    )
                    return StepResult.failure("EXECUTION_ERROR", str(exc) or type(exc).__name__)

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
        await self._audit(
            run_id,
            incident.id,
            "STEP_FINISHED",
            context.lawbook.lawbook_version,
            {
                "stepId": step.step_id,
                "actionType": step.action_type,
                "status": outcome.status.value,
                "errorCode": outcome.error.code if outcome.error else None,
                "reused": reused is not None,
            },
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

    @staticmethod
    def _lawbook_denial(
        lawbook: LawbookVersionRecord,
        definition: PlaybookDefinition,
        incident: Incident,
    ) -> str | None:
        remediation = lawbook.lawbook.remediation
        if not remediation.enabled:
            return f"Remediation is disabled in lawbook {lawbook.lawbook_version}"
        if definition.id not in remediation.allowed_playbooks:
            return f"Playbook '{definition.id}' is not allowed by lawbook {lawbook.lawbook_version}"
        for action_type in definition.action_types:
            if action_type not in remediation.allowed_actions:
                return f"Action '{action_type}' is not allowed by lawbook {lawbook.lawbook_version}"
        if incident.category is not None and not definition.applies_to(incident.category):
            return (
                f"Playbook '{definition.id}' does not apply to incident category "
                f"'{incident.category}'"
            )
        return None

    async def _skip(
        self,
        incident: Incident,
        definition: PlaybookDefinition,
        inputs_hash: str,
        lawbook: LawbookVersionRecord | None,
        reason: str,
        message: str,
        details: Mapping[str, Any] | None = None,
    ) -> PlaybookRunResult:
        # Skipped runs do not claim the run key, so a later invocation can
        # proceed once the lawbook or evidence allows it.
        run_id = self._new_id()
        lawbook_version = lawbook.lawbook_version if lawbook else None
        now = utcnow()
        run = PlaybookRunResult(
            run_id=run_id,
            playbook_id=definition.id,
            playbook_version=definition.version,
            env=None,
            status=RunStatus.SKIPPED,
            incident_id=incident.id,
            skip_reason=reason,
            started_at=now,
            completed_at=now,
        )
        await self._runs.create_run(
            run_id,
            playbook_id=definition.id,
            playbook_version=definition.version,
            env=None,
            status=RunStatus.SKIPPED,
            incident_id=incident.id,
            inputs_hash=inputs_hash,
            lawbook_version=lawbook_version,
        )
        await self._runs.update_run(
            run_id,
            status=RunStatus.SKIPPED,
            completed_at=now,
            result={**run.to_dict(), "message": message, **(details or {})},
        )
        await self._audit(
            run_id,
            incident.id,
            "SKIPPED",
            lawbook_version,
            {"skipReason": reason, "message": message, **(details or {})},
        )
        logger.warning(
            "remediation_run_skipped",
            run_id=run_id,
            incident_id=incident.id,
            playbook_id=definition.id,
            skip_reason=reason,
            message=message,
        )
        return run

    async def _load_result(self, record: PlaybookRunRecord) -> PlaybookRunResult:
        steps = [
            PlaybookStepResult(
                step_id=s.step_id,
                title=s.step_id,
                action_type=s.action_type,
                status=s.status,
                attempts=s.attempts,
                output=s.output or {},
                error=StepError.from_dict(s.error) if s.error else None,
                started_at=s.started_at,
                completed_at=s.completed_at,
            )
            for s in await self._runs.list_steps(record.id)
        ]
        summary_data = (record.result or {}).get("summary") or {}
        return PlaybookRunResult(
            run_id=record.id,
            playbook_id=record.playbook_id,
            playbook_version=record.playbook_version,
            env=record.env,
            status=record.status,
            steps=steps,
            summary=PlaybookRunSummary(
                total_steps=summary_data.get("totalSteps", len(steps)),
                success_count=summary_data.get("successCount", 0),
                failed_count=summary_data.get("failedCount", 0),
                skipped_count=summary_data.get("skippedCount", 0),
                duration_ms=summary_data.get("durationMs", 0),
            ),
            incident_id=record.incident_id,
            started_at=record.started_at,
            completed_at=record.completed_at,
        )

    async def _audit(
        self,
        run_id: str,
        incident_id: str,
        event_type: str,
        lawbook_version: str | None,
        payload: Mapping[str, Any],
    ) -> None:
        try:
            await self._runs.record_audit_event(
                run_id=run_id,
                incident_id=incident_id,
                event_type=event_type,
                lawbook_version=lawbook_version,
                payload=payload,
            )
        except Exception:
            logger.warning(
                "remediation_audit_failed",
                run_id=run_id,
                event_type=event_type,
                exc_info=True,
            )


def _result_from_record(step: PlaybookStep, record: PlaybookStepRecord) -> PlaybookStepResult:
    return PlaybookStepResult(
        step_id=step.step_id,
        title=step.title,
        action_type=step.action_type,
        status=record.status,
        attempts=record.attempts,
        output=record.output or {},
        started_at=record.started_at,
        completed_at=record.completed_at,
    )
