"""Playbook definitions and run/step result types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator

from afu9.core.clock import isoformat
from afu9.incidents.evidence import EvidencePredicate


class StepStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.SKIPPED)


class _PlaybookModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="forbid")


class HttpCheckInput(_PlaybookModel):
    """Input for the built-in ``http_check`` action."""

    type: Literal["http_check"] = "http_check"
    url: str
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: str | None = None
    expected_status: int = Field(default=200, alias="expectedStatus")
    expected_body_includes: str | None = Field(default=None, alias="expectedBodyIncludes")
    timeout_seconds: float | None = Field(default=None, gt=0, alias="timeoutSeconds")


class RequiredEvidence(_PlaybookModel):
    kinds: tuple[str, ...] = Field(min_length=1)
    required_fields: tuple[str, ...] = Field(default=(), alias="requiredFields")

    def to_predicate(self) -> EvidencePredicate:
        return EvidencePredicate(kinds=self.kinds, required_fields=self.required_fields)


class PlaybookStep(_PlaybookModel):
    step_id: str = Field(alias="stepId", min_length=1)
    title: str
    retries: int = Field(default=0, ge=0)
    input: dict[str, Any]

    @field_validator("input")
    @classmethod
    def _input_has_type(cls, value: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(value.get("type"), str) or not value["type"]:
            raise ValueError("step input requires a 'type'")
        return value

    @property
    def action_type(self) -> str:
        return self.input["type"]


class PlaybookDefinition(_PlaybookModel):
    id: str = Field(min_length=1)
    version: str = Field(min_length=1)
    title: str | None = None
    applicable_categories: tuple[str, ...] = Field(default=(), alias="applicableCategories")
    required_evidence: tuple[RequiredEvidence, ...] = Field(default=(), alias="requiredEvidence")
    steps: tuple[PlaybookStep, ...] = Field(min_length=1)

    @field_validator("steps")
    @classmethod
    def _unique_step_ids(cls, value: tuple[PlaybookStep, ...]) -> tuple[PlaybookStep, ...]:
        ids = [step.step_id for step in value]
        if len(ids) != len(set(ids)):
            raise ValueError("step ids must be unique")
        return value

    def applies_to(self, category: str | None) -> bool:
        return not self.applicable_categories or category in self.applicable_categories

    def evidence_predicates(self) -> list[EvidencePredicate]:
        return [item.to_predicate() for item in self.required_evidence]

    @property
    def action_types(self) -> tuple[str, ...]:
        return tuple(step.action_type for step in self.steps)


@dataclass(frozen=True)
class StepError:
    code: str
    message: str
    details: Mapping[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            data["details"] = dict(self.details)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StepError:
        return cls(code=data["code"], message=data["message"], details=data.get("details"))


@dataclass(frozen=True)
class StepResult:
    """Outcome of one attempt of a step action."""

    status: StepStatus
    output: Mapping[str, Any] = field(default_factory=dict)
    error: StepError | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is StepStatus.SUCCESS

    @classmethod
    def success(cls, output: Mapping[str, Any] | None = None) -> StepResult:
        return cls(StepStatus.SUCCESS, dict(output or {}))

    @classmethod
    def failure(
        cls,
        code: str,
        message: str,
        details: Mapping[str, Any] | None = None,
        *,
        output: Mapping[str, Any] | None = None,
    ) -> StepResult:
        return cls(StepStatus.FAILED, dict(output or {}), StepError(code, message, details))

    @classmethod
    def skipped(cls, reason: str, output: Mapping[str, Any] | None = None) -> StepResult:
        return cls(StepStatus.SKIPPED, {"status": "skipped", "reason": reason, **(output or {})})


@dataclass(frozen=True)
class StepContext:
    """What a generic step action sees of its run."""

    run_id: str
    step_id: str
    env: str | None
    variables: Mapping[str, str] = field(default_factory=dict)


@dataclass
class PlaybookStepResult:
    step_id: str
    title: str
    action_type: str
    status: StepStatus
    attempts: int = 0
    output: Mapping[str, Any] = field(default_factory=dict)
    error: StepError | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stepId": self.step_id,
            "title": self.title,
            "actionType": self.action_type,
            "status": self.status.value,
            "attempts": self.attempts,
            "output": dict(self.output),
            "error": self.error.to_dict() if self.error else None,
            "startedAt": isoformat(self.started_at),
            "completedAt": isoformat(self.completed_at),
        }


@dataclass
class PlaybookRunSummary:
    total_steps: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    duration_ms: int = 0

    @classmethod
    def from_steps(cls, steps: list[PlaybookStepResult], duration_ms: int) -> PlaybookRunSummary:
        return cls(
            total_steps=len(steps),
            success_count=sum(1 for s in steps if s.status is StepStatus.SUCCESS),
            failed_count=sum(1 for s in steps if s.status is StepStatus.FAILED),
            skipped_count=sum(1 for s in steps if s.status is StepStatus.SKIPPED),
            duration_ms=duration_ms,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "totalSteps": self.total_steps,
            "successCount": self.success_count,
            "failedCount": self.failed_count,
            "skippedCount": self.skipped_count,
            "durationMs": self.duration_ms,
        }


@dataclass
class PlaybookRunResult:
    run_id: str
    playbook_id: str
    playbook_version: str
    env: str | None
    status: RunStatus
    steps: list[PlaybookStepResult] = field(default_factory=list)
    summary: PlaybookRunSummary = field(default_factory=PlaybookRunSummary)
    incident_id: str | None = None
    skip_reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def success(self) -> bool:
        return self.status is RunStatus.SUCCESS

    def step(self, step_id: str) -> PlaybookStepResult | None:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "playbookId": self.playbook_id,
            "playbookVersion": self.playbook_version,
            "env": self.env,
            "status": self.status.value,
            "incidentId": self.incident_id,
            "skipReason": self.skip_reason,
            "steps": [step.to_dict() for step in self.steps],
            "summary": self.summary.to_dict(),
            "startedAt": isoformat(self.started_at),
            "completedAt": isoformat(self.completed_at),
        }


@dataclass(frozen=True)
class PlaybookRunRecord:
    id: str
    playbook_id: str
    playbook_version: str
    env: str | None
    status: RunStatus
    run_key: str | None = None
    incident_id: str | None = None
    inputs_hash: str | None = None
    lawbook_version: str | None = None
    result: Mapping[str, Any] | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class PlaybookStepRecord:
    id: str
    run_id: str
    step_id: str
    step_index: int
    action_type: str
    status: StepStatus
    attempts: int
    idempotency_key: str | None = None
    output: Mapping[str, Any] | None = None
    error: Mapping[str, Any] | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
