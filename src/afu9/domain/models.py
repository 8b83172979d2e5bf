from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Mapping, Sequence

from pydantic import BaseModel, Field


class IncidentStatus(StrEnum):
    """Incident lifecycle. Playbooks move incidents between ACKED and MITIGATED."""

    OPEN = "OPEN"
    ACKED = "ACKED"
    MITIGATED = "MITIGATED"
    RESOLVED = "RESOLVED"


class LoopRunStatus(StrEnum):
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"


class RunStepStatus(StrEnum):
    STARTED = "STARTED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class Incident(BaseModel):
    id: str
    incident_key: str
    status: IncidentStatus = IncidentStatus.OPEN
    title: str | None = None
    category: str | None = None
    severity: str | None = None


class EvidenceRecord(BaseModel):
    """Raw incident evidence row; ``ref`` is validated into a typed variant on use."""

    kind: str
    ref: Mapping[str, Any] = Field(default_factory=dict)
    sha256: str | None = None


class Issue(BaseModel):
    id: str
    title: str
    status: str
    github_url: str | None = None
    pr_url: str | None = None
    current_draft_id: str | None = None
    handoff_state: str | None = None
    draft_validation_status: str | None = None
    assignee: str | None = None
    picked_at: datetime | None = None
    merge_sha: str | None = None


class LoopRun(BaseModel):
    id: str
    issue_id: str
    type: str
    status: LoopRunStatus = LoopRunStatus.CREATED
    actor: str | None = None
    request_id: str | None = None
    mode: str = "execute"
    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class RunStepEvent(BaseModel):
    run_id: str
    step_id: str
    step_name: str
    status: RunStepStatus
    evidence_refs: Sequence[Any] = Field(default_factory=list)
    error_message: str | None = None
    created_at: datetime | None = None


class TimelineEvent(BaseModel):
    issue_id: str
    event_type: str
    run_id: str | None = None
    step: str | None = None
    state_before: str | None = None
    state_after: str | None = None
    blocked: bool = False
    blocker_code: str | None = None
    payload: Mapping[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
