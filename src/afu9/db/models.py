from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from afu9.core.clock import utcnow
from afu9.domain.models import IncidentStatus, LoopRunStatus, RunStepStatus


class Base(DeclarativeBase):
    pass


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    scope: Mapped[str] = mapped_column(String(255), nullable=False)
    idem_key: Mapped[str] = mapped_column(String(512), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("scope", "idem_key", name="uq_scope_idem"),
        Index("idx_idem_key", "idem_key"),
    )


# Lawbook


class LawbookVersionModel(Base):
    """Immutable lawbook document, identified by its canonical hash."""

    __tablename__ = "lawbook_versions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    lawbook_id: Mapped[str] = mapped_column(String(255), nullable=False)
    lawbook_version: Mapped[str] = mapped_column(String(100), nullable=False)
    lawbook_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    lawbook_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("lawbook_id", "lawbook_hash", name="uq_lawbook_hash"),
        Index("idx_lawbook_versions_lawbook", "lawbook_id", "created_at"),
    )


class LawbookActiveModel(Base):
    __tablename__ = "lawbook_active"

    lawbook_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    active_version_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("lawbook_versions.id"), nullable=False
    )
    activated_by: Mapped[str | None] = mapped_column(String(255))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class LawbookParameterModel(Base):
    """Free-form lawbook parameters, e.g. ``alb_to_ecs_mapping_production``."""

    __tablename__ = "lawbook_parameters"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


# Automation policy audit (insert-only)


class AutomationPolicyExecutionModel(Base):
    __tablename__ = "automation_policy_executions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    action_type: Mapped[str] = mapped_column(String(255), nullable=False)
    target_identifier: Mapped[str] = mapped_column(String(500), nullable=False)
    deployment_env: Mapped[str | None] = mapped_column(String(50))
    decision: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    idempotency_key: Mapped[str] = mapped_column(Text, nullable=False)
    idempotency_key_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    action_fingerprint: Mapped[str | None] = mapped_column(String(64))
    lawbook_version: Mapped[str | None] = mapped_column(String(100))
    lawbook_hash: Mapped[str | None] = mapped_column(String(64))
    next_allowed_at: Mapped[datetime | None] = mapped_column(DateTime)
    enforcement_data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    action_context: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index(
            "idx_policy_exec_target",
            "action_type",
            "target_identifier",
            "decision",
            "created_at",
        ),
        Index("idx_policy_exec_key", "action_type", "idempotency_key_hash", "created_at"),
    )


# Incidents


class IncidentModel(Base):
    __tablename__ = "incidents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    incident_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    title: Mapped[str | None] = mapped_column(String(500))
    category: Mapped[str | None] = mapped_column(String(100))
    severity: Mapped[str | None] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(
        Enum(IncidentStatus, name="incident_status", native_enum=False), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class IncidentEvidenceModel(Base):
    __tablename__ = "incident_evidence"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    incident_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("incidents.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    ref: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("incident_id", "kind", "sha256", name="uq_incident_evidence"),
        Index("idx_incident_evidence_incident", "incident_id", "created_at"),
    )


# Playbook runs


class PlaybookRunModel(Base):
    __tablename__ = "playbook_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    playbook_id: Mapped[str] = mapped_column(String(255), nullable=False)
    playbook_version: Mapped[str] = mapped_column(String(50), nullable=False)
    env: Mapped[str | None] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    run_key: Mapped[str | None] = mapped_column(String(512), unique=True)
    incident_id: Mapped[str | None] = mapped_column(String(64), index=True)
    inputs_hash: Mapped[str | None] = mapped_column(String(64))
    lawbook_version: Mapped[str | None] = mapped_column(String(100))
    summary: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)


class PlaybookStepModel(Base):
    __tablename__ = "playbook_steps"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    run_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("playbook_runs.id", ondelete="CASCADE"), nullable=False
    )
    step_id: Mapped[str] = mapped_column(String(255), nullable=False)
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    idempotency_key: Mapped[str | None] = mapped_column(String(512))
    input: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    output: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    error: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)

    __table_args__ = (
        Index("idx_playbook_steps_run", "run_id", "step_index"),
        Index("idx_playbook_steps_idem", "idempotency_key", "status"),
    )


class RemediationAuditEventModel(Base):
    __tablename__ = "remediation_audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    incident_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    lawbook_version: Mapped[str | None] = mapped_column(String(100))
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


# Issue lifecycle


class IssueModel(Base):
    __tablename__ = "afu9_issues"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    github_url: Mapped[str | None] = mapped_column(String(500))
    pr_url: Mapped[str | None] = mapped_column(String(500))
    current_draft_id: Mapped[str | None] = mapped_column(String(64))
    handoff_state: Mapped[str | None] = mapped_column(String(50))
    draft_validation_status: Mapped[str | None] = mapped_column(String(20))
    assignee: Mapped[str | None] = mapped_column(String(255))
    picked_at: Mapped[datetime | None] = mapped_column(DateTime)
    merge_sha: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class LoopRunModel(Base):
    __tablename__ = "loop_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    issue_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        Enum(LoopRunStatus, name="loop_run_status", native_enum=False), nullable=False
    )
    actor: Mapped[str | None] = mapped_column(String(255))
    request_id: Mapped[str | None] = mapped_column(String(255))
    mode: Mapped[str] = mapped_column(String(20), nullable=False, default="execute")
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime)


class RunStepModel(Base):
    """Append-only step event log. Rows are never updated."""

    __tablename__ = "loop_run_steps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("loop_runs.id", ondelete="CASCADE"), nullable=False
    )
    step_id: Mapped[str] = mapped_column(String(50), nullable=False)
    step_name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        Enum(RunStepStatus, name="run_step_status", native_enum=False), nullable=False
    )
    evidence_refs: Mapped[list[Any]] = mapped_column(JSON, default=list, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("idx_loop_run_steps_run", "run_id", "created_at"),)


class TimelineEventModel(Base):
    __tablename__ = "timeline_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    issue_id: Mapped[str] = mapped_column(String(64), nullable=False)
    run_id: Mapped[str | None] = mapped_column(String(64))
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    step: Mapped[str | None] = mapped_column(String(50))
    state_before: Mapped[str | None] = mapped_column(String(50))
    state_after: Mapped[str | None] = mapped_column(String(50))
    blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    blocker_code: Mapped[str | None] = mapped_column(String(50))
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("idx_timeline_issue_created", "issue_id", "created_at"),)


class DeploymentObservationModel(Base):
    __tablename__ = "deployment_observations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    issue_id: Mapped[str] = mapped_column(String(64), nullable=False)
    deployment_id: Mapped[str] = mapped_column(String(100), nullable=False)
    environment: Mapped[str] = mapped_column(String(50), nullable=False)
    sha: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    is_authentic: Mapped[bool] = mapped_column(Boolean, nullable=False)
    deployed_at: Mapped[datetime | None] = mapped_column(DateTime)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    observed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("issue_id", "deployment_id", name="uq_issue_deployment"),
    )


class LoopLockModel(Base):
    __tablename__ = "loop_locks"

    issue_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    lock_owner: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
