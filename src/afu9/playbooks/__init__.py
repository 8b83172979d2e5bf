"""Playbook execution: generic step engine and incident-anchored remediation."""

from afu9.playbooks.engine import PlaybookEngine
from afu9.playbooks.models import (
    HttpCheckInput,
    PlaybookDefinition,
    PlaybookRunResult,
    PlaybookRunSummary,
    PlaybookStep,
    RunStatus,
    StepError,
    StepResult,
    StepStatus,
)
from afu9.playbooks.registry import StepActionRegistry
from afu9.playbooks.remediation import RemediationExecutor, RemediationPlaybook
from afu9.playbooks.retry import RetryPolicy

__all__ = [
    "HttpCheckInput",
    "PlaybookDefinition",
    "PlaybookEngine",
    "PlaybookRunResult",
    "PlaybookRunSummary",
    "PlaybookStep",
    "RemediationExecutor",
    "RemediationPlaybook",
    "RetryPolicy",
    "RunStatus",
    "StepActionRegistry",
    "StepError",
    "StepResult",
    "StepStatus",
]
