"""Post-deploy verification runs executed through the playbook engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from afu9.lawbook.schema import canonical_json, sha256_hex
from afu9.playbooks.engine import PlaybookEngine
from afu9.playbooks.models import PlaybookDefinition, PlaybookRunResult, RunStatus


@dataclass(frozen=True)
class VerificationOutcome:
    playbook_run_id: str
    status: RunStatus
    report_hash: str
    summary: Mapping[str, Any] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.status is RunStatus.SUCCESS


class VerificationRunner(Protocol):
    async def run(self, *, env: str, deploy_id: str | None = None) -> VerificationOutcome: ...


def compute_report_hash(result: PlaybookRunResult, deploy_id: str | None = None) -> str:
    """Hash of what was checked and how it ended; timings are excluded."""
    report = {
        "playbookId": result.playbook_id,
        "playbookVersion": result.playbook_version,
        "env": result.env,
        "deployId": deploy_id,
        "status": result.status.value,
        "steps": [
            {
                "stepId": step.step_id,
                "status": step.status.value,
                "errorCode": step.error.code if step.error else None,
            }
            for step in result.steps
        ],
    }
    return sha256_hex(canonical_json(report))


class EngineVerificationRunner:
    """Runs a verification playbook with ``ENV`` and ``DEPLOY_ID`` bound as variables."""

    def __init__(
        self,
        engine: PlaybookEngine,
        definition: PlaybookDefinition,
        variables: Mapping[str, str] | None = None,
    ) -> None:
        self._engine = engine
        self._definition = definition
        self._variables = dict(variables or {})

    async def run(self, *, env: str, deploy_id: str | None = None) -> VerificationOutcome:
        variables = {**self._variables, "ENV": env, "DEPLOY_ID": deploy_id or ""}
        result = await self._engine.execute(self._definition, env, variables)
        return VerificationOutcome(
            playbook_run_id=result.run_id,
            status=result.status,
            report_hash=compute_report_hash(result, deploy_id),
            summary=result.summary.to_dict(),
        )
