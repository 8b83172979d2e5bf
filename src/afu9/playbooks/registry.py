"""Step action protocol and registry for the playbook engine."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from afu9.config import Settings
from afu9.playbooks.http_check import HttpCheckAction
from afu9.playbooks.models import StepContext, StepResult


@runtime_checkable
class StepAction(Protocol):
    """A typed action runnable by :class:`~afu9.playbooks.engine.PlaybookEngine`."""

    type: str
    input_model: type[BaseModel]

    async def run(self, step_input: Any, context: StepContext) -> StepResult:
        """Execute once. Must not retry internally."""
        ...


class StepActionRegistry:
    """In-memory registry of step actions keyed by input ``type``."""

    def __init__(self) -> None:
        self._actions: dict[str, StepAction] = {}

    def register(self, action: StepAction) -> None:
        self._actions[action.type] = action

    def get(self, action_type: str) -> StepAction | None:
        return self._actions.get(action_type)

    def types(self) -> list[str]:
        return list(self._actions.keys())

    @classmethod
    def with_builtins(cls, settings: Settings | None = None) -> StepActionRegistry:
        registry = cls()
        if settings is None:
            registry.register(HttpCheckAction())
        else:
            registry.register(
                HttpCheckAction(
                    default_timeout=settings.http_check_timeout_seconds,
                    body_limit=settings.http_check_body_limit,
                )
            )
        return registry
