"""
Lawbook document schema.

A lawbook is the versioned policy configuration that governs every automated
action. Documents are validated with pydantic and identified by the sha256 of
their canonical JSON form, so two documents that differ only in key order
hash identically.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from afu9.core.errors import ConfigurationError
from afu9.environment import is_valid_environment


class _LawbookModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)


class AutomationPolicyAction(_LawbookModel):
    """Policy for one automated action type."""

    action_type: str = Field(alias="actionType")
    allowed_envs: tuple[str, ...] = Field(default=("staging",), alias="allowedEnvs")
    cooldown_seconds: int = Field(default=0, ge=0, alias="cooldownSeconds")
    max_runs_per_window: int | None = Field(default=None, gt=0, alias="maxRunsPerWindow")
    window_seconds: int | None = Field(default=None, gt=0, alias="windowSeconds")
    idempotency_key_template: tuple[str, ...] = Field(default=(), alias="idempotencyKeyTemplate")
    requires_approval: bool = Field(default=False, alias="requiresApproval")
    description: str | None = None

    @field_validator("action_type")
    @classmethod
    def _action_type_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("actionType must not be empty")
        return value

    @field_validator("allowed_envs")
    @classmethod
    def _known_envs(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        unknown = [env for env in value if not is_valid_environment(env)]
        if unknown:
            raise ValueError(f"unknown environments: {', '.join(unknown)}")
        return value

    @property
    def rate_limit_misconfigured(self) -> bool:
        return self.max_runs_per_window is not None and self.window_seconds is None


class AutomationPolicy(_LawbookModel):
    actions: tuple[AutomationPolicyAction, ...] = ()

    @field_validator("actions")
    @classmethod
    def _unique_action_types(
        cls, value: tuple[AutomationPolicyAction, ...]
    ) -> tuple[AutomationPolicyAction, ...]:
        seen: set[str] = set()
        for action in value:
            if action.action_type in seen:
                raise ValueError(f"duplicate policy for action type '{action.action_type}'")
            seen.add(action.action_type)
        return value

    def find(self, action_type: str) -> AutomationPolicyAction | None:
        for action in self.actions:
            if action.action_type == action_type:
                return action
        return None


class RemediationPolicy(_LawbookModel):
    enabled: bool = False
    allowed_playbooks: tuple[str, ...] = Field(default=(), alias="allowedPlaybooks")
    allowed_actions: tuple[str, ...] = Field(default=(), alias="allowedActions")


class Lawbook(_LawbookModel):
    lawbook_id: str = Field(alias="lawbookId")
    lawbook_version: str = Field(alias="lawbookVersion")
    automation_policy: AutomationPolicy = Field(
        default_factory=AutomationPolicy, alias="automationPolicy"
    )
    remediation: RemediationPolicy = Field(default_factory=RemediationPolicy)
    notes: str | None = None

    @model_validator(mode="after")
    def _ids_not_blank(self) -> Lawbook:
        if not self.lawbook_id.strip() or not self.lawbook_version.strip():
            raise ValueError("lawbookId and lawbookVersion must not be empty")
        return self

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


def canonical_json(value: Any) -> str:
    """Stable JSON: sorted keys, no insignificant whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_lawbook_hash(lawbook: Lawbook) -> str:
    return sha256_hex(canonical_json(lawbook.to_document()))


def parse_lawbook(data: Any) -> Lawbook:
    """Validate a raw document into a :class:`Lawbook`.

    Raises:
        ConfigurationError: when the document is malformed.
    """
    try:
        return Lawbook.model_validate(data)
    except PydanticValidationError as exc:
        raise ConfigurationError(
            "Invalid lawbook document",
            details={"errors": [err["msg"] for err in exc.errors()]},
        ) from exc
