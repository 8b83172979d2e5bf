"""
Typed incident evidence.

Raw evidence rows are ``{kind, ref}`` JSON documents. They are validated at
the boundary into a closed set of variants discriminated by ``kind``; step
executors only ever see the typed variants.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Iterable, Literal, Mapping, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from afu9.core.errors import EvidenceError
from afu9.domain.models import EvidenceRecord


class _Ref(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="allow")


class EcsRef(_Ref):
    cluster: str | None = None
    service: str | None = Field(default=None, alias="serviceName")
    env: str | None = Field(default=None, alias="environment")


class AlbRef(_Ref):
    target_group_arn: str | None = Field(default=None, alias="targetGroupArn")
    load_balancer_arn: str | None = Field(default=None, alias="loadBalancerArn")
    cluster: str | None = None
    service: str | None = None
    env: str | None = Field(default=None, alias="environment")


class DeployStatusRef(_Ref):
    env: str | None = None
    service: str | None = None
    deploy_id: str | None = Field(default=None, alias="deployId")
    status: str | None = None


class VerificationRef(_Ref):
    env: str | None = None
    service: str | None = None
    deploy_id: str | None = Field(default=None, alias="deployId")
    report_hash: str | None = Field(default=None, alias="reportHash")
    playbook_run_id: str | None = Field(default=None, alias="playbookRunId")
    status: str | None = None


class HttpRef(_Ref):
    url: str
    status: int | None = None


class _Evidence(BaseModel):
    model_config = ConfigDict(frozen=True)

    sha256: str | None = None
    raw_ref: Mapping[str, Any] = Field(default_factory=dict, exclude=True)


class EcsEvidence(_Evidence):
    kind: Literal["ecs"]
    ref: EcsRef


class AlbEvidence(_Evidence):
    kind: Literal["alb"]
    ref: AlbRef


class DeployStatusEvidence(_Evidence):
    kind: Literal["deploy_status"]
    ref: DeployStatusRef


class VerificationEvidenceRef(_Evidence):
    kind: Literal["verification"]
    ref: VerificationRef


class HttpEvidence(_Evidence):
    kind: Literal["http"]
    ref: HttpRef


Evidence = Annotated[
    Union[EcsEvidence, AlbEvidence, DeployStatusEvidence, VerificationEvidenceRef, HttpEvidence],
    Field(discriminator="kind"),
]

_EVIDENCE_ADAPTER: TypeAdapter[Evidence] = TypeAdapter(Evidence)


def _normalize_ref(kind: str, ref: Mapping[str, Any]) -> dict[str, Any]:
    data = dict(ref)
    # ALB refs historically used ``targetGroup`` for the ARN.
    if kind == "alb" and "targetGroupArn" not in data and "targetGroup" in data:
        data["targetGroupArn"] = data["targetGroup"]
    return data


def parse_evidence_item(record: EvidenceRecord | Mapping[str, Any]) -> Evidence:
    if isinstance(record, EvidenceRecord):
        kind, ref, sha = record.kind, record.ref, record.sha256
    else:
        kind, ref, sha = record.get("kind"), record.get("ref") or {}, record.get("sha256")
    if not isinstance(ref, Mapping):
        raise EvidenceError(
            "Evidence ref must be an object", details={"kind": kind}, code="INVALID_EVIDENCE"
        )
    try:
        return _EVIDENCE_ADAPTER.validate_python(
            {
                "kind": kind,
                "ref": _normalize_ref(str(kind), ref),
                "sha256": sha,
                "raw_ref": dict(ref),
            }
        )
    except PydanticValidationError as exc:
        raise EvidenceError(
            f"Invalid evidence of kind '{kind}'",
            details={"kind": kind, "errors": [err["msg"] for err in exc.errors()]},
            code="INVALID_EVIDENCE",
        ) from exc


def parse_evidence(records: Iterable[EvidenceRecord | Mapping[str, Any]]) -> list[Evidence]:
    """Validate every record; the first malformed record raises ``EvidenceError``."""
    return [parse_evidence_item(record) for record in records]


def find_evidence(evidence: Sequence[Evidence], *kinds: str) -> Evidence | None:
    for item in evidence:
        if item.kind in kinds:
            return item
    return None


@dataclass(frozen=True)
class EvidencePredicate:
    """At least one evidence item of one of ``kinds`` must carry every ``required_fields`` path."""

    kinds: tuple[str, ...]
    required_fields: tuple[str, ...] = field(default=())

    def to_dict(self) -> dict[str, Any]:
        return {"kinds": list(self.kinds), "requiredFields": list(self.required_fields)}


def _lookup(item: Evidence, path: str) -> Any:
    value: Any = {"kind": item.kind, "ref": dict(item.raw_ref), "sha256": item.sha256}
    for part in path.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            return None
    return value


def check_evidence_predicate(predicate: EvidencePredicate, evidence: Sequence[Evidence]) -> bool:
    matching = [item for item in evidence if item.kind in predicate.kinds]
    if not matching:
        return False
    if not predicate.required_fields:
        return True
    return any(
        all(_lookup(item, path) is not None for path in predicate.required_fields)
        for item in matching
    )


def check_all_evidence_predicates(
    predicates: Sequence[EvidencePredicate], evidence: Sequence[Evidence]
) -> list[EvidencePredicate]:
    """Return the predicates that are not satisfied."""
    return [p for p in predicates if not check_evidence_predicate(p, evidence)]
