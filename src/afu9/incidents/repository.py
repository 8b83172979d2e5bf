"""
Incident repository.

Evidence rows are deduplicated on ``(incident_id, kind, sha256)`` so that
re-running a playbook never double-counts evidence.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from afu9.db.models import IncidentEvidenceModel, IncidentModel
from afu9.db.repositories import insert_or_ignore
from afu9.domain.models import EvidenceRecord, Incident, IncidentStatus
from afu9.lawbook.schema import canonical_json, sha256_hex

logger = structlog.get_logger()


def evidence_sha(kind: str, ref: Mapping[str, Any]) -> str:
    return sha256_hex(canonical_json({"kind": kind, "ref": dict(ref)}))


class IncidentRepository:
    """Persistence helpers for incidents and their evidence."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_incident(self, incident: Incident) -> None:
        self.session.add(
            IncidentModel(
                id=incident.id,
                incident_key=incident.incident_key,
                title=incident.title,
                category=incident.category,
                severity=incident.severity,
                status=incident.status.value,
            )
        )
        await self.session.flush()

    async def get_incident(self, incident_id: str) -> Incident | None:
        model = await self.session.get(IncidentModel, incident_id)
        return self._to_domain(model) if model else None

    async def update_status(self, incident_id: str, status: IncidentStatus) -> None:
        model = await self.session.get(IncidentModel, incident_id)
        if model is None:
            return
        previous = model.status
        model.status = status.value
        await self.session.flush()
        logger.info(
            "incident_status_updated",
            incident_id=incident_id,
            previous_status=str(previous),
            status=status.value,
        )

    async def get_evidence(self, incident_id: str) -> list[EvidenceRecord]:
        result = await self.session.execute(
            select(IncidentEvidenceModel)
            .where(IncidentEvidenceModel.incident_id == incident_id)
            .order_by(IncidentEvidenceModel.created_at, IncidentEvidenceModel.id)
        )
        return [
            EvidenceRecord(kind=m.kind, ref=m.ref or {}, sha256=m.sha256)
            for m in result.scalars().all()
        ]

    async def add_evidence(self, incident_id: str, evidence: Sequence[EvidenceRecord]) -> int:
        """Insert evidence, skipping duplicates. Returns the number of new rows."""
        added = 0
        for item in evidence:
            inserted = await insert_or_ignore(
                self.session,
                IncidentEvidenceModel,
                {
                    "incident_id": incident_id,
                    "kind": item.kind,
                    "ref": dict(item.ref),
                    "sha256": item.sha256 or evidence_sha(item.kind, item.ref),
                },
                ("incident_id", "kind", "sha256"),
            )
            added += int(inserted)
        return added

    @staticmethod
    def _to_domain(model: IncidentModel) -> Incident:
        return Incident(
            id=model.id,
            incident_key=model.incident_key,
            status=IncidentStatus(model.status),
            title=model.title,
            category=model.category,
            severity=model.severity,
        )
