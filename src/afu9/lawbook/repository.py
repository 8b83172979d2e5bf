"""
Lawbook repository.

Lawbook versions are insert-only; the only mutable row is the per-lawbook
active pointer. ``get_active`` returns None when nothing is configured and
lets database errors propagate, so callers can tell "not configured" apart
from "query failed".
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from afu9.core.errors import ConfigurationError
from afu9.db.models import LawbookActiveModel, LawbookParameterModel, LawbookVersionModel
from afu9.db.repositories import insert_or_ignore
from afu9.lawbook.schema import Lawbook, compute_lawbook_hash, parse_lawbook

logger = structlog.get_logger()


@dataclass(frozen=True)
class LawbookVersionRecord:
    id: str
    lawbook: Lawbook
    lawbook_hash: str
    created_at: datetime

    @property
    def lawbook_id(self) -> str:
        return self.lawbook.lawbook_id

    @property
    def lawbook_version(self) -> str:
        return self.lawbook.lawbook_version


class LawbookRepository:
    """Repository for lawbook versions, activation and parameters."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_version(
        self, lawbook: Lawbook, created_by: str | None = None
    ) -> tuple[LawbookVersionRecord, bool]:
        """Store ``lawbook``. Returns ``(record, created)``; same hash returns the existing row."""
        lawbook_hash = compute_lawbook_hash(lawbook)
        inserted = await insert_or_ignore(
            self.session,
            LawbookVersionModel,
            {
                "id": str(uuid.uuid4()),
                "lawbook_id": lawbook.lawbook_id,
                "lawbook_version": lawbook.lawbook_version,
                "lawbook_hash": lawbook_hash,
                "lawbook_json": lawbook.to_document(),
                "created_by": created_by,
            },
            ("lawbook_id", "lawbook_hash"),
        )
        record = await self.get_by_hash(lawbook.lawbook_id, lawbook_hash)
        if record is None:
            raise LookupError(f"lawbook version {lawbook_hash} vanished after insert")
        logger.info(
            "lawbook_version_stored",
            lawbook_id=lawbook.lawbook_id,
            lawbook_version=lawbook.lawbook_version,
            lawbook_hash=lawbook_hash,
            created=inserted,
        )
        return record, inserted

    async def get_by_hash(self, lawbook_id: str, lawbook_hash: str) -> LawbookVersionRecord | None:
        result = await self.session.execute(
            select(LawbookVersionModel).where(
                LawbookVersionModel.lawbook_id == lawbook_id,
                LawbookVersionModel.lawbook_hash == lawbook_hash,
            )
        )
        model = result.scalar_one_or_none()
        return self._to_domain(model) if model else None

    async def activate(self, version_id: str, activated_by: str | None = None) -> None:
        version = await self.session.get(LawbookVersionModel, version_id)
        if version is None:
            raise ConfigurationError(
                "Cannot activate unknown lawbook version", details={"version_id": version_id}
            )
        active = await self.session.get(LawbookActiveModel, version.lawbook_id)
        if active is None:
            self.session.add(
                LawbookActiveModel(
                    lawbook_id=version.lawbook_id,
                    active_version_id=version.id,
                    activated_by=activated_by,
                )
            )
        else:
            active.active_version_id = version.id
            active.activated_by = activated_by
        await self.session.flush()
        logger.info(
            "lawbook_activated",
            lawbook_id=version.lawbook_id,
            lawbook_version=version.lawbook_version,
            lawbook_hash=version.lawbook_hash,
        )

    async def get_active(self, lawbook_id: str) -> LawbookVersionRecord | None:
        result = await self.session.execute(
            select(LawbookVersionModel)
            .join(
                LawbookActiveModel,
                LawbookActiveModel.active_version_id == LawbookVersionModel.id,
            )
            .where(LawbookActiveModel.lawbook_id == lawbook_id)
        )
        model = result.scalar_one_or_none()
        return self._to_domain(model) if model else None

    async def list_versions(self, lawbook_id: str) -> list[LawbookVersionRecord]:
        result = await self.session.execute(
            select(LawbookVersionModel)
            .where(LawbookVersionModel.lawbook_id == lawbook_id)
            .order_by(LawbookVersionModel.created_at.desc())
        )
        return [self._to_domain(m) for m in result.scalars().all()]

    async def get_parameter(self, key: str) -> Any | None:
        model = await self.session.get(LawbookParameterModel, key)
        return model.value if model else None

    async def set_parameter(self, key: str, value: Any) -> None:
        model = await self.session.get(LawbookParameterModel, key)
        if model is None:
            self.session.add(LawbookParameterModel(key=key, value=value))
        else:
            model.value = value
        await self.session.flush()

    @staticmethod
    def _to_domain(model: LawbookVersionModel) -> LawbookVersionRecord:
        return LawbookVersionRecord(
            id=model.id,
            lawbook=parse_lawbook(model.lawbook_json),
            lawbook_hash=model.lawbook_hash,
            created_at=model.created_at,
        )
