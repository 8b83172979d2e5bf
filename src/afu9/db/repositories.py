from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from afu9.db import models as db_models


class IdempotencyConflict(RuntimeError):
    """Raised when an idempotent operation has already been processed."""


async def insert_or_ignore(
    session: AsyncSession,
    model: type[db_models.Base],
    values: dict[str, Any],
    index_elements: Sequence[str],
) -> bool:
    """INSERT ... ON CONFLICT DO NOTHING. Returns False when the row already existed."""

    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    insert = sqlite.insert if dialect == "sqlite" else postgresql.insert
    stmt = (
        insert(model)
        .values(**values)
        .on_conflict_do_nothing(index_elements=list(index_elements))
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)  # type: ignore[attr-defined]


@dataclass(slots=True)
class IdempotencyRepository:
    """Durable claims on idempotency keys, enforced by a unique constraint."""

    session: AsyncSession

    async def register(self, scope: str, key: str) -> None:
        inserted = await insert_or_ignore(
            self.session,
            db_models.IdempotencyKey,
            {"scope": scope, "idem_key": key},
            ("scope", "idem_key"),
        )
        if not inserted:
            raise IdempotencyConflict(f"{scope}:{key}")

    async def exists(self, scope: str, key: str) -> bool:
        stmt = select(db_models.IdempotencyKey.id).where(
            db_models.IdempotencyKey.scope == scope,
            db_models.IdempotencyKey.idem_key == key,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None
