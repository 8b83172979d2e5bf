"""Result types shared by the adapters. Adapters report failures as data, never by raising."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, Mapping, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class AdapterError:
    code: str
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


@dataclass(frozen=True)
class AdapterResult(Generic[T]):
    value: T | None = None
    error: AdapterError | None = None

    @property
    def success(self) -> bool:
        return self.error is None
