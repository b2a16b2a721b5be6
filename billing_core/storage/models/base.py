"""Shared base for documents persisted in MongoDB."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, field_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


class MongoModel(BaseModel):
    """Pydantic model with a document round-trip.

    Enum values are stored as plain strings, ``None`` fields are omitted so
    sparse indexes skip them, and naive datetimes coming back from the
    driver are interpreted as UTC.
    """

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    @field_validator("*", mode="before")
    @classmethod
    def _ensure_utc(cls, v: Any) -> Any:
        """Coerce naive datetimes to UTC."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> Self:
        return cls.model_validate(doc)
