# src/clan_sync/schemas/realtime.py
"""Realtime frame envelope."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field, field_validator

from clan_sync.db.time import ensure_utc
from clan_sync.models.entity import EntityKind
from clan_sync.schemas.common import WireModel
from clan_sync.schemas.entity import EntitySnapshot

DELETE_FRAME_TYPES = frozenset({"delete", "deleted", "remove"})


class RealtimeFrame(WireModel):
    type: str
    target_kind: EntityKind
    target_id: str = Field(..., min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    server_instant: datetime

    @field_validator("server_instant")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def to_snapshot(self) -> EntitySnapshot:
        return EntitySnapshot(
            kind=self.target_kind,
            id=self.target_id,
            updated_at=self.server_instant,
            payload=self.payload,
            deleted=self.type.lower() in DELETE_FRAME_TYPES,
        )
