# src/clan_sync/schemas/sync.py
"""Wire schemas for the /sync endpoints."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import Field, field_validator

from clan_sync.db.time import ensure_utc
from clan_sync.models.conflict import ConflictResolution
from clan_sync.schemas.common import WireModel
from clan_sync.schemas.entity import EntitySnapshot


class ActionOutcome(StrEnum):
    SUCCESS = "success"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CONFLICT = "conflict"


class ActionEnvelope(WireModel):
    """A queued action as shipped in ``POST /sync/actions``."""

    action_id: str
    kind: str
    target_kind: str
    target_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: str
    attempts: int = 0
    created_at: datetime
    base_updated_at: datetime | None = None


class SyncActionsRequest(WireModel):
    actions: list[ActionEnvelope]


class ServerConflict(WireModel):
    """A conflict reported by the server."""

    conflict_id: str
    target_kind: str
    target_id: str
    local_payload: dict[str, Any] | None = None
    server_payload: dict[str, Any] | None = None
    server_updated_at: datetime | None = None
    detected_at: datetime | None = None

    @field_validator("server_updated_at", "detected_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None


class ActionResult(WireModel):
    action_id: str
    outcome: ActionOutcome
    entity: EntitySnapshot | None = None
    error: str | None = None
    status_code: int | None = None


class SyncActionsResponse(WireModel):
    results: list[ActionResult] = Field(default_factory=list)
    conflicts: list[ServerConflict] = Field(default_factory=list)


class IncrementalResponse(WireModel):
    updates: list[EntitySnapshot] = Field(default_factory=list)
    conflicts: list[ServerConflict] = Field(default_factory=list)
    next_since: datetime | None = None
    has_more: bool = False

    @field_validator("next_since")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None


class ResolveRequest(WireModel):
    resolution: ConflictResolution
    selected_data: dict[str, Any] | None = None


class ResolveResponse(WireModel):
    resolved_data: EntitySnapshot
