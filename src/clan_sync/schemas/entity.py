# src/clan_sync/schemas/entity.py
"""Entity envelope and per-kind payload schemas.

The envelope ``{kind, id, updatedAt, payload}`` is stable across kinds; the
payload is checked against the kind's variant at the apply boundary.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from clan_sync.core.errors import PayloadValidationError
from clan_sync.db.time import ensure_utc
from clan_sync.models.entity import EntityKind, SyncStatus
from clan_sync.schemas.common import WireModel


class _Payload(BaseModel):
    # Unknown fields are kept; only the known ones are type-checked.
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class UserPayload(_Payload):
    username: str | None = None
    email: str | None = None
    wallet_address: str | None = Field(default=None, alias="walletAddress")
    clan_id: str | None = Field(default=None, alias="clanId")
    stats: dict[str, Any] | None = None
    preferences: dict[str, Any] | None = None


class ClanPayload(_Payload):
    name: str | None = None
    description: str | None = None
    members: list[Any] | None = None
    settings: dict[str, Any] | None = None


class ContentPayload(_Payload):
    title: str | None = None
    description: str | None = None
    type: str | None = None
    media_url: str | None = Field(default=None, alias="mediaUrl")
    author_id: str | None = Field(default=None, alias="authorId")
    tags: list[str] | None = None


class VotePayload(_Payload):
    user_id: str | None = Field(default=None, alias="userId")
    content_id: str | None = Field(default=None, alias="contentId")
    type: str | None = None
    tokens_spent: float | None = Field(default=None, alias="tokensSpent", ge=0)


class NotificationPayload(_Payload):
    type: str | None = None
    title: str | None = None
    body: str | None = None
    is_read: bool | None = Field(default=None, alias="isRead")


class ProposalPayload(_Payload):
    title: str | None = None
    options: list[Any] | None = None
    status: str | None = None


class TransactionPayload(_Payload):
    type: str | None = None
    amount: float | None = None
    token: str | None = None
    status: str | None = None
    signature: str | None = None


PAYLOAD_MODELS: dict[EntityKind, type[_Payload]] = {
    EntityKind.USER: UserPayload,
    EntityKind.CLAN: ClanPayload,
    EntityKind.CONTENT: ContentPayload,
    EntityKind.VOTE: VotePayload,
    EntityKind.NOTIFICATION: NotificationPayload,
    EntityKind.PROPOSAL: ProposalPayload,
    EntityKind.TRANSACTION: TransactionPayload,
}


def validate_payload(kind: EntityKind | str, payload: Any) -> dict[str, Any]:
    """Check ``payload`` against its kind's variant and return it unchanged."""

    if not isinstance(payload, dict):
        raise PayloadValidationError(f"{kind} payload must be an object, got {type(payload).__name__}")
    try:
        PAYLOAD_MODELS[EntityKind(kind)].model_validate(payload)
    except ValidationError as exc:
        raise PayloadValidationError(f"Invalid {kind} payload: {exc}") from exc
    return payload


class EntitySnapshot(WireModel):
    """Server (or local) view of one entity at ``updated_at``."""

    kind: EntityKind
    id: str = Field(..., min_length=1)
    updated_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
    deleted: bool = False

    @field_validator("updated_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class Entity(EntitySnapshot):
    """A committed local row as returned by the store."""

    sync_status: SyncStatus = SyncStatus.CLEAN
