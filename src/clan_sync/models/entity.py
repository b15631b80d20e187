# src/clan_sync/models/entity.py
"""SQLAlchemy models for cached domain entities.

Every entity kind gets its own table with the same stable columns; the
kind-specific fields travel in the JSON ``payload`` column.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from clan_sync.db.session import Base
from clan_sync.db.time import UTCDateTime


class EntityKind(StrEnum):
    USER = "user"
    CLAN = "clan"
    CONTENT = "content"
    VOTE = "vote"
    NOTIFICATION = "notification"
    PROPOSAL = "proposal"
    TRANSACTION = "transaction"


class SyncStatus(StrEnum):
    CLEAN = "clean"
    DIRTY = "dirty"
    IN_FLIGHT = "in-flight"
    CONFLICT = "conflict"


class EntityRowMixin:
    """Columns shared by every entity table."""

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    sync_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=SyncStatus.CLEAN.value,
        index=True,
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    # Tombstone for server-side deletions; hidden from get/list.
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class UserRow(EntityRowMixin, Base):
    __tablename__ = "users"


class ClanRow(EntityRowMixin, Base):
    __tablename__ = "clans"


class ContentRow(EntityRowMixin, Base):
    __tablename__ = "content"


class VoteRow(EntityRowMixin, Base):
    __tablename__ = "votes"


class NotificationRow(EntityRowMixin, Base):
    __tablename__ = "notifications"


class ProposalRow(EntityRowMixin, Base):
    __tablename__ = "voting_proposals"


class TransactionRow(EntityRowMixin, Base):
    __tablename__ = "transactions"


ENTITY_MODELS: dict[EntityKind, type[EntityRowMixin]] = {
    EntityKind.USER: UserRow,
    EntityKind.CLAN: ClanRow,
    EntityKind.CONTENT: ContentRow,
    EntityKind.VOTE: VoteRow,
    EntityKind.NOTIFICATION: NotificationRow,
    EntityKind.PROPOSAL: ProposalRow,
    EntityKind.TRANSACTION: TransactionRow,
}


def model_for(kind: EntityKind | str) -> type[EntityRowMixin]:
    """Return the ORM class for an entity kind, rejecting unknown kinds."""
    try:
        return ENTITY_MODELS[EntityKind(kind)]
    except ValueError as exc:
        raise ValueError(f"Unknown entity kind: {kind!r}") from exc
