# src/clan_sync/models/sync_queue.py
"""Durable queue of mutations awaiting server acknowledgment."""

from __future__ import annotations

from datetime import datetime
from enum import IntEnum, StrEnum
from typing import Any

from sqlalchemy import JSON, Index, Integer, SmallInteger, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from clan_sync.db.session import Base
from clan_sync.db.time import UTCDateTime


class ActionKind(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    CUSTOM = "custom"


class ActionPriority(IntEnum):
    # Stored as integers so the queue index sorts high before low.
    LOW = 0
    MEDIUM = 1
    HIGH = 2

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: ActionPriority | str | int) -> ActionPriority:
        if isinstance(value, str):
            return cls[value.upper()]
        return cls(value)


class ActionStatus(StrEnum):
    PENDING = "pending"
    IN_FLIGHT = "in-flight"
    CONFLICT = "conflict"


class PendingAction(Base):
    """A queued mutation intent.

    Lifecycle: pending -> in-flight -> (acked | conflict | permanently failed).
    Acked and permanently failed actions are deleted, so only the three live
    states appear in ``status``.
    """

    __tablename__ = "sync_queue"
    __table_args__ = (
        Index("ix_sync_queue_priority_created", "priority", "created_at"),
        Index("ix_sync_queue_target", "target_kind", "target_id"),
    )

    action_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    target_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    target_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    priority: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=ActionPriority.MEDIUM.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ActionStatus.PENDING.value
    )
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    # Server updatedAt the intent was based on, echoed for server-side checks.
    base_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
