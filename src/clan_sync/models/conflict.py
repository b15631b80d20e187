# src/clan_sync/models/conflict.py
"""Divergences between local dirty state and the server."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from clan_sync.db.session import Base
from clan_sync.db.time import UTCDateTime


class ConflictResolution(StrEnum):
    PENDING = "pending"
    LOCAL = "local"
    SERVER = "server"
    MERGE = "merge"


class Conflict(Base):
    """One open (or resolved) conflict per (target_kind, target_id)."""

    __tablename__ = "conflicts"
    __table_args__ = (
        Index("ix_conflicts_target", "target_kind", "target_id", "resolution"),
    )

    conflict_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    # Identifier assigned by the server when it reported the conflict itself.
    server_conflict_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    target_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    target_id: Mapped[str] = mapped_column(String(128), nullable=False)
    local_payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    server_payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    server_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    server_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    detected_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    resolution: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ConflictResolution.PENDING.value
    )
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
