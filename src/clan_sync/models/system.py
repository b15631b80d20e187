# src/clan_sync/models/system.py
"""Store bookkeeping: pull watermarks, schema version and rate counters."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from clan_sync.db.session import Base
from clan_sync.db.time import UTCDateTime


class SyncCursor(Base):
    """Per-kind watermark for incremental pulls.

    Advanced only after every update up to ``since_instant`` has applied.
    """

    __tablename__ = "sync_cursors"

    kind: Mapped[str] = mapped_column(String(32), primary_key=True)
    since_instant: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class SchemaMeta(Base):
    __tablename__ = "schema_meta"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    version: Mapped[int] = mapped_column(Integer, nullable=False)


class RateCounter(Base):
    """Fixed-window request counter for one (subject, endpoint prefix)."""

    __tablename__ = "rate_counters"

    subject: Mapped[str] = mapped_column(String(128), primary_key=True)
    bucket: Mapped[str] = mapped_column(String(128), primary_key=True)
    window_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
