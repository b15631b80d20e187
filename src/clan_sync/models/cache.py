# src/clan_sync/models/cache.py
"""TTL'd key/value cache rows."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from clan_sync.db.session import Base
from clan_sync.db.time import UTCDateTime


class CacheEntry(Base):
    """Cached response body keyed by request signature.

    A row read after ``expires_at`` counts as a miss and is deleted lazily.
    """

    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
