# src/clan_sync/models/__init__.py
"""SQLAlchemy models for the local store."""

from .cache import CacheEntry
from .conflict import Conflict, ConflictResolution
from .entity import (
    ENTITY_MODELS,
    ClanRow,
    ContentRow,
    EntityKind,
    EntityRowMixin,
    NotificationRow,
    ProposalRow,
    SyncStatus,
    TransactionRow,
    UserRow,
    VoteRow,
    model_for,
)
from .sync_queue import ActionKind, ActionPriority, ActionStatus, PendingAction
from .system import RateCounter, SchemaMeta, SyncCursor

__all__ = [
    "CacheEntry",
    "Conflict", "ConflictResolution",
    "ENTITY_MODELS", "EntityKind", "EntityRowMixin", "SyncStatus", "model_for",
    "UserRow", "ClanRow", "ContentRow", "VoteRow", "NotificationRow", "ProposalRow",
    "TransactionRow",
    "ActionKind", "ActionPriority", "ActionStatus", "PendingAction",
    "RateCounter", "SchemaMeta", "SyncCursor",
]
