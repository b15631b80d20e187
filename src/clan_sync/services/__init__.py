# src/clan_sync/services/__init__.py
"""Data plane services: gateway, store, sync engine and realtime channel."""

from .apply import ApplyPipeline, plan_apply
from .auth import AuthService
from .connectivity import ConnectivityMonitor
from .events import (
    ChangeEvent,
    ChangeOrigin,
    ConflictDetectedEvent,
    EventBus,
    PermanentActionFailureEvent,
)
from .gateway import RequestGateway
from .keystore import InMemoryKeystore, Keystore
from .realtime import RealtimeChannel
from .repository import EntityRepository
from .store import LocalStore
from .sync_engine import SyncEngine, SyncResult

__all__ = [
    "ApplyPipeline",
    "plan_apply",
    "AuthService",
    "ConnectivityMonitor",
    "ChangeEvent",
    "ChangeOrigin",
    "ConflictDetectedEvent",
    "EventBus",
    "PermanentActionFailureEvent",
    "RequestGateway",
    "InMemoryKeystore",
    "Keystore",
    "RealtimeChannel",
    "EntityRepository",
    "LocalStore",
    "SyncEngine",
    "SyncResult",
]
