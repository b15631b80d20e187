"""Pydantic wire schemas."""

from .auth import AuthSession, LoginRequest, LoginResponse, RefreshResponse
from .entity import Entity, EntitySnapshot, validate_payload
from .realtime import RealtimeFrame
from .sync import (
    ActionEnvelope,
    ActionOutcome,
    ActionResult,
    IncrementalResponse,
    ResolveRequest,
    ResolveResponse,
    ServerConflict,
    SyncActionsRequest,
    SyncActionsResponse,
)

__all__ = [
    "AuthSession", "LoginRequest", "LoginResponse", "RefreshResponse",
    "Entity", "EntitySnapshot", "validate_payload",
    "RealtimeFrame",
    "ActionEnvelope", "ActionOutcome", "ActionResult", "IncrementalResponse",
    "ResolveRequest", "ResolveResponse", "ServerConflict", "SyncActionsRequest",
    "SyncActionsResponse",
]
