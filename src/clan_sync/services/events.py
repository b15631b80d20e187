"""Typed events broadcast by the data plane.

Listeners are invoked after the underlying transaction has committed. A
listener may be a plain callable or a coroutine function.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from clan_sync.schemas.entity import Entity

logger = logging.getLogger(__name__)


class ChangeOrigin(StrEnum):
    LOCAL = "local"
    SERVER = "server"
    REALTIME = "realtime"


@dataclass(frozen=True)
class ChangeEvent:
    kind: str
    id: str
    origin: ChangeOrigin
    entity: Entity | None = None
    deleted: bool = False


@dataclass(frozen=True)
class PermanentActionFailureEvent:
    """Emitted exactly once when an action leaves the queue unacknowledged."""

    action_id: str
    target_kind: str
    target_id: str
    attempts: int
    error: str | None = None


@dataclass(frozen=True)
class ConflictDetectedEvent:
    conflict_id: str
    target_kind: str
    target_id: str


@dataclass(frozen=True)
class ActionQueuedEvent:
    action_id: str
    target_kind: str
    target_id: str


Event = ChangeEvent | PermanentActionFailureEvent | ConflictDetectedEvent | ActionQueuedEvent
Listener = Callable[[Any], Awaitable[None] | None]


class EventBus:
    """Fan-out of data plane events to registered listeners."""

    def __init__(self) -> None:
        self._listeners: list[tuple[Listener, tuple[type, ...] | None]] = []

    def subscribe(self, listener: Listener, event_types: tuple[type, ...] | None = None) -> None:
        if any(existing is listener for existing, _ in self._listeners):
            return
        self._listeners.append((listener, event_types))

    def unsubscribe(self, listener: Listener) -> None:
        self._listeners = [
            (existing, types) for existing, types in self._listeners if existing is not listener
        ]

    async def emit(self, event: Event) -> None:
        # Snapshot so listeners may unsubscribe while being notified.
        for listener, types in list(self._listeners):
            if types is not None and not isinstance(event, types):
                continue
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event listener %r failed on %s", listener, type(event).__name__)
