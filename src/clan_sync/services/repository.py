"""Local-first domain operations.

Each mutation writes the local row optimistically and queues the intent for
the sync engine; reads come straight from the local store.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from clan_sync.models import ActionKind, ActionPriority, EntityKind, PendingAction, SyncStatus
from clan_sync.schemas.entity import Entity
from clan_sync.services.store import EntityFilter, LocalStore
from clan_sync.services.sync_engine import SyncEngine


@dataclass(frozen=True)
class LocalWrite:
    action: PendingAction
    entity: Entity | None


class EntityRepository:
    def __init__(self, engine: SyncEngine, store: LocalStore) -> None:
        self.engine = engine
        self.store = store

    async def _mutate(
        self,
        kind: ActionKind,
        target_kind: EntityKind,
        target_id: str,
        payload: Mapping[str, Any] | None,
        priority: ActionPriority,
    ) -> LocalWrite:
        action = await self.engine.enqueue_mutation(
            kind, target_kind.value, target_id, payload, priority
        )
        return LocalWrite(action=action, entity=await self.store.get(target_kind, target_id))

    # --- content -------------------------------------------------------------------

    async def create_content(
        self, payload: Mapping[str, Any], *, content_id: str | None = None
    ) -> LocalWrite:
        return await self._mutate(
            ActionKind.CREATE,
            EntityKind.CONTENT,
            content_id or str(uuid.uuid4()),
            payload,
            ActionPriority.MEDIUM,
        )

    async def update_content(self, content_id: str, patch: Mapping[str, Any]) -> LocalWrite:
        return await self._mutate(
            ActionKind.UPDATE, EntityKind.CONTENT, content_id, patch, ActionPriority.MEDIUM
        )

    async def delete_content(self, content_id: str) -> LocalWrite:
        return await self._mutate(
            ActionKind.DELETE, EntityKind.CONTENT, content_id, None, ActionPriority.MEDIUM
        )

    async def get_content(self, content_id: str) -> Entity | None:
        return await self.store.get(EntityKind.CONTENT, content_id)

    async def list_content(
        self, *, limit: int = 20, offset: int = 0, author_id: str | None = None
    ) -> list[Entity]:
        flt = EntityFilter(payload_equals={"authorId": author_id}) if author_id else None
        return await self.store.list(EntityKind.CONTENT, flt, limit=limit, offset=offset)

    # --- users and clans -----------------------------------------------------------

    async def update_user(self, user_id: str, patch: Mapping[str, Any]) -> LocalWrite:
        return await self._mutate(
            ActionKind.UPDATE, EntityKind.USER, user_id, patch, ActionPriority.MEDIUM
        )

    async def update_clan(self, clan_id: str, patch: Mapping[str, Any]) -> LocalWrite:
        return await self._mutate(
            ActionKind.UPDATE, EntityKind.CLAN, clan_id, patch, ActionPriority.MEDIUM
        )

    # --- votes and notifications ---------------------------------------------------

    async def cast_vote(
        self,
        content_id: str,
        vote_type: str,
        *,
        user_id: str | None = None,
        tokens_spent: float = 0.0,
    ) -> LocalWrite:
        """Record a vote; votes ship ahead of ordinary edits."""

        payload: dict[str, Any] = {
            "contentId": content_id,
            "type": vote_type,
            "tokensSpent": tokens_spent,
        }
        if user_id is not None:
            payload["userId"] = user_id
        return await self._mutate(
            ActionKind.CREATE, EntityKind.VOTE, str(uuid.uuid4()), payload, ActionPriority.HIGH
        )

    async def mark_notification_read(self, notification_id: str) -> LocalWrite:
        return await self._mutate(
            ActionKind.UPDATE,
            EntityKind.NOTIFICATION,
            notification_id,
            {"isRead": True},
            ActionPriority.LOW,
        )

    async def unread_notifications(self, *, limit: int = 50) -> list[Entity]:
        notifications = await self.store.list(EntityKind.NOTIFICATION, limit=limit)
        return [n for n in notifications if not n.payload.get("isRead")]

    async def pending_changes(self, kind: EntityKind) -> list[Entity]:
        """Rows with local edits the server has not acknowledged yet."""

        return await self.store.list(
            kind,
            EntityFilter(sync_statuses=frozenset({SyncStatus.DIRTY, SyncStatus.IN_FLIGHT})),
            limit=1000,
        )
