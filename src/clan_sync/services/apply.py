"""Apply pipeline: the single write path for server-originated entity state.

Local acks, incremental pulls and realtime frames all land here. The rules
are a pure function of the committed row and the inbound snapshot; the
store evaluates them inside the writing transaction.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from clan_sync.core.errors import PayloadValidationError
from clan_sync.models import SyncStatus
from clan_sync.schemas.entity import EntitySnapshot, validate_payload
from clan_sync.services.events import (
    ChangeEvent,
    ChangeOrigin,
    ConflictDetectedEvent,
    EventBus,
)
from clan_sync.services.store import ApplyDecision, ApplyResult, LocalStore, RowState

logger = logging.getLogger(__name__)


def plan_apply(local: RowState | None, incoming: EntitySnapshot) -> ApplyDecision:
    """Decide what to do with ``incoming`` given the committed ``local`` row.

    - no row: insert (or record a tombstone for a deletion)
    - clean row: last writer wins by updated_at; an older or equal instant is skipped
    - dirty, in-flight or conflicted row: a newer server instant is a conflict
    - server deletion of a row with local changes: a conflict whatever the
      instants, unless the row is already a local tombstone
    """

    if local is None:
        return ApplyDecision.TOMBSTONE if incoming.deleted else ApplyDecision.INSERT

    if incoming.deleted and local.sync_status is not SyncStatus.CLEAN:
        return ApplyDecision.SKIP if local.deleted else ApplyDecision.CONFLICT

    if incoming.updated_at <= local.updated_at:
        return ApplyDecision.SKIP

    if local.sync_status is SyncStatus.CLEAN:
        return ApplyDecision.TOMBSTONE if incoming.deleted else ApplyDecision.OVERWRITE

    return ApplyDecision.CONFLICT


def plan_acknowledged(local: RowState | None, incoming: EntitySnapshot) -> ApplyDecision:
    """Rules for the canonical entity returned with an ack.

    The server's answer replaces a clean row even when the optimistic local
    stamp is ahead of the server clock. A row still dirty from later queued
    actions is left alone; their own acks will carry the newer state.
    """

    if local is not None and local.sync_status is not SyncStatus.CLEAN:
        return ApplyDecision.SKIP
    if incoming.deleted:
        return ApplyDecision.TOMBSTONE
    return ApplyDecision.INSERT if local is None else ApplyDecision.OVERWRITE


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class ApplyPipeline:
    """Serializes applies per (kind, id) and broadcasts the committed outcome."""

    def __init__(self, store: LocalStore, events: EventBus) -> None:
        self.store = store
        self.events = events
        self._key_locks: dict[tuple[str, str], _KeyLock] = {}

    @asynccontextmanager
    async def key_lock(self, kind: str, entity_id: str) -> AsyncIterator[None]:
        """Hold the lock serializing every write to one (kind, id).

        The entry is dropped once nobody holds or waits for it.
        """
        key = (kind, entity_id)
        entry = self._key_locks.get(key)
        if entry is None:
            entry = self._key_locks[key] = _KeyLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._key_locks[key]

    async def apply(
        self,
        snapshot: EntitySnapshot,
        *,
        origin: ChangeOrigin,
        acknowledged: bool = False,
    ) -> ApplyResult:
        """Apply one snapshot; raises PayloadValidationError before any write."""

        if not snapshot.deleted:
            validate_payload(snapshot.kind, snapshot.payload)

        async with self.key_lock(snapshot.kind.value, snapshot.id):
            planner = plan_acknowledged if acknowledged else plan_apply
            result = await self.store.apply_snapshot(snapshot, planner)

        logger.debug(
            "Applied %s/%s from %s: %s",
            snapshot.kind.value,
            snapshot.id,
            origin.value,
            result.decision.value,
        )

        if result.changed:
            await self.events.emit(
                ChangeEvent(
                    kind=snapshot.kind.value,
                    id=snapshot.id,
                    origin=origin,
                    entity=result.entity,
                    deleted=result.decision is ApplyDecision.TOMBSTONE,
                )
            )
        elif result.decision is ApplyDecision.CONFLICT and result.conflict is not None:
            logger.info(
                "Conflict %s recorded for %s/%s",
                result.conflict.conflict_id,
                snapshot.kind.value,
                snapshot.id,
            )
            await self.events.emit(
                ConflictDetectedEvent(
                    conflict_id=result.conflict.conflict_id,
                    target_kind=snapshot.kind.value,
                    target_id=snapshot.id,
                )
            )
        return result

    async def apply_many(
        self,
        snapshots: Iterable[EntitySnapshot],
        *,
        origin: ChangeOrigin,
    ) -> list[ApplyResult]:
        """Apply snapshots in order.

        A snapshot with an invalid payload is skipped and logged; store errors
        propagate and stop the batch.
        """

        results: list[ApplyResult] = []
        for snapshot in snapshots:
            try:
                results.append(await self.apply(snapshot, origin=origin))
            except PayloadValidationError as exc:
                logger.warning(
                    "Rejected %s/%s from %s: %s",
                    snapshot.kind.value,
                    snapshot.id,
                    origin.value,
                    exc,
                )
        return results
