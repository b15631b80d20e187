"""Local store for the offline-first data plane.

The LocalStore is the only component that issues SQL. It keeps:

- one table per entity kind (id, updated_at, sync_status, payload)
- a TTL'd key/value cache
- the durable sync queue of pending actions
- conflict rows, per-kind pull cursors and rate counters

Every operation runs in its own transaction on a worker thread. Writes are
serialized through a single asyncio lock (the writer lane); reads run
unlocked and observe committed state only.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, TypeVar

from sqlalchemy import JSON, delete, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from clan_sync.core.errors import (
    EntityNotFoundError,
    StoreError,
    StoreUnavailableError,
)
from clan_sync.db.session import create_session_factory, create_tables
from clan_sync.db.time import Clock, utcnow
from clan_sync.models import (
    ENTITY_MODELS,
    ActionKind,
    ActionPriority,
    ActionStatus,
    CacheEntry,
    Conflict,
    ConflictResolution,
    EntityKind,
    EntityRowMixin,
    PendingAction,
    RateCounter,
    SchemaMeta,
    SyncCursor,
    SyncStatus,
    model_for,
)
from clan_sync.schemas.entity import Entity, EntitySnapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_VERSION = 1
MAX_ATTEMPTS = 5
ENTITY_KINDS = frozenset(kind.value for kind in EntityKind)


class ApplyDecision(StrEnum):
    """What the apply pipeline decided to do with an inbound snapshot."""

    INSERT = "insert"
    OVERWRITE = "overwrite"
    TOMBSTONE = "tombstone"
    SKIP = "skip"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class RowState:
    """Committed state of an entity row, tombstones included."""

    kind: EntityKind
    id: str
    updated_at: datetime
    sync_status: SyncStatus
    payload: dict[str, Any]
    deleted: bool


Planner = Callable[[RowState | None, EntitySnapshot], ApplyDecision]


@dataclass(frozen=True)
class ApplyResult:
    decision: ApplyDecision
    entity: Entity | None = None
    conflict: Conflict | None = None

    @property
    def changed(self) -> bool:
        return self.decision in (
            ApplyDecision.INSERT,
            ApplyDecision.OVERWRITE,
            ApplyDecision.TOMBSTONE,
        )


@dataclass(frozen=True)
class EntityFilter:
    """Optional narrowing for :meth:`LocalStore.list`."""

    sync_statuses: frozenset[SyncStatus] | None = None
    updated_since: datetime | None = None
    payload_equals: Mapping[str, Any] | None = None
    include_deleted: bool = False


@dataclass(frozen=True)
class QueueFilter:
    """Optional narrowing for :meth:`LocalStore.peek`."""

    target_kind: str | None = None
    target_id: str | None = None
    action_kinds: frozenset[ActionKind] | None = None
    statuses: frozenset[ActionStatus] = frozenset({ActionStatus.PENDING})
    # Ignore scheduled_at backoff (used by inspection tooling).
    include_scheduled: bool = False


@dataclass(frozen=True)
class BumpResult:
    action: PendingAction
    permanently_failed: bool


@dataclass
class StoreStats:
    entities: dict[str, int] = field(default_factory=dict)
    cache_entries: int = 0
    queued_actions: int = 0
    open_conflicts: int = 0


def _to_entity(kind: EntityKind, row: EntityRowMixin) -> Entity:
    return Entity(
        kind=kind,
        id=row.id,
        updated_at=row.updated_at,
        payload=dict(row.payload or {}),
        deleted=row.deleted,
        sync_status=SyncStatus(row.sync_status),
    )


def _to_state(kind: EntityKind, row: EntityRowMixin) -> RowState:
    return RowState(
        kind=kind,
        id=row.id,
        updated_at=row.updated_at,
        sync_status=SyncStatus(row.sync_status),
        payload=dict(row.payload or {}),
        deleted=row.deleted,
    )


class LocalStore:
    """Durable relational cache of entities, cache entries and the sync queue."""

    def __init__(
        self,
        engine: Engine,
        *,
        clock: Clock = utcnow,
        max_attempts: int = MAX_ATTEMPTS,
        session_factory: sessionmaker[Session] | None = None,
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory or create_session_factory(engine)
        self._clock = clock
        self.max_attempts = max_attempts
        self._writer_lock = asyncio.Lock()
        self._opened = False
        self._unavailable: StoreUnavailableError | None = None

    # --- lifecycle -----------------------------------------------------------------

    async def open(self) -> None:
        """Create the schema, handle version upgrades and recover the queue.

        A failure here is fatal: every later call raises StoreUnavailableError.
        """

        if self._opened:
            return
        try:
            await asyncio.to_thread(self._open_sync)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Local store failed to open: %s", exc, exc_info=True)
            self._unavailable = StoreUnavailableError(f"Local store unavailable: {exc}")
            raise self._unavailable from exc
        self._opened = True

    def _open_sync(self) -> None:
        create_tables(self._engine)
        with self._session_factory() as session, session.begin():
            meta = session.get(SchemaMeta, 1)
            if meta is None:
                session.add(SchemaMeta(id=1, version=SCHEMA_VERSION))
            elif meta.version != SCHEMA_VERSION:
                purged = session.execute(delete(CacheEntry)).rowcount
                logger.info(
                    "Schema upgraded from %d to %d; purged %d cache entries",
                    meta.version,
                    SCHEMA_VERSION,
                    purged,
                )
                meta.version = SCHEMA_VERSION

            recovered = session.execute(
                update(PendingAction)
                .where(PendingAction.status == ActionStatus.IN_FLIGHT.value)
                .values(status=ActionStatus.PENDING.value)
            ).rowcount
            for model in ENTITY_MODELS.values():
                session.execute(
                    update(model)
                    .where(model.sync_status == SyncStatus.IN_FLIGHT.value)
                    .values(sync_status=SyncStatus.DIRTY.value)
                )
            if recovered:
                logger.info("Recovered %d in-flight actions to pending", recovered)

    async def close(self) -> None:
        async with self._writer_lock:
            await asyncio.to_thread(self._engine.dispose)
        self._opened = False

    # --- transaction plumbing ------------------------------------------------------

    def _check_available(self) -> None:
        if self._unavailable is not None:
            raise self._unavailable

    def _run(self, fn: Callable[[Session], T]) -> T:
        try:
            with self._session_factory() as session, session.begin():
                return fn(session)
        except OperationalError as exc:
            raise StoreUnavailableError(f"Local store operation failed: {exc}") from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"Local store operation failed: {exc}") from exc

    async def _write(self, fn: Callable[[Session], T]) -> T:
        self._check_available()
        async with self._writer_lock:
            return await asyncio.to_thread(self._run, fn)

    async def _read(self, fn: Callable[[Session], T]) -> T:
        self._check_available()
        return await asyncio.to_thread(self._run, fn)

    def now(self) -> datetime:
        return self._clock()

    # --- entities ------------------------------------------------------------------

    async def get(self, kind: EntityKind | str, entity_id: str) -> Entity | None:
        """Return the live row for (kind, id); tombstones read as absent."""

        kind = EntityKind(kind)
        model = model_for(kind)

        def _get(session: Session) -> Entity | None:
            row = session.get(model, entity_id)
            if row is None or row.deleted:
                return None
            return _to_entity(kind, row)

        return await self._read(_get)

    async def get_state(self, kind: EntityKind | str, entity_id: str) -> RowState | None:
        kind = EntityKind(kind)
        model = model_for(kind)

        def _get(session: Session) -> RowState | None:
            row = session.get(model, entity_id)
            return _to_state(kind, row) if row is not None else None

        return await self._read(_get)

    async def list(
        self,
        kind: EntityKind | str,
        filter: EntityFilter | None = None,  # noqa: A002
        limit: int = 50,
        offset: int = 0,
    ) -> list[Entity]:
        """List rows of one kind, newest first."""

        kind = EntityKind(kind)
        model = model_for(kind)
        flt = filter or EntityFilter()

        def _list(session: Session) -> list[Entity]:
            stmt = select(model).order_by(model.updated_at.desc(), model.id)
            if not flt.include_deleted:
                stmt = stmt.where(model.deleted.is_(False))
            if flt.sync_statuses:
                stmt = stmt.where(model.sync_status.in_([s.value for s in flt.sync_statuses]))
            if flt.updated_since is not None:
                stmt = stmt.where(model.updated_at >= flt.updated_since)

            if not flt.payload_equals:
                rows = session.scalars(stmt.limit(limit).offset(offset)).all()
                return [_to_entity(kind, row) for row in rows]

            # JSON payload matching is done in Python to stay dialect-neutral.
            matched = [
                row
                for row in session.scalars(stmt)
                if all((row.payload or {}).get(k) == v for k, v in flt.payload_equals.items())
            ]
            return [_to_entity(kind, row) for row in matched[offset : offset + limit]]

        return await self._read(_list)

    async def upsert(
        self,
        kind: EntityKind | str,
        entity: EntitySnapshot,
        *,
        sync_status: SyncStatus | None = None,
    ) -> Entity:
        """Insert or replace the row for (kind, entity.id).

        Replaying the same snapshot leaves the row unchanged.
        """

        kind = EntityKind(kind)
        if entity.kind != kind:
            raise ValueError(f"Snapshot kind {entity.kind} does not match {kind}")
        model = model_for(kind)
        status = sync_status or getattr(entity, "sync_status", SyncStatus.CLEAN)

        def _upsert(session: Session) -> Entity:
            row = session.get(model, entity.id)
            if row is None:
                row = model(id=entity.id)
                session.add(row)
            row.updated_at = entity.updated_at
            row.payload = dict(entity.payload)
            row.deleted = entity.deleted
            row.sync_status = SyncStatus(status).value
            session.flush()
            return _to_entity(kind, row)

        return await self._write(_upsert)

    async def update_partial(
        self,
        kind: EntityKind | str,
        entity_id: str,
        patch: Mapping[str, Any],
        *,
        sync_status: SyncStatus = SyncStatus.DIRTY,
        updated_at: datetime | None = None,
    ) -> Entity:
        """Shallow-merge ``patch`` into the payload in one read-modify-write.

        The resulting updated_at never moves backwards.
        """

        kind = EntityKind(kind)
        model = model_for(kind)
        stamp = updated_at or self.now()

        def _update(session: Session) -> Entity:
            row = session.get(model, entity_id)
            if row is None or row.deleted:
                raise EntityNotFoundError(kind.value, entity_id)
            row.payload = {**(row.payload or {}), **patch}
            row.updated_at = max(row.updated_at, stamp)
            row.sync_status = sync_status.value
            session.flush()
            return _to_entity(kind, row)

        return await self._write(_update)

    async def delete(self, kind: EntityKind | str, entity_id: str) -> bool:
        """Remove the row outright, tombstone included."""

        model = model_for(kind)

        def _delete(session: Session) -> bool:
            return session.execute(delete(model).where(model.id == entity_id)).rowcount > 0

        return await self._write(_delete)

    async def apply_snapshot(self, snapshot: EntitySnapshot, planner: Planner) -> ApplyResult:
        """Run the apply rules against the committed row and write the outcome.

        Reading the row, deciding and writing happen in one transaction on the
        writer lane, so concurrent applies for the same key cannot interleave.
        """

        kind = EntityKind(snapshot.kind)
        model = model_for(kind)

        def _apply(session: Session) -> ApplyResult:
            row = session.get(model, snapshot.id)
            state = _to_state(kind, row) if row is not None else None
            decision = planner(state, snapshot)

            if decision is ApplyDecision.SKIP:
                return ApplyResult(decision)

            if decision is ApplyDecision.CONFLICT:
                conflict = self._record_conflict_sync(
                    session,
                    kind.value,
                    snapshot.id,
                    local_payload=state.payload if state else None,
                    server_payload=snapshot.payload,
                    server_updated_at=snapshot.updated_at,
                    server_deleted=snapshot.deleted,
                )
                return ApplyResult(decision, conflict=conflict)

            if row is None:
                row = model(id=snapshot.id)
                session.add(row)
            row.updated_at = snapshot.updated_at
            row.sync_status = SyncStatus.CLEAN.value
            if decision is ApplyDecision.TOMBSTONE:
                row.deleted = True
            else:
                row.deleted = False
                row.payload = dict(snapshot.payload)
            if row.payload is None:
                row.payload = {}
            session.flush()
            return ApplyResult(decision, entity=_to_entity(kind, row))

        return await self._write(_apply)

    async def purge_stale(self, older_than: timedelta) -> int:
        """Remove clean rows not updated within ``older_than``."""

        horizon = self.now() - older_than

        def _purge(session: Session) -> int:
            removed = 0
            for model in ENTITY_MODELS.values():
                removed += session.execute(
                    delete(model).where(
                        model.sync_status == SyncStatus.CLEAN.value,
                        model.updated_at < horizon,
                    )
                ).rowcount
            return removed

        removed = await self._write(_purge)
        if removed:
            logger.info("Purged %d stale entity rows", removed)
        return removed

    # --- cache ---------------------------------------------------------------------

    async def cache_get(self, key: str, default: Any = None) -> Any:
        """Return the cached value, or ``default`` on a miss.

        An expired entry is a miss and is deleted on the spot. Pass a sentinel
        as ``default`` to tell a cached ``null`` body from a miss.
        """

        now = self.now()

        def _get(session: Session) -> tuple[bool, Any]:
            entry = session.get(CacheEntry, key)
            if entry is None:
                return False, default
            if entry.expires_at <= now:
                return True, default
            return False, entry.value

        expired, value = await self._read(_get)
        if expired:
            await self._write(
                lambda session: session.execute(
                    delete(CacheEntry).where(CacheEntry.key == key, CacheEntry.expires_at <= now)
                )
            )
            logger.debug("Cache entry %s expired", key)
        return value

    async def cache_put(self, key: str, value: Any, ttl: float | timedelta) -> None:
        ttl_delta = ttl if isinstance(ttl, timedelta) else timedelta(seconds=ttl)
        if ttl_delta <= timedelta(0):
            raise ValueError("Cache TTL must be positive")
        now = self.now()

        def _put(session: Session) -> None:
            entry = session.get(CacheEntry, key)
            if entry is None:
                entry = CacheEntry(key=key)
                session.add(entry)
            entry.value = JSON.NULL if value is None else value
            entry.created_at = now
            entry.expires_at = now + ttl_delta

        await self._write(_put)

    async def cache_sweep(self) -> int:
        """Delete every expired cache entry; returns the number removed."""

        now = self.now()
        return await self._write(
            lambda session: session.execute(
                delete(CacheEntry).where(CacheEntry.expires_at <= now)
            ).rowcount
        )

    async def cache_clear(self) -> int:
        return await self._write(lambda session: session.execute(delete(CacheEntry)).rowcount)

    # --- sync queue ----------------------------------------------------------------

    async def enqueue(
        self,
        *,
        kind: ActionKind | str,
        target_kind: str,
        target_id: str,
        payload: Mapping[str, Any] | None = None,
        priority: ActionPriority | str | int = ActionPriority.MEDIUM,
        action_id: str | None = None,
        optimistic: bool = True,
    ) -> PendingAction:
        """Persist a pending action.

        With ``optimistic`` set and an entity target, the local row is written
        dirty in the same transaction: create/update merge the payload, delete
        turns the row into a dirty tombstone.
        """

        action_kind = ActionKind(kind)
        prio = ActionPriority.parse(priority)
        body = dict(payload or {})
        now = self.now()

        def _enqueue(session: Session) -> PendingAction:
            action = PendingAction(
                action_id=action_id or str(uuid.uuid4()),
                kind=action_kind.value,
                target_kind=target_kind,
                target_id=target_id,
                payload=body,
                priority=int(prio),
                attempts=0,
                status=ActionStatus.PENDING.value,
                scheduled_at=now,
                created_at=now,
            )

            if optimistic and action_kind is not ActionKind.CUSTOM and target_kind in ENTITY_KINDS:
                model = model_for(target_kind)
                row = session.get(model, target_id)
                if row is None:
                    row = model(id=target_id, payload={}, updated_at=now, deleted=False)
                    session.add(row)
                else:
                    action.base_updated_at = row.updated_at
                if action_kind is ActionKind.DELETE:
                    row.deleted = True
                else:
                    row.deleted = False
                    row.payload = {**(row.payload or {}), **body}
                row.updated_at = max(row.updated_at, now)
                if row.sync_status == SyncStatus.CONFLICT:
                    # Park behind the open conflict until it is resolved.
                    action.status = ActionStatus.CONFLICT.value
                else:
                    row.sync_status = SyncStatus.DIRTY.value

            session.add(action)
            session.flush()
            return action

        action = await self._write(_enqueue)
        logger.debug(
            "Enqueued %s action %s for %s/%s",
            action.kind,
            action.action_id,
            target_kind,
            target_id,
        )
        return action

    async def get_action(self, action_id: str) -> PendingAction | None:
        return await self._read(lambda session: session.get(PendingAction, action_id))

    async def peek(self, limit: int = 10, filter: QueueFilter | None = None) -> list[PendingAction]:  # noqa: A002
        """Return up to ``limit`` actions ready to ship.

        Order: higher priority first, then earlier created_at, then fewer
        attempts. An action is held back while an older action for the same
        target is still queued and not returned ahead of it, so mutations on one
        target always ship in enqueue order.
        """

        flt = filter or QueueFilter()
        now = self.now()

        def _peek(session: Session) -> list[PendingAction]:
            stmt = select(PendingAction).where(
                PendingAction.status.in_([s.value for s in flt.statuses])
            )
            if not flt.include_scheduled:
                stmt = stmt.where(PendingAction.scheduled_at <= now)
            if flt.target_kind is not None:
                stmt = stmt.where(PendingAction.target_kind == flt.target_kind)
            if flt.target_id is not None:
                stmt = stmt.where(PendingAction.target_id == flt.target_id)
            if flt.action_kinds:
                stmt = stmt.where(PendingAction.kind.in_([k.value for k in flt.action_kinds]))
            stmt = stmt.order_by(
                PendingAction.priority.desc(),
                PendingAction.created_at.asc(),
                PendingAction.attempts.asc(),
            )
            candidates = session.scalars(stmt).all()
            if not candidates:
                return []

            targets = {(a.target_kind, a.target_id) for a in candidates}
            queued: dict[tuple[str, str], list[PendingAction]] = {}
            for other in session.scalars(
                select(PendingAction).order_by(PendingAction.created_at.asc())
            ):
                key = (other.target_kind, other.target_id)
                if key in targets:
                    queued.setdefault(key, []).append(other)

            selected: list[PendingAction] = []
            chosen: set[str] = set()
            for action in candidates:
                key = (action.target_kind, action.target_id)
                older = [
                    o
                    for o in queued[key]
                    if o.action_id != action.action_id
                    and (o.created_at, o.action_id) < (action.created_at, action.action_id)
                ]
                if any(o.action_id not in chosen for o in older):
                    continue
                selected.append(action)
                chosen.add(action.action_id)
                if len(selected) >= limit:
                    break
            return selected

        return await self._read(_peek)

    async def mark_in_flight(self, action_ids: Iterable[str]) -> None:
        ids = list(action_ids)
        if not ids:
            return

        def _mark(session: Session) -> None:
            actions = session.scalars(
                select(PendingAction).where(PendingAction.action_id.in_(ids))
            ).all()
            for action in actions:
                action.status = ActionStatus.IN_FLIGHT.value
                self._set_row_status(
                    session,
                    action.target_kind,
                    action.target_id,
                    SyncStatus.IN_FLIGHT,
                    only_from=(SyncStatus.DIRTY,),
                )

        await self._write(_mark)

    async def ack(self, action_id: str) -> PendingAction | None:
        """Retire an acknowledged action.

        The target row turns clean once no other queued action targets it.
        """

        return await self._write(lambda session: self._retire_sync(session, action_id))

    async def remove_action(self, action_id: str) -> PendingAction | None:
        """Retire an action that failed permanently."""

        return await self._write(lambda session: self._retire_sync(session, action_id))

    def _retire_sync(self, session: Session, action_id: str) -> PendingAction | None:
        action = session.get(PendingAction, action_id)
        if action is None:
            return None
        session.delete(action)
        session.flush()
        self._settle_target_sync(session, action.target_kind, action.target_id)
        return action

    async def bump_attempts(
        self,
        action_id: str,
        *,
        error: str | None = None,
        backoff_base_seconds: float = 1.0,
    ) -> BumpResult | None:
        """Count a transient failure and reschedule with 2^attempts backoff.

        Reaching max_attempts removes the action instead.
        """

        now = self.now()

        def _bump(session: Session) -> BumpResult | None:
            action = session.get(PendingAction, action_id)
            if action is None:
                return None
            action.attempts = min(action.attempts + 1, self.max_attempts)
            action.last_error = error
            if action.attempts >= self.max_attempts:
                session.delete(action)
                session.flush()
                self._settle_target_sync(session, action.target_kind, action.target_id)
                return BumpResult(action, permanently_failed=True)

            action.status = ActionStatus.PENDING.value
            action.scheduled_at = now + timedelta(
                seconds=backoff_base_seconds * (2**action.attempts)
            )
            self._set_row_status(
                session,
                action.target_kind,
                action.target_id,
                SyncStatus.DIRTY,
                only_from=(SyncStatus.IN_FLIGHT,),
            )
            return BumpResult(action, permanently_failed=False)

        return await self._write(_bump)

    async def release_in_flight(self, action_ids: Iterable[str]) -> None:
        """Return in-flight actions to pending without counting an attempt."""

        ids = list(action_ids)
        if not ids:
            return

        def _release(session: Session) -> None:
            for action in session.scalars(
                select(PendingAction).where(
                    PendingAction.action_id.in_(ids),
                    PendingAction.status == ActionStatus.IN_FLIGHT.value,
                )
            ):
                action.status = ActionStatus.PENDING.value
                self._set_row_status(
                    session,
                    action.target_kind,
                    action.target_id,
                    SyncStatus.DIRTY,
                    only_from=(SyncStatus.IN_FLIGHT,),
                )

        await self._write(_release)

    async def drop_permanently_failed(self) -> list[PendingAction]:
        """Remove every action that has exhausted max_attempts."""

        def _drop(session: Session) -> list[PendingAction]:
            failed = session.scalars(
                select(PendingAction).where(PendingAction.attempts >= self.max_attempts)
            ).all()
            for action in failed:
                session.delete(action)
            session.flush()
            for action in failed:
                self._settle_target_sync(session, action.target_kind, action.target_id)
            return list(failed)

        return await self._write(_drop)

    async def queue_size(self, statuses: Iterable[ActionStatus] | None = None) -> int:
        def _count(session: Session) -> int:
            stmt = select(func.count()).select_from(PendingAction)
            if statuses is not None:
                stmt = stmt.where(PendingAction.status.in_([s.value for s in statuses]))
            return int(session.scalar(stmt) or 0)

        return await self._read(_count)

    def _settle_target_sync(self, session: Session, target_kind: str, target_id: str) -> None:
        remaining = session.scalar(
            select(func.count())
            .select_from(PendingAction)
            .where(
                PendingAction.target_kind == target_kind,
                PendingAction.target_id == target_id,
            )
        )
        if not remaining:
            self._set_row_status(
                session,
                target_kind,
                target_id,
                SyncStatus.CLEAN,
                only_from=(SyncStatus.DIRTY, SyncStatus.IN_FLIGHT),
            )

    @staticmethod
    def _set_row_status(
        session: Session,
        target_kind: str,
        target_id: str,
        status: SyncStatus,
        *,
        only_from: tuple[SyncStatus, ...],
    ) -> None:
        try:
            model = model_for(target_kind)
        except ValueError:
            return  # custom targets have no entity row
        session.execute(
            update(model)
            .where(
                model.id == target_id,
                model.sync_status.in_([s.value for s in only_from]),
            )
            .values(sync_status=status.value)
        )

    # --- conflicts -----------------------------------------------------------------

    async def record_conflict(
        self,
        target_kind: str,
        target_id: str,
        *,
        local_payload: dict[str, Any] | None,
        server_payload: dict[str, Any] | None,
        server_updated_at: datetime | None,
        server_deleted: bool = False,
        server_conflict_id: str | None = None,
    ) -> Conflict:
        return await self._write(
            lambda session: self._record_conflict_sync(
                session,
                target_kind,
                target_id,
                local_payload=local_payload,
                server_payload=server_payload,
                server_updated_at=server_updated_at,
                server_deleted=server_deleted,
                server_conflict_id=server_conflict_id,
            )
        )

    def _record_conflict_sync(
        self,
        session: Session,
        target_kind: str,
        target_id: str,
        *,
        local_payload: dict[str, Any] | None,
        server_payload: dict[str, Any] | None,
        server_updated_at: datetime | None,
        server_deleted: bool = False,
        server_conflict_id: str | None = None,
    ) -> Conflict:
        """Open (or refresh) the single pending conflict for a target.

        Queued actions for the target are parked and the row is flagged, all
        in the caller's transaction.
        """

        conflict = session.scalars(
            select(Conflict).where(
                Conflict.target_kind == target_kind,
                Conflict.target_id == target_id,
                Conflict.resolution == ConflictResolution.PENDING.value,
            )
        ).first()
        if conflict is None:
            conflict = Conflict(
                conflict_id=str(uuid.uuid4()),
                target_kind=target_kind,
                target_id=target_id,
                local_payload=local_payload,
                detected_at=self.now(),
                resolution=ConflictResolution.PENDING.value,
            )
            session.add(conflict)
        elif local_payload is not None and conflict.local_payload is None:
            conflict.local_payload = local_payload

        conflict.server_payload = server_payload
        conflict.server_updated_at = server_updated_at
        conflict.server_deleted = server_deleted
        if server_conflict_id is not None:
            conflict.server_conflict_id = server_conflict_id

        session.execute(
            update(PendingAction)
            .where(
                PendingAction.target_kind == target_kind,
                PendingAction.target_id == target_id,
            )
            .values(status=ActionStatus.CONFLICT.value)
        )
        self._set_row_status(
            session,
            target_kind,
            target_id,
            SyncStatus.CONFLICT,
            only_from=(SyncStatus.CLEAN, SyncStatus.DIRTY, SyncStatus.IN_FLIGHT),
        )
        session.flush()
        return conflict

    async def get_conflict(self, conflict_id: str) -> Conflict | None:
        return await self._read(lambda session: session.get(Conflict, conflict_id))

    async def list_conflicts(self, *, pending_only: bool = True) -> list[Conflict]:
        def _list(session: Session) -> list[Conflict]:
            stmt = select(Conflict).order_by(Conflict.detected_at.asc())
            if pending_only:
                stmt = stmt.where(Conflict.resolution == ConflictResolution.PENDING.value)
            return list(session.scalars(stmt).all())

        return await self._read(_list)

    async def close_conflict(
        self,
        conflict_id: str,
        resolution: ConflictResolution,
        *,
        row_payload: dict[str, Any] | None,
        row_updated_at: datetime | None = None,
        row_deleted: bool = False,
        requeue: bool = False,
    ) -> tuple[Conflict, Entity | None, list[PendingAction]]:
        """Mark a conflict resolved and rewrite the target row in one transaction.

        With ``requeue`` the row stays dirty and the oldest parked action goes
        back to pending carrying ``row_payload`` as a full update based on the
        server's updated_at; the other parked actions are retired. Without it
        the row becomes clean at ``row_updated_at`` and every parked action is
        retired.
        """

        now = self.now()

        def _close(session: Session) -> tuple[Conflict, Entity | None, list[PendingAction]]:
            conflict = session.get(Conflict, conflict_id)
            if conflict is None:
                raise StoreError(f"No conflict {conflict_id!r}")
            conflict.resolution = resolution.value
            conflict.resolved_at = now

            parked = session.scalars(
                select(PendingAction)
                .where(
                    PendingAction.target_kind == conflict.target_kind,
                    PendingAction.target_id == conflict.target_id,
                    PendingAction.status == ActionStatus.CONFLICT.value,
                )
                .order_by(PendingAction.created_at.asc())
            ).all()

            requeued: list[PendingAction] = []
            retire = list(parked)
            if requeue:
                if parked:
                    keep, retire = parked[0], list(parked[1:])
                else:
                    keep = PendingAction(
                        action_id=str(uuid.uuid4()),
                        target_kind=conflict.target_kind,
                        target_id=conflict.target_id,
                        priority=int(ActionPriority.HIGH),
                        created_at=now,
                    )
                    session.add(keep)
                keep.kind = (
                    ActionKind.CREATE.value if conflict.server_deleted else ActionKind.UPDATE.value
                )
                keep.payload = dict(row_payload or {})
                keep.status = ActionStatus.PENDING.value
                keep.attempts = 0
                keep.scheduled_at = now
                keep.base_updated_at = conflict.server_updated_at
                requeued.append(keep)

            for action in retire:
                session.delete(action)

            entity: Entity | None = None
            if conflict.target_kind in ENTITY_KINDS:
                kind = EntityKind(conflict.target_kind)
                model = model_for(kind)
                row = session.get(model, conflict.target_id)
                if row is None:
                    row = model(id=conflict.target_id, payload={}, updated_at=now)
                    session.add(row)
                if row_payload is not None:
                    row.payload = dict(row_payload)
                row.deleted = row_deleted
                if requeue:
                    stamps = [row.updated_at, now]
                    if conflict.server_updated_at is not None:
                        stamps.append(conflict.server_updated_at)
                    row.updated_at = max(stamps)
                    row.sync_status = SyncStatus.DIRTY.value
                else:
                    row.updated_at = row_updated_at or conflict.server_updated_at or now
                    row.sync_status = SyncStatus.CLEAN.value
                session.flush()
                entity = _to_entity(kind, row)
            else:
                session.flush()
            return conflict, entity, requeued

        return await self._write(_close)

    # --- cursors -------------------------------------------------------------------

    async def get_cursor(self, kind: EntityKind | str) -> datetime | None:
        def _get(session: Session) -> datetime | None:
            cursor = session.get(SyncCursor, EntityKind(kind).value)
            return cursor.since_instant if cursor else None

        return await self._read(_get)

    async def all_cursors(self) -> dict[EntityKind, datetime | None]:
        def _all(session: Session) -> dict[EntityKind, datetime | None]:
            rows = session.scalars(select(SyncCursor)).all()
            return {EntityKind(row.kind): row.since_instant for row in rows}

        return await self._read(_all)

    async def advance_cursor(self, kind: EntityKind | str, since_instant: datetime) -> datetime:
        """Move the cursor forward; an older instant leaves it where it is."""

        key = EntityKind(kind).value

        def _advance(session: Session) -> datetime:
            cursor = session.get(SyncCursor, key)
            if cursor is None:
                cursor = SyncCursor(kind=key, since_instant=since_instant)
                session.add(cursor)
            elif cursor.since_instant is None or since_instant > cursor.since_instant:
                cursor.since_instant = since_instant
            return cursor.since_instant

        return await self._write(_advance)

    async def reset_cursor(self, kind: EntityKind | str) -> None:
        key = EntityKind(kind).value
        await self._write(
            lambda session: session.execute(delete(SyncCursor).where(SyncCursor.kind == key))
        )

    # --- rate counters -------------------------------------------------------------

    async def rate_hit(
        self,
        subject: str,
        bucket: str,
        *,
        limit: int,
        window: timedelta,
    ) -> tuple[bool, int]:
        """Count one request in a fixed window; returns (allowed, count)."""

        now = self.now()

        def _hit(session: Session) -> tuple[bool, int]:
            counter = session.get(RateCounter, (subject, bucket))
            if counter is None:
                counter = RateCounter(subject=subject, bucket=bucket, window_start=now, count=0)
                session.add(counter)
            elif now - counter.window_start >= window:
                counter.window_start = now
                counter.count = 0
            if counter.count >= limit:
                return False, counter.count
            counter.count += 1
            return True, counter.count

        return await self._write(_hit)

    # --- stats ---------------------------------------------------------------------

    async def stats(self) -> StoreStats:
        def _stats(session: Session) -> StoreStats:
            result = StoreStats()
            for kind, model in ENTITY_MODELS.items():
                result.entities[kind.value] = int(
                    session.scalar(
                        select(func.count()).select_from(model).where(model.deleted.is_(False))
                    )
                    or 0
                )
            result.cache_entries = int(
                session.scalar(select(func.count()).select_from(CacheEntry)) or 0
            )
            result.queued_actions = int(
                session.scalar(select(func.count()).select_from(PendingAction)) or 0
            )
            result.open_conflicts = int(
                session.scalar(
                    select(func.count())
                    .select_from(Conflict)
                    .where(Conflict.resolution == ConflictResolution.PENDING.value)
                )
                or 0
            )
            return result

        return await self._read(_stats)
