"""Background synchronization between the local store and the server.

This module provides the SyncEngine class that makes the local store
converge toward the server under intermittent connectivity. It pushes queued
actions in batches (the drain), pulls per-kind updates since each cursor and
routes every server-originated snapshot through the apply pipeline.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Coroutine, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from clan_sync.core.errors import (
    ClanSyncError,
    ClientError,
    ConflictNotFoundError,
    GatewayError,
    OfflineError,
    PayloadDecodeError,
    StoreError,
    UnauthorizedError,
)
from clan_sync.core.settings import SyncConfig
from clan_sync.models import (
    ActionKind,
    ActionPriority,
    ConflictResolution,
    EntityKind,
    PendingAction,
)
from clan_sync.schemas.entity import Entity, validate_payload
from clan_sync.schemas.sync import (
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
from clan_sync.services.apply import ApplyPipeline
from clan_sync.services.connectivity import ConnectivityMonitor
from clan_sync.services.events import (
    ActionQueuedEvent,
    ChangeEvent,
    ChangeOrigin,
    ConflictDetectedEvent,
    EventBus,
    Listener,
    PermanentActionFailureEvent,
)
from clan_sync.services.gateway import MutationIntent, RequestGateway
from clan_sync.services.store import ENTITY_KINDS, LocalStore

logger = logging.getLogger(__name__)

SYNC_ACTIONS_PATH = "/sync/actions"
SYNC_INCREMENTAL_PATH = "/sync/incremental"
REQUEST_TARGET_KIND = "request"


@dataclass
class SyncResult:
    """Outcome counters for one drain, pull or full sync."""

    pushed: int = 0
    pulled: int = 0
    conflicts: int = 0
    transient_failures: int = 0
    permanent_failures: int = 0
    batches: int = 0
    skipped: bool = False
    reason: str | None = None
    cursors: dict[str, datetime] = field(default_factory=dict)

    def merge(self, other: SyncResult) -> SyncResult:
        self.pushed += other.pushed
        self.pulled += other.pulled
        self.conflicts += other.conflicts
        self.transient_failures += other.transient_failures
        self.permanent_failures += other.permanent_failures
        self.batches += other.batches
        self.cursors.update(other.cursors)
        return self


class SyncEngine:
    """Drives push, pull and conflict resolution for the data plane.

    The engine runs a periodic drain while started, drains immediately on an
    offline to online transition and pulls when the host regains visibility.
    Only one drain runs at a time, and pulls share a single lock.
    """

    def __init__(
        self,
        config: SyncConfig,
        store: LocalStore,
        gateway: RequestGateway,
        pipeline: ApplyPipeline,
        events: EventBus,
        connectivity: ConnectivityMonitor,
    ) -> None:
        self.config = config
        self.store = store
        self.gateway = gateway
        self.pipeline = pipeline
        self.events = events
        self.connectivity = connectivity
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._draining = False
        self._pull_lock = asyncio.Lock()
        self._background: set[asyncio.Task[Any]] = set()

        gateway.set_offline_sink(self._enqueue_intent)
        connectivity.add_listener(self._on_connectivity_change)

    # --- lifecycle -----------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic drain loop."""

        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())
            if self.connectivity.online:
                self._spawn(self.drain())

    async def stop(self) -> None:
        """Stop scheduling and let a running drain finish its current batch."""

        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def draining(self) -> bool:
        return self._draining

    async def wait_idle(self) -> None:
        """Wait for every background drain and pull started so far."""

        while pending := [task for task in self._background if not task.done()]:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run(self) -> None:
        interval = max(0.1, self.config.periodic_sync_seconds)

        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
                return
            except TimeoutError:
                pass

            if not self.connectivity.online:
                continue
            try:
                if await self.store.queue_size() > 0:
                    await self.drain()
            except UnauthorizedError as e:
                logger.warning("SyncEngine paused until re-authentication: %s", e)
            except GatewayError as e:
                logger.warning("SyncEngine encountered gateway error: %s", e)
            except StoreError as e:
                logger.error("SyncEngine encountered store error: %s", e, exc_info=True)
            except ClanSyncError as e:
                logger.warning("SyncEngine encountered sync error: %s", e)
            except (OSError, ConnectionError, TimeoutError) as e:
                logger.warning("SyncEngine encountered network error: %s", e)
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                logger.error(
                    "SyncEngine encountered data processing error: %s", e, exc_info=True
                )

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, ClanSyncError):
            logger.warning("Background sync task failed: %s", exc)
        elif exc is not None:
            logger.error("Background sync task crashed", exc_info=exc)

    async def _on_connectivity_change(self, online: bool) -> None:
        if online and not self._stopping.is_set():
            self._spawn(self.drain())

    def on_visibility_regained(self) -> asyncio.Task[Any]:
        """Refresh every cursor after the host app returns to the foreground."""

        return self._spawn(self.incremental_sync())

    # --- listeners -----------------------------------------------------------------

    def subscribe(self, listener: Listener) -> None:
        """Receive change events ``{kind, id, origin}`` after each commit."""

        self.events.subscribe(listener, (ChangeEvent,))

    def unsubscribe(self, listener: Listener) -> None:
        self.events.unsubscribe(listener)

    # --- enqueue -------------------------------------------------------------------

    async def enqueue_mutation(
        self,
        kind: ActionKind | str,
        target_kind: str,
        target_id: str,
        payload: Mapping[str, Any] | None = None,
        priority: ActionPriority | str | int = ActionPriority.MEDIUM,
    ) -> PendingAction:
        """Persist a mutation intent and write it optimistically to the local row.

        When online and no drain is running, a drain is started in the
        background.
        """

        action_kind = ActionKind(kind)
        if action_kind in (ActionKind.CREATE, ActionKind.UPDATE) and target_kind in ENTITY_KINDS:
            validate_payload(target_kind, dict(payload or {}))

        action = await self.store.enqueue(
            kind=action_kind,
            target_kind=target_kind,
            target_id=target_id,
            payload=payload,
            priority=priority,
        )
        await self.events.emit(
            ActionQueuedEvent(
                action_id=action.action_id,
                target_kind=target_kind,
                target_id=target_id,
            )
        )
        if target_kind in ENTITY_KINDS and action_kind is not ActionKind.CUSTOM:
            await self.events.emit(
                ChangeEvent(
                    kind=target_kind,
                    id=target_id,
                    origin=ChangeOrigin.LOCAL,
                    entity=await self.store.get(target_kind, target_id),
                    deleted=action_kind is ActionKind.DELETE,
                )
            )

        if self.connectivity.online and not self._draining and not self._stopping.is_set():
            self._spawn(self.drain())
        return action

    async def _enqueue_intent(self, intent: MutationIntent) -> PendingAction:
        if intent.target_kind and intent.target_id and intent.action_kind:
            return await self.enqueue_mutation(
                intent.action_kind,
                intent.target_kind,
                intent.target_id,
                intent.body if isinstance(intent.body, Mapping) else {"body": intent.body},
                intent.priority,
            )
        return await self.enqueue_mutation(
            ActionKind.CUSTOM,
            REQUEST_TARGET_KIND,
            intent.path,
            {"method": intent.method, "path": intent.path, "body": intent.body},
            intent.priority,
        )

    # --- drain (push) --------------------------------------------------------------

    async def drain(self) -> SyncResult:
        """Ship queued actions in batches until the queue is empty.

        Returns immediately when offline or when another drain is running. A
        transient failure of a whole batch ends the pass; the affected actions
        are rescheduled with backoff.
        """

        if not self.connectivity.online:
            return SyncResult(skipped=True, reason="offline")
        if self._draining:
            return SyncResult(skipped=True, reason="drain already running")

        self._draining = True
        result = SyncResult()
        try:
            for action in await self.store.drop_permanently_failed():
                await self._report_permanent(action, action.last_error)
                result.permanent_failures += 1

            while result.batches < self.config.max_batches_per_drain:
                if self._stopping.is_set() or not self.connectivity.online:
                    break
                batch = await self.store.peek(self.config.batch_size)
                if not batch:
                    break
                result.batches += 1
                if not await self._ship_batch(batch, result):
                    break
                await asyncio.sleep(0)
        finally:
            self._draining = False

        logger.info(
            "Drain finished: %d pushed, %d transient, %d permanent, %d conflicts",
            result.pushed,
            result.transient_failures,
            result.permanent_failures,
            result.conflicts,
        )
        return result

    async def _ship_batch(self, batch: list[PendingAction], result: SyncResult) -> bool:
        """Submit one batch; returns False when the drain pass should stop."""

        ids = [action.action_id for action in batch]
        await self.store.mark_in_flight(ids)
        try:
            response = await self._submit(batch)
        except asyncio.CancelledError:
            await self.store.release_in_flight(ids)
            raise
        except OfflineError:
            await self.store.release_in_flight(ids)
            return False
        except UnauthorizedError:
            await self.store.release_in_flight(ids)
            raise
        except ClientError as exc:
            if exc.retryable:
                await self._record_transient_many(batch, str(exc), result)
                return False
            if len(batch) > 1:
                # One bad action must not sink the rest of the batch.
                await self.store.release_in_flight(ids)
                for action in batch:
                    if not await self._ship_batch([action], result):
                        return False
                return True
            await self._record_permanent(batch[0], str(exc), result)
            return True
        except (GatewayError, PayloadDecodeError) as exc:
            await self._record_transient_many(batch, str(exc), result)
            return False

        await self._process_response(batch, response, result)
        return True

    async def _submit(self, batch: list[PendingAction]) -> SyncActionsResponse:
        request = SyncActionsRequest(
            actions=[
                ActionEnvelope(
                    action_id=action.action_id,
                    kind=action.kind,
                    target_kind=action.target_kind,
                    target_id=action.target_id,
                    payload=action.payload,
                    priority=ActionPriority(action.priority).label,
                    attempts=action.attempts,
                    created_at=action.created_at,
                    base_updated_at=action.base_updated_at,
                )
                for action in batch
            ]
        )
        idempotency_key = str(
            uuid.uuid5(uuid.NAMESPACE_URL, ",".join(a.action_id for a in batch))
        )
        body = await self.gateway.request(
            SYNC_ACTIONS_PATH,
            "POST",
            request.to_wire(),
            retries=0,
            idempotency_key=idempotency_key,
        )
        try:
            return SyncActionsResponse.model_validate(body or {})
        except ValidationError as exc:
            raise PayloadDecodeError(f"Malformed /sync/actions response: {exc}") from exc

    async def _process_response(
        self,
        batch: list[PendingAction],
        response: SyncActionsResponse,
        result: SyncResult,
    ) -> None:
        by_id: dict[str, ActionResult] = {r.action_id: r for r in response.results}
        conflicts_by_target: dict[tuple[str, str], ServerConflict] = {
            (c.target_kind, c.target_id): c for c in response.conflicts
        }

        for action in batch:
            action_result = by_id.get(action.action_id)
            if action_result is None:
                await self._record_transient(action, "missing from server response", result)
                continue

            outcome = action_result.outcome
            if outcome is ActionOutcome.SUCCESS:
                await self._acknowledge(action, action_result, result)
            elif outcome is ActionOutcome.TRANSIENT:
                await self._record_transient(action, action_result.error, result)
            elif outcome is ActionOutcome.PERMANENT:
                await self._record_permanent(action, action_result.error, result)
            else:
                server_conflict = conflicts_by_target.pop(
                    (action.target_kind, action.target_id), None
                )
                await self._record_action_conflict(action, action_result, server_conflict)
                result.conflicts += 1

        # Conflicts the server reported for rows outside this batch.
        for server_conflict in conflicts_by_target.values():
            await self._record_server_conflict(server_conflict)
            result.conflicts += 1

    async def _acknowledge(
        self,
        action: PendingAction,
        action_result: ActionResult,
        result: SyncResult,
    ) -> None:
        lock_kind = action.target_kind
        async with self.pipeline.key_lock(lock_kind, action.target_id):
            acked = await self.store.ack(action.action_id)
        if acked is None:
            # Already acknowledged by an earlier delivery of the same action.
            return
        result.pushed += 1
        if action_result.entity is not None:
            await self.pipeline.apply(
                action_result.entity,
                origin=ChangeOrigin.SERVER,
                acknowledged=True,
            )

    async def _record_transient(
        self, action: PendingAction, error: str | None, result: SyncResult
    ) -> None:
        bumped = await self.store.bump_attempts(
            action.action_id,
            error=error,
            backoff_base_seconds=self.config.retry_base_seconds,
        )
        if bumped is None:
            return
        if bumped.permanently_failed:
            await self._report_permanent(bumped.action, error)
            result.permanent_failures += 1
        else:
            result.transient_failures += 1
            logger.warning(
                "Action %s failed transiently (attempt %d/%d): %s",
                action.action_id,
                bumped.action.attempts,
                self.store.max_attempts,
                error,
            )

    async def _record_transient_many(
        self, batch: Iterable[PendingAction], error: str, result: SyncResult
    ) -> None:
        for action in batch:
            await self._record_transient(action, error, result)

    async def _record_permanent(
        self, action: PendingAction, error: str | None, result: SyncResult
    ) -> None:
        removed = await self.store.remove_action(action.action_id)
        if removed is None:
            return
        await self._report_permanent(removed, error)
        result.permanent_failures += 1

    async def _report_permanent(self, action: PendingAction, error: str | None) -> None:
        logger.error(
            "Action %s for %s/%s failed permanently after %d attempts: %s",
            action.action_id,
            action.target_kind,
            action.target_id,
            action.attempts,
            error,
        )
        await self.events.emit(
            PermanentActionFailureEvent(
                action_id=action.action_id,
                target_kind=action.target_kind,
                target_id=action.target_id,
                attempts=action.attempts,
                error=error,
            )
        )

    async def _record_action_conflict(
        self,
        action: PendingAction,
        action_result: ActionResult,
        server_conflict: ServerConflict | None,
    ) -> None:
        entity = action_result.entity
        server_payload = entity.payload if entity is not None else None
        server_updated_at = entity.updated_at if entity is not None else None
        if server_conflict is not None:
            server_payload = server_conflict.server_payload or server_payload
            server_updated_at = server_conflict.server_updated_at or server_updated_at

        local_state = None
        if action.target_kind in ENTITY_KINDS:
            local_state = await self.store.get_state(action.target_kind, action.target_id)
        conflict = await self.store.record_conflict(
            action.target_kind,
            action.target_id,
            local_payload=local_state.payload if local_state is not None else action.payload,
            server_payload=server_payload,
            server_updated_at=server_updated_at,
            server_deleted=bool(entity and entity.deleted),
            server_conflict_id=server_conflict.conflict_id if server_conflict else None,
        )
        await self.events.emit(
            ConflictDetectedEvent(
                conflict_id=conflict.conflict_id,
                target_kind=action.target_kind,
                target_id=action.target_id,
            )
        )

    async def _record_server_conflict(self, server_conflict: ServerConflict) -> None:
        conflict = await self.store.record_conflict(
            server_conflict.target_kind,
            server_conflict.target_id,
            local_payload=server_conflict.local_payload,
            server_payload=server_conflict.server_payload,
            server_updated_at=server_conflict.server_updated_at,
            server_conflict_id=server_conflict.conflict_id,
        )
        await self.events.emit(
            ConflictDetectedEvent(
                conflict_id=conflict.conflict_id,
                target_kind=server_conflict.target_kind,
                target_id=server_conflict.target_id,
            )
        )

    # --- pull ----------------------------------------------------------------------

    async def incremental_sync(self, kind: EntityKind | str | None = None) -> SyncResult:
        """Pull updates since each kind's cursor and apply them."""

        if not self.connectivity.online:
            return SyncResult(skipped=True, reason="offline")

        kinds = [EntityKind(kind)] if kind is not None else list(EntityKind)
        result = SyncResult()
        async with self._pull_lock:
            for entity_kind in kinds:
                since = await self.store.get_cursor(entity_kind)
                result.merge(await self._pull_kind(entity_kind, since))
        return result

    async def full_sync(
        self, current_snapshot: Mapping[EntityKind | str, datetime | None] | None = None
    ) -> SyncResult:
        """Pull every kind, then drain the queue.

        ``current_snapshot`` maps a kind to the instant the caller already
        holds; kinds missing from it are pulled from the beginning.
        """

        if not self.connectivity.online:
            return SyncResult(skipped=True, reason="offline")

        held = {EntityKind(k): v for k, v in (current_snapshot or {}).items()}
        result = SyncResult()
        async with self._pull_lock:
            for entity_kind in EntityKind:
                result.merge(await self._pull_kind(entity_kind, held.get(entity_kind)))

        drained = await self.drain()
        if drained.skipped:
            logger.debug("Full sync drain skipped: %s", drained.reason)
        return result.merge(drained)

    async def _pull_kind(self, kind: EntityKind, since: datetime | None) -> SyncResult:
        """Pull one kind, following ``hasMore`` pages, then advance its cursor.

        The cursor only moves after every page has been applied; a store
        failure leaves it untouched so the next pull replays the same range.
        """

        result = SyncResult()
        watermark = since
        while True:
            params: dict[str, Any] = {"kind": kind.value}
            if watermark is not None:
                params["since"] = watermark.isoformat()
            body = await self.gateway.request(
                SYNC_INCREMENTAL_PATH,
                "GET",
                params=params,
                cacheable=False,
            )
            try:
                page = IncrementalResponse.model_validate(body or {})
            except ValidationError as exc:
                raise PayloadDecodeError(f"Malformed /sync/incremental response: {exc}") from exc

            applied = await self.pipeline.apply_many(page.updates, origin=ChangeOrigin.SERVER)
            result.pulled += sum(1 for item in applied if item.changed)
            result.conflicts += sum(1 for item in applied if item.conflict is not None)
            for server_conflict in page.conflicts:
                await self._record_server_conflict(server_conflict)
                result.conflicts += 1

            next_since = page.next_since
            if next_since is None and page.updates:
                next_since = max(update.updated_at for update in page.updates)
            progressed = next_since is not None and (watermark is None or next_since > watermark)
            if progressed:
                watermark = next_since
            if not (page.has_more and progressed):
                break

        if watermark is not None and watermark != since:
            result.cursors[kind.value] = await self.store.advance_cursor(kind, watermark)
        logger.debug("Pulled %s: %d applied, cursor %s", kind.value, result.pulled, watermark)
        return result

    # --- conflicts -----------------------------------------------------------------

    async def resolve_conflict(
        self,
        conflict_id: str,
        resolution: ConflictResolution | str,
        merged_payload: Mapping[str, Any] | None = None,
    ) -> Entity | None:
        """Resolve a pending conflict and return the resulting entity.

        Server-reported conflicts are resolved on the server when online; all
        others are resolved locally. ``local`` and ``merge`` put the resolved
        payload back in the queue as a single update.
        """

        resolution = ConflictResolution(resolution)
        if resolution is ConflictResolution.PENDING:
            raise ValueError("Resolution must be local, server or merge")
        if resolution is ConflictResolution.MERGE and merged_payload is None:
            raise ValueError("Merge resolution requires a merged payload")

        conflict = await self.store.get_conflict(conflict_id)
        if conflict is None or conflict.resolution != ConflictResolution.PENDING.value:
            raise ConflictNotFoundError(conflict_id)

        async with self.pipeline.key_lock(conflict.target_kind, conflict.target_id):
            if self.connectivity.online and conflict.server_conflict_id:
                entity = await self._resolve_on_server(
                    conflict_id, conflict.server_conflict_id, resolution, merged_payload
                )
                origin = ChangeOrigin.SERVER
                requeued = False
            else:
                entity, requeued = await self._resolve_locally(
                    conflict_id, resolution, merged_payload
                )
                origin = ChangeOrigin.SERVER if not requeued else ChangeOrigin.LOCAL

        logger.info(
            "Resolved conflict %s on %s/%s as %s",
            conflict_id,
            conflict.target_kind,
            conflict.target_id,
            resolution.value,
        )
        if entity is not None:
            await self.events.emit(
                ChangeEvent(
                    kind=entity.kind.value,
                    id=entity.id,
                    origin=origin,
                    entity=entity,
                    deleted=entity.deleted,
                )
            )
        if requeued and self.connectivity.online and not self._stopping.is_set():
            self._spawn(self.drain())
        return entity

    async def _resolve_on_server(
        self,
        conflict_id: str,
        server_conflict_id: str,
        resolution: ConflictResolution,
        merged_payload: Mapping[str, Any] | None,
    ) -> Entity | None:
        request = ResolveRequest(
            resolution=resolution,
            selected_data=dict(merged_payload) if merged_payload is not None else None,
        )
        body = await self.gateway.request(
            f"/sync/conflicts/{server_conflict_id}/resolve",
            "POST",
            request.to_wire(),
        )
        try:
            resolved = ResolveResponse.model_validate(body or {}).resolved_data
        except ValidationError as exc:
            raise PayloadDecodeError(f"Malformed resolve response: {exc}") from exc
        if not resolved.deleted:
            validate_payload(resolved.kind, resolved.payload)

        _, entity, _ = await self.store.close_conflict(
            conflict_id,
            resolution,
            row_payload=resolved.payload,
            row_updated_at=resolved.updated_at,
            row_deleted=resolved.deleted,
        )
        return entity

    async def _resolve_locally(
        self,
        conflict_id: str,
        resolution: ConflictResolution,
        merged_payload: Mapping[str, Any] | None,
    ) -> tuple[Entity | None, bool]:
        conflict = await self.store.get_conflict(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(conflict_id)

        if resolution is ConflictResolution.SERVER:
            _, entity, _ = await self.store.close_conflict(
                conflict_id,
                resolution,
                row_payload=conflict.server_payload,
                row_updated_at=conflict.server_updated_at,
                row_deleted=conflict.server_deleted,
            )
            return entity, False

        if resolution is ConflictResolution.MERGE:
            payload = dict(merged_payload or {})
        else:
            state = None
            if conflict.target_kind in ENTITY_KINDS:
                state = await self.store.get_state(conflict.target_kind, conflict.target_id)
            payload = state.payload if state is not None else dict(conflict.local_payload or {})
        if conflict.target_kind in ENTITY_KINDS:
            validate_payload(conflict.target_kind, payload)

        _, entity, _ = await self.store.close_conflict(
            conflict_id,
            resolution,
            row_payload=payload,
            requeue=True,
        )
        return entity, True
