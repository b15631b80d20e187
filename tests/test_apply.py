from __future__ import annotations

import asyncio
import random
from datetime import timedelta

import pytest

from clan_sync.core.errors import PayloadValidationError
from clan_sync.models import EntityKind, SyncStatus
from clan_sync.schemas.entity import EntitySnapshot
from clan_sync.services.apply import plan_acknowledged, plan_apply
from clan_sync.services.events import ChangeEvent, ChangeOrigin, ConflictDetectedEvent
from clan_sync.services.store import ApplyDecision, RowState
from tests.fake_server import SERVER_EPOCH


def row(status: SyncStatus, *, at=SERVER_EPOCH, deleted=False) -> RowState:
    return RowState(
        kind=EntityKind.CONTENT,
        id="c1",
        updated_at=at,
        sync_status=status,
        payload={"title": "local"},
        deleted=deleted,
    )


def incoming(seconds: int, *, deleted=False, payload=None) -> EntitySnapshot:
    return EntitySnapshot(
        kind=EntityKind.CONTENT,
        id="c1",
        updated_at=SERVER_EPOCH + timedelta(seconds=seconds),
        payload=payload if payload is not None else {"title": f"server-{seconds}"},
        deleted=deleted,
    )


@pytest.mark.parametrize(
    ("local", "snapshot", "expected"),
    [
        (None, incoming(1), ApplyDecision.INSERT),
        (None, incoming(1, deleted=True), ApplyDecision.TOMBSTONE),
        (row(SyncStatus.CLEAN), incoming(10), ApplyDecision.OVERWRITE),
        (row(SyncStatus.CLEAN), incoming(10, deleted=True), ApplyDecision.TOMBSTONE),
        (row(SyncStatus.CLEAN), incoming(0), ApplyDecision.SKIP),
        (row(SyncStatus.CLEAN), incoming(-5), ApplyDecision.SKIP),
        (row(SyncStatus.DIRTY), incoming(10), ApplyDecision.CONFLICT),
        (row(SyncStatus.IN_FLIGHT), incoming(10), ApplyDecision.CONFLICT),
        (row(SyncStatus.CONFLICT), incoming(10), ApplyDecision.CONFLICT),
        (row(SyncStatus.DIRTY), incoming(-1), ApplyDecision.SKIP),
        (row(SyncStatus.DIRTY), incoming(-1, deleted=True), ApplyDecision.CONFLICT),
        (row(SyncStatus.IN_FLIGHT), incoming(-1, deleted=True), ApplyDecision.CONFLICT),
        (row(SyncStatus.CONFLICT), incoming(0, deleted=True), ApplyDecision.CONFLICT),
        (row(SyncStatus.DIRTY, deleted=True), incoming(10, deleted=True), ApplyDecision.SKIP),
        (row(SyncStatus.CLEAN), incoming(-1, deleted=True), ApplyDecision.SKIP),
    ],
)
def test_plan_apply_rules(local, snapshot, expected):
    assert plan_apply(local, snapshot) is expected


def test_plan_acknowledged_overrides_clock_skew_on_clean_rows():
    ahead = row(SyncStatus.CLEAN, at=SERVER_EPOCH + timedelta(hours=1))

    assert plan_acknowledged(ahead, incoming(1)) is ApplyDecision.OVERWRITE
    assert plan_acknowledged(row(SyncStatus.DIRTY), incoming(10)) is ApplyDecision.SKIP
    assert plan_acknowledged(None, incoming(1)) is ApplyDecision.INSERT
    assert plan_acknowledged(ahead, incoming(1, deleted=True)) is ApplyDecision.TOMBSTONE


@pytest.mark.asyncio
async def test_apply_emits_change_event_after_commit(pipeline, store, recorded_events):
    result = await pipeline.apply(incoming(1), origin=ChangeOrigin.SERVER)

    assert result.decision is ApplyDecision.INSERT
    stored = await store.get(EntityKind.CONTENT, "c1")
    assert stored.payload == {"title": "server-1"}
    assert recorded_events == [
        ChangeEvent(kind="content", id="c1", origin=ChangeOrigin.SERVER, entity=stored)
    ]


@pytest.mark.asyncio
async def test_monotonic_apply_skips_without_event(pipeline, store, recorded_events):
    await pipeline.apply(incoming(5), origin=ChangeOrigin.SERVER)
    recorded_events.clear()

    result = await pipeline.apply(incoming(5, payload={"title": "same instant"}), origin=ChangeOrigin.SERVER)

    assert result.decision is ApplyDecision.SKIP
    assert (await store.get(EntityKind.CONTENT, "c1")).payload == {"title": "server-5"}
    assert recorded_events == []


@pytest.mark.asyncio
async def test_newer_server_state_over_dirty_row_records_conflict(pipeline, store, recorded_events):
    await store.enqueue(kind="update", target_kind="content", target_id="c1", payload={"title": "mine"})

    result = await pipeline.apply(incoming(150), origin=ChangeOrigin.SERVER)

    assert result.decision is ApplyDecision.CONFLICT
    local = await store.get(EntityKind.CONTENT, "c1")
    assert local.payload == {"title": "mine"}
    assert local.sync_status is SyncStatus.CONFLICT
    conflicts = await store.list_conflicts()
    assert len(conflicts) == 1
    assert conflicts[0].server_payload == {"title": "server-150"}
    assert [type(e) for e in recorded_events] == [ConflictDetectedEvent]


@pytest.mark.asyncio
async def test_invalid_payload_is_rejected_before_any_write(pipeline, store, recorded_events):
    bad = incoming(1, payload={"title": 42, "tags": "not-a-list"})

    with pytest.raises(PayloadValidationError):
        await pipeline.apply(bad, origin=ChangeOrigin.REALTIME)

    assert await store.get(EntityKind.CONTENT, "c1") is None
    assert recorded_events == []


@pytest.mark.asyncio
async def test_apply_many_skips_invalid_snapshots(pipeline, store):
    good = EntitySnapshot(
        kind=EntityKind.USER, id="u1", updated_at=SERVER_EPOCH, payload={"username": "ok"}
    )
    bad = EntitySnapshot(
        kind=EntityKind.VOTE, id="v1", updated_at=SERVER_EPOCH, payload={"tokensSpent": -1}
    )

    results = await pipeline.apply_many([bad, good], origin=ChangeOrigin.SERVER)

    assert [r.decision for r in results] == [ApplyDecision.INSERT]
    assert await store.get(EntityKind.VOTE, "v1") is None
    assert await store.get(EntityKind.USER, "u1") is not None


@pytest.mark.asyncio
async def test_reordered_delivery_converges_to_in_order_state(pipeline, store):
    snapshots = [incoming(i, payload={"title": f"v{i}"}) for i in range(1, 31)]
    shuffled = list(snapshots)
    random.Random(7).shuffle(shuffled)

    await pipeline.apply_many(shuffled, origin=ChangeOrigin.REALTIME)

    final = await store.get(EntityKind.CONTENT, "c1")
    assert final.payload == {"title": "v30"}
    assert final.updated_at == snapshots[-1].updated_at


@pytest.mark.asyncio
async def test_deletion_snapshot_tombstones_clean_row(pipeline, store, recorded_events):
    await pipeline.apply(incoming(1), origin=ChangeOrigin.SERVER)
    recorded_events.clear()

    await pipeline.apply(incoming(2, deleted=True), origin=ChangeOrigin.REALTIME)

    assert await store.get(EntityKind.CONTENT, "c1") is None
    assert len(recorded_events) == 1
    assert recorded_events[0].deleted
    assert recorded_events[0].origin is ChangeOrigin.REALTIME


@pytest.mark.asyncio
async def test_server_deletion_of_dirty_row_records_conflict(pipeline, store, clock, recorded_events):
    clock.advance(100)
    await store.enqueue(kind="update", target_kind="content", target_id="c1", payload={"title": "mine"})

    result = await pipeline.apply(incoming(50, deleted=True), origin=ChangeOrigin.REALTIME)

    assert result.decision is ApplyDecision.CONFLICT
    local = await store.get(EntityKind.CONTENT, "c1")
    assert local.payload == {"title": "mine"}
    assert local.sync_status is SyncStatus.CONFLICT
    conflicts = await store.list_conflicts()
    assert [c.server_deleted for c in conflicts] == [True]
    assert [type(e) for e in recorded_events] == [ConflictDetectedEvent]


@pytest.mark.asyncio
async def test_key_locks_are_released_after_apply(pipeline):
    for i in range(20):
        snapshot = EntitySnapshot(
            kind=EntityKind.CONTENT,
            id=f"c{i}",
            updated_at=SERVER_EPOCH,
            payload={"title": str(i)},
        )
        await pipeline.apply(snapshot, origin=ChangeOrigin.REALTIME)

    assert pipeline._key_locks == {}


@pytest.mark.asyncio
async def test_key_lock_serializes_writers_then_evicts(pipeline):
    order: list[str] = []

    async def writer(name: str) -> None:
        async with pipeline.key_lock("content", "c1"):
            order.append(f"{name}-in")
            await asyncio.sleep(0)
            order.append(f"{name}-out")

    await asyncio.gather(writer("a"), writer("b"))

    assert order == ["a-in", "a-out", "b-in", "b-out"]
    assert pipeline._key_locks == {}
