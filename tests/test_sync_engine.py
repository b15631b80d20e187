from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from clan_sync.core.errors import (
    ConflictNotFoundError,
    PayloadValidationError,
    QueuedForLaterError,
    UnauthorizedError,
)
from clan_sync.models import ActionStatus, ConflictResolution, EntityKind, SyncStatus
from clan_sync.services.events import (
    ActionQueuedEvent,
    ChangeEvent,
    ChangeOrigin,
    ConflictDetectedEvent,
    PermanentActionFailureEvent,
)
from clan_sync.services.gateway import MutationIntent
from clan_sync.services.sync_engine import SyncEngine, SyncResult
from tests.fake_server import iso
from tests.support import eventually


@pytest_asyncio.fixture()
async def small_batch_engine(make_config, store, gateway, pipeline, events, connectivity):
    sync = SyncEngine(make_config(batch_size=2), store, gateway, pipeline, events, connectivity)
    try:
        yield sync
    finally:
        await sync.stop()


async def queue_update(store, target_id, payload, *, target_kind="content"):
    return await store.enqueue(
        kind="update", target_kind=target_kind, target_id=target_id, payload=payload
    )


@pytest.mark.asyncio
async def test_enqueue_online_drains_in_background(engine, store, server, signed_in, recorded_events):
    action = await engine.enqueue_mutation("update", "content", "c1", {"title": "Hello"})
    await engine.wait_idle()

    assert server.entities[("content", "c1")]["payload"] == {"title": "Hello"}
    assert server.effects[action.action_id] == 1
    local = await store.get(EntityKind.CONTENT, "c1")
    assert local.sync_status is SyncStatus.CLEAN
    assert local.updated_at.isoformat().replace("+00:00", "Z") == server.entities[("content", "c1")]["updatedAt"]
    assert await store.queue_size() == 0

    assert isinstance(recorded_events[0], ActionQueuedEvent)
    changes = [e for e in recorded_events if isinstance(e, ChangeEvent)]
    assert [c.origin for c in changes] == [ChangeOrigin.LOCAL, ChangeOrigin.SERVER]


@pytest.mark.asyncio
async def test_enqueue_rejects_invalid_payload(engine, store):
    with pytest.raises(PayloadValidationError):
        await engine.enqueue_mutation("create", "vote", "v1", {"tokensSpent": -3})

    assert await store.queue_size() == 0


@pytest.mark.asyncio
async def test_drain_is_skipped_offline(engine, store, connectivity, server):
    await queue_update(store, "c1", {"title": "x"})
    await connectivity.set_online(False)

    result = await engine.drain()

    assert result.skipped
    assert result.reason == "offline"
    assert server.calls_to("POST", "/sync/actions") == 0


@pytest.mark.asyncio
async def test_drain_ships_in_batches(small_batch_engine, store, server, signed_in):
    for index in range(5):
        await queue_update(store, f"c{index}", {"title": str(index)})

    result = await small_batch_engine.drain()

    assert result.pushed == 5
    assert result.batches == 3
    assert [len(batch) for batch in server.action_batches] == [2, 2, 1]
    assert await store.queue_size() == 0


@pytest.mark.asyncio
async def test_transient_outcome_reschedules_action(engine, store, server, signed_in):
    action = await queue_update(store, "c1", {"title": "x"})
    server.script_outcome("c1", "transient")

    result = await engine.drain()

    assert result.transient_failures == 1
    retried = await store.get_action(action.action_id)
    assert retried.attempts == 1
    assert retried.status == ActionStatus.PENDING
    assert retried.last_error == "scripted transient"
    assert (await store.get(EntityKind.CONTENT, "c1")).sync_status is SyncStatus.DIRTY


@pytest.mark.asyncio
async def test_permanent_outcome_removes_action_once(engine, store, server, signed_in, recorded_events):
    action = await queue_update(store, "c1", {"title": "x"})
    server.script_outcome("c1", "permanent")

    result = await engine.drain()

    assert result.permanent_failures == 1
    assert await store.get_action(action.action_id) is None
    failures = [e for e in recorded_events if isinstance(e, PermanentActionFailureEvent)]
    assert len(failures) == 1
    assert failures[0].action_id == action.action_id
    assert failures[0].error == "scripted permanent"


@pytest.mark.asyncio
async def test_conflict_outcome_parks_action_until_resolved(engine, store, server, signed_in, recorded_events):
    server.put_entity("content", "c1", {"title": "server"})
    action = await queue_update(store, "c1", {"title": "mine"})
    server.script_outcome("c1", "conflict")

    result = await engine.drain()

    assert result.conflicts == 1
    assert (await store.get_action(action.action_id)).status == ActionStatus.CONFLICT
    conflicts = await store.list_conflicts()
    assert len(conflicts) == 1
    assert conflicts[0].local_payload == {"title": "mine"}
    assert conflicts[0].server_payload == {"title": "server"}
    assert any(isinstance(e, ConflictDetectedEvent) for e in recorded_events)

    resolved = await engine.resolve_conflict(conflicts[0].conflict_id, "local")
    assert resolved.payload == {"title": "mine"}
    await engine.wait_idle()

    assert server.entities[("content", "c1")]["payload"] == {"title": "mine"}
    assert await store.queue_size() == 0
    final = await store.get(EntityKind.CONTENT, "c1")
    assert final.sync_status is SyncStatus.CLEAN
    assert final.payload == {"title": "mine"}


@pytest.mark.asyncio
async def test_merge_resolution_ships_merged_payload(engine, store, server, signed_in):
    server.put_entity("content", "c1", {"title": "server", "tags": ["s"]})
    await queue_update(store, "c1", {"title": "mine"})
    server.script_outcome("c1", "conflict")
    await engine.drain()
    conflict = (await store.list_conflicts())[0]

    await engine.resolve_conflict(
        conflict.conflict_id, ConflictResolution.MERGE, {"title": "mine", "tags": ["s"]}
    )
    await engine.wait_idle()

    assert server.entities[("content", "c1")]["payload"] == {"title": "mine", "tags": ["s"]}


@pytest.mark.asyncio
async def test_resolve_conflict_argument_errors(engine, store, clock):
    conflict = await store.record_conflict(
        "user", "u1", local_payload={}, server_payload={}, server_updated_at=clock()
    )

    with pytest.raises(ValueError):
        await engine.resolve_conflict(conflict.conflict_id, "pending")
    with pytest.raises(ValueError):
        await engine.resolve_conflict(conflict.conflict_id, "merge")
    with pytest.raises(ConflictNotFoundError):
        await engine.resolve_conflict("missing", "server")

    await engine.resolve_conflict(conflict.conflict_id, "server")
    with pytest.raises(ConflictNotFoundError):
        await engine.resolve_conflict(conflict.conflict_id, "server")


@pytest.mark.asyncio
async def test_server_reported_conflict_is_resolved_on_the_server(engine, store, server, signed_in, clock):
    server.server_conflicts["sc1"] = {
        "conflictId": "sc1",
        "targetKind": "user",
        "targetId": "u1",
        "localPayload": {"username": "mine"},
        "serverPayload": {"username": "theirs"},
        "serverUpdatedAt": iso(clock()),
    }
    await engine.incremental_sync(EntityKind.USER)
    conflict = (await store.list_conflicts())[0]
    assert conflict.server_conflict_id == "sc1"

    entity = await engine.resolve_conflict(conflict.conflict_id, "server")

    assert server.resolutions == [("sc1", {"resolution": "server"})]
    assert entity.payload == {"username": "theirs"}
    assert entity.sync_status is SyncStatus.CLEAN
    assert await store.list_conflicts() == []


@pytest.mark.asyncio
async def test_duplicate_delivery_has_one_effect_and_one_ack(engine, store, server, signed_in):
    action = await queue_update(store, "c1", {"title": "once"})
    # First delivery reaches the server but the response is lost.
    await engine._submit([action])

    result = await engine.drain()

    assert server.effects[action.action_id] == 1
    assert len(server.action_batches) == 2
    assert result.pushed == 1
    assert await store.queue_size() == 0
    assert (await store.get(EntityKind.CONTENT, "c1")).payload == {"title": "once"}


@pytest.mark.asyncio
async def test_rejected_batch_falls_back_to_single_actions(engine, store, server, signed_in):
    await queue_update(store, "c1", {"title": "a"})
    await queue_update(store, "c2", {"title": "b"})
    server.fail("/sync/actions", 400)

    result = await engine.drain()

    assert result.pushed == 2
    assert [len(batch) for batch in server.action_batches] == [1, 1]


@pytest.mark.asyncio
async def test_rejected_single_action_fails_permanently(engine, store, server, signed_in, recorded_events):
    action = await queue_update(store, "c1", {"title": "a"})
    server.fail("/sync/actions", 422)

    result = await engine.drain()

    assert result.permanent_failures == 1
    assert await store.get_action(action.action_id) is None
    assert [e.action_id for e in recorded_events if isinstance(e, PermanentActionFailureEvent)] == [
        action.action_id
    ]


@pytest.mark.asyncio
async def test_server_error_on_batch_counts_transient_for_all(engine, store, server, signed_in):
    first = await queue_update(store, "c1", {"title": "a"})
    second = await queue_update(store, "c2", {"title": "b"})
    server.fail("/sync/actions", 503)

    result = await engine.drain()

    assert result.transient_failures == 2
    assert (await store.get_action(first.action_id)).attempts == 1
    assert (await store.get_action(second.action_id)).attempts == 1


@pytest.mark.asyncio
async def test_unauthorized_drain_releases_batch(engine, store, server, signed_in):
    action = await queue_update(store, "c1", {"title": "a"})
    server.valid_tokens.clear()
    server.refresh_tokens.clear()

    with pytest.raises(UnauthorizedError):
        await engine.drain()

    released = await store.get_action(action.action_id)
    assert released.status == ActionStatus.PENDING
    assert released.attempts == 0
    assert not engine.draining


@pytest.mark.asyncio
async def test_incremental_sync_follows_pages_and_advances_cursor(engine, store, server, signed_in):
    server.page_size = 2
    for index in range(5):
        server.put_entity("content", f"c{index}", {"title": str(index)})
    last = server.entities[("content", "c4")]["updatedAt"]

    result = await engine.incremental_sync(EntityKind.CONTENT)

    assert result.pulled == 5
    assert server.calls_to("GET", "/sync/incremental") == 3
    cursor = await store.get_cursor(EntityKind.CONTENT)
    assert iso(cursor) == last
    assert len(await store.list(EntityKind.CONTENT)) == 5

    again = await engine.incremental_sync(EntityKind.CONTENT)
    assert again.pulled == 0
    assert iso(await store.get_cursor(EntityKind.CONTENT)) == last


@pytest.mark.asyncio
async def test_incremental_sync_skips_offline(engine, connectivity):
    await connectivity.set_online(False)

    result = await engine.incremental_sync()

    assert result.skipped


@pytest.mark.asyncio
async def test_full_sync_pulls_every_kind_then_drains(engine, store, server, signed_in):
    server.put_entity("content", "c1", {"title": "t"})
    server.put_entity("user", "u1", {"username": "gamer"})
    await queue_update(store, "n1", {"isRead": True}, target_kind="notification")

    result = await engine.full_sync()

    assert result.pulled == 2
    assert result.pushed == 1
    assert server.calls_to("GET", "/sync/incremental") == len(EntityKind)
    assert set(result.cursors) == {"content", "user"}


@pytest.mark.asyncio
async def test_going_online_triggers_drain(engine, store, server, signed_in, connectivity):
    await connectivity.set_online(False)
    await engine.enqueue_mutation("update", "content", "c1", {"title": "later"})
    assert server.calls_to("POST", "/sync/actions") == 0

    await connectivity.set_online(True)
    await engine.wait_idle()

    assert server.calls_to("POST", "/sync/actions") == 1
    assert await store.queue_size() == 0


@pytest.mark.asyncio
async def test_offline_request_without_target_queues_custom_action(
    engine, gateway, store, server, signed_in, connectivity
):
    await connectivity.set_online(False)
    intent = MutationIntent(method="POST", path="/reports", body={"contentId": "c1"})

    with pytest.raises(QueuedForLaterError) as excinfo:
        await gateway.post("/reports", {"contentId": "c1"}, mutation_intent=intent)

    action = excinfo.value.action
    assert (action.kind, action.target_kind, action.target_id) == ("custom", "request", "/reports")
    assert action.payload == {"method": "POST", "path": "/reports", "body": {"contentId": "c1"}}

    await connectivity.set_online(True)
    await engine.wait_idle()

    assert server.effects[action.action_id] == 1
    assert await store.queue_size() == 0


@pytest.mark.asyncio
async def test_periodic_loop_drains_queue(make_config, store, gateway, pipeline, events, connectivity, server, signed_in):
    sync = SyncEngine(make_config(periodic_sync_ms=100), store, gateway, pipeline, events, connectivity)
    await sync.start()
    try:
        assert sync.running
        await sync.wait_idle()
        await queue_update(store, "c1", {"title": "tick"})

        async def drained() -> bool:
            return await store.queue_size() == 0

        await eventually(drained, timeout=5)
    finally:
        await sync.stop()

    assert not sync.running
    assert server.entities[("content", "c1")]["payload"] == {"title": "tick"}


@pytest.mark.asyncio
async def test_subscribe_receives_only_change_events(engine, signed_in):
    seen: list[object] = []

    async def listener(event: object) -> None:
        await asyncio.sleep(0)
        seen.append(event)

    engine.subscribe(listener)
    await engine.enqueue_mutation("update", "content", "c1", {"title": "x"})
    await engine.wait_idle()
    engine.unsubscribe(listener)

    assert seen
    assert all(isinstance(e, ChangeEvent) for e in seen)


@pytest.mark.asyncio
async def test_periodic_loop_survives_drain_errors(mocker, make_config, store, gateway, pipeline, events, connectivity):
    sync = SyncEngine(make_config(periodic_sync_ms=100), store, gateway, pipeline, events, connectivity)
    drain = mocker.patch.object(sync, "drain", new=mocker.AsyncMock(side_effect=UnauthorizedError("expired")))
    await queue_update(store, "c1", {"title": "stuck"})

    await sync.start()
    try:
        await eventually(lambda: drain.await_count >= 3, timeout=5)
        assert sync.running
    finally:
        await sync.stop()


@pytest.mark.asyncio
async def test_periodic_loop_logs_unexpected_errors_and_keeps_running(
    mocker, caplog, make_config, store, gateway, pipeline, events, connectivity
):
    sync = SyncEngine(make_config(periodic_sync_ms=100), store, gateway, pipeline, events, connectivity)
    # The first call is the drain kicked off by start().
    failures = iter([None, ValueError("bad row"), OSError("disk")])

    async def flaky_drain() -> SyncResult:
        failure = next(failures, None)
        if failure is not None:
            raise failure
        return SyncResult()

    drain = mocker.patch.object(sync, "drain", new=mocker.AsyncMock(side_effect=flaky_drain))
    await queue_update(store, "c1", {"title": "stuck"})

    with caplog.at_level("WARNING", logger="clan_sync.services.sync_engine"):
        await sync.start()
        try:
            await eventually(lambda: drain.await_count >= 4, timeout=5)
            assert sync.running
        finally:
            await sync.stop()

    assert "data processing error: bad row" in caplog.text
    assert "network error: disk" in caplog.text


@pytest.mark.asyncio
async def test_visibility_regained_pulls_every_kind(mocker, engine):
    pull = mocker.patch.object(engine, "incremental_sync", new=mocker.AsyncMock(return_value=SyncResult()))

    await engine.on_visibility_regained()

    pull.assert_awaited_once_with()
