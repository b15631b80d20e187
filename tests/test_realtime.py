from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest
import pytest_asyncio

from clan_sync.core.errors import NetworkError
from clan_sync.models import EntityKind
from clan_sync.schemas.auth import AuthSession
from clan_sync.services.events import ChangeEvent, ChangeOrigin
from clan_sync.services.realtime import (
    PING_INTERVAL_SECONDS,
    PING_TIMEOUT_SECONDS,
    RealtimeChannel,
)
from tests.fake_server import SERVER_EPOCH
from tests.support import (
    BlockingSleep,
    FakeConnector,
    FakeSocket,
    RecordingSleep,
    eventually,
    frame,
)


def at(seconds: int):
    return SERVER_EPOCH + timedelta(seconds=seconds)


@pytest.fixture()
def pulls() -> list[bool]:
    return []


@pytest_asyncio.fixture()
async def make_channel(config, gateway, pipeline, connectivity, pulls):
    channels: list[RealtimeChannel] = []

    async def request_pull() -> None:
        pulls.append(True)

    def _make(connector: FakeConnector, *, cfg=None, sleep=None) -> RealtimeChannel:
        channel = RealtimeChannel(
            cfg or config,
            gateway,
            pipeline,
            connectivity,
            request_pull,
            connect=connector,
            sleep=sleep or RecordingSleep(),
            jitter=lambda low, high: 0.0,
        )
        channels.append(channel)
        return channel

    try:
        yield _make
    finally:
        for channel in channels:
            await channel.stop()


@pytest.mark.asyncio
async def test_connects_with_token_and_applies_frames(make_channel, signed_in, store, recorded_events):
    connector = FakeConnector([FakeSocket([frame("c1", {"title": "live"}, instant=at(10))])])
    channel = make_channel(connector)

    await channel.start()
    await eventually(lambda: channel.connected and channel.frames_received == 1)
    await channel.drain_buffer()

    url, kwargs = connector.calls[0]
    assert url == "ws://testserver/realtime?token=access-1"
    assert kwargs == {"ping_interval": PING_INTERVAL_SECONDS, "ping_timeout": PING_TIMEOUT_SECONDS}
    stored = await store.get(EntityKind.CONTENT, "c1")
    assert stored.payload == {"title": "live"}
    assert stored.updated_at == at(10)
    changes = [e for e in recorded_events if isinstance(e, ChangeEvent)]
    assert [c.origin for c in changes] == [ChangeOrigin.REALTIME]


@pytest.mark.asyncio
async def test_waits_for_authentication_before_connecting(make_channel, gateway, server):
    connector = FakeConnector()
    channel = make_channel(connector)

    await channel.start()
    assert not channel.should_connect()
    assert connector.calls == []

    await gateway.set_auth(AuthSession.model_validate(server.issue_session()))
    await eventually(lambda: channel.connected)

    assert len(connector.calls) == 1


@pytest.mark.asyncio
async def test_malformed_frames_are_dropped(make_channel, signed_in, store):
    messages = [
        "not json at all",
        json.dumps({"type": "update", "targetKind": "content"}),
        frame("c1", {"title": 42}, instant=at(1)),
        frame("c2", {"title": "fine"}, instant=at(2)),
    ]
    channel = make_channel(FakeConnector([FakeSocket(messages)]))

    await channel.start()
    await eventually(lambda: channel.frames_received == 2)
    await channel.drain_buffer()

    assert channel.frames_rejected == 3
    assert await store.get(EntityKind.CONTENT, "c1") is None
    assert (await store.get(EntityKind.CONTENT, "c2")).payload == {"title": "fine"}


@pytest.mark.asyncio
async def test_delete_frame_tombstones_row(make_channel, signed_in, store):
    messages = [
        frame("c1", {"title": "live"}, instant=at(1)),
        frame("c1", {}, instant=at(2), frame_type="delete"),
    ]
    channel = make_channel(FakeConnector([FakeSocket(messages)]))

    await channel.start()
    await eventually(lambda: channel.frames_received == 2)
    await channel.drain_buffer()

    assert await store.get(EntityKind.CONTENT, "c1") is None


@pytest.mark.asyncio
async def test_backoff_delay_doubles_up_to_cap(make_channel):
    channel = make_channel(FakeConnector())

    assert [channel.backoff_delay(attempt) for attempt in range(7)] == [
        1.0,
        2.0,
        4.0,
        8.0,
        16.0,
        30.0,
        30.0,
    ]


@pytest.mark.asyncio
async def test_backoff_delay_applies_jitter(config, gateway, pipeline, connectivity):
    channel = RealtimeChannel(
        config,
        gateway,
        pipeline,
        connectivity,
        request_pull=lambda: None,
        jitter=lambda low, high: high,
    )

    assert channel.backoff_delay(0) == pytest.approx(1.2)
    assert channel.backoff_delay(10) == pytest.approx(36.0)


@pytest.mark.asyncio
async def test_backoff_delay_stays_capped_after_long_outage(make_channel):
    channel = make_channel(FakeConnector())

    assert channel.backoff_delay(1100) == 30.0
    assert channel.backoff_delay(5000) == 30.0


@pytest.mark.asyncio
async def test_failed_connects_back_off_then_recover(make_channel, signed_in):
    sleep = RecordingSleep()
    connector = FakeConnector([OSError("refused"), OSError("refused"), FakeSocket()])
    channel = make_channel(connector, sleep=sleep)

    await channel.start()
    await eventually(lambda: channel.connected)

    assert sleep.delays == [1.0, 2.0]
    assert channel.connect_count == 1
    assert len(connector.calls) == 3


@pytest.mark.asyncio
async def test_clearing_auth_closes_the_socket(make_channel, signed_in, gateway):
    connector = FakeConnector([FakeSocket()])
    channel = make_channel(connector)
    await channel.start()
    await eventually(lambda: channel.connected)

    await gateway.clear_auth()
    await eventually(lambda: channel.disconnect_count == 1)

    assert not channel.connected
    assert connector.sockets[0].close_calls == 1
    assert len(connector.calls) == 1


@pytest.mark.asyncio
async def test_going_offline_closes_and_online_reconnects(make_channel, signed_in, connectivity):
    connector = FakeConnector([FakeSocket(), FakeSocket()])
    channel = make_channel(connector)
    await channel.start()
    await eventually(lambda: channel.connected)

    await connectivity.set_online(False)
    await eventually(lambda: channel.disconnect_count == 1)
    assert not channel.connected

    await connectivity.set_online(True)
    await eventually(lambda: channel.connect_count == 2)
    assert channel.connected


@pytest.mark.asyncio
async def test_refreshed_token_reconnects_with_new_token(make_channel, signed_in, gateway, server):
    connector = FakeConnector([FakeSocket(), FakeSocket()])
    channel = make_channel(connector)
    await channel.start()
    await eventually(lambda: channel.connected)

    await gateway.set_auth(AuthSession.model_validate(server.issue_session()))
    await eventually(lambda: channel.connect_count == 2)

    assert connector.calls[1][0].endswith("token=access-2")


@pytest.mark.asyncio
async def test_buffer_overflow_disconnects_and_requests_pull(
    make_channel, make_config, signed_in, store, pulls
):
    messages = [frame(f"c{i}", {"title": str(i)}, instant=at(i)) for i in range(1, 11)]
    connector = FakeConnector([FakeSocket(messages)])
    channel = make_channel(connector, cfg=make_config(realtime_buffer_cap=2))

    await channel.start()
    await eventually(lambda: channel.connect_count == 2)

    assert channel.overflow_count == 1
    assert channel.disconnect_count == 1
    assert pulls == [True]
    # Frames buffered before the overflow were applied before the pull.
    assert (await store.get(EntityKind.CONTENT, "c1")).payload == {"title": "1"}
    assert (await store.get(EntityKind.CONTENT, "c2")).payload == {"title": "2"}
    assert await store.get(EntityKind.CONTENT, "c4") is None


@pytest.mark.asyncio
async def test_failed_catch_up_pull_still_reconnects(mocker, make_config, gateway, pipeline, connectivity, signed_in):
    request_pull = mocker.AsyncMock(side_effect=NetworkError("down"))
    messages = [frame(f"c{i}", {"title": str(i)}, instant=at(i)) for i in range(1, 5)]
    connector = FakeConnector([FakeSocket(messages)])
    channel = RealtimeChannel(
        make_config(realtime_buffer_cap=1),
        gateway,
        pipeline,
        connectivity,
        request_pull,
        connect=connector,
        sleep=RecordingSleep(),
        jitter=lambda low, high: 0.0,
    )

    await channel.start()
    try:
        await eventually(lambda: channel.connect_count == 2)
        request_pull.assert_awaited_once()
    finally:
        await channel.stop()


@pytest.mark.asyncio
async def test_connectivity_flap_during_backoff_keeps_backing_off(make_channel, signed_in, connectivity):
    sleep = BlockingSleep()
    connector = FakeConnector([OSError("refused") for _ in range(10)])
    channel = make_channel(connector, sleep=sleep)
    await channel.start()
    await eventually(lambda: sleep.delays == [1.0])

    await connectivity.set_online(False)
    await connectivity.set_online(True)
    await eventually(lambda: len(sleep.delays) == 2)
    await asyncio.sleep(0.05)

    assert sleep.delays == [1.0, 2.0]
    assert len(connector.calls) == 2
    assert channel.connect_count == 0
