# tests/conftest.py
from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import replace
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from clan_sync.core.settings import RateLimitRule, SyncConfig
from clan_sync.db.session import create_store_engine
from clan_sync.schemas.auth import AuthSession
from clan_sync.services.apply import ApplyPipeline
from clan_sync.services.connectivity import ConnectivityMonitor
from clan_sync.services.events import EventBus
from clan_sync.services.gateway import RequestGateway
from clan_sync.services.keystore import InMemoryKeystore
from clan_sync.services.store import LocalStore
from clan_sync.services.sync_engine import SyncEngine
from tests.fake_server import FakeServerState, create_app
from tests.support import FakeClock, RecordingSleep


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def server() -> FakeServerState:
    return FakeServerState()


@pytest.fixture()
def config(tmp_path: Path) -> SyncConfig:
    return SyncConfig(
        base_url="http://testserver",
        realtime_url="ws://testserver/realtime",
        database_url=f"sqlite:///{tmp_path / 'store.db'}",
        cacheable_prefixes=("/content", "/users"),
        batch_size=10,
        max_attempts=5,
        periodic_sync_ms=3_600_000,
        request_timeout_ms=5_000,
        realtime_buffer_cap=1024,
        default_retries=3,
        retry_base_seconds=1.0,
        cache_ttl_seconds=3600,
        token_refresh_threshold_seconds=300,
        download_dir=str(tmp_path / "downloads"),
        rate_limits={
            "/votes": RateLimitRule(limit=2, window_seconds=60, durable=True),
            "/content": RateLimitRule(limit=3, window_seconds=60),
        },
    )


@pytest.fixture()
def make_config(config: SyncConfig) -> Callable[..., SyncConfig]:
    def _make(**overrides: object) -> SyncConfig:
        return replace(config, **overrides)

    return _make


@pytest_asyncio.fixture()
async def store(config: SyncConfig, clock: FakeClock) -> AsyncIterator[LocalStore]:
    local_store = LocalStore(create_store_engine(config.database_url), clock=clock)
    await local_store.open()
    try:
        yield local_store
    finally:
        await local_store.close()


@pytest.fixture()
def connectivity() -> ConnectivityMonitor:
    return ConnectivityMonitor(online=True)


@pytest.fixture()
def events() -> EventBus:
    return EventBus()


@pytest.fixture()
def keystore() -> InMemoryKeystore:
    return InMemoryKeystore()


@pytest.fixture()
def sleeps() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def transport(server: FakeServerState) -> httpx.AsyncBaseTransport:
    return httpx.ASGITransport(app=create_app(server))


@pytest_asyncio.fixture()
async def gateway(
    config: SyncConfig,
    store: LocalStore,
    connectivity: ConnectivityMonitor,
    keystore: InMemoryKeystore,
    transport: httpx.AsyncBaseTransport,
    clock: FakeClock,
    sleeps: RecordingSleep,
) -> AsyncIterator[RequestGateway]:
    client = RequestGateway(
        config,
        store,
        connectivity,
        keystore=keystore,
        transport=transport,
        clock=clock,
        sleep=sleeps,
    )
    try:
        yield client
    finally:
        await client.close()


@pytest_asyncio.fixture()
async def signed_in(gateway: RequestGateway, server: FakeServerState) -> AuthSession:
    session = AuthSession.model_validate(server.issue_session())
    await gateway.set_auth(session)
    return session


@pytest.fixture()
def pipeline(store: LocalStore, events: EventBus) -> ApplyPipeline:
    return ApplyPipeline(store, events)


@pytest_asyncio.fixture()
async def engine(
    config: SyncConfig,
    store: LocalStore,
    gateway: RequestGateway,
    pipeline: ApplyPipeline,
    events: EventBus,
    connectivity: ConnectivityMonitor,
) -> AsyncIterator[SyncEngine]:
    sync = SyncEngine(config, store, gateway, pipeline, events, connectivity)
    try:
        yield sync
    finally:
        await sync.stop()


@pytest.fixture()
def recorded_events(events: EventBus) -> list[object]:
    captured: list[object] = []
    events.subscribe(captured.append)
    return captured
