# src/clan_sync/main.py
"""Composition root for the clan-sync data plane."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

import httpx

from clan_sync.core.settings import SyncConfig, load_sync_config
from clan_sync.db.session import create_store_engine
from clan_sync.db.time import Clock, utcnow
from clan_sync.services.apply import ApplyPipeline
from clan_sync.services.auth import AuthService
from clan_sync.services.connectivity import ConnectivityMonitor
from clan_sync.services.events import EventBus
from clan_sync.services.gateway import RequestGateway
from clan_sync.services.keystore import InMemoryKeystore, Keystore
from clan_sync.services.realtime import ConnectFactory, RealtimeChannel
from clan_sync.services.repository import EntityRepository
from clan_sync.services.store import LocalStore
from clan_sync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: int | str = logging.INFO) -> None:
    """Install a basic handler for hosts that have no logging setup of their own."""
    logging.basicConfig(level=level, format=LOG_FORMAT)


class DataPlane:
    """Builds every component from one SyncConfig and wires their signals.

    Nothing here is a module-level singleton; a host creates one DataPlane per
    signed-in device profile.
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        *,
        keystore: Keystore | None = None,
        connectivity: ConnectivityMonitor | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        realtime_connect: ConnectFactory | None = None,
        clock: Clock = utcnow,
        **gateway_options: Any,
    ) -> None:
        self.config = config or load_sync_config()
        self.events = EventBus()
        self.connectivity = connectivity or ConnectivityMonitor()
        self.keystore = keystore or InMemoryKeystore()

        engine = create_store_engine(self.config.database_url, echo=self.config.sql_debug)
        self.store = LocalStore(engine, clock=clock, max_attempts=self.config.max_attempts)
        self.gateway = RequestGateway(
            self.config,
            self.store,
            self.connectivity,
            keystore=self.keystore,
            transport=transport,
            clock=clock,
            **gateway_options,
        )
        self.pipeline = ApplyPipeline(self.store, self.events)
        self.sync = SyncEngine(
            self.config,
            self.store,
            self.gateway,
            self.pipeline,
            self.events,
            self.connectivity,
        )
        realtime_kwargs: dict[str, Any] = {}
        if realtime_connect is not None:
            realtime_kwargs["connect"] = realtime_connect
        self.realtime = RealtimeChannel(
            self.config,
            self.gateway,
            self.pipeline,
            self.connectivity,
            self.sync.incremental_sync,
            **realtime_kwargs,
        )
        self.auth = AuthService(self.gateway)
        self.repository = EntityRepository(self.sync, self.store)
        self._started = False

    async def start(self) -> None:
        """Open the store, restore credentials and start background work.

        A store that cannot be opened raises StoreUnavailableError and nothing
        else is started.
        """

        if self._started:
            return
        await self.store.open()
        swept = await self.store.cache_sweep()
        purged = await self.store.purge_stale(timedelta(days=self.config.stale_entity_days))
        logger.info("Local store ready (%d expired cache entries, %d stale rows removed)", swept, purged)

        await self.gateway.restore_auth()
        await self.sync.start()
        await self.realtime.start()
        self._started = True

    async def stop(self) -> None:
        """Stop background work, flush in-flight acks and release resources."""

        if not self._started:
            return
        await self.realtime.stop()
        await self.sync.stop()
        await self.gateway.close()
        await self.store.close()
        self._started = False
        logger.info("Data plane stopped")

    async def set_online(self, online: bool) -> None:
        await self.connectivity.set_online(online)

    def on_visibility_regained(self) -> None:
        self.sync.on_visibility_regained()
