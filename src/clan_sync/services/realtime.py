"""Realtime channel: server-pushed entity updates over a websocket.

Inbound frames are buffered in a bounded queue and fed to the apply pipeline
with origin=realtime. On buffer overflow the channel drops the connection and
asks the sync engine for an incremental pull, which catches up from the
cursors.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlencode

import websockets
from pydantic import ValidationError
from websockets.exceptions import WebSocketException

from clan_sync.core.errors import ClanSyncError, PayloadValidationError, StoreError
from clan_sync.core.settings import SyncConfig
from clan_sync.schemas.auth import AuthSession
from clan_sync.schemas.realtime import RealtimeFrame
from clan_sync.services.apply import ApplyPipeline
from clan_sync.services.connectivity import ConnectivityMonitor
from clan_sync.services.events import ChangeOrigin
from clan_sync.services.gateway import RequestGateway

logger = logging.getLogger(__name__)

ConnectFactory = Callable[..., Awaitable[Any]]
PullRequester = Callable[[], Awaitable[Any]]

PING_INTERVAL_SECONDS = 20.0
PING_TIMEOUT_SECONDS = 10.0
# Upper bound on the exponent in 2**attempt; larger ints overflow float.
MAX_BACKOFF_EXPONENT = 32


class RealtimeChannel:
    """Keeps at most one socket open while online and authenticated."""

    def __init__(
        self,
        config: SyncConfig,
        gateway: RequestGateway,
        pipeline: ApplyPipeline,
        connectivity: ConnectivityMonitor,
        request_pull: PullRequester,
        *,
        connect: ConnectFactory = websockets.connect,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.pipeline = pipeline
        self.connectivity = connectivity
        self._request_pull = request_pull
        self._connect = connect
        self._sleep = sleep
        self._jitter = jitter

        self._queue: asyncio.Queue[RealtimeFrame] = asyncio.Queue(
            maxsize=config.realtime_buffer_cap
        )
        self._connection: Any | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._wakeup = asyncio.Event()
        self._started = False
        self._overflowed = False

        self.connect_count = 0
        self.disconnect_count = 0
        self.overflow_count = 0
        self.frames_received = 0
        self.frames_rejected = 0

    # --- lifecycle -----------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._connection is not None

    def should_connect(self) -> bool:
        return self._started and self.connectivity.online and self.gateway.is_authenticated

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.connectivity.add_listener(self._on_connectivity_change)
        self.gateway.add_auth_listener(self._on_auth_change)
        self._consumer = asyncio.create_task(self._consume())
        self._ensure_supervisor()

    async def stop(self) -> None:
        self._started = False
        self.connectivity.remove_listener(self._on_connectivity_change)
        self.gateway.remove_auth_listener(self._on_auth_change)
        self._wakeup.set()
        await self._close_connection()
        for task in (self._supervisor, self._consumer):
            if task is not None and not task.done():
                task.cancel()
        for task in (self._supervisor, self._consumer):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._supervisor = None
        self._consumer = None

    async def drain_buffer(self) -> None:
        """Wait until every buffered frame has gone through the apply pipeline."""

        await self._queue.join()

    def _ensure_supervisor(self) -> None:
        if self.should_connect() and (self._supervisor is None or self._supervisor.done()):
            self._wakeup.clear()
            self._supervisor = asyncio.create_task(self._supervise())

    async def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self._ensure_supervisor()
        else:
            self._wakeup.set()
            await self._close_connection()

    async def _on_auth_change(self, session: AuthSession | None) -> None:
        if session is None:
            self._wakeup.set()
            await self._close_connection()
        elif self.connected:
            # Reconnect so the socket carries the refreshed token.
            await self._close_connection()
        else:
            self._ensure_supervisor()

    async def _close_connection(self) -> None:
        connection = self._connection
        if connection is None:
            return
        self._connection = None
        try:
            await connection.close()
        except (OSError, WebSocketException) as exc:
            logger.debug("Error closing realtime socket: %s", exc)

    # --- connection loop -----------------------------------------------------------

    def _url(self) -> str:
        session = self.gateway.auth_session
        token = session.access_token.get_secret_value() if session else ""
        separator = "&" if "?" in self.config.realtime_url else "?"
        return f"{self.config.realtime_url}{separator}{urlencode({'token': token})}"

    def backoff_delay(self, attempt: int) -> float:
        """Exponential delay for reconnect ``attempt`` (0-based) with jitter."""

        exponent = min(attempt, MAX_BACKOFF_EXPONENT)
        base = min(
            self.config.realtime_backoff_max_seconds,
            self.config.realtime_backoff_initial_seconds * (2**exponent),
        )
        spread = self.config.realtime_jitter
        return max(0.0, base * (1 + self._jitter(-spread, spread)))

    async def _supervise(self) -> None:
        attempt = 0
        while self.should_connect():
            try:
                connection = await self._connect(
                    self._url(),
                    ping_interval=PING_INTERVAL_SECONDS,
                    ping_timeout=PING_TIMEOUT_SECONDS,
                )
            except (OSError, TimeoutError, WebSocketException) as exc:
                logger.warning("Realtime connect failed: %s", exc)
            else:
                self._connection = connection
                self.connect_count += 1
                attempt = 0
                logger.info("Realtime channel connected")
                try:
                    await self._read(connection)
                except (OSError, WebSocketException) as exc:
                    logger.warning("Realtime channel dropped: %s", exc)
                finally:
                    if self._connection is connection:
                        await self._close_connection()
                    self.disconnect_count += 1
                    logger.info("Realtime channel disconnected")

            if self._overflowed:
                self._overflowed = False
                await self._catch_up()
                continue

            if not self.should_connect():
                break
            delay = self.backoff_delay(attempt)
            attempt = min(attempt + 1, MAX_BACKOFF_EXPONENT)
            logger.debug("Realtime reconnect in %.2fs", delay)
            await self._wait(delay)

    async def _wait(self, delay: float) -> None:
        # Wakeups before this point were already seen by should_connect().
        self._wakeup.clear()
        sleeper = asyncio.create_task(self._sleep(delay))
        waker = asyncio.create_task(self._wakeup.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waker.cancel()

    async def _read(self, connection: Any) -> None:
        async for message in connection:
            if self._connection is not connection:
                return
            frame = self._parse(message)
            if frame is None:
                continue
            self.frames_received += 1
            try:
                self._queue.put_nowait(frame)
            except asyncio.QueueFull:
                self.overflow_count += 1
                self._overflowed = True
                logger.warning(
                    "Realtime buffer full at %d frames; disconnecting to catch up by pull",
                    self._queue.maxsize,
                )
                await self._close_connection()
                return

    def _parse(self, message: str | bytes) -> RealtimeFrame | None:
        try:
            data = json.loads(message)
            return RealtimeFrame.model_validate(data)
        except (ValueError, ValidationError) as exc:
            self.frames_rejected += 1
            logger.warning("Dropping malformed realtime frame: %s", exc)
            return None

    async def _catch_up(self) -> None:
        # Let already-buffered frames land before the pull overwrites them.
        await self._queue.join()
        try:
            await self._request_pull()
        except ClanSyncError as exc:
            logger.warning("Catch-up pull after overflow failed: %s", exc)

    # --- consumer ------------------------------------------------------------------

    async def _consume(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                await self.pipeline.apply(frame.to_snapshot(), origin=ChangeOrigin.REALTIME)
            except PayloadValidationError as exc:
                self.frames_rejected += 1
                logger.warning(
                    "Rejected realtime frame for %s/%s: %s",
                    frame.target_kind.value,
                    frame.target_id,
                    exc,
                )
            except StoreError as exc:
                logger.error(
                    "Failed to apply realtime frame for %s/%s: %s",
                    frame.target_kind.value,
                    frame.target_id,
                    exc,
                    exc_info=True,
                )
            finally:
                self._queue.task_done()
