# tests/support.py
"""Test doubles shared across the suite."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from tests.fake_server import SERVER_EPOCH, iso


class FakeClock:
    """Manually advanced clock handed to every component under test."""

    def __init__(self, start: datetime = SERVER_EPOCH) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


class RecordingSleep:
    """Replacement for asyncio.sleep that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class BlockingSleep:
    """Records delays; after ``free_calls`` it parks until cancelled."""

    def __init__(self, free_calls: int = 0) -> None:
        self.delays: list[float] = []
        self.free_calls = free_calls

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if len(self.delays) > self.free_calls:
            await asyncio.Event().wait()
        await asyncio.sleep(0)


async def eventually(
    predicate: Callable[[], bool | Awaitable[bool]],
    *,
    timeout: float = 20.0,
    interval: float = 0.01,
) -> None:
    """Poll ``predicate`` until it holds; fails with TimeoutError otherwise."""

    async def _poll() -> None:
        while True:
            result = predicate()
            if not isinstance(result, bool):
                result = await result
            if result:
                return
            await asyncio.sleep(interval)

    await asyncio.wait_for(_poll(), timeout=timeout)


def frame(
    target_id: str,
    payload: dict[str, Any],
    *,
    instant: datetime,
    kind: str = "content",
    frame_type: str = "update",
) -> str:
    return json.dumps(
        {
            "type": frame_type,
            "targetKind": kind,
            "targetId": target_id,
            "payload": payload,
            "serverInstant": iso(instant),
        }
    )


class FakeSocket:
    """Websocket stand-in: yields its messages, then blocks until closed."""

    def __init__(self, messages: Iterable[str | bytes] = ()) -> None:
        self.messages = list(messages)
        self.closed = asyncio.Event()
        self.close_calls = 0

    async def close(self) -> None:
        self.close_calls += 1
        self.closed.set()

    def __aiter__(self) -> AsyncIterator[str | bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str | bytes]:
        for message in self.messages:
            if self.closed.is_set():
                return
            yield message
        await self.closed.wait()


class FakeConnector:
    """Stands in for websockets.connect; hands out sockets in order."""

    def __init__(self, sockets: Iterable[FakeSocket | Exception] = ()) -> None:
        self.pending = list(sockets)
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.sockets: list[FakeSocket] = []

    async def __call__(self, url: str, **kwargs: Any) -> FakeSocket:
        self.calls.append((url, kwargs))
        item = self.pending.pop(0) if self.pending else FakeSocket()
        if isinstance(item, Exception):
            raise item
        self.sockets.append(item)
        return item
