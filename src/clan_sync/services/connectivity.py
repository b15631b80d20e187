"""Connectivity signal shared by the gateway, sync engine and realtime channel."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Awaitable[None] | None]


class ConnectivityMonitor:
    """Holds the current online flag and notifies listeners on transitions.

    The host platform feeds it through :meth:`set_online`; nothing here probes
    the network.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners: list[ConnectivityListener] = []

    @property
    def online(self) -> bool:
        return self._online

    def add_listener(self, listener: ConnectivityListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ConnectivityListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            try:
                result = listener(online)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Connectivity listener %r failed", listener)
