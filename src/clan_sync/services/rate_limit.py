"""Per-subject request limits enforced by the request gateway."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta

from clan_sync.core.errors import RateLimitedError
from clan_sync.core.settings import RateLimitRule
from clan_sync.db.time import Clock, utcnow
from clan_sync.services.store import LocalStore

logger = logging.getLogger(__name__)

LIMITED_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass
class _Window:
    started: datetime
    count: int = 0


class RateLimiter:
    """Fixed-window counters keyed by (subject, endpoint prefix).

    Durable rules count through the local store so a restart cannot reset
    them; the rest are kept in memory.
    """

    def __init__(
        self,
        rules: Mapping[str, RateLimitRule],
        store: LocalStore | None = None,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self.rules = dict(rules)
        self.store = store
        self._clock = clock
        self._windows: dict[tuple[str, str], _Window] = {}

    def rule_for(self, path: str) -> tuple[str, RateLimitRule] | None:
        path = path.split("?", 1)[0]
        matches = [
            (prefix, rule)
            for prefix, rule in self.rules.items()
            if path == prefix or path.startswith(prefix.rstrip("/") + "/")
        ]
        if not matches:
            return None
        return max(matches, key=lambda item: len(item[0]))

    async def check(self, subject: str | None, method: str, path: str) -> None:
        """Count one request, raising RateLimitedError once the window is full."""

        if subject is None or method.upper() not in LIMITED_METHODS:
            return
        matched = self.rule_for(path)
        if matched is None:
            return
        prefix, rule = matched
        window = timedelta(seconds=rule.window_seconds)

        if rule.durable and self.store is not None:
            allowed, count = await self.store.rate_hit(
                subject, prefix, limit=rule.limit, window=window
            )
        else:
            allowed, count = self._hit_memory(subject, prefix, rule.limit, window)

        if not allowed:
            logger.warning("Rate limit hit for %s on %s (%d/%d)", subject, prefix, count, rule.limit)
            raise RateLimitedError(
                message=f"Rate limit exceeded for {prefix}",
                retry_after=rule.window_seconds,
            )

    def _hit_memory(
        self, subject: str, prefix: str, limit: int, window: timedelta
    ) -> tuple[bool, int]:
        now = self._clock()
        key = (subject, prefix)
        current = self._windows.get(key)
        if current is None or now - current.started >= window:
            current = self._windows[key] = _Window(started=now)
        if current.count >= limit:
            return False, current.count
        current.count += 1
        return True, current.count

    def reset(self) -> None:
        self._windows.clear()
