"""Secure credential storage seam.

The host platform supplies the real implementation (Keychain, Keystore);
the in-memory variant backs tests and headless hosts.
"""

from __future__ import annotations

import json
from typing import Protocol

from clan_sync.schemas.auth import AuthSession

SESSION_KEY = "clan_sync.auth_session"


class Keystore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryKeystore:
    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def set(self, key: str, value: str) -> None:
        self._values[key] = value

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)


async def save_session(keystore: Keystore, session: AuthSession) -> None:
    await keystore.set(SESSION_KEY, json.dumps(session.to_wire()))


async def load_session(keystore: Keystore) -> AuthSession | None:
    raw = await keystore.get(SESSION_KEY)
    if raw is None:
        return None
    return AuthSession.model_validate(json.loads(raw))


async def forget_session(keystore: Keystore) -> None:
    await keystore.delete(SESSION_KEY)
