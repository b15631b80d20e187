# src/clan_sync/schemas/auth.py
"""Authentication schemas."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from jose import JWTError, jwt
from pydantic import Field, SecretStr, field_serializer, model_validator

from clan_sync.db.time import ensure_utc
from clan_sync.schemas.common import WireModel


class AuthSession(WireModel):
    """Credentials owned by the request gateway.

    ``subject_id`` and ``expires_at`` fall back to the access token's ``sub``
    and ``exp`` claims when the server leaves them out.
    """

    access_token: SecretStr
    refresh_token: SecretStr
    subject_id: str | None = None
    expires_at: datetime | None = None

    @model_validator(mode="after")
    def _fill_from_claims(self) -> AuthSession:
        if self.subject_id is None or self.expires_at is None:
            claims = token_claims(self.access_token.get_secret_value())
            if self.subject_id is None and claims.get("sub") is not None:
                self.subject_id = str(claims["sub"])
            if self.expires_at is None and claims.get("exp") is not None:
                self.expires_at = datetime.fromtimestamp(int(claims["exp"]), tz=UTC)
        if self.expires_at is not None:
            self.expires_at = ensure_utc(self.expires_at)
        return self

    @field_serializer("access_token", "refresh_token", when_used="json")
    def _reveal(self, value: SecretStr) -> str:
        return value.get_secret_value()

    def expires_within(self, now: datetime, threshold_seconds: float) -> bool:
        if self.expires_at is None:
            return False
        return (self.expires_at - now).total_seconds() <= threshold_seconds


def token_claims(token: str) -> dict[str, Any]:
    """Read JWT claims without verifying; opaque tokens yield no claims."""
    try:
        return jwt.get_unverified_claims(token)
    except JWTError:
        return {}


class LoginRequest(WireModel):
    email: str
    password: SecretStr
    platform: str = "mobile"
    device_info: dict[str, Any] = Field(default_factory=dict)

    @field_serializer("password", when_used="json")
    def _reveal(self, value: SecretStr) -> str:
        return value.get_secret_value()


class LoginResponse(WireModel):
    session: AuthSession | None = None
    mfa_required: bool = False


class RefreshResponse(WireModel):
    session: AuthSession
