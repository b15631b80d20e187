"""Login and logout on top of the request gateway."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import SecretStr, ValidationError

from clan_sync.core.errors import GatewayError, PayloadDecodeError
from clan_sync.schemas.auth import AuthSession, LoginRequest, LoginResponse
from clan_sync.services.gateway import RequestGateway

logger = logging.getLogger(__name__)


class AuthService:
    """Creates and destroys the gateway's AuthSession."""

    def __init__(self, gateway: RequestGateway) -> None:
        self.gateway = gateway

    async def login(
        self,
        email: str,
        password: str,
        *,
        platform: str = "mobile",
        device_info: dict[str, Any] | None = None,
    ) -> LoginResponse:
        """Authenticate and install the returned session.

        When the server asks for a second factor the response is returned with
        ``mfa_required`` set and no session is installed.
        """

        request = LoginRequest(
            email=email,
            password=SecretStr(password),
            platform=platform,
            device_info=device_info or {},
        )
        body = await self.gateway.request(
            "/auth/login",
            "POST",
            request.to_wire(),
            require_auth=False,
            retries=0,
        )
        try:
            response = LoginResponse.model_validate(body or {})
        except ValidationError as exc:
            raise PayloadDecodeError(f"Malformed login response: {exc}") from exc

        if response.mfa_required:
            logger.info("Login for %s requires a second factor", email)
            return response
        if response.session is None:
            raise PayloadDecodeError("Login response carried no session")

        await self.gateway.set_auth(response.session)
        return response

    async def logout(self) -> None:
        """Tell the server (best effort) and drop the local session."""

        if self.gateway.is_authenticated and self.gateway.connectivity.online:
            try:
                await self.gateway.request("/auth/logout", "POST", retries=0)
            except GatewayError as exc:
                logger.warning("Server logout failed; clearing local session anyway: %s", exc)
        await self.gateway.clear_auth()

    @property
    def session(self) -> AuthSession | None:
        return self.gateway.auth_session
