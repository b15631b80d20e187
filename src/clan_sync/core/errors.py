"""Error taxonomy for the data plane.

Every failure surfaced by the core derives from :class:`ClanSyncError`. Each
class carries the taxonomy ``kind`` it represents and whether the operation
that raised it may be retried.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from clan_sync.models import PendingAction

HTTP_BAD_REQUEST = 400
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_REQUEST_TIMEOUT = 408
HTTP_CONFLICT = 409
HTTP_TOO_MANY_REQUESTS = 429
HTTP_INTERNAL_SERVER_ERROR = 500


class ClanSyncError(RuntimeError):
    """Base exception raised for data plane failures."""

    kind: str = "Error"
    retryable: bool = False


# --- Request gateway -----------------------------------------------------------------


class GatewayError(ClanSyncError):
    """Base class for failures raised by the request gateway."""


class NetworkError(GatewayError):
    """Connectivity failure, DNS failure or connection reset."""

    kind = "Network"
    retryable = True


class RequestTimeoutError(GatewayError):
    """The per-call deadline was exceeded."""

    kind = "Timeout"
    retryable = True


class UnauthorizedError(GatewayError):
    """The server rejected the credentials after one refresh attempt."""

    kind = "Unauthorized"


class HTTPStatusError(GatewayError):
    """The server answered with a non-success status code."""

    kind = "HTTPError"

    def __init__(self, status_code: int, message: str | None = None, body: Any = None) -> None:
        super().__init__(message or f"Server responded with {status_code}")
        self.status_code = status_code
        self.body = body


class ClientError(HTTPStatusError):
    """HTTP 4xx response."""

    kind = "ClientError"


class ForbiddenError(ClientError):
    kind = "Forbidden"


class NotFoundError(ClientError):
    kind = "NotFound"


class RequestTimeoutStatusError(ClientError):
    """HTTP 408; retryable unlike the rest of the 4xx family."""

    kind = "Timeout"
    retryable = True


class RateLimitedError(ClientError):
    """HTTP 429, or a local per-subject limit hit before any network call."""

    kind = "RateLimited"
    retryable = True

    def __init__(
        self,
        status_code: int = HTTP_TOO_MANY_REQUESTS,
        message: str | None = None,
        body: Any = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(status_code, message, body)
        self.retry_after = retry_after


class ServerError(HTTPStatusError):
    """HTTP 5xx response."""

    kind = "ServerError"
    retryable = True


class OfflineError(GatewayError):
    """The operation needs the network and the device is offline."""

    kind = "Offline"


class OfflineNoCacheError(OfflineError):
    """Offline GET with no usable cache entry."""

    kind = "Offline-NoCache"


class QueuedForLaterError(OfflineError):
    """An offline mutation was handed to the sync queue instead of being sent."""

    kind = "Offline"

    def __init__(self, action: PendingAction) -> None:
        super().__init__(f"Queued for later as action {action.action_id}")
        self.action = action


class PayloadDecodeError(GatewayError):
    """The server answered with a body that is not valid JSON."""

    kind = "ClientError"


# --- Local store ---------------------------------------------------------------------


class StoreError(ClanSyncError):
    """A local store operation failed; the transaction was rolled back."""

    kind = "StoreError"


class StoreUnavailableError(StoreError):
    """The local store cannot be opened or cannot commit."""

    kind = "Unavailable"


class EntityNotFoundError(StoreError):
    """No row exists for the requested (kind, id)."""

    kind = "NotFound"

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"No {kind} row with id {entity_id!r}")
        self.entity_kind = kind
        self.entity_id = entity_id


# --- Sync engine ---------------------------------------------------------------------


class SyncError(ClanSyncError):
    """Base class for sync engine failures."""


class ConflictNotFoundError(SyncError):
    kind = "NotFound"

    def __init__(self, conflict_id: str) -> None:
        super().__init__(f"No pending conflict {conflict_id!r}")
        self.conflict_id = conflict_id


class PayloadValidationError(SyncError):
    """An inbound snapshot failed validation at the apply boundary."""

    kind = "ClientError"


def classify_status(
    status_code: int,
    *,
    body: Any = None,
    retry_after: float | None = None,
) -> HTTPStatusError:
    """Map an HTTP status code onto the error taxonomy."""

    if status_code >= HTTP_INTERNAL_SERVER_ERROR:
        return ServerError(status_code, body=body)
    if status_code == HTTP_TOO_MANY_REQUESTS:
        return RateLimitedError(status_code, body=body, retry_after=retry_after)
    if status_code == HTTP_REQUEST_TIMEOUT:
        return RequestTimeoutStatusError(status_code, body=body)
    if status_code == HTTP_FORBIDDEN:
        return ForbiddenError(status_code, body=body)
    if status_code == HTTP_NOT_FOUND:
        return NotFoundError(status_code, body=body)
    return ClientError(status_code, body=body)
