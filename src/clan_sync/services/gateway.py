"""Request gateway for the clan-sync data plane.

This module provides the RequestGateway class that handles all HTTP traffic
between the client and the server. It includes:

- HTTP client with bearer authentication and retry logic
- Single-flight token refresh on 401
- Offline rerouting to the response cache or the sync queue
- Per-subject rate limiting
- Metrics collection and health checks
- Multipart upload and streamed download of blobs
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import Counter, deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from clan_sync.core.errors import (
    HTTP_UNAUTHORIZED,
    ClanSyncError,
    GatewayError,
    NetworkError,
    OfflineError,
    OfflineNoCacheError,
    PayloadDecodeError,
    QueuedForLaterError,
    RateLimitedError,
    RequestTimeoutError,
    UnauthorizedError,
    classify_status,
)
from clan_sync.core.settings import SyncConfig
from clan_sync.db.time import Clock, utcnow
from clan_sync.models import ActionKind, ActionPriority, PendingAction
from clan_sync.schemas.auth import AuthSession, RefreshResponse
from clan_sync.services.connectivity import ConnectivityMonitor
from clan_sync.services.keystore import Keystore, forget_session, load_session, save_session
from clan_sync.services.rate_limit import RateLimiter
from clan_sync.services.store import LocalStore

logger = logging.getLogger(__name__)

HTTP_OK = 200
HTTP_NO_CONTENT = 204
HTTP_MULTIPLE_CHOICES = 300
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
ALLOWED_METHODS = MUTATING_METHODS | {"GET"}
_CACHE_MISS = object()


@dataclass
class GatewayMetrics:
    """Counters and a rolling latency window for gateway traffic.

    Counters are keyed by what happened to a call (``requests``, ``succeeded``,
    ``failed``, ``retries``, ``refreshes``, ``cache_hits``, ``offline_rejected``,
    ``queued``); latencies cover the last ``LATENCY_WINDOW`` wire requests.
    """

    LATENCY_WINDOW: ClassVar[int] = 256

    counters: Counter[str] = field(default_factory=Counter)
    by_endpoint: Counter[str] = field(default_factory=Counter)
    by_error: Counter[str] = field(default_factory=Counter)
    latencies: deque[float] = field(
        default_factory=lambda: deque(maxlen=GatewayMetrics.LATENCY_WINDOW)
    )

    def bump(self, name: str) -> None:
        self.counters[name] += 1

    def observe(
        self, endpoint: str, elapsed: float, success: bool, error_type: str | None = None
    ) -> None:
        """Record one request that reached the wire."""
        self.counters["requests"] += 1
        self.by_endpoint[endpoint] += 1
        self.latencies.append(elapsed)
        if success:
            self.counters["succeeded"] += 1
        else:
            self.counters["failed"] += 1
            if error_type:
                self.by_error[error_type] += 1

    def latency_ms(self, quantile: float) -> float:
        if not self.latencies:
            return 0.0
        ordered = sorted(self.latencies)
        index = min(len(ordered) - 1, int(quantile * len(ordered)))
        return ordered[index] * 1000

    def snapshot(self) -> dict[str, Any]:
        return {
            "request_count": self.counters["requests"],
            "success_count": self.counters["succeeded"],
            "error_count": self.counters["failed"],
            "retry_count": self.counters["retries"],
            "refresh_count": self.counters["refreshes"],
            "cache_hits": self.counters["cache_hits"],
            "offline_rejected": self.counters["offline_rejected"],
            "queued_count": self.counters["queued"],
            "latency_p50_ms": self.latency_ms(0.5),
            "latency_p95_ms": self.latency_ms(0.95),
            "error_counts_by_type": dict(self.by_error),
            "endpoint_counts": dict(self.by_endpoint),
        }


@dataclass(frozen=True)
class MutationIntent:
    """A mutation handed to the sync queue instead of the network."""

    method: str
    path: str
    body: Any = None
    target_kind: str | None = None
    target_id: str | None = None
    action_kind: ActionKind | None = None
    priority: ActionPriority = ActionPriority.MEDIUM
    idempotency_key: str | None = None


OfflineSink = Callable[[MutationIntent], Awaitable[PendingAction]]
AuthListener = Callable[[AuthSession | None], Awaitable[None] | None]


class RequestGateway:
    """HTTP client wrapper for every call the data plane makes to the server."""

    def __init__(
        self,
        config: SyncConfig,
        store: LocalStore,
        connectivity: ConnectivityMonitor,
        *,
        keystore: Keystore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        rate_limiter: RateLimiter | None = None,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self.connectivity = connectivity
        self.keystore = keystore
        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self.rate_limiter = rate_limiter or RateLimiter(config.rate_limits, store, clock=clock)
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._metrics = GatewayMetrics()
        self._session: AuthSession | None = None
        self._refresh_task: asyncio.Task[AuthSession] | None = None
        self._offline_sink: OfflineSink | None = None
        self._auth_listeners: list[AuthListener] = []

    @dataclass
    class RequestParams:
        """Parameters for HTTP requests."""

        method: str
        path: str
        json_data: Any | None = None
        data: Mapping[str, Any] | None = None
        files: Mapping[str, Any] | None = None
        params: Mapping[str, Any] | None = None
        headers: dict[str, str] | None = None
        idempotency_key: str | None = None
        require_auth: bool = True
        timeout_seconds: float | None = None

    # --- client lifecycle ----------------------------------------------------------

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url,
                    timeout=httpx.Timeout(self.config.request_timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None

    # --- auth ----------------------------------------------------------------------

    @property
    def auth_session(self) -> AuthSession | None:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    def add_auth_listener(self, listener: AuthListener) -> None:
        if listener not in self._auth_listeners:
            self._auth_listeners.append(listener)

    def remove_auth_listener(self, listener: AuthListener) -> None:
        if listener in self._auth_listeners:
            self._auth_listeners.remove(listener)

    async def set_auth(self, session: AuthSession) -> None:
        self._session = session
        if self.keystore is not None:
            await save_session(self.keystore, session)
        logger.info("Auth session set for subject %s", session.subject_id)
        await self._notify_auth(session)

    async def clear_auth(self) -> None:
        had_session = self._session is not None
        self._session = None
        if self.keystore is not None:
            await forget_session(self.keystore)
        if had_session:
            logger.info("Auth session cleared")
            await self._notify_auth(None)

    async def restore_auth(self) -> AuthSession | None:
        """Reload a persisted session from the keystore, if any."""

        if self.keystore is None:
            return None
        try:
            session = await load_session(self.keystore)
        except (ValidationError, ValueError) as exc:
            logger.warning("Discarding unreadable stored session: %s", exc)
            await forget_session(self.keystore)
            return None
        if session is not None:
            self._session = session
            await self._notify_auth(session)
        return session

    async def _notify_auth(self, session: AuthSession | None) -> None:
        for listener in list(self._auth_listeners):
            try:
                result = listener(session)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Auth listener %r failed", listener)

    def _build_headers(self, params: RequestParams) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if params.require_auth and self._session is not None:
            token = self._session.access_token.get_secret_value()
            headers["Authorization"] = f"Bearer {token}"
        if params.idempotency_key:
            headers["Idempotency-Key"] = params.idempotency_key
        if params.headers:
            headers.update(params.headers)
        return headers

    async def refresh_auth(self, stale_token: str | None = None) -> AuthSession:
        """Refresh the session once, sharing the result with concurrent callers.

        When ``stale_token`` is given and the current access token already
        differs from it, another caller has refreshed and no new call is made.
        """

        session = self._session
        if session is None:
            raise UnauthorizedError("No session to refresh")
        if stale_token is not None and session.access_token.get_secret_value() != stale_token:
            return session

        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._do_refresh(session))
        return await asyncio.shield(self._refresh_task)

    async def _do_refresh(self, session: AuthSession) -> AuthSession:
        self._metrics.bump("refreshes")
        params = self.RequestParams(
            method="POST",
            path="/auth/refresh",
            json_data={"refreshToken": session.refresh_token.get_secret_value()},
            require_auth=False,
        )
        response = await self._send(params)
        if not HTTP_OK <= response.status_code < HTTP_MULTIPLE_CHOICES:
            logger.warning("Token refresh rejected with %d", response.status_code)
            await self.clear_auth()
            raise UnauthorizedError(f"Token refresh rejected with {response.status_code}")

        try:
            refreshed = RefreshResponse.model_validate(self._decode(response)).session
        except ValidationError as exc:
            await self.clear_auth()
            raise UnauthorizedError(f"Malformed refresh response: {exc}") from exc
        await self.set_auth(refreshed)
        return refreshed

    async def ensure_fresh_token(self) -> None:
        """Refresh ahead of expiry when the token is inside the refresh threshold."""

        session = self._session
        if session is None or not self.connectivity.online:
            return
        if session.expires_within(self._clock(), self.config.token_refresh_threshold_seconds):
            logger.debug("Access token near expiry; refreshing proactively")
            await self.refresh_auth(session.access_token.get_secret_value())

    # --- offline queue seam --------------------------------------------------------

    def set_offline_sink(self, sink: OfflineSink | None) -> None:
        self._offline_sink = sink

    async def enqueue_if_offline(
        self,
        path: str,
        method: str,
        body: Any = None,
        *,
        target_kind: str | None = None,
        target_id: str | None = None,
        action_kind: ActionKind | None = None,
        priority: ActionPriority = ActionPriority.MEDIUM,
        idempotency_key: str | None = None,
        timeout_ms: int | None = None,
        retries: int | None = None,
    ) -> Any:
        """Send a mutation now, or hand it to the sync queue when offline.

        Offline, the call raises QueuedForLaterError carrying the queued action.
        """

        intent = MutationIntent(
            method=method.upper(),
            path=path,
            body=body,
            target_kind=target_kind,
            target_id=target_id,
            action_kind=action_kind,
            priority=priority,
            idempotency_key=idempotency_key,
        )
        if not self.connectivity.online:
            raise QueuedForLaterError(await self._queue(intent))
        return await self.request(
            path,
            method,
            body,
            timeout_ms=timeout_ms,
            retries=retries,
            idempotency_key=idempotency_key,
        )

    async def _queue(self, intent: MutationIntent) -> PendingAction:
        if self._offline_sink is None:
            raise OfflineError(f"Offline and no sync queue attached for {intent.path}")
        action = await self._offline_sink(intent)
        self._metrics.bump("queued")
        logger.info("Queued %s %s for later as %s", intent.method, intent.path, action.action_id)
        return action

    # --- requests ------------------------------------------------------------------

    @staticmethod
    def _cache_key(path: str, params: Mapping[str, Any] | None, subject: str | None) -> str:
        query = urlencode(sorted((params or {}).items()), doseq=True)
        key = f"GET {path}?{query}" if query else f"GET {path}"
        return f"{subject or '-'}|{key}"

    async def request(
        self,
        path: str,
        method: str = "GET",
        body: Any = None,
        *,
        params: Mapping[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout_ms: int | None = None,
        require_auth: bool = True,
        retries: int | None = None,
        cacheable: bool | None = None,
        cache_ttl_seconds: float | None = None,
        idempotency_key: str | None = None,
        mutation_intent: MutationIntent | None = None,
    ) -> Any:
        """Issue one logical request and return the decoded payload.

        Transient failures are retried with ``retry_base_seconds * 2**attempt``
        backoff up to ``retries`` times. A 401 triggers one refresh and one
        re-issue that does not count against the retry budget.
        """

        method = method.upper()
        if method not in ALLOWED_METHODS:
            raise ValueError(f"Unsupported method {method}")
        subject = self._session.subject_id if self._session else None
        use_cache = method == "GET" and (
            cacheable if cacheable is not None else self.config.is_cacheable(path)
        )
        cache_key = self._cache_key(path, params, subject) if use_cache else None

        if not self.connectivity.online:
            if cache_key is not None:
                cached = await self.store.cache_get(cache_key, _CACHE_MISS)
                if cached is not _CACHE_MISS:
                    self._metrics.bump("cache_hits")
                    return cached
                self._metrics.bump("offline_rejected")
                raise OfflineNoCacheError(f"Offline with no cached response for {path}")
            if method in MUTATING_METHODS and mutation_intent is not None:
                raise QueuedForLaterError(await self._queue(mutation_intent))
            self._metrics.bump("offline_rejected")
            raise OfflineError(f"Offline; cannot {method} {path}")

        await self.rate_limiter.check(subject, method, path)
        if require_auth:
            await self.ensure_fresh_token()

        request_params = self.RequestParams(
            method=method,
            path=path,
            json_data=body,
            params=params,
            headers=headers,
            idempotency_key=idempotency_key,
            require_auth=require_auth,
            timeout_seconds=(timeout_ms / 1000.0) if timeout_ms is not None else None,
        )
        response = await self._execute(
            request_params,
            retries=self.config.default_retries if retries is None else retries,
        )
        payload = self._decode(response)

        if cache_key is not None:
            ttl = cache_ttl_seconds or self.config.cache_ttl_seconds
            await self.store.cache_put(cache_key, payload, ttl)
        return payload

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.request(path, "GET", **kwargs)

    async def post(self, path: str, body: Any = None, **kwargs: Any) -> Any:
        return await self.request(path, "POST", body, **kwargs)

    async def put(self, path: str, body: Any = None, **kwargs: Any) -> Any:
        return await self.request(path, "PUT", body, **kwargs)

    async def patch(self, path: str, body: Any = None, **kwargs: Any) -> Any:
        return await self.request(path, "PATCH", body, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Any:
        return await self.request(path, "DELETE", **kwargs)

    async def _execute(self, params: RequestParams, *, retries: int) -> httpx.Response:
        attempt = 0
        refreshed = False
        while True:
            used_token = (
                self._session.access_token.get_secret_value()
                if params.require_auth and self._session is not None
                else None
            )
            try:
                response = await self._send(params)
                if response.status_code == HTTP_UNAUTHORIZED and params.require_auth:
                    if used_token is None:
                        raise UnauthorizedError(f"{params.method} {params.path} requires auth")
                    if refreshed:
                        await self.clear_auth()
                        raise UnauthorizedError(
                            f"{params.method} {params.path} still unauthorized after refresh"
                        )
                    await self.refresh_auth(used_token)
                    refreshed = True
                    continue
                if response.status_code >= HTTP_MULTIPLE_CHOICES:
                    raise classify_status(
                        response.status_code,
                        body=self._error_body(response),
                        retry_after=_retry_after(response),
                    )
                return response
            except GatewayError as exc:
                if not exc.retryable or attempt >= retries:
                    raise
                delay = self.config.retry_base_seconds * (2**attempt)
                if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
                    delay = exc.retry_after
                attempt += 1
                self._metrics.bump("retries")
                logger.warning(
                    "%s %s failed (%s); retry %d/%d in %.1fs",
                    params.method,
                    params.path,
                    exc.kind,
                    attempt,
                    retries,
                    delay,
                )
                await self._sleep(delay)

    async def _send(self, params: RequestParams) -> httpx.Response:
        client = await self._ensure_client()
        headers = self._build_headers(params)
        timeout = params.timeout_seconds or self.config.request_timeout_seconds

        start_time = time.monotonic()
        endpoint = f"{params.method} {params.path}"
        success = False
        error_type: str | None = None

        try:
            async with asyncio.timeout(timeout):
                response = await client.request(
                    params.method,
                    params.path,
                    json=params.json_data,
                    data=params.data,
                    files=params.files,
                    params=params.params,
                    headers=headers,
                    timeout=httpx.Timeout(timeout),
                )
            success = response.status_code < HTTP_MULTIPLE_CHOICES
            if not success:
                error_type = f"http_{response.status_code}"
            return response
        except (httpx.TimeoutException, TimeoutError) as exc:
            error_type = "timeout"
            raise RequestTimeoutError(f"{endpoint} timed out after {timeout:.1f}s") from exc
        except httpx.HTTPError as exc:
            error_type = "network_error"
            raise NetworkError(f"{endpoint} failed: {exc}") from exc
        except OSError as exc:
            error_type = "network_error"
            raise NetworkError(f"{endpoint} failed: {exc}") from exc
        finally:
            self._metrics.observe(endpoint, time.monotonic() - start_time, success, error_type)

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if response.status_code == HTTP_NO_CONTENT or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise PayloadDecodeError(
                f"Invalid JSON from {response.request.method} {response.request.url.path}"
            ) from exc

    @staticmethod
    def _error_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text or None

    # --- blobs ---------------------------------------------------------------------

    async def upload_blob(
        self,
        path: str,
        file: Path | str | bytes,
        *,
        filename: str | None = None,
        content_type: str = "application/octet-stream",
        field_name: str = "file",
        extras: Mapping[str, Any] | None = None,
        timeout_ms: int | None = None,
        retries: int | None = None,
    ) -> Any:
        """POST a multipart upload and return the decoded response."""

        if not self.connectivity.online:
            raise OfflineError(f"Offline; cannot upload to {path}")

        if isinstance(file, bytes):
            content = file
            name = filename or "upload.bin"
        else:
            file_path = Path(file)
            content = await asyncio.to_thread(file_path.read_bytes)
            name = filename or file_path.name

        subject = self._session.subject_id if self._session else None
        await self.rate_limiter.check(subject, "POST", path)
        await self.ensure_fresh_token()

        params = self.RequestParams(
            method="POST",
            path=path,
            data={k: _form_value(v) for k, v in (extras or {}).items()},
            files={field_name: (name, content, content_type)},
            timeout_seconds=(timeout_ms / 1000.0) if timeout_ms is not None else None,
        )
        response = await self._execute(
            params,
            retries=self.config.default_retries if retries is None else retries,
        )
        return self._decode(response)

    async def download_blob(self, url: str, destination_name: str) -> Path:
        """Stream ``url`` into the download directory and return the file path.

        The file is written under a temporary name and renamed on completion,
        so a failed download never leaves a partial file behind.
        """

        if not self.connectivity.online:
            raise OfflineError(f"Offline; cannot download {url}")
        if not destination_name or Path(destination_name).name != destination_name:
            raise ValueError(f"Invalid destination name {destination_name!r}")

        target_dir = Path(self.config.download_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / destination_name
        partial = target.with_name(target.name + ".part")

        client = await self._ensure_client()
        relative = not url.startswith(("http://", "https://"))
        headers = self._build_headers(self.RequestParams("GET", url, require_auth=relative))
        endpoint = "GET download"
        start_time = time.monotonic()
        success = False
        error_type: str | None = None
        try:
            async with asyncio.timeout(self.config.request_timeout_seconds):
                async with client.stream("GET", url, headers=headers) as response:
                    if response.status_code >= HTTP_MULTIPLE_CHOICES:
                        await response.aread()
                        error_type = f"http_{response.status_code}"
                        raise classify_status(response.status_code, body=response.text or None)
                    fh = await asyncio.to_thread(partial.open, "wb")
                    try:
                        async for chunk in response.aiter_bytes():
                            await asyncio.to_thread(fh.write, chunk)
                    finally:
                        await asyncio.to_thread(fh.close)
            await asyncio.to_thread(partial.replace, target)
            success = True
            return target
        except (httpx.TimeoutException, TimeoutError) as exc:
            error_type = "timeout"
            raise RequestTimeoutError(f"Download of {url} timed out") from exc
        except httpx.HTTPError as exc:
            error_type = "network_error"
            raise NetworkError(f"Download of {url} failed: {exc}") from exc
        finally:
            if not success:
                partial.unlink(missing_ok=True)
            self._metrics.observe(endpoint, time.monotonic() - start_time, success, error_type)

    # --- health --------------------------------------------------------------------

    async def health_check(self) -> dict[str, Any]:
        """Perform a health check against the server.

        Returns:
            Dictionary containing health status and metrics
        """
        if not self.connectivity.online:
            return {"status": "offline", "online": False, "metrics": self.get_metrics()}

        try:
            response = await self._send(
                self.RequestParams(method="GET", path="/health", require_auth=False)
            )
        except ClanSyncError as e:
            return {
                "status": "error",
                "online": True,
                "error": str(e),
                "metrics": self.get_metrics(),
            }

        healthy = response.status_code == HTTP_OK
        return {
            "status": "healthy" if healthy else "unhealthy",
            "online": True,
            "response_time_ms": response.elapsed.total_seconds() * 1000,
            "error": None if healthy else f"Server returned status {response.status_code}",
            "metrics": self.get_metrics(),
        }

    def get_metrics(self) -> dict[str, Any]:
        """Get gateway operation metrics."""
        return self._metrics.snapshot()


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _form_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)
