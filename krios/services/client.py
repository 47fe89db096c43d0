"""
ApiClient - Async HTTP client for the Krios API with resilience patterns.

Combines:
- CacheStore for per-route response caching (with a persisted tier)
- RateLimitGuard for a client-wide cooldown after 429
- RequestDeduplicator for concurrent identical reads
- RetryMiddleware and AuthRefreshInterceptor around the HTTP call
- OptimisticUpdateCoordinator for local-first mutations
"""

import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Sequence

import httpx
from loguru import logger

from krios.services.auth import AuthRefreshInterceptor, TokenStore
from krios.services.cache import CachePolicyTable, CacheStore, make_cache_key
from krios.services.deduplicator import RequestDeduplicator
from krios.services.errors import (
    ApiError,
    AuthError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    TokenRefreshError,
    error_from_response,
)
from krios.services.middleware import (
    BYPASS_CACHE_HEADER,
    PREFETCH_HEADER,
    ApiRequest,
    ApiResponse,
    Middleware,
    compose,
)
from krios.services.optimistic import OptimisticUpdateCoordinator
from krios.services.rate_limit import RateLimitGuard
from krios.services.retry import RetryMiddleware, RetryPolicy
from krios.services.storage import JsonFileStore, PersistentStore
from krios.settings import Settings, global_settings

CRITICAL_PATHS = ("/rooms", "/auth/profile")


@dataclass
class RequestResult:
    """Result from an API request."""

    data: Any
    status_code: int = 200
    from_cache: str | None = None  # 'memory' | 'persisted' | 'stale' | None
    is_stale: bool = False
    path: str | None = None


@dataclass
class ClientState:
    """Shared mutable state of one client: cache, in-flight reads, cooldown."""

    cache: CacheStore
    deduplicator: RequestDeduplicator
    rate_limit: RateLimitGuard

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        persistent: PersistentStore | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> "ClientState":
        settings = settings or global_settings
        cache = CacheStore(
            max_size=settings.cache_max_size,
            clock=clock,
            persistent=persistent,
            persisted_max_age=timedelta(seconds=settings.persisted_max_age),
            max_entry_bytes=settings.persisted_max_entry_bytes,
            debug=settings.debug,
        )
        return cls(
            cache=cache,
            deduplicator=RequestDeduplicator(debug=settings.debug),
            rate_limit=RateLimitGuard(
                cache,
                default_cooldown=timedelta(seconds=settings.default_cooldown),
                clock=clock,
            ),
        )


def _header_flag(headers: dict[str, str], name: str, truthy: Iterable[str]) -> bool:
    for key, value in headers.items():
        if key.lower() == name:
            return value.lower() in truthy
    return False


class ApiClient:
    """
    HTTP client with caching, deduplication, retry, token refresh and
    rate-limit cooldown.

    Usage:
        async with ApiClient() as client:
            await client.login("me@example.com", "secret")
            rooms = await client.get("/rooms")

            # Writes can invalidate cached reads they affect
            await client.post(
                f"/rooms/{room_id}/tasks/{task_id}/complete",
                invalidates=["/rooms"],
            )
    """

    def __init__(
        self,
        settings: Settings | None = None,
        state: ClientState | None = None,
        tokens: TokenStore | None = None,
        policies: CachePolicyTable | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        on_logout: Callable[[], Any] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._settings = settings or global_settings

        cache_persistent = None
        token_persistent = None
        if self._settings.cache_dir:
            cache_dir = Path(self._settings.cache_dir)
            cache_persistent = JsonFileStore(cache_dir, prefix="krios_cache_")
            token_persistent = JsonFileStore(cache_dir, prefix="krios_auth_")

        self.state = state or ClientState.create(
            self._settings, persistent=cache_persistent, clock=clock
        )
        self.tokens = tokens or TokenStore(token_persistent)
        self.policies = policies or CachePolicyTable()
        self.optimistic = OptimisticUpdateCoordinator()
        self._on_logout = on_logout
        self._transport = transport

        # HTTP client (lazy initialization)
        self._http_client: httpx.AsyncClient | None = None

        self.auth = AuthRefreshInterceptor(
            self.tokens,
            refresh_fn=self._refresh_access_token,
            on_logout=self._handle_forced_logout,
        )
        self.retry = RetryMiddleware(
            retry_policy
            or RetryPolicy(
                max_retries=self._settings.max_retries,
                base_delay=self._settings.retry_base_delay,
                rate_limit_delay=self._settings.rate_limit_retry_delay,
            ),
            guard=self.state.rate_limit,
            sleep=sleep,
        )
        self.middlewares: Sequence[Middleware] = (self.auth, self.retry)
        self._send = compose(self.middlewares, self._execute_request)

        self.state.cache.load_persisted()

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._settings.api_base_url,
                timeout=httpx.Timeout(self._settings.request_timeout),
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._http_client

    async def execute(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        bypass_cache: bool | None = None,
        prefetch: bool | None = None,
        dedupe: bool = True,
        cache_ttl: timedelta | None = None,
        invalidates: Iterable[str] = (),
        timeout: float | None = None,
    ) -> RequestResult:
        """
        Make an API request through the full pipeline.

        Args:
            method: HTTP method
            path: Path relative to the API base URL
            params: Query parameters
            json: JSON body for writes
            headers: Additional headers (``x-bypass-cache``/``x-prefetch``
                are honoured)
            bypass_cache: Skip cooldown, cache and deduplication for a read
            prefetch: Background read; uses the cache but never joins or
                is joined by another in-flight read
            dedupe: Set False to opt a read out of deduplication
            cache_ttl: Cache this read even if its route is unregistered
            invalidates: Cache patterns to drop after a successful call
            timeout: Override the per-call timeout

        Raises:
            ApiError subclasses once retry and refresh are exhausted
        """
        method = method.upper()
        req_headers = dict(headers or {})

        if bypass_cache is None:
            bypass_cache = _header_flag(req_headers, BYPASS_CACHE_HEADER, ("true", "1"))
        elif bypass_cache:
            req_headers[BYPASS_CACHE_HEADER] = "true"
        if prefetch is None:
            prefetch = _header_flag(req_headers, PREFETCH_HEADER, ("1", "true"))
        elif prefetch:
            req_headers[PREFETCH_HEADER] = "1"

        request = ApiRequest(
            method=method,
            path=path,
            params=params,
            json=json,
            headers=req_headers,
            timeout=timeout,
        )
        key = make_cache_key(method, path, params, json)

        policy = self.policies.match(path) if request.is_read else None
        ttl = cache_ttl or (policy.ttl if policy else None)
        should_cache = request.is_read and ttl is not None
        persist = policy.persistent if policy else False

        if request.is_read and not bypass_cache:
            cached = self.state.rate_limit.try_serve_from_cache(key)
            if cached is not None:
                logger.info(f"Cooling down, serving cached {path}")
                return RequestResult(
                    data=cached.data,
                    from_cache="stale" if cached.is_stale else cached.from_cache,
                    is_stale=cached.is_stale,
                    path=path,
                )

            cached = self.state.cache.get_with_staleness(key)
            if cached is not None and not cached.is_stale:
                return RequestResult(
                    data=cached.data,
                    from_cache=cached.from_cache,
                    path=path,
                )
            request.fallback_available = lambda: self.state.cache.has_any(key)

        async def do_request() -> RequestResult:
            response = await self._send(request)
            if should_cache:
                self.state.cache.set(key, response.data, ttl, persist=persist)
            return RequestResult(
                data=response.data,
                status_code=response.status_code,
                path=path,
            )

        try:
            if request.is_read and dedupe and not bypass_cache and not prefetch:
                result = await self.state.deduplicator.dedupe(
                    key, do_request, owner=self
                )
            else:
                result = await do_request()
        except RateLimitError:
            if request.is_read:
                cached = self.state.cache.get_with_staleness(key)
                if cached is not None:
                    logger.warning(f"Rate limited on {path}, returning cached data")
                    return RequestResult(
                        data=cached.data,
                        from_cache="stale",
                        is_stale=cached.is_stale,
                        path=path,
                    )
            raise

        for pattern in invalidates:
            self.state.cache.invalidate(pattern)

        return result

    async def get(self, path: str, **kwargs: Any) -> RequestResult:
        return await self.execute("GET", path, **kwargs)

    async def post(self, path: str, json: Any = None, **kwargs: Any) -> RequestResult:
        return await self.execute("POST", path, json=json, **kwargs)

    async def put(self, path: str, json: Any = None, **kwargs: Any) -> RequestResult:
        return await self.execute("PUT", path, json=json, **kwargs)

    async def patch(self, path: str, json: Any = None, **kwargs: Any) -> RequestResult:
        return await self.execute("PATCH", path, json=json, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> RequestResult:
        return await self.execute("DELETE", path, **kwargs)

    async def _execute_request(self, request: ApiRequest) -> ApiResponse:
        """Innermost handler: one HTTP call, no recovery."""
        response = await self._send_raw(
            request.method,
            request.path,
            params=request.params,
            json=request.json,
            headers=request.headers,
            timeout=request.timeout,
        )
        try:
            data = response.json() if response.content else None
        except ValueError:
            data = response.text
        return ApiResponse(
            status_code=response.status_code,
            data=data,
            headers=dict(response.headers),
        )

    async def _send_raw(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """Send a request and translate failures into the error taxonomy."""
        client = await self._get_http_client()
        req_timeout = timeout or self._settings.request_timeout
        if params:
            params = {k: v for k, v in params.items() if v is not None}

        try:
            response = await client.request(
                method=method,
                url=path,
                params=params,
                headers=headers,
                json=json,
                timeout=req_timeout,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(path, req_timeout) from e
        except httpx.RequestError as e:
            raise NetworkError(str(e) or type(e).__name__, path=path) from e

        if not response.is_success:
            raise error_from_response(response, path)
        return response

    async def _refresh_access_token(self, refresh_token: str) -> str:
        """Exchange the refresh token; never retried or deduplicated."""
        response = await self._send_raw(
            "POST", "/auth/refresh", json={"refreshToken": refresh_token}
        )
        try:
            token = response.json().get("token")
        except (ValueError, AttributeError):
            token = None
        if not token:
            raise TokenRefreshError(
                "Refresh response did not contain a token", path="/auth/refresh"
            )
        return token

    async def _handle_forced_logout(self) -> None:
        self.state.cache.clear()
        if self._on_logout is not None:
            result = self._on_logout()
            if inspect.isawaitable(result):
                await result

    async def login(self, email: str, password: str) -> dict[str, Any]:
        """
        Log in with email and password and store the returned tokens.

        Returns:
            The user payload from the server
        """
        try:
            response = await self._send_raw(
                "POST", "/auth/login", json={"email": email, "password": password}
            )
        except RateLimitError as e:
            self.state.rate_limit.record_rate_limited(e.retry_after)
            raise

        payload = response.json()
        if not payload.get("token"):
            raise AuthError("Login response did not contain a token", path="/auth/login")
        self.tokens.set_tokens(payload["token"], payload.get("refreshToken"))
        logger.info(f"Logged in as {email}")
        return payload.get("user") or {}

    async def logout(self) -> None:
        """Tell the server, then always drop cached data and credentials."""
        try:
            await self.post("/auth/logout")
        except ApiError as e:
            logger.warning(f"Logout request failed: {e}")
        finally:
            self.state.cache.clear()
            self.tokens.clear()
            logger.info("Logged out")

    async def revalidate(self, paths: Iterable[str] = CRITICAL_PATHS) -> int:
        """
        Refresh reads whose cached copy is stale or missing.

        Failures keep the stale copy. Returns the number refreshed.
        """
        refreshed = 0
        for path in paths:
            cached = self.state.cache.get_with_staleness(make_cache_key("GET", path))
            if cached is not None and not cached.is_stale:
                continue
            try:
                await self.execute("GET", path, prefetch=True)
                refreshed += 1
            except ApiError as e:
                logger.info(f"Failed to revalidate {path}, keeping cached data: {e}")
        return refreshed

    def invalidate(self, pattern: str) -> int:
        """Drop cached reads matching an exact key or key prefix."""
        count = self.state.cache.invalidate(pattern)
        logger.debug(f"Cache cleared: {pattern} ({count} entries)")
        return count

    def clear_all(self) -> None:
        """Drop every cached read."""
        self.state.cache.clear()

    async def close(self) -> None:
        """
        Close the HTTP client and cancel in-flight reads.

        Only the reads this client started are cancelled; a shared
        ``ClientState`` keeps serving other clients.
        """
        self.state.deduplicator.cancel_owned(self)
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.debug("ApiClient closed")

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def get_stats(self) -> dict[str, Any]:
        """Get status of cache, deduplicator and rate-limit guard."""
        return {
            "cache": self.state.cache.get_stats().to_dict(),
            "deduplicator": self.state.deduplicator.get_stats().to_dict(),
            "rate_limit": self.state.rate_limit.get_status(),
            "pending_optimistic": self.optimistic.pending_ids(),
            "token_refreshes": self.auth.refresh_count,
        }
