"""
Access-token storage and the refresh-and-replay interceptor.
"""

import inspect
from typing import Any, Awaitable, Callable

from loguru import logger

from krios.services.errors import ApiError, AuthError, TokenRefreshError
from krios.services.middleware import ApiRequest, ApiResponse, Handler
from krios.services.storage import PersistentStore

TOKEN_KEY = "token"
REFRESH_TOKEN_KEY = "refreshToken"


class TokenStore:
    """Holds the access and refresh tokens, optionally persisted."""

    def __init__(self, persistent: PersistentStore | None = None):
        self._persistent = persistent
        self.access_token: str | None = None
        self.refresh_token: str | None = None
        if persistent is not None:
            try:
                self.access_token = persistent.get(TOKEN_KEY)
                self.refresh_token = persistent.get(REFRESH_TOKEN_KEY)
            except (OSError, ValueError, TypeError) as e:
                logger.warning(f"Dropping unreadable stored credentials: {e}")
                self.clear()

    @property
    def is_authenticated(self) -> bool:
        return self.access_token is not None

    def set_tokens(self, access_token: str, refresh_token: str | None = None) -> None:
        self.access_token = access_token
        if refresh_token is not None:
            self.refresh_token = refresh_token
        if self._persistent is not None:
            self._persistent.set(TOKEN_KEY, self.access_token)
            if self.refresh_token is not None:
                self._persistent.set(REFRESH_TOKEN_KEY, self.refresh_token)

    def clear(self) -> None:
        self.access_token = None
        self.refresh_token = None
        if self._persistent is not None:
            self._persistent.delete(TOKEN_KEY)
            self._persistent.delete(REFRESH_TOKEN_KEY)


class AuthRefreshInterceptor:
    """
    Attaches the bearer token and recovers from a single 401.

    Per request: on the first 401 the refresh token is exchanged once and
    the original request is replayed with the new token. A 401 on the
    replay is final. If the exchange fails, stored credentials are cleared,
    ``on_logout`` runs and the caller receives ``TokenRefreshError``.
    """

    def __init__(
        self,
        tokens: TokenStore,
        refresh_fn: Callable[[str], Awaitable[str]],
        on_logout: Callable[[], Any] | None = None,
    ):
        self._tokens = tokens
        self._refresh_fn = refresh_fn
        self._on_logout = on_logout
        self.refresh_count = 0

    async def __call__(self, request: ApiRequest, next_handler: Handler) -> ApiResponse:
        if self._tokens.access_token:
            request.headers["Authorization"] = f"Bearer {self._tokens.access_token}"

        try:
            return await next_handler(request)
        except AuthError:
            if request.refresh_attempted:
                raise
            request.refresh_attempted = True

        token = await self._refresh()
        request.headers["Authorization"] = f"Bearer {token}"
        logger.debug(f"Replaying {request.method} {request.path} with refreshed token")
        return await next_handler(request)

    async def _refresh(self) -> str:
        refresh_token = self._tokens.refresh_token
        if not refresh_token:
            await self._force_logout()
            raise TokenRefreshError("No refresh token", path="/auth/refresh")

        try:
            token = await self._refresh_fn(refresh_token)
        except ApiError as e:
            await self._force_logout()
            raise TokenRefreshError(
                f"Token refresh failed: {e}",
                path=e.path,
                status_code=e.status_code,
            ) from e

        self._tokens.set_tokens(token)
        self.refresh_count += 1
        logger.info("Access token refreshed")
        return token

    async def _force_logout(self) -> None:
        logger.warning("Token refresh failed, clearing credentials")
        self._tokens.clear()
        if self._on_logout is not None:
            result = self._on_logout()
            if inspect.isawaitable(result):
                await result
