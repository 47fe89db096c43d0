"""
Request/response types and the middleware chain.

A middleware is an async callable ``(request, next) -> response``. The chain
is composed once when the client is built; the innermost handler performs
the HTTP call.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

BYPASS_CACHE_HEADER = "x-bypass-cache"
PREFETCH_HEADER = "x-prefetch"


@dataclass
class ApiRequest:
    """One outbound call, mutated as it moves through the chain."""

    method: str
    path: str
    params: dict[str, Any] | None = None
    json: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None
    retry_count: int = 0
    refresh_attempted: bool = False
    # Checked when a 429 arrives: true means a cached copy can be served
    # instead of retrying
    fallback_available: Callable[[], bool] | None = None

    @property
    def is_read(self) -> bool:
        return self.method == "GET"


@dataclass
class ApiResponse:
    """Decoded 2xx response."""

    status_code: int
    data: Any
    headers: dict[str, str] = field(default_factory=dict)


Handler = Callable[[ApiRequest], Awaitable[ApiResponse]]
Middleware = Callable[[ApiRequest, Handler], Awaitable[ApiResponse]]


def compose(middlewares: Sequence[Middleware], handler: Handler) -> Handler:
    """
    Wrap ``handler`` so that ``middlewares[0]`` runs first.

    Usage:
        send = compose([auth, retry], transport)
        response = await send(request)
    """
    for middleware in reversed(middlewares):
        handler = _bind(middleware, handler)
    return handler


def _bind(middleware: Middleware, next_handler: Handler) -> Handler:
    async def handler(request: ApiRequest) -> ApiResponse:
        return await middleware(request, next_handler)

    return handler
