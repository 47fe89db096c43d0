"""
API access layer - resilience patterns for every call to the Krios backend.

Provides:
- CacheStore: Per-route TTL cache with stale reads and a persisted tier
- RateLimitGuard: Client-wide cooldown after 429
- RequestDeduplicator: Single-flight for concurrent identical reads
- RetryPolicy / AuthRefreshInterceptor: Middleware around the HTTP call
- OptimisticUpdateCoordinator: Local-first mutations with rollback
- ApiClient: Composition of all of the above
"""

from krios.services.errors import (
    ApiError,
    AuthError,
    CacheError,
    ErrorCategory,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
    TokenRefreshError,
    ValidationError,
)
from krios.services.cache import (
    CacheEntry,
    CachePolicyTable,
    CacheResult,
    CacheStore,
    RoutePolicy,
    make_cache_key,
)
from krios.services.storage import JsonFileStore, MemoryStore, PersistentStore
from krios.services.rate_limit import CooldownState, RateLimitGuard
from krios.services.deduplicator import RequestDeduplicator
from krios.services.middleware import ApiRequest, ApiResponse, compose
from krios.services.retry import RetryMiddleware, RetryPolicy
from krios.services.auth import AuthRefreshInterceptor, TokenStore
from krios.services.optimistic import (
    OptimisticOperation,
    OptimisticResult,
    OptimisticUpdateCoordinator,
)
from krios.services.client import ApiClient, ClientState, RequestResult
from krios.services.messages import ErrorMessage, describe_error

__all__ = [
    # Errors
    "ApiError",
    "AuthError",
    "CacheError",
    "ErrorCategory",
    "NetworkError",
    "RateLimitError",
    "RequestTimeoutError",
    "ServerError",
    "TokenRefreshError",
    "ValidationError",
    # Cache
    "CacheEntry",
    "CachePolicyTable",
    "CacheResult",
    "CacheStore",
    "RoutePolicy",
    "make_cache_key",
    # Storage
    "JsonFileStore",
    "MemoryStore",
    "PersistentStore",
    # Rate limit
    "CooldownState",
    "RateLimitGuard",
    # Deduplicator
    "RequestDeduplicator",
    # Middleware
    "ApiRequest",
    "ApiResponse",
    "compose",
    "RetryMiddleware",
    "RetryPolicy",
    "AuthRefreshInterceptor",
    "TokenStore",
    # Optimistic updates
    "OptimisticOperation",
    "OptimisticResult",
    "OptimisticUpdateCoordinator",
    # Client
    "ApiClient",
    "ClientState",
    "RequestResult",
    # Messages
    "ErrorMessage",
    "describe_error",
]
