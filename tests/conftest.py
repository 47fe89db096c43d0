"""Shared fixtures: a controllable clock, a recorded sleep and a scripted backend."""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable

import httpx
import pytest

from krios.services import ApiClient
from krios.settings import Settings

TEST_SETTINGS = Settings(
    api_base_url="http://krios.test/api",
    request_timeout=5.0,
    max_retries=2,
    retry_base_delay=1.0,
    rate_limit_retry_delay=3.0,
    default_cooldown=30.0,
)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, ms: float = 0) -> None:
        self.now += timedelta(seconds=seconds, milliseconds=ms)


class SleepRecorder:
    """Stands in for asyncio.sleep and remembers the requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


Responder = httpx.Response | Callable[[httpx.Request], Any]


class FakeBackend:
    """
    Scripted responses per (method, path).

    Each route plays its responses in order and repeats the last one.
    A responder may be a plain response or a (sync or async) callable.
    """

    def __init__(self):
        self._routes: dict[tuple[str, str], list[Responder]] = {}
        self.requests: list[httpx.Request] = []
        self.counts: dict[tuple[str, str], int] = defaultdict(int)

    def route(self, method: str, path: str, *responders: Responder) -> "FakeBackend":
        self._routes[(method.upper(), path)] = list(responders)
        return self

    def calls(self, method: str, path: str) -> int:
        return self.counts[(method.upper(), path)]

    def last_request(self, method: str, path: str) -> httpx.Request:
        matching = [
            r for r in self.requests
            if r.method == method.upper() and _api_path(r) == path
        ]
        return matching[-1]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        key = (request.method, _api_path(request))
        self.requests.append(request)
        self.counts[key] += 1

        script = self._routes.get(key)
        if not script:
            return httpx.Response(404, json={"message": "Route not found"})

        responder = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(responder, httpx.Response):
            # Responses are single-use once read, so hand out a copy
            return httpx.Response(
                responder.status_code,
                headers=responder.headers,
                content=responder.content,
            )

        result = responder(request)
        if not isinstance(result, httpx.Response):
            result = await result
        return result


def _api_path(request: httpx.Request) -> str:
    return request.url.path.removeprefix("/api")


@pytest.fixture
def settings() -> Settings:
    return TEST_SETTINGS


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def make_client(clock: FakeClock, sleep: SleepRecorder, backend: FakeBackend):
    """Factory for clients wired to the fake backend, clock and sleep."""

    def factory(**kwargs: Any) -> ApiClient:
        kwargs.setdefault("settings", TEST_SETTINGS)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("sleep", sleep)
        kwargs.setdefault("transport", httpx.MockTransport(backend.handler))
        return ApiClient(**kwargs)

    return factory
