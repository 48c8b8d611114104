"""
Shared fixtures: a temporary subscription database and fake subscribers
answering the hub's outbound requests through ``httpx.MockTransport``.
"""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from websubhub.config import settings
from websubhub.main import create_app
from websubhub.store import SubscriptionStore


def echo_challenge(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, text=request.url.params.get("hub.challenge", ""))


class FakeSubscribers:
    """Records every outbound request and answers per callback host."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[str, object] = {}

    def route(self, host: str, handler) -> None:
        self.routes[host] = handler

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        handler = self.routes.get(request.url.host, echo_challenge)
        return handler(request)

    def to(self, host: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def store(tmp_path: Path):
    s = SubscriptionStore(str(tmp_path / "subs.db"))
    s.init()
    yield s
    s.close()


@pytest.fixture
def subscribers() -> FakeSubscribers:
    return FakeSubscribers()


@pytest.fixture
def hub_db(tmp_path: Path):
    previous = settings.HUB_DB_PATH
    db_path = tmp_path / "hub.db"
    settings.HUB_DB_PATH = str(db_path)
    yield db_path
    settings.HUB_DB_PATH = previous


@pytest.fixture
def hub_client(hub_db, subscribers):
    app = create_app(transport=httpx.MockTransport(subscribers))
    with TestClient(app) as client:
        yield client


@pytest.fixture
def drain(hub_client: TestClient):
    """Block until the hub's detached verification and delivery tasks finish."""

    def _drain() -> None:
        hub_client.portal.call(hub_client.app.state.hub.executor.drain)

    return _drain
