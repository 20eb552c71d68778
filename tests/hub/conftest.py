"""Shared fixtures for tests/hub/.

FakeNetwork stands in for the aiohttp network: it serves canned responses,
counts fetches per URL and records the mode each fetch used. FakeInstance
records every message posted to it.
"""

from collections import Counter
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from edgecache.hub.api import create_api
from edgecache.hub.cache import TierStore
from edgecache.hub.core import EdgeHub, LifecycleState
from edgecache.hub.errors import NetworkUnavailable
from edgecache.hub.manifest import AssetManifest
from edgecache.hub.models import AssetRequest, AssetResponse

SCOPE = "https://app.example.org/"


class FakeNetwork:
    """Canned network: unknown URLs answer 404, offline URLs raise NetworkUnavailable."""

    def __init__(self, routes: dict[str, tuple[int, bytes]] | None = None):
        self.routes = dict(routes or {})
        self.offline: set[str] = set()
        self.failures: dict[str, Exception] = {}
        self.calls: Counter = Counter()
        self.modes: dict[str, str] = {}

    async def fetch(self, request: AssetRequest, mode: str = "same-origin") -> AssetResponse:
        self.calls[request.url] += 1
        self.modes[request.url] = mode
        if request.url in self.offline:
            raise NetworkUnavailable(f"offline: {request.url}")
        if request.url in self.failures:
            raise self.failures[request.url]
        status, body = self.routes.get(request.url, (404, b"not found"))
        return AssetResponse(url=request.url, status=status, headers={"content-type": "text/plain"}, body=body)


class FakeInstance:
    """Connected instance that records posted messages."""

    def __init__(self, instance_id: str):
        self.id = instance_id
        self.messages: list[dict[str, Any]] = []

    def post_message(self, message: dict[str, Any]) -> None:
        self.messages.append(message)

    def requests(self, message_type: str | None = None) -> list[dict[str, Any]]:
        return [m for m in self.messages if "type" in m and (message_type is None or m["type"] == message_type)]

    def replies(self) -> list[dict[str, Any]]:
        return [m for m in self.messages if "replyTo" in m]


def url(name: str) -> str:
    return SCOPE + name


def thumbnail_url(width, height, media="example.org/abc") -> str:
    return f"{SCOPE}_matrix/media/r0/thumbnail/{media}?width={width}&height={height}&method=crop"


@pytest.fixture
def manifest():
    return AssetManifest(
        version="0.1.36",
        generation="gen2",
        unhashed_precache=("index.html",),
        hashed_precache=("app-111.js", "app-222.css"),
        hashed_on_request=("worker-333.js", "fonts/inter-444.woff2"),
    )


@pytest.fixture
def network():
    return FakeNetwork(
        {
            url("index.html"): (200, b"<html>gen2</html>"),
            url("app-111.js"): (200, b"console.log(1)"),
            url("app-222.css"): (200, b"body{}"),
            url("worker-333.js"): (200, b"self.onmessage=null"),
            url("fonts/inter-444.woff2"): (200, b"woff2"),
            url("other.js"): (200, b"not in manifest"),
            thumbnail_url(50, 50): (200, b"thumb-50"),
            thumbnail_url(51, 50): (200, b"thumb-51"),
        }
    )


@pytest_asyncio.fixture
async def store(tmp_path):
    """Create and initialize a TierStore with a temp DB."""
    ts = TierStore(str(tmp_path / "edgecache.db"))
    await ts.initialize()
    yield ts
    await ts.close()


@pytest_asyncio.fixture
async def hub(tmp_path, manifest, network):
    """Initialized (not yet installed) EdgeHub on a temp DB and FakeNetwork."""
    h = EdgeHub(str(tmp_path / "edgecache.db"), manifest, SCOPE, network=network)
    await h.initialize()
    yield h
    await h.shutdown()


@pytest.fixture
def api_hub(manifest):
    """Mock EdgeHub for API endpoint tests."""
    mock_hub = MagicMock(spec=EdgeHub)
    mock_hub.manifest = manifest
    mock_hub.scope = SCOPE
    mock_hub.state = LifecycleState.ACTIVATED
    mock_hub.store = MagicMock()
    mock_hub.on_fetch = AsyncMock()
    mock_hub.on_message = AsyncMock()
    mock_hub.health_check = AsyncMock(return_value={"status": "ok", "state": "activated"})
    return mock_hub


@pytest.fixture
def api_client(api_hub):
    """Create a FastAPI TestClient backed by api_hub."""
    app = create_api(api_hub)
    return TestClient(app)
