"""Tests for FetchMediator read-through / write-through and install-time precache."""

import logging

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from edgecache.hub.classifier import RequestKind
from edgecache.hub.errors import InstallationFailure, NetworkUnavailable
from edgecache.hub.fetcher import FETCH_MODES, FetchMediator, Network
from edgecache.hub.models import AssetRequest, AssetResponse

from conftest import SCOPE, thumbnail_url, url


@pytest.fixture
def mediator(store, manifest, network):
    return FetchMediator(store, manifest, network, SCOPE)


async def _all_keys(store):
    keys = []
    for name in await store.list_namespaces():
        keys.extend(await store.list_keys(name))
    return keys


# ============================================================================
# Read-through
# ============================================================================


class TestReadThrough:

    @pytest.mark.asyncio
    async def test_unhashed_hit_skips_network(self, mediator, store, manifest, network):
        await store.put(
            manifest.unhashed_namespace,
            AssetRequest(url("index.html")),
            AssetResponse(url=url("index.html"), status=200, body=b"cached"),
        )

        response = await mediator.handle(AssetRequest(url("index.html")))

        assert response.body == b"cached"
        assert network.calls[url("index.html")] == 0

    @pytest.mark.asyncio
    async def test_unhashed_tier_wins_over_hashed(self, mediator, store, manifest):
        target = url("app-111.js")
        await store.put(manifest.hashed_namespace, AssetRequest(target), AssetResponse(url=target, status=200, body=b"hashed"))
        await store.put(manifest.unhashed_namespace, AssetRequest(target), AssetResponse(url=target, status=200, body=b"unhashed"))

        assert (await mediator.handle(AssetRequest(target))).body == b"unhashed"

    @pytest.mark.asyncio
    async def test_root_document_aliases_entry_document(self, mediator, network):
        await mediator.precache()

        root = await mediator.handle(AssetRequest(SCOPE))
        entry = await mediator.handle(AssetRequest(url("index.html")))

        assert root.body == entry.body == b"<html>gen2</html>"
        assert network.calls[SCOPE] == 0
        assert network.calls[url("index.html")] == 1

    @pytest.mark.asyncio
    async def test_thumbnail_tier_only_read_for_thumbnails(self, mediator, store, manifest, network):
        # An entry under a non-thumbnail URL in the thumbnail tier is never consulted
        await store.put(
            manifest.thumbnail_namespace,
            AssetRequest(url("other.js")),
            AssetResponse(url=url("other.js"), status=200, body=b"stale"),
        )
        response = await mediator.handle(AssetRequest(url("other.js")))
        assert response.body == b"not in manifest"
        assert network.calls[url("other.js")] == 1


# ============================================================================
# Write-through
# ============================================================================


class TestWriteThrough:

    @pytest.mark.asyncio
    async def test_thumbnail_at_bound_is_cached(self, mediator, store, manifest, network):
        request = AssetRequest(thumbnail_url(50, 50))

        first = await mediator.handle(request)
        second = await mediator.handle(request)

        assert first.body == second.body == b"thumb-50"
        assert network.calls[request.url] == 1
        assert await store.list_keys(manifest.thumbnail_namespace) == [request.url]

    @pytest.mark.asyncio
    async def test_thumbnail_over_bound_never_cached(self, mediator, store, manifest, network):
        request = AssetRequest(thumbnail_url(51, 50))
        for _ in range(3):
            await mediator.handle(request)

        assert network.calls[request.url] == 3
        await store.open(manifest.thumbnail_namespace)
        assert await store.list_keys(manifest.thumbnail_namespace) == []

    @pytest.mark.asyncio
    async def test_thumbnail_fetched_without_credentials(self, mediator, network):
        await mediator.handle(AssetRequest(thumbnail_url(50, 50)))
        await mediator.handle(AssetRequest(url("other.js")))
        assert network.modes[thumbnail_url(50, 50)] == "cors"
        assert network.modes[url("other.js")] == "same-origin"

    @pytest.mark.asyncio
    async def test_on_request_asset_written_to_hashed_tier(self, mediator, store, manifest, network):
        await mediator.handle(AssetRequest(url("worker-333.js")))
        await mediator.handle(AssetRequest(url("worker-333.js")))

        assert network.calls[url("worker-333.js")] == 1
        assert await store.list_keys(manifest.hashed_namespace) == [url("worker-333.js")]

    @pytest.mark.asyncio
    async def test_nested_on_request_asset(self, mediator, store, manifest):
        await mediator.handle(AssetRequest(url("fonts/inter-444.woff2")))
        assert await store.list_keys(manifest.hashed_namespace) == [url("fonts/inter-444.woff2")]

    @pytest.mark.asyncio
    async def test_non_manifest_asset_not_cached(self, mediator, store, network):
        await mediator.handle(AssetRequest(url("other.js")))
        await mediator.handle(AssetRequest(url("other.js")))
        assert network.calls[url("other.js")] == 2
        assert await _all_keys(store) == []

    @pytest.mark.asyncio
    async def test_third_party_origin_not_cached(self, mediator, store, network):
        target = "https://cdn.example.net/worker-333.js"
        network.routes[target] = (200, b"lookalike")
        await mediator.handle(AssetRequest(target))
        assert await _all_keys(store) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", [url("worker-333.js"), thumbnail_url(40, 40), url("missing.js")])
    async def test_error_responses_never_stored(self, mediator, store, network, target):
        network.routes[target] = (404, b"gone")

        response = await mediator.handle(AssetRequest(target))

        assert response.status == 404
        assert await _all_keys(store) == []

    @pytest.mark.asyncio
    async def test_head_request_not_written(self, mediator, store, network):
        await mediator.handle(AssetRequest(url("worker-333.js"), method="HEAD"))
        assert await _all_keys(store) == []

    @pytest.mark.asyncio
    async def test_legacy_error_thumbnail_evicted_and_refetched(self, mediator, store, manifest, network):
        target = thumbnail_url(50, 50)
        await store.open(manifest.thumbnail_namespace)
        await store._conn.execute(
            "INSERT INTO entries (namespace, url, status, headers, body, stored_at) VALUES (?, ?, ?, ?, ?, ?)",
            (manifest.thumbnail_namespace, target, 500, "{}", b"boom", "2026-01-01T00:00:00"),
        )
        await store._conn.commit()

        response = await mediator.handle(AssetRequest(target))

        assert response.status == 200
        assert network.calls[target] == 1
        assert (await store.match(manifest.thumbnail_namespace, AssetRequest(target))).body == b"thumb-50"

    def test_every_kind_has_a_fetch_mode(self):
        assert set(FETCH_MODES) == set(RequestKind)


# ============================================================================
# Failures
# ============================================================================


class TestFailures:

    @pytest.mark.asyncio
    async def test_network_unavailable_propagates_unlogged(self, mediator, network, caplog):
        network.offline.add(url("other.js"))
        with caplog.at_level(logging.DEBUG, logger="edgecache.hub.fetcher"):
            with pytest.raises(NetworkUnavailable):
                await mediator.handle(AssetRequest(url("other.js")))
        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]

    @pytest.mark.asyncio
    async def test_unexpected_error_logged_and_propagated(self, mediator, network, caplog):
        network.failures[url("other.js")] = KeyError("boom")
        with caplog.at_level(logging.ERROR, logger="edgecache.hub.fetcher"):
            with pytest.raises(KeyError):
                await mediator.handle(AssetRequest(url("other.js")))
        assert any("Error handling request" in r.getMessage() for r in caplog.records)


# ============================================================================
# Precache
# ============================================================================


class TestPrecache:

    @pytest.mark.asyncio
    async def test_populates_both_tiers(self, mediator, store, manifest):
        summary = await mediator.precache()

        assert summary == {"unhashed": 1, "hashed_fetched": 2, "hashed_present": 0}
        assert await store.list_keys(manifest.unhashed_namespace) == [url("index.html")]
        assert await store.list_keys(manifest.hashed_namespace) == [url("app-111.js"), url("app-222.css")]

    @pytest.mark.asyncio
    async def test_second_install_does_not_refetch_hashed(self, mediator, network):
        await mediator.precache()
        summary = await mediator.precache()

        assert summary["hashed_present"] == 2
        assert network.calls[url("app-111.js")] == 1
        assert network.calls[url("app-222.css")] == 1
        # Unhashed assets are always refetched
        assert network.calls[url("index.html")] == 2

    @pytest.mark.asyncio
    async def test_on_request_assets_not_precached(self, mediator, network):
        await mediator.precache()
        assert network.calls[url("worker-333.js")] == 0

    @pytest.mark.asyncio
    async def test_error_status_aborts_install(self, mediator, store, manifest, network):
        network.routes[url("app-222.css")] = (500, b"")
        with pytest.raises(InstallationFailure, match="500"):
            await mediator.precache()

    @pytest.mark.asyncio
    async def test_failed_unhashed_fetch_stores_nothing(self, mediator, store, manifest, network):
        network.offline.add(url("index.html"))
        with pytest.raises(InstallationFailure) as exc_info:
            await mediator.precache()
        assert isinstance(exc_info.value.__cause__, NetworkUnavailable)
        assert await store.list_keys(manifest.unhashed_namespace) == []


# ============================================================================
# Network
# ============================================================================


class TestNetwork:

    def test_resolve_rewrites_scope_to_upstream(self):
        network = Network(SCOPE, upstream="http://127.0.0.1:9000/")
        assert network.resolve(url("app-111.js")) == "http://127.0.0.1:9000/app-111.js"
        assert network.resolve("https://cdn.example.net/x.js") == "https://cdn.example.net/x.js"

    def test_resolve_never_leaves_upstream(self):
        network = Network(SCOPE, upstream="http://127.0.0.1:9000")
        assert (
            network.resolve(SCOPE + "http://169.254.169.254/latest/meta-data")
            == "http://127.0.0.1:9000/http://169.254.169.254/latest/meta-data"
        )
        assert network.resolve(SCOPE + "//evil.example/x").startswith("http://127.0.0.1:9000/")

    def test_resolve_without_upstream(self):
        assert Network(SCOPE).resolve(url("a.js")) == url("a.js")

    def test_cors_headers_drop_credentials(self):
        network = Network(SCOPE)
        request = AssetRequest(
            url("a.js"),
            headers={"Cookie": "s=1", "Authorization": "Bearer t", "Accept": "image/*", "Host": "x"},
        )
        headers = network._headers(request, "cors")
        assert headers == {"Accept": "image/*", "Origin": "https://app.example.org"}

    def test_same_origin_headers_keep_credentials(self):
        network = Network(SCOPE)
        request = AssetRequest(url("a.js"), headers={"Cookie": "s=1", "Host": "x"})
        assert network._headers(request, "same-origin") == {"Cookie": "s=1"}

    @pytest.mark.asyncio
    async def test_fetch_before_start_raises(self):
        with pytest.raises(RuntimeError, match="not started"):
            await Network(SCOPE).fetch(AssetRequest(url("a.js")))


def _upstream_app():
    async def login(request):
        response = web.Response(text="welcome")
        response.set_cookie("session", "alice-secret")
        return response

    async def echo_cookie(request):
        return web.Response(body=request.headers.get("Cookie", "").encode())

    async def worker(request):
        response = web.Response(body=b"self.onmessage=null", content_type="text/javascript")
        response.set_cookie("tracker", "alice-tracker")
        return response

    app = web.Application()
    app.router.add_get("/login", login)
    app.router.add_get("/echo", echo_cookie)
    app.router.add_get("/worker-333.js", worker)
    return app


@pytest_asyncio.fixture
async def live_network():
    """Network started against a local aiohttp server acting as the asset origin."""
    server = test_utils.TestServer(_upstream_app())
    await server.start_server()
    network = Network(str(server.make_url("/")))
    await network.start()
    yield network
    await network.close()
    await server.close()


def _header_names(response):
    return {name.lower() for name in response.headers}


class TestNetworkCookies:

    @pytest.mark.asyncio
    async def test_cookie_set_for_one_client_not_sent_for_another(self, live_network):
        login = await live_network.fetch(AssetRequest(live_network.scope + "login"))
        assert "set-cookie" in _header_names(login)

        echo = await live_network.fetch(AssetRequest(live_network.scope + "echo"))
        assert echo.body == b""

    @pytest.mark.asyncio
    async def test_clients_own_cookie_forwarded(self, live_network):
        request = AssetRequest(live_network.scope + "echo", headers={"Cookie": "session=bob"})
        assert (await live_network.fetch(request)).body == b"session=bob"

    @pytest.mark.asyncio
    async def test_cached_hit_carries_no_set_cookie(self, live_network, store, manifest):
        mediator = FetchMediator(store, manifest, live_network, live_network.scope)
        request = AssetRequest(live_network.scope + "worker-333.js")

        first = await mediator.handle(request)
        second = await mediator.handle(request)

        assert "set-cookie" in _header_names(first)
        assert await store.list_keys(manifest.hashed_namespace) == [request.url]
        assert second.body == first.body
        assert "set-cookie" not in _header_names(second)
