"""Network access and the per-request read-through / write-through policy."""

import asyncio
import logging
from typing import Any
from urllib.parse import urljoin, urlsplit

import aiohttp

from edgecache.hub.cache import TierStore
from edgecache.hub.classifier import RequestKind, asset_name, classify, entry_document_url
from edgecache.hub.constants import MODE_CORS, MODE_SAME_ORIGIN, THUMBNAIL_MAX_DIMENSION
from edgecache.hub.errors import InstallationFailure, NetworkUnavailable
from edgecache.hub.manifest import AssetManifest
from edgecache.hub.models import AssetRequest, AssetResponse

logger = logging.getLogger(__name__)

# Request headers never forwarded upstream
_HOP_BY_HOP = frozenset(
    {"host", "connection", "keep-alive", "transfer-encoding", "upgrade", "te", "content-length", "accept-encoding"}
)
# Dropped from cors-mode requests
_CREDENTIAL_HEADERS = frozenset({"cookie", "authorization", "proxy-authorization"})
# Response headers that no longer describe the buffered, decoded body
_STALE_RESPONSE_HEADERS = frozenset({"content-encoding", "content-length", "transfer-encoding", "connection"})

# Fetch mode per classification. Keyed by every RequestKind.
FETCH_MODES: dict[RequestKind, str] = {
    RequestKind.ROOT_DOCUMENT: MODE_SAME_ORIGIN,
    RequestKind.CACHEABLE_THUMBNAIL: MODE_CORS,
    RequestKind.PASSTHROUGH: MODE_SAME_ORIGIN,
}


class Network:
    """aiohttp-backed network used for every cache miss and precache fetch.

    Requests inside the scope are sent to ``upstream`` when one is set, so
    the edge process can sit in front of the server that actually hosts
    the assets. The session never keeps cookies: the only credentials that
    reach upstream are the ones the requesting client sent itself.
    """

    def __init__(self, scope: str, upstream: str | None = None, timeout_s: float = 30):
        self.scope = scope
        self.upstream = upstream if upstream is None or upstream.endswith("/") else upstream + "/"
        self.timeout_s = timeout_s
        self._session: aiohttp.ClientSession | None = None

    async def start(self):
        """Create the HTTP session."""
        self._session = aiohttp.ClientSession(cookie_jar=aiohttp.DummyCookieJar())

    async def close(self):
        if self._session is not None:
            await self._session.close()
        self._session = None

    def resolve(self, url: str) -> str:
        """Map a scope URL onto the upstream origin.

        The remainder is appended as a path, so ``<scope>http://other/`` still
        resolves under the upstream.
        """
        if self.upstream and url.startswith(self.scope):
            return self.upstream + url[len(self.scope):]
        return url

    def _headers(self, request: AssetRequest, mode: str) -> dict[str, str]:
        headers = {k: v for k, v in request.headers.items() if k.lower() not in _HOP_BY_HOP}
        if mode == MODE_CORS:
            headers = {k: v for k, v in headers.items() if k.lower() not in _CREDENTIAL_HEADERS}
            parts = urlsplit(self.scope)
            headers["Origin"] = f"{parts.scheme}://{parts.netloc}"
        return headers

    async def fetch(self, request: AssetRequest, mode: str = MODE_SAME_ORIGIN) -> AssetResponse:
        """Fetch a request and buffer the whole response.

        Raises:
            NetworkUnavailable: On connection failures and timeouts
        """
        if self._session is None:
            raise RuntimeError("Network not started. Call start() first.")

        url = self.resolve(request.url)
        try:
            async with self._session.request(
                request.method,
                url,
                headers=self._headers(request, mode),
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
                allow_redirects=True,
            ) as resp:
                body = await resp.read()
                headers = {k: v for k, v in resp.headers.items() if k.lower() not in _STALE_RESPONSE_HEADERS}
                return AssetResponse(url=request.url, status=resp.status, headers=headers, body=body)
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise NetworkUnavailable(f"{request.method} {url}: {e}") from e


class FetchMediator:
    """Serves intercepted requests from the tiers, falling back to the network."""

    def __init__(
        self,
        store: TierStore,
        manifest: AssetManifest,
        network: Any,
        scope: str,
        max_dimension: int = THUMBNAIL_MAX_DIMENSION,
    ):
        """Initialize fetch mediator.

        Args:
            store: Initialized tier store
            manifest: Manifest of the active generation
            network: Object with ``async fetch(request, mode) -> AssetResponse``
            scope: Base URL this process serves
            max_dimension: Largest cacheable thumbnail width/height
        """
        self.store = store
        self.manifest = manifest
        self.network = network
        self.scope = scope
        self.max_dimension = max_dimension

    async def handle(self, request: AssetRequest) -> AssetResponse:
        """Answer a request from the first tier that has it, else from the network.

        Raises:
            NetworkUnavailable: Propagated untouched and not logged
        """
        try:
            kind = classify(request.url, self.scope, self.max_dimension)
            if kind is RequestKind.ROOT_DOCUMENT:
                request = request.with_url(entry_document_url(self.scope))

            response = await self._read_cache(request, kind)
            if response is not None:
                logger.debug(f"Cache hit: {request.url}")
                return response

            logger.debug(f"Cache miss ({kind.value}): {request.url}")
            response = await self.network.fetch(request, mode=FETCH_MODES[kind])
            await self._update_cache(request, response, kind)
            return response
        except NetworkUnavailable:
            raise
        except Exception:
            logger.exception("Error handling request %s", request.url)
            raise

    async def _read_cache(self, request: AssetRequest, kind: RequestKind) -> AssetResponse | None:
        response = await self.store.match(self.manifest.unhashed_namespace, request)
        if response is not None:
            return response

        response = await self.store.match(self.manifest.hashed_namespace, request)
        if response is not None:
            return response

        if kind is RequestKind.CACHEABLE_THUMBNAIL:
            return await self.store.match(self.manifest.thumbnail_namespace, request, evict_errors=True)
        return None

    async def _update_cache(self, request: AssetRequest, response: AssetResponse, kind: RequestKind):
        if not response.ok or request.method.upper() != "GET":
            return

        if kind is RequestKind.CACHEABLE_THUMBNAIL:
            await self.store.put(self.manifest.thumbnail_namespace, request, response)
            return

        name = asset_name(request.url, self.scope)
        if name is not None and self.manifest.is_cached_on_request(name):
            await self.store.put(self.manifest.hashed_namespace, request, response)

    # ========================================================================
    # Install-time population
    # ========================================================================

    async def precache(self) -> dict[str, int]:
        """Populate the unhashed tier fully and the hashed tier where missing.

        Unhashed assets are all fetched before any is stored, so a failed
        install never leaves a partially written generation behind. Hashed
        assets already present are not fetched again.

        Raises:
            InstallationFailure: If any fetch fails or returns an error status
        """
        try:
            unhashed = await self.store.open(self.manifest.unhashed_namespace)
            requests = [AssetRequest(urljoin(self.scope, name)) for name in self.manifest.unhashed_precache]
            responses = await asyncio.gather(*(self._fetch_ok(r) for r in requests))
            for request, response in zip(requests, responses):
                await self.store.put(unhashed, request, response)

            hashed = await self.store.open(self.manifest.hashed_namespace)
            fetched = await asyncio.gather(
                *(self._precache_hashed(hashed, AssetRequest(urljoin(self.scope, name)))
                  for name in self.manifest.hashed_precache)
            )
        except InstallationFailure:
            raise
        except Exception as e:
            raise InstallationFailure(f"Precache failed: {e}") from e

        return {
            "unhashed": len(requests),
            "hashed_fetched": sum(fetched),
            "hashed_present": len(fetched) - sum(fetched),
        }

    async def _fetch_ok(self, request: AssetRequest) -> AssetResponse:
        response = await self.network.fetch(request, mode=MODE_SAME_ORIGIN)
        if not response.ok:
            raise InstallationFailure(f"Fetching {request.url} returned status {response.status}")
        return response

    async def _precache_hashed(self, namespace: str, request: AssetRequest) -> bool:
        if await self.store.match(namespace, request) is not None:
            return False
        await self.store.add(namespace, request, self._fetch_ok)
        return True
