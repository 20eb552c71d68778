"""FastAPI surface: intercepted asset requests, instance WebSockets and admin routes."""

import asyncio
import json
import logging
import time
import uuid
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from edgecache.hub.core import EdgeHub
from edgecache.hub.errors import NetworkUnavailable
from edgecache.hub.models import AssetRequest

logger = logging.getLogger(__name__)

# Admin routes live under a prefix so they never shadow application assets
ADMIN_PREFIX = "/_edgecache"


class ConfigUpdate(BaseModel):
    value: Any
    changed_by: str = "user"


class WebSocketInstance:
    """A connected application instance reached over a WebSocket.

    post_message() only queues; a writer task sends queued messages in
    order, so callers never wait on the socket.
    """

    def __init__(self, websocket: WebSocket):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._writer: asyncio.Task | None = None

    def start(self):
        self._writer = asyncio.create_task(self._write_loop())

    async def stop(self):
        if self._writer and not self._writer.done():
            self._writer.cancel()
            await asyncio.gather(self._writer, return_exceptions=True)

    def post_message(self, message: dict[str, Any]) -> None:
        self._outbox.put_nowait(message)

    async def _write_loop(self):
        while True:
            message = await self._outbox.get()
            try:
                await self.websocket.send_json(message)
            except Exception as e:
                # At-most-once channel: a message that cannot be sent is lost
                logger.debug(f"Dropped message to instance {self.id}: {e}")


def _register_admin_routes(router: APIRouter, hub: EdgeHub) -> None:
    """Register health, version, cache and event endpoints."""

    @router.get("/health")
    async def health():
        """Detailed health check with lifecycle state and namespace sizes."""
        try:
            return JSONResponse(content=await hub.health_check())
        except Exception:
            logger.exception("Health check failed")
            return JSONResponse(status_code=500, content={"status": "error", "error": "Health check failed"})

    @router.get("/api/version")
    async def get_version():
        """Return the generation's version and build hash."""
        return {"version": hub.manifest.version, "buildHash": hub.manifest.generation}

    @router.get("/api/cache")
    async def list_namespaces():
        """List namespaces with their entry counts."""
        try:
            counts = await hub.store.count_keys()
            return {"namespaces": counts, "reserved": sorted(hub.manifest.reserved_namespaces)}
        except Exception:
            logger.exception("Error listing namespaces")
            raise HTTPException(status_code=500, detail="Internal server error") from None

    @router.get("/api/cache/{namespace}")
    async def list_namespace_keys(namespace: str):
        """List the URLs stored in a namespace."""
        try:
            if namespace not in await hub.store.list_namespaces():
                raise HTTPException(status_code=404, detail=f"Namespace '{namespace}' not found")
            keys = await hub.store.list_keys(namespace)
            return {"namespace": namespace, "keys": keys, "count": len(keys)}
        except HTTPException:
            raise
        except Exception:
            logger.exception("Error listing keys of '%s'", namespace)
            raise HTTPException(status_code=500, detail="Internal server error") from None

    @router.get("/api/events")
    async def get_events(
        event_type: str | None = None,
        category: str | None = None,
        limit: int = Query(default=100, le=1000),
    ):
        """Recent lifecycle and eviction events."""
        try:
            events = await hub.store.get_events(event_type=event_type, category=category, limit=limit)
            return {"events": events, "count": len(events)}
        except Exception:
            logger.exception("Error getting events")
            raise HTTPException(status_code=500, detail="Internal server error") from None


def _register_config_routes(router: APIRouter, hub: EdgeHub) -> None:
    """Register config CRUD and history endpoints."""

    @router.get("/api/config")
    async def get_all_config():
        try:
            return {"configs": await hub.store.get_all_config()}
        except Exception:
            logger.exception("Error getting all config")
            raise HTTPException(status_code=500, detail="Internal server error") from None

    @router.post("/api/config/reset/{key:path}")
    async def reset_config(key: str):
        try:
            return await hub.reset_config(key)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except Exception:
            logger.exception("Error resetting config '%s'", key)
            raise HTTPException(status_code=500, detail="Internal server error") from None

    @router.get("/api/config/{key:path}")
    async def get_config(key: str):
        try:
            config = await hub.store.get_config(key)
            if config is None:
                raise HTTPException(status_code=404, detail=f"Config key '{key}' not found")
            return config
        except HTTPException:
            raise
        except Exception:
            logger.exception("Error getting config '%s'", key)
            raise HTTPException(status_code=500, detail="Internal server error") from None

    @router.put("/api/config/{key:path}")
    async def put_config(key: str, body: ConfigUpdate):
        try:
            return await hub.update_config(key, body.value, changed_by=body.changed_by)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except Exception:
            logger.exception("Error updating config '%s'", key)
            raise HTTPException(status_code=500, detail="Internal server error") from None

    @router.get("/api/config-history")
    async def get_config_history(key: str | None = None, limit: int = Query(default=50, le=1000)):
        try:
            history = await hub.store.get_config_history(key=key, limit=limit)
            return {"history": history, "count": len(history)}
        except Exception:
            logger.exception("Error getting config history")
            raise HTTPException(status_code=500, detail="Internal server error") from None


def create_api(hub: EdgeHub) -> FastAPI:
    """Create FastAPI application.

    Args:
        hub: EdgeHub instance (initialized by the caller)

    Returns:
        FastAPI application
    """
    from edgecache import __version__

    app = FastAPI(
        title="edgecache",
        description="Offline asset cache and instance coordination",
        version=__version__,
    )
    message_tasks: set[asyncio.Task] = set()

    @app.middleware("http")
    async def request_timing_middleware(request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start
        if elapsed > 1.0:
            logger.warning(f"{request.method} {request.url.path} took {elapsed:.2f}s")
        else:
            logger.debug(f"{request.method} {request.url.path} took {elapsed:.3f}s")
        return response

    router = APIRouter(prefix=ADMIN_PREFIX)
    _register_admin_routes(router, hub)
    _register_config_routes(router, hub)
    app.include_router(router)

    @app.websocket(f"{ADMIN_PREFIX}/ws")
    async def instance_socket(websocket: WebSocket):
        """One application instance; every JSON frame is an instance message."""
        await websocket.accept()
        instance = WebSocketInstance(websocket)
        instance.start()
        hub.connect(instance)

        try:
            while True:
                try:
                    data = await websocket.receive_text()
                    message = json.loads(data)
                except WebSocketDisconnect:
                    break
                except json.JSONDecodeError:
                    logger.warning(f"Invalid JSON from instance {instance.id}")
                    continue

                # Handlers such as closeSession wait on other instances, so each
                # message runs on its own task and this loop keeps reading replies.
                task = asyncio.create_task(hub.on_message(message, instance))
                message_tasks.add(task)
                task.add_done_callback(message_tasks.discard)
        finally:
            hub.disconnect(instance)
            await instance.stop()

    @app.api_route("/{path:path}", methods=["GET", "HEAD"])
    async def intercept(path: str, request: Request):
        """Serve an application request through the tiers."""
        url = hub.scope + path
        if request.url.query:
            url += "?" + request.url.query
        asset_request = AssetRequest(url=url, method=request.method, headers=dict(request.headers))

        try:
            response = await hub.on_fetch(asset_request)
        except NetworkUnavailable:
            return JSONResponse(status_code=504, content={"error": "Network unavailable"})
        except RuntimeError as e:
            return JSONResponse(status_code=503, content={"error": str(e)})
        except Exception:
            return JSONResponse(status_code=502, content={"error": "Request failed"})

        return Response(content=response.body, status_code=response.status, headers=response.headers)

    return app
