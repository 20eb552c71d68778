"""Edge hub - lifecycle of one asset generation: install, activate, fetch, message."""

import asyncio
import enum
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from edgecache.hub.cache import TierStore
from edgecache.hub.config_defaults import seed_config_defaults
from edgecache.hub.constants import (
    META_ACTIVE_GENERATION,
    MSG_SKIP_WAITING,
    MSG_VERSION,
    THUMBNAIL_MAX_DIMENSION,
)
from edgecache.hub.errors import InstallationFailure
from edgecache.hub.fetcher import FetchMediator, Network
from edgecache.hub.manifest import AssetManifest
from edgecache.hub.messaging import Instance, MessagingContext, Messenger
from edgecache.hub.models import AssetRequest, AssetResponse
from edgecache.hub.reconciler import reconcile

logger = logging.getLogger(__name__)


class LifecycleState(enum.Enum):
    PARSED = "parsed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    REDUNDANT = "redundant"


class EdgeHub:
    """Owns the tier store, the fetch mediator and the instance messenger for one generation."""

    def __init__(
        self,
        db_path: str,
        manifest: AssetManifest,
        scope: str,
        upstream: str | None = None,
        network: Any = None,
    ):
        """Initialize edge hub.

        Args:
            db_path: Path to SQLite tier store
            manifest: Manifest of this process generation
            scope: Base URL served by this process (must end with '/')
            upstream: Origin to fetch scope assets from (optional)
            network: Network override; a Network is created when omitted
        """
        if not scope.endswith("/"):
            raise ValueError(f"Scope must end with '/': {scope}")
        self.store = TierStore(db_path)
        self.manifest = manifest
        self.scope = scope
        self.upstream = upstream
        self.network = network
        self._owns_network = network is None
        self.mediator: FetchMediator | None = None
        self.messenger: Messenger | None = None
        self.instances: dict[str, Instance] = {}
        self.controlled: set[str] = set()
        self.subscribers: dict[str, set[Callable]] = {}
        self.tasks: set[asyncio.Task] = set()
        self.state = LifecycleState.PARSED
        self._activated = asyncio.Event()
        self._skip_waiting = False
        self._running = False
        self._start_time: datetime | None = None
        self._request_count = 0
        self._message_count = 0
        self.logger = logging.getLogger("hub")

    async def initialize(self):
        """Open the store, seed config, and wire the mediator and messenger."""
        self.logger.info(f"Initializing edge hub (generation {self.manifest.generation})...")
        await self.store.initialize()

        seeded = await seed_config_defaults(self.store)
        if seeded:
            self.logger.info(f"Seeded {seeded} new config parameter(s)")

        timeout_s = await self.store.get_config_value("fetch.timeout_s", 30)
        max_dimension = int(await self.store.get_config_value("thumbnail.max_dimension", THUMBNAIL_MAX_DIMENSION))
        max_pending = int(await self.store.get_config_value("messaging.max_pending", 1024))
        reply_timeout = await self.store.get_config_value("messaging.reply_timeout_s", 30)

        if self.network is None:
            self.network = Network(self.scope, upstream=self.upstream, timeout_s=timeout_s)
        if self._owns_network:
            await self.network.start()

        self.mediator = FetchMediator(self.store, self.manifest, self.network, self.scope, max_dimension)
        self.messenger = Messenger(
            MessagingContext(max_pending=max_pending),
            lambda: list(self.instances.values()),
            reply_timeout=reply_timeout or None,
        )
        self.messenger.register_handler(MSG_VERSION, self._handle_version)
        self.messenger.register_handler(MSG_SKIP_WAITING, self._handle_skip_waiting)

        self.subscribe("config_updated", self._on_config_updated)

        self._running = True
        await self.schedule_task("prune_events", self._prune_events, interval=timedelta(hours=24))
        self._start_time = datetime.now(tz=UTC)
        self.logger.info("Hub initialized successfully")

    async def shutdown(self):
        """Cancel background tasks and close the network and store."""
        self.logger.info("Shutting down edge hub...")
        self._running = False

        for task in self.tasks:
            if not task.done():
                task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        if self._owns_network and self.network is not None:
            try:
                await self.network.close()
            except Exception as e:
                self.logger.error(f"Error closing network sessions: {e}")

        await self.store.close()
        self.logger.info("Hub shutdown complete")

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def on_install(self) -> dict[str, int]:
        """Precache this generation's assets.

        Raises:
            InstallationFailure: The generation becomes redundant and never activates
        """
        if self.state is not LifecycleState.PARSED:
            raise RuntimeError(f"Cannot install from state {self.state.value}")
        self.state = LifecycleState.INSTALLING
        self.logger.info("Installing generation %s", self.manifest.generation)
        try:
            summary = await self.mediator.precache()
        except InstallationFailure as e:
            self.state = LifecycleState.REDUNDANT
            self.logger.error(f"Installation of generation {self.manifest.generation} failed: {e}")
            raise
        self.state = LifecycleState.INSTALLED
        self.logger.info(
            "Installed: %d unhashed, %d hashed fetched, %d hashed already present",
            summary["unhashed"],
            summary["hashed_fetched"],
            summary["hashed_present"],
        )
        await self.publish("installed", {"generation": self.manifest.generation, **summary})
        return summary

    async def on_activate(self) -> dict[str, Any]:
        """Reconcile the store, then take control of connected instances and start serving.

        Requests wait on the activation barrier, so none is served by this
        generation before reconciliation has finished.
        """
        if self.state is not LifecycleState.INSTALLED:
            raise RuntimeError(f"Cannot activate from state {self.state.value}")
        self.state = LifecycleState.ACTIVATING
        self.logger.info("Activating generation %s", self.manifest.generation)
        try:
            summary = await reconcile(self.store, self.manifest, self.scope)
            await self.store.set_meta(META_ACTIVE_GENERATION, self.manifest.generation)
        except Exception:
            self.state = LifecycleState.INSTALLED
            self.logger.exception("Activation of generation %s failed", self.manifest.generation)
            raise

        self.controlled = set(self.instances)
        self.state = LifecycleState.ACTIVATED
        self._activated.set()
        self.logger.info(f"Activated; controlling {len(self.controlled)} instance(s)")
        await self.publish("activated", {"generation": self.manifest.generation, **summary})
        return summary

    async def start(self, skip_waiting: bool = False) -> bool:
        """Install, then activate unless a prior generation still controls instances.

        Returns:
            True if the generation is active, False if it is waiting
        """
        if skip_waiting:
            self._skip_waiting = True
        await self.on_install()
        if self._skip_waiting or not await self._prior_generation_in_control():
            await self.on_activate()
            return True
        self.logger.info("Generation %s installed and waiting", self.manifest.generation)
        return False

    async def skip_waiting(self):
        """Activate this generation now, preempting any generation still in control."""
        self._skip_waiting = True
        if self.state is LifecycleState.INSTALLED:
            await self.on_activate()

    async def _prior_generation_in_control(self) -> bool:
        prior = await self.store.get_meta(META_ACTIVE_GENERATION)
        return prior is not None and prior != self.manifest.generation and bool(self.instances)

    def is_active(self) -> bool:
        return self._activated.is_set()

    async def wait_until_active(self):
        await self._activated.wait()

    # ========================================================================
    # Requests and messages
    # ========================================================================

    async def on_fetch(self, request: AssetRequest) -> AssetResponse:
        """Serve an intercepted request once this generation is active."""
        if self.state is LifecycleState.REDUNDANT:
            raise RuntimeError("Generation is redundant and does not serve requests")
        self._request_count += 1
        await self._activated.wait()
        return await self.mediator.handle(request)

    async def on_message(self, data: Any, sender: Instance):
        """Dispatch a message from a connected instance."""
        self._message_count += 1
        await self.messenger.dispatch(data, sender)

    def connect(self, instance: Instance):
        """Register a connected instance; an active generation controls it at once.

        Raises:
            ValueError: If another instance is already connected under the same id
        """
        if instance.id in self.instances:
            raise ValueError(f"Instance id already connected: {instance.id}")
        self.instances[instance.id] = instance
        if self.is_active():
            self.controlled.add(instance.id)
        self.logger.info(f"Instance connected: {instance.id} ({len(self.instances)} total)")

    def disconnect(self, instance: Instance):
        if self.instances.get(instance.id) is not instance:
            return
        del self.instances[instance.id]
        self.controlled.discard(instance.id)
        self.logger.info(f"Instance disconnected: {instance.id} ({len(self.instances)} total)")

    async def _handle_version(self, payload: Any, sender: Instance) -> dict[str, str]:
        return {"version": self.manifest.version, "buildHash": self.manifest.generation}

    async def _handle_skip_waiting(self, payload: Any, sender: Instance) -> None:
        await self.skip_waiting()

    # ========================================================================
    # Config
    # ========================================================================

    async def update_config(self, key: str, value: Any, changed_by: str = "user") -> dict[str, Any]:
        """Validate and store a config value, then publish config_updated.

        Raises:
            ValueError: If the key is unknown or the value is invalid
        """
        config = await self.store.set_config(key, value, changed_by=changed_by)
        await self.publish("config_updated", {"key": key, "value": config["value"]})
        return config

    async def reset_config(self, key: str, changed_by: str = "user") -> dict[str, Any]:
        config = await self.store.reset_config(key, changed_by=changed_by)
        await self.publish("config_updated", {"key": key, "value": config["value"]})
        return config

    async def _on_config_updated(self, data: dict[str, Any]):
        key = data.get("key")
        if key == "messaging.reply_timeout_s":
            self.messenger.reply_timeout = await self.store.get_config_value(key) or None
        elif key == "fetch.timeout_s" and isinstance(self.network, Network):
            self.network.timeout_s = await self.store.get_config_value(key)
        elif key == "thumbnail.max_dimension":
            self.mediator.max_dimension = int(await self.store.get_config_value(key))

    # ========================================================================
    # Events and tasks
    # ========================================================================

    def subscribe(self, event_type: str, callback: Callable):
        """Subscribe an async callback to hub events."""
        if event_type not in self.subscribers:
            self.subscribers[event_type] = set()
        self.subscribers[event_type].add(callback)
        self.logger.debug(f"Subscribed to event: {event_type}")

    def unsubscribe(self, event_type: str, callback: Callable):
        if event_type in self.subscribers:
            self.subscribers[event_type].discard(callback)

    async def publish(self, event_type: str, data: dict[str, Any]):
        """Log an event and call every subscriber registered for it.

        A failing subscriber is logged and does not stop the others.
        """
        self.logger.debug(f"Publishing event: {event_type}")
        await self.store.log_event(event_type=event_type, data=data)

        for callback in list(self.subscribers.get(event_type, ())):
            cb_start = time.monotonic()
            try:
                await callback(data)
            except Exception as e:
                self.logger.error(f"Error in event callback for '{event_type}': {e}")
            cb_elapsed_ms = (time.monotonic() - cb_start) * 1000
            if cb_elapsed_ms > 100:
                self.logger.warning(
                    "Slow subscriber callback for event '%s': %.1f ms (threshold 100 ms)",
                    event_type,
                    cb_elapsed_ms,
                )

    async def schedule_task(
        self, task_id: str, coro: Callable, interval: timedelta | None = None, run_immediately: bool = False
    ):
        """Schedule a background coroutine, optionally repeating at an interval."""

        async def run_task():
            if run_immediately:
                try:
                    await coro()
                except Exception as e:
                    self.logger.error(f"Task {task_id} error: {e}")

            if interval:
                while self._running:
                    await asyncio.sleep(interval.total_seconds())
                    try:
                        await coro()
                    except Exception as e:
                        self.logger.error(f"Task {task_id} error: {e}")

        task = asyncio.create_task(run_task())
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        self.logger.debug(f"Scheduled task: {task_id}" + (f" (interval: {interval})" if interval else " (one-time)"))

    async def _prune_events(self):
        retention_days = int(await self.store.get_config_value("events.retention_days", 7))
        pruned = await self.store.prune_events(retention_days=retention_days)
        if pruned:
            self.logger.info("Pruned %d old events (retention=%d days)", pruned, retention_days)

    # ========================================================================
    # Status
    # ========================================================================

    def get_uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return (datetime.now(tz=UTC) - self._start_time).total_seconds()

    async def health_check(self) -> dict[str, Any]:
        """Summarize lifecycle, cache and messaging state."""
        return {
            "status": "ok" if self._running else "stopped",
            "state": self.state.value,
            "version": self.manifest.version,
            "generation": self.manifest.generation,
            "uptime_seconds": round(self.get_uptime_seconds()),
            "namespaces": await self.store.count_keys(),
            "instances": {"connected": len(self.instances), "controlled": len(self.controlled)},
            "pending_replies": self.messenger.context.pending_count if self.messenger else 0,
            "requests": self._request_count,
            "messages": self._message_count,
            "timestamp": datetime.now(tz=UTC).isoformat(),
        }
