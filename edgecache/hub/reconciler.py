"""Generation reconciliation: drop namespaces and hashed assets the current manifest no longer names."""

import logging
from typing import Any

from edgecache.hub.cache import TierStore
from edgecache.hub.manifest import AssetManifest

logger = logging.getLogger(__name__)


async def reconcile(store: TierStore, manifest: AssetManifest, scope: str) -> dict[str, Any]:
    """Evict everything that does not belong to the manifest's generation.

    1. Every namespace other than the three reserved for this generation is
       deleted, which removes previous generations' unhashed namespaces.
    2. Every key of the hashed namespace whose URL is not a hashed asset of
       this manifest is deleted.

    The thumbnail namespace is kept whole; its entries are only bounded by
    eviction on read.

    Args:
        store: Initialized tier store
        manifest: Manifest of the generation being activated
        scope: Base URL the asset names are relative to

    Returns:
        Summary with the deleted namespace names and hashed keys
    """
    reserved = manifest.reserved_namespaces
    namespaces_deleted = []
    for name in await store.list_namespaces():
        if name not in reserved:
            await store.delete_namespace(name)
            namespaces_deleted.append(name)
            logger.info(f"Deleted stale namespace: {name}")

    hashed_namespace = await store.open(manifest.hashed_namespace)
    wanted = manifest.hashed_urls(scope)
    keys_deleted = []
    for url in await store.list_keys(hashed_namespace):
        if url not in wanted:
            await store.delete_url(hashed_namespace, url)
            keys_deleted.append(url)

    if keys_deleted:
        logger.info("Evicted %d stale hashed asset(s) from %s", len(keys_deleted), hashed_namespace)
        await store.log_event(
            event_type="hashed_assets_evicted",
            category=hashed_namespace,
            data={"urls": keys_deleted},
        )

    return {"namespaces_deleted": namespaces_deleted, "keys_deleted": keys_deleted}
