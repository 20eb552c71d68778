"""Config defaults registry for runtime tunables.

On startup, seed_config_defaults() inserts any missing keys using
INSERT OR IGNORE, preserving user overrides. Every tunable is a number with
inclusive bounds.
"""

from typing import Any

CONFIG_DEFAULTS: list[dict[str, Any]] = [
    # ── Fetch ─────────────────────────────────────────────────────────
    {
        "key": "fetch.timeout_s",
        "default_value": "30",
        "label": "Network Timeout (s)",
        "description": (
            "Total time allowed for a network fetch before it is treated"
            " as network unavailable. Applies to new connections only."
        ),
        "category": "Fetch",
        "min_value": 1,
        "max_value": 600,
    },
    {
        "key": "thumbnail.max_dimension",
        "default_value": "50",
        "label": "Thumbnail Max Dimension (px)",
        "description": "Largest width and height a thumbnail may request and still be cached.",
        "category": "Fetch",
        "min_value": 1,
        "max_value": 512,
    },
    # ── Messaging ─────────────────────────────────────────────────────
    {
        "key": "messaging.reply_timeout_s",
        "default_value": "30",
        "label": "Reply Timeout (s)",
        "description": (
            "How long to wait for an instance to reply to a correlated"
            " message. 0 waits forever."
        ),
        "category": "Messaging",
        "min_value": 0,
        "max_value": 3600,
    },
    {
        "key": "messaging.max_pending",
        "default_value": "1024",
        "label": "Max Pending Replies",
        "description": "Upper bound on outstanding correlated messages. Read at startup.",
        "category": "Messaging",
        "min_value": 1,
        "max_value": 100000,
    },
    # ── Events ────────────────────────────────────────────────────────
    {
        "key": "events.retention_days",
        "default_value": "7",
        "label": "Event Retention (days)",
        "description": "Diagnostic events older than this are pruned daily.",
        "category": "Events",
        "min_value": 1,
        "max_value": 365,
    },
]


async def seed_config_defaults(store) -> int:
    """Seed all config defaults into the database.

    Args:
        store: TierStore instance (must be initialized).

    Returns:
        Number of new parameters inserted.
    """
    inserted = 0
    for param in CONFIG_DEFAULTS:
        if await store.upsert_config_default(param):
            inserted += 1
    return inserted
