"""SQLite tier store: named cache namespaces, event log and config."""

import json
import math
import os
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import aiosqlite

from edgecache.hub.constants import CACHEABLE_METHODS
from edgecache.hub.errors import InstallationFailure
from edgecache.hub.models import AssetRequest, AssetResponse

# Cookies set for one client must never be replayed to another from a tier
_UNSTORED_HEADERS = frozenset({"set-cookie", "set-cookie2"})


class TierStore:
    """Durable request -> response namespaces backed by one SQLite database."""

    def __init__(self, db_path: str):
        """Initialize tier store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._conn: Optional[aiosqlite.Connection] = None

    async def initialize(self):
        """Initialize database schema."""
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)

        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row

        # Enable WAL mode for concurrent reads + busy timeout for lock contention
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA busy_timeout=5000")
        await self._conn.execute("PRAGMA foreign_keys=ON")

        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS namespaces (
                name TEXT PRIMARY KEY,
                created_at TEXT NOT NULL
            )
        """)

        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                namespace TEXT NOT NULL REFERENCES namespaces(name) ON DELETE CASCADE,
                url TEXT NOT NULL,
                status INTEGER NOT NULL,
                headers TEXT NOT NULL,
                body BLOB NOT NULL,
                stored_at TEXT NOT NULL,
                PRIMARY KEY (namespace, url)
            )
        """)

        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                event_type TEXT NOT NULL,
                category TEXT,
                data TEXT,
                metadata TEXT
            )
        """)

        await self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_events_timestamp
            ON events(timestamp DESC)
        """)

        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TEXT NOT NULL
            )
        """)

        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT,
                default_value TEXT,
                label TEXT,
                description TEXT,
                category TEXT,
                min_value REAL,
                max_value REAL,
                updated_at TEXT NOT NULL
            )
        """)

        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS config_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                key TEXT NOT NULL,
                old_value TEXT,
                new_value TEXT,
                changed_at TEXT NOT NULL,
                changed_by TEXT
            )
        """)

        await self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_config_history_key
            ON config_history(key)
        """)

        await self._conn.commit()

    async def close(self):
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _require_conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Tier store not initialized. Call initialize() first.")
        return self._conn

    # ========================================================================
    # Namespaces
    # ========================================================================

    async def open(self, name: str) -> str:
        """Create the namespace if it does not exist yet.

        Args:
            name: Namespace name

        Returns:
            The namespace name, for chaining into match/put
        """
        conn = self._require_conn()
        await conn.execute(
            "INSERT OR IGNORE INTO namespaces (name, created_at) VALUES (?, ?)",
            (name, datetime.now().isoformat()),
        )
        await conn.commit()
        return name

    async def list_namespaces(self) -> List[str]:
        """List all namespace names."""
        conn = self._require_conn()
        cursor = await conn.execute("SELECT name FROM namespaces ORDER BY name")
        rows = await cursor.fetchall()
        return [row["name"] for row in rows]

    async def delete_namespace(self, name: str) -> bool:
        """Delete a namespace and every entry in it.

        Returns:
            True if deleted, False if not found
        """
        conn = self._require_conn()
        await conn.execute("DELETE FROM entries WHERE namespace = ?", (name,))
        cursor = await conn.execute("DELETE FROM namespaces WHERE name = ?", (name,))
        await conn.commit()

        deleted = cursor.rowcount > 0
        if deleted:
            await self.log_event(event_type="namespace_deleted", category=name)
        return deleted

    # ========================================================================
    # Entries
    # ========================================================================

    async def match(
        self, name: str, request: AssetRequest, evict_errors: bool = False
    ) -> Optional[AssetResponse]:
        """Look up a request in a namespace.

        Entries with an error status are never returned. With
        ``evict_errors`` they are also deleted on read, which is how the
        thumbnail tier sheds entries written before error responses were
        refused at write time.

        Args:
            name: Namespace name
            request: Request to look up (only GET/HEAD can match)
            evict_errors: Delete error-status entries found on read

        Returns:
            Stored response or None if absent
        """
        conn = self._require_conn()
        if request.method.upper() not in CACHEABLE_METHODS:
            return None

        cursor = await conn.execute(
            "SELECT * FROM entries WHERE namespace = ? AND url = ?",
            (name, request.url),
        )
        row = await cursor.fetchone()
        if not row:
            return None

        response = self._response_from_row(row)
        if not response.ok:
            if evict_errors:
                await self.delete_key(name, request)
            return None
        return response

    async def put(self, name: str, request: AssetRequest, response: AssetResponse):
        """Store a response under the request URL, replacing any existing entry.

        Set-Cookie headers are dropped before storing.

        Raises:
            ValueError: For non-GET requests or error-status responses
        """
        conn = self._require_conn()
        if request.method.upper() != "GET":
            raise ValueError(f"Only GET requests can be stored, got {request.method}")
        if not response.ok:
            raise ValueError(f"Refusing to store error response {response.status} for {request.url}")

        await conn.execute(
            "INSERT OR IGNORE INTO namespaces (name, created_at) VALUES (?, ?)",
            (name, datetime.now().isoformat()),
        )
        await conn.execute(
            """
            INSERT INTO entries (namespace, url, status, headers, body, stored_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(namespace, url) DO UPDATE SET
                status = excluded.status,
                headers = excluded.headers,
                body = excluded.body,
                stored_at = excluded.stored_at
            """,
            (
                name,
                request.url,
                response.status,
                json.dumps({k: v for k, v in response.headers.items() if k.lower() not in _UNSTORED_HEADERS}),
                response.body,
                datetime.now().isoformat(),
            ),
        )
        await conn.commit()

    async def add(
        self,
        name: str,
        request: AssetRequest,
        fetch: Callable[[AssetRequest], Awaitable[AssetResponse]],
    ) -> AssetResponse:
        """Fetch a request and store the response.

        Raises:
            InstallationFailure: If the response has an error status
        """
        response = await fetch(request)
        if not response.ok:
            raise InstallationFailure(f"Fetching {request.url} returned status {response.status}")
        await self.put(name, request, response)
        return response

    async def delete_key(self, name: str, request: AssetRequest) -> bool:
        """Delete a single entry.

        Returns:
            True if deleted, False if not found
        """
        return await self.delete_url(name, request.url)

    async def delete_url(self, name: str, url: str) -> bool:
        """Delete a single entry by its URL key."""
        conn = self._require_conn()
        cursor = await conn.execute(
            "DELETE FROM entries WHERE namespace = ? AND url = ?",
            (name, url),
        )
        await conn.commit()
        return cursor.rowcount > 0

    async def list_keys(self, name: str) -> List[str]:
        """List entry URLs in a namespace."""
        conn = self._require_conn()
        cursor = await conn.execute(
            "SELECT url FROM entries WHERE namespace = ? ORDER BY url",
            (name,),
        )
        rows = await cursor.fetchall()
        return [row["url"] for row in rows]

    async def count_keys(self) -> Dict[str, int]:
        """Entry count per namespace (namespaces with no entries report 0)."""
        conn = self._require_conn()
        cursor = await conn.execute("""
            SELECT n.name AS name, COUNT(e.url) AS count
            FROM namespaces n LEFT JOIN entries e ON e.namespace = n.name
            GROUP BY n.name ORDER BY n.name
        """)
        rows = await cursor.fetchall()
        return {row["name"]: row["count"] for row in rows}

    # ========================================================================
    # Meta
    # ========================================================================

    async def get_meta(self, key: str) -> Optional[str]:
        conn = self._require_conn()
        cursor = await conn.execute("SELECT value FROM meta WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return row["value"] if row else None

    async def set_meta(self, key: str, value: str):
        conn = self._require_conn()
        await conn.execute(
            """
            INSERT INTO meta (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, value, datetime.now().isoformat()),
        )
        await conn.commit()

    # ========================================================================
    # Events
    # ========================================================================

    async def log_event(
        self,
        event_type: str,
        category: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        """Log an event to the events table.

        Args:
            event_type: Type of event (e.g., "namespace_deleted", "activated")
            category: Related namespace (optional)
            data: Event data (optional)
            metadata: Event metadata (optional)
        """
        conn = self._require_conn()
        await conn.execute(
            """
            INSERT INTO events (timestamp, event_type, category, data, metadata)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                datetime.now().isoformat(),
                event_type,
                category,
                json.dumps(data) if data else None,
                json.dumps(metadata) if metadata else None,
            ),
        )
        await conn.commit()

    async def get_events(
        self,
        event_type: Optional[str] = None,
        category: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Get recent events, newest first."""
        conn = self._require_conn()

        query = "SELECT * FROM events WHERE 1=1"
        params: List[Any] = []

        if event_type:
            query += " AND event_type = ?"
            params.append(event_type)

        if category:
            query += " AND category = ?"
            params.append(category)

        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()

        return [
            {
                "id": row["id"],
                "timestamp": row["timestamp"],
                "event_type": row["event_type"],
                "category": row["category"],
                "data": json.loads(row["data"]) if row["data"] else None,
                "metadata": json.loads(row["metadata"]) if row["metadata"] else None,
            }
            for row in rows
        ]

    async def prune_events(self, retention_days: int = 7) -> int:
        """Delete events older than retention_days. Returns count deleted."""
        conn = self._require_conn()
        cutoff = (datetime.now() - timedelta(days=retention_days)).isoformat()
        cursor = await conn.execute("DELETE FROM events WHERE timestamp < ?", (cutoff,))
        await conn.commit()
        return cursor.rowcount

    # ========================================================================
    # Tunables
    # ========================================================================

    async def get_config(self, key: str) -> Optional[Dict[str, Any]]:
        """Row of a tunable as a dict, or None if the key is unknown."""
        conn = self._require_conn()
        cursor = await conn.execute("SELECT * FROM config WHERE key = ?", (key,))
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def get_all_config(self) -> List[Dict[str, Any]]:
        conn = self._require_conn()
        cursor = await conn.execute("SELECT * FROM config ORDER BY category, key")
        return [dict(row) for row in await cursor.fetchall()]

    async def set_config(self, key: str, value: Any, changed_by: str = "user") -> Dict[str, Any]:
        """Store a new value for a tunable and record the change in its history.

        Raises:
            ValueError: If the key is unknown or the value is not a number within bounds
        """
        current = await self.get_config(key)
        if current is None:
            raise ValueError(f"Config key not found: {key}")
        value = str(value).strip()
        _check_tunable(value, current)

        conn = self._require_conn()
        now = datetime.now().isoformat()
        await conn.execute("UPDATE config SET value = ?, updated_at = ? WHERE key = ?", (value, now, key))
        await conn.execute(
            "INSERT INTO config_history (key, old_value, new_value, changed_at, changed_by) VALUES (?, ?, ?, ?, ?)",
            (key, current["value"], value, now, changed_by),
        )
        await conn.commit()
        return {**current, "value": value, "updated_at": now}

    async def upsert_config_default(self, param: Dict[str, Any]) -> bool:
        """Insert a tunable from its registry entry unless the key already exists.

        Returns:
            True if inserted, False if an existing (possibly overridden) row was kept
        """
        conn = self._require_conn()
        cursor = await conn.execute(
            """INSERT OR IGNORE INTO config
               (key, value, default_value, label, description, category, min_value, max_value, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                param["key"],
                param["default_value"],
                param["default_value"],
                param.get("label", ""),
                param.get("description", ""),
                param.get("category", ""),
                param.get("min_value"),
                param.get("max_value"),
                datetime.now().isoformat(),
            ),
        )
        await conn.commit()
        return cursor.rowcount > 0

    async def reset_config(self, key: str, changed_by: str = "user") -> Dict[str, Any]:
        current = await self.get_config(key)
        if current is None:
            raise ValueError(f"Config key not found: {key}")
        return await self.set_config(key, current["default_value"], changed_by)

    async def get_config_value(self, key: str, fallback: Any = None) -> Any:
        """Current value of a tunable as an int or float, or fallback if unknown."""
        config = await self.get_config(key)
        if config is None:
            return fallback
        number = float(config["value"])
        return int(number) if number.is_integer() else number

    async def get_config_history(self, key: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Changes to tunables, newest first."""
        conn = self._require_conn()
        where, params = ("WHERE key = ?", [key]) if key else ("", [])
        cursor = await conn.execute(
            f"SELECT id, key, old_value, new_value, changed_at, changed_by FROM config_history {where} "
            "ORDER BY id DESC LIMIT ?",
            (*params, limit),
        )
        return [dict(row) for row in await cursor.fetchall()]

    @staticmethod
    def _response_from_row(row: aiosqlite.Row) -> AssetResponse:
        return AssetResponse(
            url=row["url"],
            status=row["status"],
            headers=json.loads(row["headers"]),
            body=bytes(row["body"]),
        )


def _check_tunable(value: str, config: Dict[str, Any]) -> None:
    """Raise ValueError unless value is a finite number inside the row's bounds."""
    try:
        number = float(value)
    except ValueError:
        raise ValueError(f"Expected number for {config['key']}, got: {value!r}") from None
    if not math.isfinite(number):
        raise ValueError(f"Expected finite number for {config['key']}, got: {value!r}")
    if config["min_value"] is not None and number < config["min_value"]:
        raise ValueError(f"Value {value} below minimum {config['min_value']:g}")
    if config["max_value"] is not None and number > config["max_value"]:
        raise ValueError(f"Value {value} above maximum {config['max_value']:g}")
