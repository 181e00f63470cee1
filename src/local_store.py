"""Durable local storage using SQLite.

This module keeps the pipeline state that must survive process restarts:
the outbound sync queue, the device integration configuration and the
capability snapshot are stored as JSON documents under fixed keys, and
every acknowledged sync item is appended to a history table so the
retention window can be enforced.

SQLite calls are blocking, so every public method runs them in a worker
thread and can be awaited from the event loop without stalling timers.
"""

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from src.errors import StorageError
from src.models import SyncQueueItem

logger = logging.getLogger(__name__)

# Storage keys
SYNC_QUEUE_KEY = "device_sync_queue"
CONFIG_KEY = "device_integration_config"
CAPABILITIES_KEY = "device_capabilities"


class LocalStore:
    """Key/value documents and synced-record history in one SQLite file."""

    def __init__(self, db_path: str = "data/health_bridge.db"):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS synced_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    item_id TEXT UNIQUE NOT NULL,
                    item_type TEXT NOT NULL,
                    device_id TEXT,
                    timestamp TEXT,
                    payload TEXT NOT NULL,
                    synced_at TEXT NOT NULL
                )
            """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_synced_type ON synced_records(item_type)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_synced_at ON synced_records(synced_at)")
            conn.commit()
            logger.debug(f"Database initialized at {self.db_path}")

    async def _run(self, action: str, func: Any, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except (sqlite3.Error, OSError, TypeError, ValueError) as e:
            logger.error(f"Storage {action} failed: {e}")
            raise StorageError(
                f"Storage {action} failed: {e}",
                component="LocalStore",
                action=action,
                metadata={"db_path": str(self.db_path)},
                cause=e,
            ) from e

    # ============== KEY/VALUE DOCUMENTS ==============

    def _get(self, key: str) -> Any:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = cursor.fetchone()
        return json.loads(row[0]) if row else None

    def _set(self, key: str, value: Any) -> None:
        payload = json.dumps(value)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, payload, datetime.now().isoformat()),
            )
            conn.commit()

    def _delete(self, key: str) -> bool:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
            return cursor.rowcount > 0

    async def get_json(self, key: str) -> Any:
        """Read a JSON document.

        Args:
            key: Storage key

        Returns:
            Decoded document, or None if the key is absent
        """
        return await self._run("read", self._get, key)

    async def set_json(self, key: str, value: Any) -> None:
        """Write a JSON document, replacing any previous value.

        Args:
            key: Storage key
            value: JSON-serializable document
        """
        await self._run("write", self._set, key, value)

    async def delete(self, key: str) -> bool:
        """Delete a document. Returns True if it existed."""
        return await self._run("delete", self._delete, key)

    # ============== SYNCED RECORD HISTORY ==============

    def _record_synced(self, items: list[SyncQueueItem]) -> int:
        synced_at = datetime.now().isoformat()
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.executemany(
                """
                INSERT OR IGNORE INTO synced_records
                (item_id, item_type, device_id, timestamp, payload, synced_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        item.id,
                        item.type,
                        item.device_id,
                        item.timestamp.isoformat() if item.timestamp else None,
                        json.dumps(item.data),
                        synced_at,
                    )
                    for item in items
                ],
            )
            conn.commit()
            return cursor.rowcount

    async def record_synced(self, items: list[SyncQueueItem]) -> int:
        """Append acknowledged sync items to the history table.

        Args:
            items: Items acknowledged by the remote endpoint

        Returns:
            Number of newly recorded items
        """
        if not items:
            return 0
        recorded = await self._run("record_synced", self._record_synced, items)
        logger.debug(f"Recorded {recorded} synced items")
        return recorded

    def _get_history(self, limit: int, item_type: str | None, device_id: str | None) -> list[dict]:
        query = "SELECT * FROM synced_records WHERE 1=1"
        params: list = []

        if item_type is not None:
            query += " AND item_type = ?"
            params.append(item_type)

        if device_id is not None:
            query += " AND device_id = ?"
            params.append(device_id)

        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            cursor = conn.execute(query, params)
            rows = [dict(row) for row in cursor.fetchall()]

        for row in rows:
            row["payload"] = json.loads(row["payload"])
        return rows

    async def get_history(
        self,
        limit: int = 100,
        item_type: str | None = None,
        device_id: str | None = None,
    ) -> list[dict]:
        """Get history of synced records, newest first.

        Args:
            limit: Maximum number of records to return
            item_type: Filter by sync item type
            device_id: Filter by origin device

        Returns:
            List of record dictionaries
        """
        return await self._run("get_history", self._get_history, limit, item_type, device_id)

    def _get_statistics(self) -> dict:
        with sqlite3.connect(self.db_path) as conn:
            total = conn.execute("SELECT COUNT(*) FROM synced_records").fetchone()[0]
            first, last = conn.execute(
                "SELECT MIN(synced_at), MAX(synced_at) FROM synced_records"
            ).fetchone()
            by_type = dict(
                conn.execute(
                    "SELECT item_type, COUNT(*) FROM synced_records GROUP BY item_type"
                ).fetchall()
            )
            devices = conn.execute(
                "SELECT COUNT(DISTINCT device_id) FROM synced_records WHERE device_id IS NOT NULL"
            ).fetchone()[0]

        return {
            "total_records": total,
            "records_by_type": by_type,
            "devices": devices,
            "first_synced": first,
            "last_synced": last,
        }

    async def get_statistics(self) -> dict:
        """Get statistics about synced records."""
        return await self._run("get_statistics", self._get_statistics)

    def _delete_old_records(self, days: int) -> int:
        cutoff_date = datetime.now() - timedelta(days=days)
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM synced_records WHERE synced_at < ?",
                (cutoff_date.isoformat(),),
            )
            deleted = cursor.rowcount
            conn.commit()
        return deleted

    async def delete_old_records(self, days: int = 30) -> int:
        """Delete synced records older than the retention window.

        Args:
            days: Delete records synced more than this many days ago

        Returns:
            Number of deleted records
        """
        deleted = await self._run("delete_old_records", self._delete_old_records, days)
        if deleted > 0:
            logger.info(f"Deleted {deleted} synced records older than {days} days")
        return deleted

    def _clear_all(self) -> int:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM synced_records")
            deleted = cursor.rowcount
            conn.execute("DELETE FROM kv_store")
            conn.commit()
        return deleted

    async def clear_all(self) -> int:
        """Clear all documents and history.

        Returns:
            Number of deleted history records
        """
        deleted = await self._run("clear_all", self._clear_all)
        logger.warning(f"Cleared local store ({deleted} synced records)")
        return deleted
