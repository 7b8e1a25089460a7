# Key-value persistence (SQLite) for monitored symbols, trade log buckets and config
import aiosqlite
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from config import DB_PATH, PERSISTED_KEYS, config

logger = logging.getLogger(__name__)

CONFIG_PREFIX = "config:"


class KeyValueStore:
    """Durable JSON key-value contract. Implementations raise on I/O failure;
    callers decide whether a failure is fatal."""

    async def init(self) -> None:
        return None

    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def keys(self, prefix: str = "") -> list[str]:
        raise NotImplementedError


class SqliteKeyValueStore(KeyValueStore):
    def __init__(self, db_path=DB_PATH):
        self.db_path = str(db_path)

    async def init(self) -> None:
        """Initialize SQLite database"""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute('''
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')
            await db.commit()
        logger.info(f"[DB] Key-value store ready at {self.db_path}")

    async def get(self, key: str) -> Optional[Any]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute('SELECT value FROM kv_store WHERE key = ?', (key,)) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    async def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                'INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)',
                (key, payload, datetime.now(timezone.utc).isoformat())
            )
            await db.commit()

    async def delete(self, key: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute('DELETE FROM kv_store WHERE key = ?', (key,))
            await db.commit()

    async def keys(self, prefix: str = "") -> list[str]:
        # LIKE treats _ and % as wildcards; filter exactly in Python
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute('SELECT key FROM kv_store ORDER BY key') as cursor:
                rows = await cursor.fetchall()
        return [k for (k,) in rows if k.startswith(prefix)]


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store with the same contract; used by tests and when no DB is wanted."""

    def __init__(self):
        self.data: dict[str, str] = {}

    async def get(self, key: str) -> Optional[Any]:
        raw = self.data.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any) -> None:
        self.data[key] = json.dumps(value)

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

    async def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self.data if k.startswith(prefix))


def _coerce(key: str, value: Any) -> Any:
    kind = PERSISTED_KEYS[key]
    if kind is bool:
        return str(value).lower() in ('true', '1', 'yes', 'y', 'on')
    return kind(value)


async def load_config(store: KeyValueStore) -> int:
    """Overlay persisted runtime settings onto the env-derived config."""
    loaded = 0
    try:
        for full_key in await store.keys(CONFIG_PREFIX):
            key = full_key[len(CONFIG_PREFIX):]
            if key not in PERSISTED_KEYS:
                continue
            value = await store.get(full_key)
            try:
                config[key] = _coerce(key, value)
                loaded += 1
            except (TypeError, ValueError):
                logger.warning(f"[DB] Ignoring bad persisted config {key}={value!r}")
        logger.info(f"[DB] Loaded {loaded} config entries from database")
    except Exception as e:
        logger.error(f"[DB] Error loading config: {e}")
    return loaded


async def save_config(store: KeyValueStore) -> bool:
    """Persist runtime settings. Credentials are never written."""
    try:
        for key in PERSISTED_KEYS:
            await store.set(CONFIG_PREFIX + key, config.get(key))
        return True
    except Exception as e:
        logger.error(f"[DB] Error saving config: {e}")
        return False
