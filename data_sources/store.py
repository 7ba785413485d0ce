"""
Persistent key-value stores backing the directory and enrichment caches

All stores hold JSON-serializable values under (namespace, key) pairs.
SQLite is the default; Redis is used when REDIS_URL is set and reachable.
"""

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Protocol, Tuple, Union

from logging_config import get_logger

logger = get_logger(__name__)

NAMESPACES = ("hospitals", "snfs", "geocode", "place_ids", "reviews")


class KeyValueStore(Protocol):
    name: str

    def get(self, namespace: str, key: str) -> Optional[Any]: ...

    def set(self, namespace: str, key: str, value: Any) -> None: ...

    def set_many(self, namespace: str, items: Iterable[Tuple[str, Any]]) -> None: ...

    def all(self, namespace: str) -> Dict[str, Any]: ...

    def count(self, namespace: str) -> int: ...

    def clear(self, namespace: Optional[str] = None) -> None: ...

    def close(self) -> None: ...


class MemoryStore:
    """Process-local store; used in tests and as a last resort."""

    name = "memory"

    def __init__(self):
        self._data: Dict[str, Dict[str, str]] = {}

    def get(self, namespace: str, key: str) -> Optional[Any]:
        raw = self._data.get(namespace, {}).get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, namespace: str, key: str, value: Any) -> None:
        self._data.setdefault(namespace, {})[key] = json.dumps(value)

    def set_many(self, namespace: str, items: Iterable[Tuple[str, Any]]) -> None:
        for key, value in items:
            self.set(namespace, key, value)

    def all(self, namespace: str) -> Dict[str, Any]:
        return {k: json.loads(v) for k, v in self._data.get(namespace, {}).items()}

    def count(self, namespace: str) -> int:
        return len(self._data.get(namespace, {}))

    def clear(self, namespace: Optional[str] = None) -> None:
        if namespace is None:
            self._data.clear()
        else:
            self._data.pop(namespace, None)

    def close(self) -> None:
        pass


class SQLiteStore:
    """Single-table SQLite store keyed by (namespace, key)."""

    name = "sqlite"

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        if str(path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS kv ("
                " namespace TEXT NOT NULL,"
                " key TEXT NOT NULL,"
                " value TEXT NOT NULL,"
                " PRIMARY KEY (namespace, key))"
            )
            self._conn.commit()

    def get(self, namespace: str, key: str) -> Optional[Any]:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM kv WHERE namespace = ? AND key = ?", (namespace, key)
            ).fetchone()
        return json.loads(row[0]) if row else None

    def set(self, namespace: str, key: str, value: Any) -> None:
        self.set_many(namespace, [(key, value)])

    def set_many(self, namespace: str, items: Iterable[Tuple[str, Any]]) -> None:
        rows = [(namespace, key, json.dumps(value)) for key, value in items]
        if not rows:
            return
        with self._lock:
            self._conn.executemany(
                "INSERT INTO kv (namespace, key, value) VALUES (?, ?, ?) "
                "ON CONFLICT(namespace, key) DO UPDATE SET value = excluded.value",
                rows,
            )
            self._conn.commit()

    def all(self, namespace: str) -> Dict[str, Any]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT key, value FROM kv WHERE namespace = ?", (namespace,)
            ).fetchall()
        return {key: json.loads(value) for key, value in rows}

    def count(self, namespace: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM kv WHERE namespace = ?", (namespace,)
            ).fetchone()
        return int(row[0]) if row else 0

    def clear(self, namespace: Optional[str] = None) -> None:
        with self._lock:
            if namespace is None:
                self._conn.execute("DELETE FROM kv")
            else:
                self._conn.execute("DELETE FROM kv WHERE namespace = ?", (namespace,))
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class RedisStore:
    """Redis hash per namespace: ``snfreferral:<namespace>``."""

    name = "redis"
    prefix = "snfreferral"

    def __init__(self, client):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        import redis
        client = redis.from_url(url, decode_responses=True, socket_connect_timeout=1, socket_timeout=2)
        client.ping()
        return cls(client)

    def _hash(self, namespace: str) -> str:
        return f"{self.prefix}:{namespace}"

    def get(self, namespace: str, key: str) -> Optional[Any]:
        raw = self._client.hget(self._hash(namespace), key)
        return json.loads(raw) if raw is not None else None

    def set(self, namespace: str, key: str, value: Any) -> None:
        self._client.hset(self._hash(namespace), key, json.dumps(value))

    def set_many(self, namespace: str, items: Iterable[Tuple[str, Any]]) -> None:
        mapping = {key: json.dumps(value) for key, value in items}
        if mapping:
            self._client.hset(self._hash(namespace), mapping=mapping)

    def all(self, namespace: str) -> Dict[str, Any]:
        return {k: json.loads(v) for k, v in self._client.hgetall(self._hash(namespace)).items()}

    def count(self, namespace: str) -> int:
        return int(self._client.hlen(self._hash(namespace)))

    def clear(self, namespace: Optional[str] = None) -> None:
        names = [namespace] if namespace else NAMESPACES
        self._client.delete(*[self._hash(n) for n in names])

    def close(self) -> None:
        self._client.close()


def build_store(redis_url: Optional[str], sqlite_path: Union[str, Path]) -> KeyValueStore:
    """
    Pick the persistent store for this process.

    Redis wins when configured and reachable; otherwise SQLite at ``sqlite_path``.
    """
    if redis_url:
        try:
            store = RedisStore.from_url(redis_url)
            logger.info("Redis connected for persistent caching")
            return store
        except Exception as e:
            logger.warning(f"Redis not available, using SQLite store: {e}")
    return SQLiteStore(sqlite_path)
