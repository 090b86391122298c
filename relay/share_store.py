"""Share store glue: persistent backends and the backend factory.

`SQLiteShareStore` keeps every share in a single `shares` table.
`RedisShareStore` lets several relay processes share one store and
uses the Redis server clock as the authority for expiry.
"""

import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional, Tuple

import redis

from .config import Settings
from .share_store_base import (
    Clock,
    InMemoryShareStore,
    Share,
    ShareNotFound,
    ShareStore,
    StorageError,
    utcnow,
)

logger = logging.getLogger(__name__)

CREATE_SQL = """
CREATE TABLE IF NOT EXISTS shares (
    code TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    expires_at DATETIME NOT NULL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_expires_at ON shares(expires_at);
"""

# Fixed width so that text comparison in SQL matches time order.
_TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"
_TS_FORMAT_SECONDS = "%Y-%m-%d %H:%M:%S"

_SQLITE_PREFIX = "sqlite:///"
_MEMORY_PREFIX = "memory://"


def _to_db(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _from_db(raw: str) -> datetime:
    # rows inserted by other tools may carry CURRENT_TIMESTAMP without a fraction
    fmt = _TS_FORMAT if "." in raw else _TS_FORMAT_SECONDS
    return datetime.strptime(raw, fmt).replace(tzinfo=timezone.utc)


def _sqlite_path(database_url: str) -> str:
    if not database_url.startswith(_SQLITE_PREFIX):
        raise ValueError("Only sqlite:/// URLs are supported")
    path = database_url[len(_SQLITE_PREFIX):]
    if path in (":memory", ":memory:", ""):
        return ":memory:"
    return path


class SQLiteShareStore:
    """SQLite-backed share store.

    A single connection is shared by all threads; each operation is one
    autocommitted statement executed under the store's own lock. The
    connection and schema are created on first use.
    """

    def __init__(self, database_url: str, clock: Optional[Clock] = None):
        self.path = _sqlite_path(database_url)
        self._clock = clock or utcnow
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def _now(self) -> datetime:
        return self._clock()

    def _connection(self) -> sqlite3.Connection:
        # caller holds self._lock
        if self._conn is None:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
            if self.path != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(CREATE_SQL)
            self._conn = conn
        return self._conn

    def _fetchone(self, sql: str, params: Tuple[Any, ...]) -> Optional[Tuple[Any, ...]]:
        try:
            with self._lock:
                return self._connection().execute(sql, params).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"sqlite query failed: {e}") from e

    def _write(self, sql: str, params: Tuple[Any, ...]) -> int:
        try:
            with self._lock:
                return self._connection().execute(sql, params).rowcount
        except sqlite3.Error as e:
            raise StorageError(f"sqlite write failed: {e}") from e

    def exists(self, code: str) -> bool:
        row = self._fetchone("SELECT EXISTS(SELECT 1 FROM shares WHERE code = ?)", (code,))
        return bool(row and row[0])

    def put(self, code: str, data: str, ttl: timedelta) -> datetime:
        now = self._now()
        expires_at = now + ttl
        self._write(
            "INSERT OR REPLACE INTO shares (code, data, expires_at, created_at) VALUES (?, ?, ?, ?)",
            (code, data, _to_db(expires_at), _to_db(now)),
        )
        return expires_at

    def get(self, code: str) -> Share:
        row = self._fetchone(
            "SELECT code, data, expires_at, created_at FROM shares WHERE code = ? AND expires_at > ?",
            (code, _to_db(self._now())),
        )
        if row is None:
            raise ShareNotFound(code)
        created_at = _from_db(row[3]) if row[3] else _from_db(row[2])
        return Share(code=row[0], data=row[1], expires_at=_from_db(row[2]), created_at=created_at)

    def purge_expired(self) -> int:
        return self._write("DELETE FROM shares WHERE expires_at <= ?", (_to_db(self._now()),))

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


# Deletes every share whose score in the expiry index is <= ARGV[1].
# KEYS[1] = expiry index, ARGV[2] = share key prefix.
_PURGE_SCRIPT = """
local codes = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local removed = 0
for _, code in ipairs(codes) do
    removed = removed + redis.call('DEL', ARGV[2] .. code)
end
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
return removed
"""


class RedisShareStore:
    """Redis-backed share store.

    Each share is a hash under `relay:share:<code>`; a sorted set scored by
    expiry timestamp indexes them for the sweep. Keys carry no Redis TTL so
    that `exists` still sees expired-but-unswept shares.
    """

    def __init__(self, redis_url: str, clock: Optional[Clock] = None):
        try:
            self.client = redis.from_url(redis_url, decode_responses=True)
            # test connection
            self.client.ping()
        except redis.RedisError as e:
            logger.exception("Failed to connect to Redis at %s: %s", redis_url, e)
            raise StorageError(f"redis unavailable: {e}") from e

        self.prefix = "relay:share:"
        self.index_key = "relay:shares:expiry"
        self._clock = clock
        self._purge = self.client.register_script(_PURGE_SCRIPT)

    def _key(self, code: str) -> str:
        return f"{self.prefix}{code}"

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        seconds, micros = self.client.time()
        return datetime.fromtimestamp(seconds + micros / 1_000_000, tz=timezone.utc)

    def exists(self, code: str) -> bool:
        try:
            return self.client.exists(self._key(code)) == 1
        except redis.RedisError as e:
            raise StorageError(f"redis exists failed: {e}") from e

    def put(self, code: str, data: str, ttl: timedelta) -> datetime:
        try:
            now = self._now()
            expires_at = now + ttl
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(self._key(code))
            pipe.hset(
                self._key(code),
                mapping={
                    "data": data,
                    "expires_at": repr(expires_at.timestamp()),
                    "created_at": repr(now.timestamp()),
                },
            )
            pipe.zadd(self.index_key, {code: expires_at.timestamp()})
            pipe.execute()
        except redis.RedisError as e:
            raise StorageError(f"redis put failed: {e}") from e
        return expires_at

    def get(self, code: str) -> Share:
        try:
            now = self._now()
            raw = self.client.hgetall(self._key(code))
        except redis.RedisError as e:
            raise StorageError(f"redis get failed: {e}") from e
        if not raw:
            raise ShareNotFound(code)
        share = Share(
            code=code,
            data=raw.get("data", ""),
            expires_at=datetime.fromtimestamp(float(raw["expires_at"]), tz=timezone.utc),
            created_at=datetime.fromtimestamp(float(raw["created_at"]), tz=timezone.utc),
        )
        if not share.is_live(now):
            raise ShareNotFound(code)
        return share

    def purge_expired(self) -> int:
        try:
            now = self._now()
            return int(self._purge(keys=[self.index_key], args=[repr(now.timestamp()), self.prefix]))
        except redis.RedisError as e:
            raise StorageError(f"redis purge failed: {e}") from e

    def close(self) -> None:
        self.client.close()


def store_from_url(database_url: str, clock: Optional[Clock] = None) -> ShareStore:
    """Build a store from `memory://` or `sqlite:///<path>`."""
    if database_url.startswith(_MEMORY_PREFIX):
        return InMemoryShareStore(clock=clock)
    if database_url.startswith(_SQLITE_PREFIX):
        return SQLiteShareStore(database_url, clock=clock)
    raise ValueError(f"Unsupported DATABASE_URL: {database_url}")


# Factory to pick backend (Redis or DATABASE_URL)
def create_default_store(settings: Settings) -> ShareStore:
    if settings.redis_url:
        try:
            return RedisShareStore(settings.redis_url)
        except StorageError as e:
            logger.warning("Falling back to %s share store: %s", settings.database_url, e)
    return store_from_url(settings.database_url)
