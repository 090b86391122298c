"""Shared share-store types and the in-memory backend.

This module holds the `Share` record, the store error types, the contract
every backend implements and the in-memory store used by development runs
and tests. Persistent backends live in `relay.share_store`.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StorageError(Exception):
    """Raised when the underlying storage engine fails."""


class ShareNotFound(Exception):
    """Raised when a code is absent or its share has expired."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


@dataclass(frozen=True)
class Share:
    """One stored blob plus its expiry metadata."""
    code: str
    data: str
    expires_at: datetime
    created_at: datetime

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at


class ShareStore(Protocol):
    """Contract implemented by every share-store backend.

    `exists` ignores expiry while `get` is time-gated; the asymmetry is
    relied upon by the availability check.
    """

    def exists(self, code: str) -> bool:
        ...

    def put(self, code: str, data: str, ttl: timedelta) -> datetime:
        ...

    def get(self, code: str) -> Share:
        ...

    def purge_expired(self) -> int:
        ...

    def close(self) -> None:
        ...


class InMemoryShareStore:
    """Lightweight in-memory share store for development and tests.

    Keeps a plain dict guarded by a lock; contents are lost on restart.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.shares: Dict[str, Share] = {}
        self._clock = clock or utcnow
        self._lock = threading.Lock()

    def _now(self) -> datetime:
        return self._clock()

    def exists(self, code: str) -> bool:
        with self._lock:
            return code in self.shares

    def put(self, code: str, data: str, ttl: timedelta) -> datetime:
        """Insert or replace the share under `code` and return its expiry."""
        now = self._now()
        share = Share(code=code, data=data, expires_at=now + ttl, created_at=now)
        with self._lock:
            self.shares[code] = share
        return share.expires_at

    def get(self, code: str) -> Share:
        """Return the live share for `code` or raise ShareNotFound."""
        now = self._now()
        with self._lock:
            share = self.shares.get(code)
        if share is None or not share.is_live(now):
            raise ShareNotFound(code)
        return share

    def purge_expired(self) -> int:
        """Delete every expired share and return how many were removed."""
        now = self._now()
        with self._lock:
            expired = [c for c, s in self.shares.items() if not s.is_live(now)]
            for code in expired:
                del self.shares[code]
        return len(expired)

    def close(self) -> None:
        with self._lock:
            self.shares.clear()
