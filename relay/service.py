"""Relay boundary operations.

Every operation first passes the caller's identity through the rate limiter
registry and only then touches the share store.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from .limiter import RateLimiterRegistry
from .share_store_base import ShareStore

logger = logging.getLogger(__name__)


class RateLimited(Exception):
    """Raised when a client identity has no tokens left."""

    def __init__(self, identity: str):
        super().__init__(f"rate limit exceeded for {identity}")
        self.identity = identity


class Availability(str, Enum):
    AVAILABLE = "available"
    IN_USE = "in_use"


class RelayService:
    """Admission-gated access to the share store.

    `StorageError` and `ShareNotFound` from the store propagate unchanged.
    """

    def __init__(
        self,
        store: ShareStore,
        limiter: RateLimiterRegistry,
        default_ttl: timedelta = timedelta(minutes=10),
    ) -> None:
        self.store = store
        self.limiter = limiter
        self.default_ttl = default_ttl

    def admit(self, identity: str) -> None:
        if not self.limiter.allow(identity):
            logger.debug("Rate limit exceeded for %s", identity)
            raise RateLimited(identity)

    def check_availability(self, identity: str, code: str) -> Availability:
        """Report whether `code` is free; stale unswept shares count as in use."""
        self.admit(identity)
        if self.store.exists(code):
            return Availability.IN_USE
        return Availability.AVAILABLE

    def store_share(
        self, identity: str, code: str, data: str, ttl_minutes: Optional[int] = None
    ) -> datetime:
        """Store `data` under `code`, replacing any previous share, and return its expiry.

        `ttl_minutes=None` selects the default TTL; zero or negative values
        raise ValueError before admission. Callers validate `code`, `data`
        and the upper TTL bound beforehand.
        """
        if ttl_minutes is not None and ttl_minutes <= 0:
            raise ValueError("ttl_minutes must be positive")
        self.admit(identity)
        ttl = timedelta(minutes=ttl_minutes) if ttl_minutes is not None else self.default_ttl
        expires_at = self.store.put(code, data, ttl)
        # codes are retrieval secrets; keep them out of the logs
        logger.debug("Stored share (%d chars) until %s", len(data), expires_at.isoformat())
        return expires_at

    def retrieve(self, identity: str, code: str) -> str:
        """Return the blob stored under `code` while it is live."""
        self.admit(identity)
        return self.store.get(code).data
