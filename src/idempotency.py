"""
Kudos Integrity - Idempotency Guard

Deduplicates retried or double-submitted requests by a caller-supplied key.
A request is a duplicate only when both the key and the actor match a record
that has not expired; the cached response is then returned verbatim and the
operation is not executed again.

This protects against client retries, not against a different actor reusing
someone else's key: records are scoped per actor.

Environment Variables:
    IDEMPOTENCY_TTL_SECONDS=86400
"""

import hashlib
import json
import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from models import parse_iso, to_iso, utc_now
from storage.base import DuplicateRecordError, RecordStore, StorageError

logger = logging.getLogger(__name__)

IDEMPOTENCY_COLLECTION = "idempotency_keys"
IDEMPOTENCY_HEADERS = ("Idempotency-Key", "X-Idempotency-Key")
MAX_KEY_LENGTH = 255


@dataclass
class IdempotencyConfig:
    ttl_seconds: int = 24 * 60 * 60

    @classmethod
    def from_env(cls) -> "IdempotencyConfig":
        return cls(ttl_seconds=int(os.getenv("IDEMPOTENCY_TTL_SECONDS", str(24 * 60 * 60))))


def get_idempotency_key(headers: Mapping[str, str]) -> str | None:
    """Extract the idempotency key from request headers, if any."""
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in IDEMPOTENCY_HEADERS:
        value = lowered.get(name.lower())
        if value and value.strip():
            return value.strip()[:MAX_KEY_LENGTH]
    return None


def fingerprint(actor_id: str, action: str, body: Any) -> str:
    """Stable digest of a request, kept alongside the cached response."""
    body_hash = hashlib.sha256(json.dumps(body, sort_keys=True, default=str).encode()).hexdigest()
    return hashlib.sha256(f"{actor_id}:{action}:{body_hash}".encode()).hexdigest()[:16]


class IdempotencyGuard:
    """
    Caches operation responses per (key, actor) for a bounded time.

    Both lookup() and store() are best-effort: a store failure is logged and
    treated as "no cached response" / "not cached", never as a request error.
    """

    def __init__(
        self,
        records: RecordStore,
        config: IdempotencyConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.records = records
        self.config = config or IdempotencyConfig.from_env()
        self.clock = clock

    @staticmethod
    def _record_id(key: str, actor_id: str) -> str:
        # NUL-separated: ("mgr-a", "k") and ("mgr", "a-k") get different ids
        digest = hashlib.sha256(f"{actor_id}\x00{key}".encode()).hexdigest()
        return f"idem_{digest}"

    @staticmethod
    def _belongs_to(record: dict[str, Any], key: str, actor_id: str) -> bool:
        return record.get("actor_id") == actor_id and record.get("key") == key

    def _is_expired(self, record: dict[str, Any], now: datetime) -> bool:
        return parse_iso(record["expires_at"]) <= now

    def lookup(self, key: str | None, actor_id: str) -> dict[str, Any] | None:
        """
        Return the cached response for (key, actor), or None.

        Expired records are deleted on sight and treated as absent.
        """
        if not key:
            return None

        record_id = self._record_id(key, actor_id)
        try:
            record = self.records.get(IDEMPOTENCY_COLLECTION, record_id)
            if record is None:
                return None
            if not self._belongs_to(record, key, actor_id):
                logger.warning(f"Idempotency record {record_id} belongs to another request, ignoring")
                return None
            if self._is_expired(record, self.clock()):
                self.records.delete(IDEMPOTENCY_COLLECTION, record_id)
                logger.debug(f"Idempotency record {record_id} expired")
                return None
        except StorageError as e:
            logger.warning(f"Idempotency lookup failed, treating request as new: {e}")
            return None

        logger.info(f"Replaying cached {record.get('action')} response for idempotency key")
        return record["response"]

    def store(
        self,
        key: str | None,
        actor_id: str,
        action: str,
        response: dict[str, Any],
        request_fingerprint: str | None = None,
    ) -> bool:
        """
        Cache a response. The first response stored for (key, actor) wins.

        Returns:
            True if this call's response is now the cached one
        """
        if not key:
            return False

        now = self.clock()
        record_id = self._record_id(key, actor_id)
        record = {
            "id": record_id,
            "key": key,
            "actor_id": actor_id,
            "action": action,
            "response": response,
            "fingerprint": request_fingerprint,
            "created_at": to_iso(now),
            "expires_at": to_iso(now + timedelta(seconds=self.config.ttl_seconds)),
        }

        try:
            try:
                self.records.create(IDEMPOTENCY_COLLECTION, record_id, record)
                return True
            except DuplicateRecordError:
                existing = self.records.get(IDEMPOTENCY_COLLECTION, record_id)
                if existing is not None and not self._belongs_to(existing, key, actor_id):
                    logger.warning(f"Idempotency record {record_id} belongs to another request, not replacing")
                    return False
                if existing is not None and not self._is_expired(existing, now):
                    logger.debug(f"Idempotency record {record_id} already stored")
                    return False
                self.records.delete(IDEMPOTENCY_COLLECTION, record_id)
                self.records.create(IDEMPOTENCY_COLLECTION, record_id, record)
                return True
        except StorageError as e:
            logger.warning(f"Failed to store idempotency record (non-critical): {e}")
            return False

    def cleanup_expired(self) -> int:
        """Delete expired records. Returns the number deleted."""
        now = self.clock()
        deleted = 0
        for record in self.records.find(IDEMPOTENCY_COLLECTION):
            if self._is_expired(record, now) and self.records.delete(IDEMPOTENCY_COLLECTION, record["id"]):
                deleted += 1
        if deleted:
            logger.info(f"Cleaned up {deleted} expired idempotency record(s)")
        return deleted
