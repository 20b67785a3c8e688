"""
Kudos Integrity - Audit and Telemetry Sinks

Append-only, best-effort event sinks. A sink never raises: append() returns a
SinkResult and the caller logs a failed result and moves on, so an audit or
analytics outage never blocks a verification.

Actor and target ids are hashed before they leave the engine.
"""

import hashlib
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from models import to_iso, utc_now
from storage.base import RecordStore, StorageError

logger = logging.getLogger(__name__)

AUDIT_COLLECTION = "recognition_audits"
TELEMETRY_COLLECTION = "telemetry_events"


class AuditEventCode(Enum):
    """Distinct codes so dashboards can tell abuse attempts from benign errors."""

    RECOGNITION_CREATED = "RECOGNITION_CREATED"
    RECOGNITION_RATE_LIMITED = "RECOGNITION_RATE_LIMITED"
    RECOGNITION_QUOTA_EXCEEDED = "RECOGNITION_QUOTA_EXCEEDED"
    RECOGNITION_SELF_ATTEMPT = "RECOGNITION_SELF_ATTEMPT"
    RECOGNITION_VERIFIED = "RECOGNITION_VERIFIED"
    RECOGNITION_REJECTED = "RECOGNITION_REJECTED"
    VERIFICATION_UNAUTHORIZED = "VERIFICATION_UNAUTHORIZED"
    VERIFICATION_RATE_LIMITED = "VERIFICATION_RATE_LIMITED"
    VERIFICATION_QUOTA_EXCEEDED = "VERIFICATION_QUOTA_EXCEEDED"
    VERIFICATION_QUOTA_DEGRADED = "VERIFICATION_QUOTA_DEGRADED"
    VERIFICATION_NOT_FOUND = "VERIFICATION_NOT_FOUND"
    VERIFICATION_CONFLICT = "VERIFICATION_CONFLICT"
    VERIFICATION_SELF_ATTEMPT = "VERIFICATION_SELF_ATTEMPT"
    VERIFICATION_ERROR = "VERIFICATION_ERROR"
    ABUSE_FLAGGED = "ABUSE_FLAGGED"
    ABUSE_FLAG_REVIEWED = "ABUSE_FLAG_REVIEWED"
    ABUSE_REPORTED = "ABUSE_REPORTED"


def hash_id(value: str | None) -> str | None:
    """Short, stable pseudonym for an id (first 16 hex chars of SHA-256)."""
    if value is None:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class SinkResult:
    """Outcome of a best-effort write."""

    ok: bool
    error: str | None = None

    @classmethod
    def success(cls) -> "SinkResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: Exception | str) -> "SinkResult":
        return cls(ok=False, error=str(error))


class AuditSink(ABC):
    """Append-only audit trail."""

    @abstractmethod
    def append(
        self,
        event_code: AuditEventCode,
        hashed_actor_id: str | None,
        hashed_target_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SinkResult:
        pass


class TelemetrySink(ABC):
    """Analytics events; same shape as the audit trail."""

    @abstractmethod
    def emit(
        self,
        event_name: str,
        hashed_actor_id: str | None,
        hashed_target_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SinkResult:
        pass


class _StoreAppender:
    """Writes events as new records in one record store collection."""

    def __init__(
        self,
        store: RecordStore,
        collection: str,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.collection = collection
        self.clock = clock

    def _append(
        self,
        name_field: str,
        name: str,
        hashed_actor_id: str | None,
        hashed_target_id: str | None,
        metadata: dict[str, Any] | None,
    ) -> SinkResult:
        event_id = f"evt_{uuid.uuid4().hex}"
        record = {
            "id": event_id,
            name_field: name,
            "actor_hash": hashed_actor_id,
            "target_hash": hashed_target_id,
            "metadata": metadata or {},
            "timestamp": to_iso(self.clock()),
        }
        try:
            self.store.create(self.collection, event_id, record)
        except StorageError as e:
            return SinkResult.failure(e)
        return SinkResult.success()


class StoreAuditSink(_StoreAppender, AuditSink):
    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = utc_now):
        super().__init__(store, AUDIT_COLLECTION, clock)

    def append(
        self,
        event_code: AuditEventCode,
        hashed_actor_id: str | None,
        hashed_target_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SinkResult:
        return self._append("event_code", event_code.value, hashed_actor_id, hashed_target_id, metadata)

    def entries(self, event_code: AuditEventCode | None = None) -> list[dict[str, Any]]:
        where = {"event_code": event_code.value} if event_code else None
        return self.store.find(self.collection, where)


class StoreTelemetrySink(_StoreAppender, TelemetrySink):
    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = utc_now):
        super().__init__(store, TELEMETRY_COLLECTION, clock)

    def emit(
        self,
        event_name: str,
        hashed_actor_id: str | None,
        hashed_target_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SinkResult:
        return self._append("event_name", event_name, hashed_actor_id, hashed_target_id, metadata)


class LoggingTelemetrySink(TelemetrySink):
    """Telemetry that only goes to the log, for deployments without an analytics store."""

    def emit(
        self,
        event_name: str,
        hashed_actor_id: str | None,
        hashed_target_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SinkResult:
        logger.info(
            f"telemetry {event_name}",
            extra={"actor_hash": hashed_actor_id, "target_hash": hashed_target_id},
        )
        return SinkResult.success()


def log_if_failed(result: SinkResult, what: str) -> SinkResult:
    """Log a failed best-effort write; the result is otherwise discarded by callers."""
    if not result.ok:
        logger.warning(f"{what} failed (best-effort, continuing): {result.error}")
    return result


def record_audit(
    sink: AuditSink,
    event_code: AuditEventCode,
    actor_id: str | None,
    target_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> SinkResult:
    """Hash the ids, append to the audit trail and log if that failed."""
    return log_if_failed(
        sink.append(event_code, hash_id(actor_id), hash_id(target_id), metadata or {}),
        f"Audit {event_code.value}",
    )


def record_telemetry(
    sink: TelemetrySink,
    event_name: str,
    actor_id: str | None,
    target_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> SinkResult:
    return log_if_failed(
        sink.emit(event_name, hash_id(actor_id), hash_id(target_id), metadata or {}),
        f"Telemetry {event_name}",
    )
