"""
In-memory record store.

Stores every collection in process memory, useful for:
- Unit testing
- Development
- Single-process deployments that can afford to lose state on restart
"""

import copy
import threading
from collections import OrderedDict
from datetime import datetime
from typing import Any

from models import parse_iso, to_iso
from storage.base import (
    CounterResult,
    DuplicateRecordError,
    PreconditionFailedError,
    RecordNotFoundError,
    RecordStore,
)


class MemoryRecordStore(RecordStore):
    """
    In-memory record store.

    All data is lost when the process exits. A single re-entrant lock
    serializes every operation, which makes the conditional primitives atomic.
    """

    def __init__(self):
        self._collections: dict[str, OrderedDict[str, dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _collection(self, name: str) -> OrderedDict[str, dict[str, Any]]:
        return self._collections.setdefault(name, OrderedDict())

    def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._collection(collection).get(record_id)
            # Copies so callers can't mutate stored state
            return copy.deepcopy(record) if record is not None else None

    def create(self, collection: str, record_id: str, data: dict[str, Any]) -> None:
        with self._lock:
            records = self._collection(collection)
            if record_id in records:
                raise DuplicateRecordError(f"{collection}/{record_id} already exists")
            records[record_id] = copy.deepcopy(data)

    def update(self, collection: str, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            records = self._collection(collection)
            if record_id not in records:
                raise RecordNotFoundError(f"{collection}/{record_id} not found")
            records[record_id].update(copy.deepcopy(fields))
            return copy.deepcopy(records[record_id])

    def update_if(
        self,
        collection: str,
        record_id: str,
        expected: dict[str, Any],
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        with self._lock:
            records = self._collection(collection)
            record = records.get(record_id)
            if record is None:
                raise RecordNotFoundError(f"{collection}/{record_id} not found")
            mismatched = {k: record.get(k) for k, v in expected.items() if record.get(k) != v}
            if mismatched:
                raise PreconditionFailedError(
                    f"{collection}/{record_id} precondition failed: {mismatched}"
                )
            record.update(copy.deepcopy(fields))
            return copy.deepcopy(record)

    def delete(self, collection: str, record_id: str) -> bool:
        with self._lock:
            return self._collection(collection).pop(record_id, None) is not None

    def find(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        where = where or {}
        with self._lock:
            results = []
            for record in self._collection(collection).values():
                if all(record.get(k) == v for k, v in where.items()):
                    results.append(copy.deepcopy(record))
                    if limit is not None and len(results) >= limit:
                        break
            return results

    def consume_counter(
        self,
        collection: str,
        counter_id: str,
        limit: int,
        reset_at: datetime,
        now: datetime,
    ) -> CounterResult:
        with self._lock:
            records = self._collection(collection)
            counter = records.get(counter_id)
            if counter is None or parse_iso(counter["reset_at"]) <= now:
                counter = {"id": counter_id, "used": 0, "limit": limit, "reset_at": to_iso(reset_at)}
                records[counter_id] = counter

            counter["limit"] = limit
            allowed = counter["used"] < limit
            if allowed:
                counter["used"] += 1

            return CounterResult(
                allowed=allowed,
                used=counter["used"],
                limit=limit,
                reset_at=parse_iso(counter["reset_at"]),
            )

    def is_available(self) -> bool:
        """Memory storage is always available."""
        return True

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        with self._lock:
            info["collections"] = {
                name: len(records) for name, records in self._collections.items()
            }
        return info

    def clear(self) -> None:
        """Clear all stored data."""
        with self._lock:
            self._collections.clear()
