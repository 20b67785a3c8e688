"""
Abstract base class for record stores.

The integrity engine persists everything (recognitions, abuse flags, quota
counters, idempotency records, audit entries) as JSON documents keyed by
(collection, record_id). Backends must provide the conditional primitives the
engine relies on for correctness under concurrent requests:

- create() is create-if-absent
- update_if() is a compare-and-set on a subset of fields
- consume_counter() is an increment-with-ceiling that never exceeds the limit
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any


class StorageError(Exception):
    """Base exception for storage-related errors."""
    pass


class StorageConnectionError(StorageError):
    """Raised when connection to storage backend fails."""
    pass


class StorageReadError(StorageError):
    """Raised when reading from storage fails."""
    pass


class StorageWriteError(StorageError):
    """Raised when writing to storage fails."""
    pass


class RecordNotFoundError(StorageError):
    """Raised when an update targets a record that does not exist."""
    pass


class DuplicateRecordError(StorageError):
    """Raised when create() targets an id that already exists."""
    pass


class PreconditionFailedError(StorageError):
    """Raised when update_if() finds the record no longer matches the expected fields."""
    pass


@dataclass
class CounterResult:
    """Outcome of a consume_counter() call."""

    allowed: bool
    used: int
    limit: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


class RecordStore(ABC):
    """
    Abstract base class for record store backends.

    All methods raise a StorageError subclass on backend failure so callers
    can tell dependency failures apart from business outcomes.
    """

    @abstractmethod
    def get(self, collection: str, record_id: str) -> dict[str, Any] | None:
        """
        Fetch a record.

        Returns:
            A copy of the record data, or None if absent
        """
        pass

    @abstractmethod
    def create(self, collection: str, record_id: str, data: dict[str, Any]) -> None:
        """
        Insert a record only if no record with this id exists.

        Raises:
            DuplicateRecordError: If the id is already taken
        """
        pass

    @abstractmethod
    def update(self, collection: str, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """
        Merge fields into an existing record.

        Returns:
            The record after the update

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        pass

    @abstractmethod
    def update_if(
        self,
        collection: str,
        record_id: str,
        expected: dict[str, Any],
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Merge fields into a record only if every key in ``expected`` currently
        holds the expected value. The check and the write are one atomic step.

        Raises:
            RecordNotFoundError: If the record does not exist
            PreconditionFailedError: If the record no longer matches ``expected``
        """
        pass

    @abstractmethod
    def delete(self, collection: str, record_id: str) -> bool:
        """Delete a record. Returns True if something was deleted."""
        pass

    @abstractmethod
    def find(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Return records whose fields equal every value in ``where``, in
        insertion order.
        """
        pass

    @abstractmethod
    def consume_counter(
        self,
        collection: str,
        counter_id: str,
        limit: int,
        reset_at: datetime,
        now: datetime,
    ) -> CounterResult:
        """
        Atomically consume one unit from a bounded counter.

        A missing counter, or one whose reset boundary is at or before
        ``now``, starts over at zero with ``reset_at`` as its new boundary.
        The counter is incremented only when its current value is below
        ``limit``; a blocked call leaves it unchanged.
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """
        Check if the storage backend is available and ready.

        Returns:
            True if storage is accessible, False otherwise
        """
        pass

    def get_info(self) -> dict[str, Any]:
        """
        Get information about the storage backend.

        Returns:
            Dictionary with backend type, status, and configuration
        """
        return {
            "backend_type": self.__class__.__name__,
            "available": self.is_available(),
        }

    def close(self) -> None:
        """
        Close the storage connection and release resources.

        Default implementation does nothing - backends with connections
        should override this.
        """
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - closes connection."""
        self.close()
        return False
