"""Document store port — abstract interface for the multi-tenant document store.

Core modules depend on these protocols, never on the SQLite adapter.
"""

from __future__ import annotations

from typing import Any, Callable, Protocol, TypeVar

T = TypeVar("T")


class StoreError(Exception):
    """Base class for document store failures."""


class TransactionConflict(StoreError):
    """A concurrent transaction changed a document this one read.

    Transient: the store retries automatically a bounded number of times
    and raises this only once the attempts are exhausted.
    """


class StoreUnavailable(StoreError):
    """The store could not be reached or timed out. Fatal for this attempt."""


class DocumentNotFound(StoreError, LookupError):
    """A document required by an operation does not exist."""


class DocumentReader(Protocol):
    """Read-only view used by the policy engine."""

    def get_data(self, path: str) -> dict | None: ...


class TransactionPort(Protocol):
    def get(self, path: str) -> dict | None: ...

    def set(self, path: str, data: dict) -> None: ...

    def update(self, path: str, fields: dict[str, Any]) -> None: ...

    def delete(self, path: str) -> None: ...


class DocumentStorePort(DocumentReader, Protocol):
    """Store with optimistic transactions and a change feed."""

    def run_transaction(
        self, fn: Callable[[TransactionPort], T], max_attempts: int | None = None,
    ) -> T: ...

    def pending_changes(self, limit: int = 50) -> list[Any]: ...

    def mark_processed(self, seq: int) -> None: ...
