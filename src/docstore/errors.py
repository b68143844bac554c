"""Structured error types for docstore."""

from __future__ import annotations

from collections.abc import Iterable, Iterator


class DocstoreError(Exception):
    """Base error for all docstore errors."""


class SchemaError(DocstoreError):
    """Raised when an entity, attribute or relation definition is malformed."""


class ValidationError(DocstoreError):
    """Raised when a write is rejected; carries every violation found."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Validation failed")

    def __iter__(self) -> Iterator[str]:
        return iter(self.errors)

    def __len__(self) -> int:
        return len(self.errors)


class NotFoundError(DocstoreError):
    """Raised when a lookup by id or name matches nothing."""


class TooManyFoundError(DocstoreError):
    """Raised when a single-result lookup matches more than one record."""


class ArgumentError(DocstoreError, ValueError):
    """Raised for malformed or unknown fields in write input or query options."""


class InternalError(DocstoreError):
    """Raised on invariant violations; indicates a bug, not a user error."""


class StorageBackendError(DocstoreError):
    """Raised when backend storage operations fail."""

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"Storage backend error during {operation}: {detail}")
