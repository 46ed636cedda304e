"""
Exceptions and warnings raised by vaultsearch.

All errors derive from VaultSearchError. DimensionMismatchError and
NotInitializedError also subclass the builtin they refine (ValueError and
RuntimeError), so callers that only know the builtins still catch them.
"""

from typing import Optional


class VaultSearchError(Exception):
    """Base class for all vaultsearch errors."""


class DimensionMismatchError(VaultSearchError, ValueError):
    """
    A vector's length disagrees with the dimension the index expects.

    Attributes:
        expected: The established dimension.
        actual: The length that was supplied.
    """

    def __init__(self, expected: int, actual: int, message: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        if message is None:
            message = f"Vector dimension mismatch: expected {expected}, got {actual}"
        super().__init__(message)


class NotInitializedError(VaultSearchError, RuntimeError):
    """An operation was invoked before initialize() completed."""

    def __init__(self, message: str = "Vector search service not initialized. Call initialize() first."):
        super().__init__(message)


class PersistenceError(VaultSearchError):
    """Reading from or writing to the vector store failed."""


class OperationCancelled(VaultSearchError):
    """A long-running operation observed its cancel event and stopped."""


class PersistenceWarning(UserWarning):
    """The in-memory index is intact but could not be persisted."""
