"""
Error types for TopoDB.

This module defines all exception types raised by the store and engines:
- TopoDbError: Base exception
- NotFoundError: Referenced record is absent
- InvalidArgumentError: Caller passed an unusable argument
- CycleError: Parent assignment would create a cycle
- ConflictError: Overlapping cascade detected (retryable)
- StorageFailureError: Underlying SQLite read/write failed

Invariants:
    - All errors inherit from TopoDbError
    - Every error carries a stable code for programmatic handling
    - Storage failures keep the SQLite message verbatim
"""

from __future__ import annotations

from typing import Any


class TopoDbError(Exception):
    """Base exception for all TopoDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    retryable = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "TOPODB_ERROR"
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "error_code": self.code,
            "details": self.details,
            "retryable": self.retryable,
        }


class NotFoundError(TopoDbError):
    """Resource not found.

    Raised when:
    - Node, port or edge doesn't exist
    - A parent, owner or endpoint reference points nowhere
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: str,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class InvalidArgumentError(TopoDbError):
    """Argument rejected before touching storage.

    Raised when:
    - Subtree depth is negative
    - Tag search has no required predicates
    - Enum value (node type, port direction) is unknown
    """

    def __init__(
        self,
        message: str,
        argument: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="INVALID_ARGUMENT",
            details={"argument": argument},
        )
        self.argument = argument


class CycleError(InvalidArgumentError):
    """Parent assignment would make a node its own ancestor."""

    def __init__(self, node_id: str, parent_id: str) -> None:
        super().__init__(
            f"Setting parent of {node_id} to {parent_id} would create a cycle",
            argument="parent_id",
        )
        self.details.update({"node_id": node_id, "parent_id": parent_id})
        self.node_id = node_id
        self.parent_id = parent_id


class ConflictError(TopoDbError):
    """Another cascade holds an overlapping subtree.

    The caller may retry once the holder has finished.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        node_id: str,
        holder_id: str,
    ) -> None:
        super().__init__(
            message,
            code="CONFLICT",
            details={"node_id": node_id, "holder_id": holder_id},
        )
        self.node_id = node_id
        self.holder_id = holder_id


class StorageFailureError(TopoDbError):
    """Underlying storage read or write failed.

    The operation was rolled back; the original sqlite3 error is
    available as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="STORAGE_FAILURE",
            details={"operation": operation},
        )
        self.operation = operation
