"""
HyperMnemo Domain-Specific Exceptions
=====================================

This module defines a hierarchy of exceptions for consistent error handling
across the HyperMnemo core.

Exception Hierarchy:
    HyperMnemoError (base)
    ├── RecoverableError (transient or operator-recoverable)
    │   ├── StorageConnectionError
    │   ├── StorageTimeoutError
    │   ├── ConsolidationError      (non-fatal, zero-effect result)
    │   ├── CompressionError        (non-fatal, zero-effect result)
    │   └── IncompatibleStateVersionError
    ├── IrrecoverableError (permanent, requires intervention)
    │   ├── ConfigurationError
    │   ├── DataCorruptionError
    │   ├── ValidationError
    │   ├── NotFoundError
    │   │   ├── IdentityNotFoundError
    │   │   ├── MemoryNotFoundError
    │   │   └── CheckpointNotFoundError
    │   ├── DuplicateIdError
    │   ├── AddressCollisionError
    │   ├── SecurityError
    │   └── InvariantViolationError
    └── Domain Errors (mixed recoverability)
        └── StorageError

Usage Guidelines:
    - Raise NotFoundError subclasses for unknown ids at the operation surface
    - ConsolidationError / CompressionError are caught by the engine and
      reported as zero-effect results
    - InvariantViolationError signals a bug (corrupt index, malformed
      embedding) and is always raised before anything is committed
    - Use error_code for responses built by the HTTP layer
"""

from typing import Optional, Any
from enum import Enum


class ErrorCategory(Enum):
    """Categories for error classification."""
    STORAGE = "STORAGE"
    GEOMETRY = "GEOMETRY"
    CONFIG = "CONFIG"
    VALIDATION = "VALIDATION"
    MEMORY = "MEMORY"
    IDENTITY = "IDENTITY"
    SECURITY = "SECURITY"
    STATE = "STATE"
    SYSTEM = "SYSTEM"


class HyperMnemoError(Exception):
    """
    Base exception for all HyperMnemo errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        context: Additional context about the error
        recoverable: Whether the error is potentially recoverable
    """

    error_code: str = "HYPERMNEMO_ERROR"
    recoverable: bool = True
    category: ErrorCategory = ErrorCategory.SYSTEM

    def __init__(
        self,
        message: str,
        context: Optional[dict] = None,
        error_code: Optional[str] = None,
        recoverable: Optional[bool] = None
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        if error_code is not None:
            self.error_code = error_code
        if recoverable is not None:
            self.recoverable = recoverable

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to dictionary for JSON response."""
        result = {
            "error": self.message,
            "code": self.error_code,
            "recoverable": self.recoverable,
        }

        if self.context:
            result["context"] = self.context

        return result


# =============================================================================
# Base Categories: Recoverable vs Irrecoverable
# =============================================================================

class RecoverableError(HyperMnemoError):
    """
    Base class for recoverable errors.

    Transient collaborator failures, or conditions an operator can resolve
    without data loss (wrong state version, nothing to consolidate).
    """
    recoverable = True


class IrrecoverableError(HyperMnemoError):
    """
    Base class for irrecoverable errors.

    These are permanent errors that require the caller to change the request:
    - Invalid configuration
    - Validation failures
    - Unknown or conflicting ids
    - Security failures
    """
    recoverable = False


# =============================================================================
# Storage Errors
# =============================================================================

class StorageError(HyperMnemoError):
    """Base exception for storage-collaborator errors."""
    error_code = "STORAGE_ERROR"
    category = ErrorCategory.STORAGE


class StorageConnectionError(RecoverableError, StorageError):
    """Raised when the storage collaborator cannot be reached."""
    error_code = "STORAGE_CONNECTION_ERROR"

    def __init__(self, backend: str, message: str = "Connection failed", context: Optional[dict] = None):
        ctx = {"backend": backend}
        if context:
            ctx.update(context)
        super().__init__(f"[{backend}] {message}", ctx)
        self.backend = backend


class StorageTimeoutError(RecoverableError, StorageError):
    """Raised when a storage operation times out."""
    error_code = "STORAGE_TIMEOUT_ERROR"

    def __init__(self, backend: str, operation: str, timeout_ms: Optional[int] = None, context: Optional[dict] = None):
        msg = f"[{backend}] Operation '{operation}' timed out"
        ctx = {"backend": backend, "operation": operation}
        if timeout_ms is not None:
            ctx["timeout_ms"] = timeout_ms
        if context:
            ctx.update(context)
        super().__init__(msg, ctx)
        self.backend = backend
        self.operation = operation


class DataCorruptionError(IrrecoverableError, StorageError):
    """Raised when a persisted state document cannot be decoded."""
    error_code = "DATA_CORRUPTION_ERROR"

    def __init__(self, resource_id: str, reason: str = "Data corruption detected", context: Optional[dict] = None):
        ctx = {"resource_id": resource_id}
        if context:
            ctx.update(context)
        super().__init__(f"{reason} for resource '{resource_id}'", ctx)
        self.resource_id = resource_id


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(IrrecoverableError):
    """Raised when configuration is invalid or missing."""
    error_code = "CONFIGURATION_ERROR"
    category = ErrorCategory.CONFIG

    def __init__(self, config_key: str, reason: str, context: Optional[dict] = None):
        ctx = {"config_key": config_key}
        if context:
            ctx.update(context)
        super().__init__(f"Configuration error for '{config_key}': {reason}", ctx)
        self.config_key = config_key


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(IrrecoverableError):
    """Raised when input validation fails."""
    error_code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION

    def __init__(self, field: str, reason: str, value: Any = None, context: Optional[dict] = None):
        ctx = {"field": field}
        if value is not None:
            # Truncate large values
            value_str = str(value)
            if len(value_str) > 100:
                value_str = value_str[:100] + "..."
            ctx["value"] = value_str
        if context:
            ctx.update(context)
        super().__init__(f"Validation error for '{field}': {reason}", ctx)
        self.field = field
        self.reason = reason


class MetadataValidationError(ValidationError):
    """Raised when memory metadata validation fails."""
    error_code = "METADATA_VALIDATION_ERROR"


# =============================================================================
# Not Found Errors
# =============================================================================

class NotFoundError(IrrecoverableError):
    """Raised when a requested resource is not found."""
    error_code = "NOT_FOUND_ERROR"
    category = ErrorCategory.SYSTEM

    def __init__(self, resource_type: str, resource_id: str, context: Optional[dict] = None):
        ctx = {"resource_type": resource_type, "resource_id": resource_id}
        if context:
            ctx.update(context)
        super().__init__(f"{resource_type} '{resource_id}' not found", ctx)
        self.resource_type = resource_type
        self.resource_id = resource_id


class IdentityNotFoundError(NotFoundError):
    """Raised when an identity is unknown or tombstoned."""
    error_code = "IDENTITY_NOT_FOUND_ERROR"
    category = ErrorCategory.IDENTITY

    def __init__(self, identity_id: str, context: Optional[dict] = None):
        super().__init__("Identity", identity_id, context)
        self.identity_id = identity_id


class MemoryNotFoundError(NotFoundError):
    """Raised when a memory is unknown or retired."""
    error_code = "MEMORY_NOT_FOUND_ERROR"
    category = ErrorCategory.MEMORY

    def __init__(self, memory_id: str, context: Optional[dict] = None):
        super().__init__("Memory", memory_id, context)
        self.memory_id = memory_id


class CheckpointNotFoundError(NotFoundError):
    """Raised when a checkpoint id is unknown."""
    error_code = "CHECKPOINT_NOT_FOUND_ERROR"
    category = ErrorCategory.STATE

    def __init__(self, checkpoint_id: str, context: Optional[dict] = None):
        super().__init__("Checkpoint", checkpoint_id, context)
        self.checkpoint_id = checkpoint_id


# =============================================================================
# Identity / Address Conflicts
# =============================================================================

class DuplicateIdError(IrrecoverableError):
    """Raised when an id is already present (or was tombstoned)."""
    error_code = "DUPLICATE_ID_ERROR"
    category = ErrorCategory.IDENTITY

    def __init__(self, resource_type: str, resource_id: str, context: Optional[dict] = None):
        ctx = {"resource_type": resource_type, "resource_id": resource_id}
        if context:
            ctx.update(context)
        super().__init__(f"{resource_type} '{resource_id}' already exists", ctx)
        self.resource_type = resource_type
        self.resource_id = resource_id


class AddressCollisionError(IrrecoverableError):
    """Raised when two distinct entities would share one hyperbolic coordinate."""
    error_code = "ADDRESS_COLLISION_ERROR"
    category = ErrorCategory.IDENTITY

    def __init__(self, entity_id: str, existing_entity_id: str, path: Optional[tuple] = None, context: Optional[dict] = None):
        ctx = {"entity_id": entity_id, "existing_entity_id": existing_entity_id}
        if path is not None:
            ctx["path"] = list(path)
        if context:
            ctx.update(context)
        super().__init__(
            f"Address for '{entity_id}' collides with '{existing_entity_id}'",
            ctx,
        )
        self.entity_id = entity_id
        self.existing_entity_id = existing_entity_id


# =============================================================================
# Maintenance Pass Errors (non-fatal)
# =============================================================================

class ConsolidationError(RecoverableError):
    """Raised when a consolidation pass cannot run (unknown strategy, no candidates)."""
    error_code = "CONSOLIDATION_ERROR"
    category = ErrorCategory.MEMORY

    def __init__(self, tier: Optional[str], reason: str, context: Optional[dict] = None):
        ctx = {"tier": tier}
        if context:
            ctx.update(context)
        super().__init__(f"Consolidation skipped for tier '{tier}': {reason}", ctx)
        self.tier = tier
        self.reason = reason


class CompressionError(RecoverableError):
    """Raised when a compression pass cannot run (unknown algorithm, bad level)."""
    error_code = "COMPRESSION_ERROR"
    category = ErrorCategory.MEMORY

    def __init__(self, tier: Optional[str], reason: str, context: Optional[dict] = None):
        ctx = {"tier": tier}
        if context:
            ctx.update(context)
        super().__init__(f"Compression skipped for tier '{tier}': {reason}", ctx)
        self.tier = tier
        self.reason = reason


# =============================================================================
# State Errors
# =============================================================================

class IncompatibleStateVersionError(RecoverableError):
    """Raised when a persisted state document has a different schema version."""
    error_code = "INCOMPATIBLE_STATE_VERSION_ERROR"
    category = ErrorCategory.STATE

    def __init__(self, expected: int, actual: Any, context: Optional[dict] = None):
        ctx = {"expected": expected, "actual": actual}
        if context:
            ctx.update(context)
        super().__init__(
            f"Incompatible state schema version: expected {expected}, got {actual}",
            ctx,
        )
        self.expected = expected
        self.actual = actual


# =============================================================================
# Security Errors
# =============================================================================

class SecurityError(IrrecoverableError):
    """Raised when authentication, authorization, encryption or decryption fails."""
    error_code = "SECURITY_ERROR"
    category = ErrorCategory.SECURITY

    def __init__(self, operation: str, reason: str, context: Optional[dict] = None):
        ctx = {"operation": operation}
        if context:
            ctx.update(context)
        super().__init__(f"Security gate '{operation}' failed: {reason}", ctx)
        self.operation = operation


# =============================================================================
# Internal Invariants
# =============================================================================

class InvariantViolationError(IrrecoverableError):
    """
    Raised when an internal invariant is broken (corrupt index, malformed
    embedding). Indicates a bug rather than bad input.
    """
    error_code = "INVARIANT_VIOLATION_ERROR"
    category = ErrorCategory.GEOMETRY

    def __init__(self, invariant: str, reason: str, context: Optional[dict] = None):
        ctx = {"invariant": invariant}
        if context:
            ctx.update(context)
        super().__init__(f"Invariant '{invariant}' violated: {reason}", ctx)
        self.invariant = invariant


# =============================================================================
# Utility Functions
# =============================================================================

def wrap_storage_exception(backend: str, operation: str, exc: Exception) -> StorageError:
    """
    Wrap a generic exception raised by the storage collaborator.

    Args:
        backend: Name of the storage backend
        operation: Name of the operation that failed
        exc: The original exception

    Returns:
        An appropriate StorageError subclass
    """
    exc_name = type(exc).__name__
    exc_msg = str(exc)

    # Timeout detection
    if 'timeout' in exc_msg.lower() or 'Timeout' in exc_name:
        return StorageTimeoutError(backend, operation)

    # Connection error detection
    if any(x in exc_name.lower() for x in ['connection', 'connect', 'network']):
        return StorageConnectionError(backend, exc_msg)

    return StorageError(
        f"[{backend}] {operation} failed: {exc_msg}",
        {"backend": backend, "operation": operation, "original_exception": exc_name}
    )


__all__ = [
    # Base
    "HyperMnemoError",
    "RecoverableError",
    "IrrecoverableError",
    "ErrorCategory",
    # Storage
    "StorageError",
    "StorageConnectionError",
    "StorageTimeoutError",
    "DataCorruptionError",
    # Config
    "ConfigurationError",
    # Validation
    "ValidationError",
    "MetadataValidationError",
    # Not Found
    "NotFoundError",
    "IdentityNotFoundError",
    "MemoryNotFoundError",
    "CheckpointNotFoundError",
    # Conflicts
    "DuplicateIdError",
    "AddressCollisionError",
    # Maintenance passes
    "ConsolidationError",
    "CompressionError",
    # State
    "IncompatibleStateVersionError",
    # Security
    "SecurityError",
    # Invariants
    "InvariantViolationError",
    # Utilities
    "wrap_storage_exception",
]
