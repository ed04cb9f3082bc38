"""
Structured errors raised by the georeferencing and tiling services.

Every error carries a machine-readable ``code``, a client-safe ``message``
and optional ``details``. The ``kind`` groups codes into the categories the
HTTP layer maps to status codes.
"""

from typing import Any, Optional


class GeoreferenceError(Exception):
    """Base error for georeferencing and tile generation."""
    kind: str = "internal"
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None, code: Optional[str] = None):
        self.message = message
        self.details = details or {}
        if code:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# ============================================================
# Validation
# ============================================================

class ValidationError(GeoreferenceError):
    kind = "validation"
    code = "VALIDATION_ERROR"


class InsufficientPointsError(ValidationError):
    code = "INSUFFICIENT_POINTS"


class DegenerateGeometryError(ValidationError):
    code = "DEGENERATE_GEOMETRY"


class OutOfRangeCoordinateError(ValidationError):
    code = "OUT_OF_RANGE_COORDINATE"


class AntimeridianCrossingError(ValidationError):
    code = "ANTIMERIDIAN_CROSSING"


# ============================================================
# Numeric
# ============================================================

class NumericError(GeoreferenceError):
    kind = "numeric"
    code = "NUMERIC_ERROR"


class SingularSystemError(NumericError):
    code = "SINGULAR_SYSTEM"


class UnsupportedFamilyError(NumericError):
    code = "UNSUPPORTED_FAMILY"


# ============================================================
# Access and lookup
# ============================================================

class AuthorizationError(GeoreferenceError):
    kind = "authorization"
    code = "ACCESS_DENIED"

    def __init__(self, message: str = "Access denied", details: Optional[dict[str, Any]] = None):
        super().__init__(message, details)


class NotFoundError(GeoreferenceError):
    kind = "not_found"
    code = "NOT_FOUND"


class DocumentNotFoundError(NotFoundError):
    code = "DOCUMENT_NOT_FOUND"


class HistoryEntryNotFoundError(NotFoundError):
    code = "HISTORY_ENTRY_NOT_FOUND"


class JobNotFoundError(NotFoundError):
    code = "JOB_NOT_FOUND"


# ============================================================
# State conflicts
# ============================================================

class ConflictError(GeoreferenceError):
    kind = "conflict"
    code = "CONFLICT"


class NotGeoreferencedError(ConflictError):
    code = "NOT_GEOREFERENCED"


class JobConflictError(ConflictError):
    code = "JOB_ALREADY_ACTIVE"


class InvalidJobTransitionError(ConflictError):
    code = "INVALID_JOB_TRANSITION"


class ConcurrentUpdateError(ConflictError):
    code = "CONCURRENT_UPDATE"


# ============================================================
# Quota
# ============================================================

class QuotaExceededError(GeoreferenceError):
    kind = "quota"
    code = "QUOTA_EXCEEDED"

    def __init__(self, message: str, requested: int, remaining: int):
        super().__init__(message, {"requested": requested, "remaining": remaining})
        self.requested = requested
        self.remaining = remaining


# ============================================================
# Pipeline
# ============================================================

class PipelineError(GeoreferenceError):
    kind = "pipeline"
    code = "PIPELINE_ERROR"

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
        code: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(message, details, code)
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["retryable"] = self.retryable
        return data


class TileRenderError(PipelineError):
    code = "TILE_RENDER_FAILED"


class TileStorageError(PipelineError):
    code = "TILE_STORAGE_FAILED"
