"""
Sales Metrics Error Taxonomy
============================

Exceptions raised by the normalizer, resolver, linker and metrics engine.

WHY THIS FILE EXISTS
--------------------
Services raise domain errors; the HTTP layer (salesmetrics/main.py) maps them
onto status codes in one place:

    ValidationError      -> 400  missing/malformed scope or range
    AuthorizationError   -> 403  caller lacks account access
    NotFoundError        -> 404  unknown metric name, missing account
    AmbiguousMatch       -> 409  several equally-ranked identity candidates
    ComputeFailed        -> 500  data-store failure during aggregation
    JobEnqueueFailed     -> 503  background job was not accepted by the queue

Validation and authorization failures are raised before any store access so
no partial result leaks. Batch jobs never raise these mid-run; they collect
outcomes into their summary instead.

RELATED FILES
-------------
- salesmetrics/main.py: exception handlers
- salesmetrics/services/metrics_engine.py: ComputeFailed wrapping
"""

from enum import Enum
from typing import Any, List, Optional


class ErrorCode(Enum):
    """Machine-readable codes, stable across releases."""
    VALIDATION = "validation_error"
    AUTHORIZATION = "authorization_error"
    NOT_FOUND = "not_found"
    COMPUTE_FAILED = "compute_failed"
    AMBIGUOUS_MATCH = "ambiguous_match"
    ENQUEUE_FAILED = "enqueue_failed"


class SalesMetricsError(Exception):
    """Base class for all domain errors."""

    code: ErrorCode = ErrorCode.VALIDATION
    status_code: int = 400

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"code": self.code.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(SalesMetricsError):
    code = ErrorCode.VALIDATION
    status_code = 400


class AuthorizationError(SalesMetricsError):
    code = ErrorCode.AUTHORIZATION
    status_code = 403


class NotFoundError(SalesMetricsError):
    code = ErrorCode.NOT_FOUND
    status_code = 404


class ComputeFailed(SalesMetricsError):
    """Underlying store failure during aggregation. Not retried internally."""

    code = ErrorCode.COMPUTE_FAILED
    status_code = 500

    def __init__(self, message: str, *, cause: Optional[BaseException] = None, details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.cause = cause


class AmbiguousMatch(SalesMetricsError):
    """Identity resolution found several equally-ranked candidates."""

    code = ErrorCode.AMBIGUOUS_MATCH
    status_code = 409

    def __init__(self, message: str, *, candidates: List[Any], details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.candidates = list(candidates)


class JobEnqueueFailed(SalesMetricsError):
    """The arq queue did not accept a job."""

    code = ErrorCode.ENQUEUE_FAILED
    status_code = 503
