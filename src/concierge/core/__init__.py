"""Concierge core: error taxonomy, ids and timeout helpers."""

from concierge.core.errors import (
    ConciergeError,
    ExecutionFailure,
    ExtractionError,
    InvalidTokenError,
    NotFoundError,
    SchedulingExhausted,
    StepTimeoutError,
    ValidationError,
)

__all__ = [
    "ConciergeError",
    "ExecutionFailure",
    "ExtractionError",
    "InvalidTokenError",
    "NotFoundError",
    "SchedulingExhausted",
    "StepTimeoutError",
    "ValidationError",
]
