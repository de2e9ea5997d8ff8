"""Error taxonomy for the automation core.

Only ``ValidationError`` and ``InvalidTokenError`` cross the public API as
exceptions. Execution-time failures (``ExecutionFailure``,
``StepTimeoutError``, ``ExtractionError``) are raised by executors and
caught by the engines, which record them on the execution log or the
workflow execution record instead of propagating.
"""

from __future__ import annotations


class ConciergeError(Exception):
    """Root exception for all concierge domain errors."""


class ValidationError(ConciergeError):
    """Malformed input to a creation call. Raised before any state change."""

    def __init__(self, problems: list[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems = problems
        super().__init__("; ".join(problems))


class NotFoundError(ConciergeError):
    """A referenced resource is absent or owned by someone else."""

    def __init__(self, kind: str, resource_id: str) -> None:
        self.kind = kind
        self.resource_id = resource_id
        super().__init__(f"{kind} '{resource_id}' not found")


class ExecutionFailure(ConciergeError):
    """An action or workflow step failed while executing."""


class StepTimeoutError(ConciergeError):
    """A workflow step exceeded its time budget."""

    def __init__(self, step_id: str, budget_s: float) -> None:
        self.step_id = step_id
        self.budget_s = budget_s
        super().__init__(f"Step '{step_id}' timed out after {budget_s:.1f}s")


class InvalidTokenError(ConciergeError):
    """Approval token is unknown, expired or already consumed."""

    def __init__(self, token: str) -> None:
        self.token = token
        super().__init__("Approval token is invalid or has already been used")


class ExtractionError(ConciergeError):
    """Free text could not be turned into structured event parameters."""


class SchedulingExhausted(ConciergeError):
    """No free slot in the look-ahead window.

    The scheduler itself returns ``None`` for this outcome; the HTTP adapter
    raises this to map it onto a 400 response.
    """

    def __init__(self) -> None:
        super().__init__("Unable to find optimal time for event")
