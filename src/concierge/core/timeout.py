"""Per-step timeout budget enforcement.

Different workflow step types have different latency budgets. ``with_timeout``
wraps any coroutine and raises ``StepTimeoutError`` when the budget is
exceeded so the workflow engine can mark the execution ``timeout`` rather
than ``failed``.

Budget table (multipliers of the configured base step timeout)
--------------------------------------------------------------
  EXTRACT       2.0x   (LLM round-trip)
  CALENDAR      1.0x   (calendar provider write)
  NOTIFY        1.0x   (notification service)
  DEFAULT       1.0x
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Coroutine, TypeVar

import structlog

from concierge.core.errors import StepTimeoutError

logger = structlog.get_logger()

T = TypeVar("T")


class BudgetClass(Enum):
    EXTRACT = "extract"
    CALENDAR = "calendar"
    NOTIFY = "notify"
    DEFAULT = "default"


_MULTIPLIERS: dict[BudgetClass, float] = {
    BudgetClass.EXTRACT: 2.0,
    BudgetClass.CALENDAR: 1.0,
    BudgetClass.NOTIFY: 1.0,
    BudgetClass.DEFAULT: 1.0,
}


def budget_for(budget_class: BudgetClass, base_seconds: float) -> float:
    """Return the timeout budget in seconds for a budget class."""
    return base_seconds * _MULTIPLIERS[budget_class]


async def with_timeout(
    coro: Coroutine[Any, Any, T],
    step_id: str,
    seconds: float,
) -> T:
    """Await *coro*, raising ``StepTimeoutError`` after *seconds*."""
    try:
        return await asyncio.wait_for(coro, timeout=seconds)
    except asyncio.TimeoutError:
        logger.warning("step_timeout", step_id=step_id, budget_s=seconds)
        raise StepTimeoutError(step_id, seconds) from None
