"""Identifier and clock helpers shared by the engines."""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def new_id(prefix: str) -> str:
    """Return a prefixed, collision-resistant identifier (``rule_3f9c…``)."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def new_approval_token() -> str:
    """Unguessable single-use approval token."""
    return secrets.token_urlsafe(24)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
