"""Notification delivery contract (email, SMS, push)."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import structlog

from concierge.core.ids import new_id

logger = structlog.get_logger()


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


@dataclass(frozen=True)
class Notification:
    user_id: str
    channel: Channel
    body: str
    recipient: str = ""
    subject: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


class NotificationService(Protocol):
    async def send(self, notification: Notification) -> NotificationResult: ...


class LogNotificationService:
    """Records notifications to the structured log instead of delivering them.

    Stands in for SMTP/SMS gateways in development.
    """

    async def send(self, notification: Notification) -> NotificationResult:
        message_id = new_id("msg")
        logger.info(
            "notification_logged",
            user_id=notification.user_id,
            channel=notification.channel.value,
            recipient=notification.recipient,
            subject=notification.subject,
            message_id=message_id,
        )
        return NotificationResult(success=True, message_id=message_id)
