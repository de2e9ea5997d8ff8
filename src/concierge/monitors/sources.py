"""Event source contracts polled by the event monitor.

Mailbox and voicemail providers (Gmail, Outlook, IMAP, Twilio, ...) sit
behind ``MailboxSource`` / ``VoicemailSource``; speech-to-text sits behind
``Transcriber``. The in-memory implementations back development setups
and tests.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from concierge.core.ids import utcnow


class Priority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"


_URGENT_KEYWORDS = ("urgent", "emergency", "asap", "immediately", "critical")
_HIGH_KEYWORDS = ("important", "priority", "deadline", "appointment", "prescription")


def determine_priority(*texts: str | None) -> Priority:
    """Keyword triage over subject/body/transcript."""
    text = " ".join(t for t in texts if t).lower()
    if any(k in text for k in _URGENT_KEYWORDS):
        return Priority.URGENT
    if any(k in text for k in _HIGH_KEYWORDS):
        return Priority.HIGH
    return Priority.MEDIUM


@dataclass(frozen=True)
class InboundMessage:
    id: str
    sender: str
    subject: str = ""
    body: str = ""
    to: str = ""
    received_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Voicemail:
    id: str
    caller: str
    audio_url: str = ""
    duration_s: float = 0.0
    received_at: datetime = field(default_factory=utcnow)


class MailboxSource(Protocol):
    async def fetch_new(self, since: datetime | None) -> list[InboundMessage]: ...


class VoicemailSource(Protocol):
    async def fetch_new(self, since: datetime | None) -> list[Voicemail]: ...


class Transcriber(Protocol):
    async def transcribe(self, voicemail: Voicemail) -> str: ...


class InMemoryMailbox:
    """Queue-backed mailbox; ``deliver`` enqueues, ``fetch_new`` drains."""

    def __init__(self) -> None:
        self._queue: deque[InboundMessage] = deque()

    def deliver(self, message: InboundMessage) -> None:
        self._queue.append(message)

    async def fetch_new(self, since: datetime | None) -> list[InboundMessage]:
        messages = list(self._queue)
        self._queue.clear()
        return messages


class InMemoryVoicemailBox:
    def __init__(self, transcripts: dict[str, str] | None = None) -> None:
        self._queue: deque[Voicemail] = deque()
        # Canned transcripts keyed by voicemail id, for ``StaticTranscriber``.
        self.transcripts: dict[str, str] = dict(transcripts or {})

    def deliver(self, voicemail: Voicemail, transcript: str | None = None) -> None:
        self._queue.append(voicemail)
        if transcript is not None:
            self.transcripts[voicemail.id] = transcript

    async def fetch_new(self, since: datetime | None) -> list[Voicemail]:
        voicemails = list(self._queue)
        self._queue.clear()
        return voicemails


class StaticTranscriber:
    """Looks transcripts up in a mapping; unknown recordings transcribe to ''."""

    def __init__(self, transcripts: dict[str, str] | None = None) -> None:
        self.transcripts = transcripts if transcripts is not None else {}

    async def transcribe(self, voicemail: Voicemail) -> str:
        return self.transcripts.get(voicemail.id, "")


def redact(config: dict[str, Any]) -> dict[str, Any]:
    """Drop credentials before a monitor config leaves the process."""
    return {k: v for k, v in config.items() if k != "credentials"}


class InMemorySourceRegistry:
    """Hands out one in-memory source per (user, account), for development setups."""

    def __init__(self) -> None:
        self.mailboxes: dict[tuple[str, str], InMemoryMailbox] = {}
        self.voicemail_boxes: dict[tuple[str, str], InMemoryVoicemailBox] = {}
        # Shared by every voicemail box so one StaticTranscriber serves them all.
        self.transcripts: dict[str, str] = {}

    def mailbox_for(self, user_id: str, config: Any) -> InMemoryMailbox:
        return self.mailboxes.setdefault((user_id, config.account), InMemoryMailbox())

    def voicemail_for(self, user_id: str, config: Any) -> InMemoryVoicemailBox:
        key = (user_id, config.account)
        if key not in self.voicemail_boxes:
            box = InMemoryVoicemailBox()
            box.transcripts = self.transcripts
            self.voicemail_boxes[key] = box
        return self.voicemail_boxes[key]
