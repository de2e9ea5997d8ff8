"""Structured extraction: free text → event parameters.

The workflow engine calls ``extract`` on the body of an email or a voicemail
transcript and expects date, time, duration and title back. Unparseable
text raises ``ExtractionError``, which the engine records as a step
failure.
"""

from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Protocol
from zoneinfo import ZoneInfo

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from concierge.config import settings
from concierge.core.errors import ExtractionError

logger = structlog.get_logger()

_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
_DEFAULT_DURATION_MINUTES = 60
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

_SYSTEM_PROMPT = (
    "You extract appointment details for a personal concierge service. "
    "Reply with a single JSON object with the keys: title, date (YYYY-MM-DD), "
    "time (HH:MM, 24h), duration (minutes), attendee, location. Use null for "
    "anything the text does not state."
)


@dataclass(frozen=True)
class ExtractionResult:
    title: str
    date: date | None = None
    time: time | None = None
    duration: int = _DEFAULT_DURATION_MINUTES
    attendee: str | None = None
    location: str | None = None

    @property
    def has_fixed_time(self) -> bool:
        return self.date is not None and self.time is not None

    def start(self, tz: str = "UTC") -> datetime | None:
        if not self.has_fixed_time:
            return None
        return datetime.combine(self.date, self.time, tzinfo=ZoneInfo(tz)).astimezone(timezone.utc)

    def end(self, tz: str = "UTC") -> datetime | None:
        start = self.start(tz)
        return start + timedelta(minutes=self.duration) if start else None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["date"] = self.date.isoformat() if self.date else None
        data["time"] = self.time.strftime("%H:%M") if self.time else None
        return data


class ExtractionService(Protocol):
    async def extract(self, free_text: str) -> ExtractionResult: ...


def parse_extraction_payload(payload: dict[str, Any]) -> ExtractionResult:
    """Validate a loosely-typed JSON payload into an ``ExtractionResult``."""
    title = (payload.get("title") or "").strip()
    if not title:
        raise ExtractionError("extraction returned no title")

    parsed_date: date | None = None
    if payload.get("date"):
        try:
            parsed_date = date.fromisoformat(str(payload["date"]))
        except ValueError as e:
            raise ExtractionError(f"unparseable date {payload['date']!r}") from e

    parsed_time: time | None = None
    if payload.get("time"):
        try:
            parsed_time = time.fromisoformat(str(payload["time"]))
        except ValueError as e:
            raise ExtractionError(f"unparseable time {payload['time']!r}") from e

    try:
        duration = int(payload.get("duration") or _DEFAULT_DURATION_MINUTES)
    except (TypeError, ValueError) as e:
        raise ExtractionError(f"unparseable duration {payload.get('duration')!r}") from e
    if duration <= 0:
        raise ExtractionError("duration must be positive")

    return ExtractionResult(
        title=title,
        date=parsed_date,
        time=parsed_time,
        duration=duration,
        attendee=payload.get("attendee") or None,
        location=payload.get("location") or None,
    )


def parse_model_reply(reply: str) -> ExtractionResult:
    """Pull the first JSON object out of an LLM reply."""
    match = _JSON_OBJECT_RE.search(reply or "")
    if not match:
        raise ExtractionError("no JSON object in extraction reply")
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ExtractionError(f"invalid JSON in extraction reply: {e}") from e
    if not isinstance(payload, dict):
        raise ExtractionError("extraction reply is not a JSON object")
    return parse_extraction_payload(payload)


class _RetryableLLMError(Exception):
    pass


def _is_retryable(exc: BaseException) -> bool:
    # Timeouts and connection failures are both TransportError.
    return isinstance(exc, _RetryableLLMError | httpx.TransportError)


class LLMExtractionService:
    """Extraction over an OpenAI-compatible chat-completions endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        client: httpx.AsyncClient | None = None,
        retry_wait: wait_base | None = None,
    ) -> None:
        self._model = model or settings.llm_model
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=4)
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.llm_base_url,
            headers={
                "Authorization": f"Bearer {api_key or settings.llm_api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(settings.llm_timeout_s, connect=5.0),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def extract(self, free_text: str) -> ExtractionResult:
        if not free_text or not free_text.strip():
            raise ExtractionError("nothing to extract from empty text")

        payload = {
            "model": self._model,
            "temperature": 0.1,
            "max_tokens": 400,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": free_text},
            ],
        }

        @retry(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(3),
            wait=self._retry_wait,
            reraise=True,
        )
        async def _do_request() -> str:
            response = await self._client.post("/chat/completions", json=payload)
            if response.status_code in _RETRYABLE_STATUS_CODES:
                raise _RetryableLLMError(f"HTTP {response.status_code}")
            response.raise_for_status()
            data = response.json()
            choices = data.get("choices") or []
            if not choices:
                return ""
            return choices[0].get("message", {}).get("content") or ""

        try:
            reply = await _do_request()
        except (httpx.HTTPError, _RetryableLLMError) as e:
            logger.error("extraction_request_failed", error=str(e), model=self._model)
            raise ExtractionError(f"extraction service unavailable: {e}") from e

        result = parse_model_reply(reply)
        logger.info(
            "extraction_completed",
            model=self._model,
            title=result.title,
            has_fixed_time=result.has_fixed_time,
        )
        return result
