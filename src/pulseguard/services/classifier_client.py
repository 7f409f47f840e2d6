"""Client for the external classification service.

The service speaks the OpenAI-compatible chat completions protocol. Each
request carries the subject descriptor, the current metrics with their
normal ranges, the severity state and a few prior readings for trend
context; the response must be a JSON document matching ClassifierAnalysis.

Every failure is mapped onto the ClassifierError hierarchy so callers can
tell a timeout from a rejection from a malformed answer.

Usage:
    async with ClassificationClient(settings.classifier) as client:
        analysis = await client.classify(ClassificationRequest(reading, subject))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError

from pulseguard.db.models.base import ReadingState
from pulseguard.services.analysis_types import (
    ClassifierAnalysis,
    ReadingSnapshot,
    SubjectInfo,
)
from pulseguard.services.severity import NORMAL_RANGES

if TYPE_CHECKING:
    from pulseguard.core.config import ClassifierSettings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a sports medicine assistant. Analyze vital-sign readings for a "
    "monitored athlete and answer only with the requested JSON document."
)

# Strict JSON schema sent as response_format; every key is required and the
# optional recovery estimate is expressed as a nullable string.
ANALYSIS_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "summary": {
            "type": "string",
            "description": "A brief summary of the subject's health status",
        },
        "recommendations": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Actionable recommendations, most important first",
        },
        "risk_level": {"type": "string", "enum": ["low", "medium", "high"]},
        "potential_issues": {"type": "array", "items": {"type": "string"}},
        "replacement_needed": {"type": "boolean"},
        "recovery_time_estimate": {"type": ["string", "null"]},
        "priority_action": {
            "type": "string",
            "description": "The single most important action to take immediately",
        },
    },
    "required": [
        "summary",
        "recommendations",
        "risk_level",
        "potential_issues",
        "replacement_needed",
        "recovery_time_estimate",
        "priority_action",
    ],
    "additionalProperties": False,
}

_STATE_LINES = {
    ReadingState.ALERT: "Current state: ALERT - requires immediate attention",
    ReadingState.WARNING: "Current state: WARNING - values outside normal ranges",
    ReadingState.NORMAL: "Current state: NORMAL",
}


class ClassifierError(Exception):
    """Base exception for classification service failures."""

    pass


class ClassifierNotConfiguredError(ClassifierError):
    """Raised when no API key is configured."""

    pass


class ClassifierConnectionError(ClassifierError):
    """Raised when the service cannot be reached."""

    pass


class ClassifierTimeoutError(ClassifierError):
    """Raised when the HTTP request itself times out."""

    pass


class ClassifierServiceError(ClassifierError):
    """Raised when the service rejects the request (non-2xx or refusal)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ClassifierResponseError(ClassifierError):
    """Raised when the response is malformed or fails schema validation."""

    pass


@dataclass(frozen=True)
class ClassificationRequest:
    """Everything the service is told about one reading."""

    reading: ReadingSnapshot
    subject: SubjectInfo
    history: tuple[ReadingSnapshot, ...] = field(default_factory=tuple)

    @property
    def readings_analyzed(self) -> int:
        return 1 + len(self.history)


def build_prompt(request: ClassificationRequest) -> str:
    """Render the user prompt for one classification request."""
    m = request.reading.metrics
    r = NORMAL_RANGES
    lines = [
        "Analyze these health readings for football player "
        f"{request.subject.name} ({request.subject.position}):",
        "",
        f"Temperature: {m.temperature}°C "
        f"(Normal: {r['temperature'][0]}-{r['temperature'][1]}°C)",
        f"Heart Rate: {m.heart_rate} BPM (Normal: {r['heart_rate'][0]}-{r['heart_rate'][1]})",
        f"Blood Oxygen: {m.blood_oxygen}% "
        f"(Normal: {r['blood_oxygen'][0]}-{r['blood_oxygen'][1]}%)",
        f"Hydration: {m.hydration}% (Normal: {r['hydration'][0]}-{r['hydration'][1]}%)",
        f"Respiration: {m.respiration} breaths/min "
        f"(Normal: {r['respiration'][0]}-{r['respiration'][1]})",
        f"Fatigue: {m.fatigue}/100 (Lower is better, >{r['fatigue'][1]} = significant fatigue)",
        "",
        _STATE_LINES[request.reading.state],
    ]

    if request.history:
        lines += ["", "Previous readings (oldest first):"]
        for prior in sorted(request.history, key=lambda s: s.recorded_at):
            pm = prior.metrics
            lines.append(
                f"- {prior.recorded_at.isoformat()} [{prior.state.value}] "
                f"temp={pm.temperature} hr={pm.heart_rate} spo2={pm.blood_oxygen} "
                f"hydration={pm.hydration} resp={pm.respiration} fatigue={pm.fatigue}"
            )

    return "\n".join(lines)


class ClassificationClient:
    """Async client for the chat completions endpoint.

    Must be used as an async context manager; the underlying
    httpx.AsyncClient lives for the duration of the context.
    """

    def __init__(
        self,
        settings: ClassifierSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            settings: Classifier configuration.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def is_configured(self) -> bool:
        return self._settings.is_configured

    async def __aenter__(self) -> ClassificationClient:
        """Enter async context manager."""
        headers = {"Content-Type": "application/json"}
        if self._settings.api_key is not None:
            headers["Authorization"] = f"Bearer {self._settings.api_key.get_secret_value()}"
        self._client = httpx.AsyncClient(
            base_url=self._settings.base_url,
            timeout=self._settings.request_timeout,
            headers=headers,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        """Exit async context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get the HTTP client, raising if not in context."""
        if self._client is None:
            msg = "ClassificationClient must be used as async context manager"
            raise RuntimeError(msg)
        return self._client

    def _payload(self, request: ClassificationRequest) -> dict[str, Any]:
        return {
            "model": self._settings.model,
            "temperature": self._settings.temperature,
            "max_tokens": self._settings.max_tokens,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(request)},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": "health_analysis",
                    "strict": True,
                    "schema": ANALYSIS_JSON_SCHEMA,
                },
            },
        }

    async def classify(self, request: ClassificationRequest) -> ClassifierAnalysis:
        """Ask the service for an analysis of one reading.

        Args:
            request: Reading, subject and history to analyze.

        Returns:
            The validated analysis document.

        Raises:
            ClassifierNotConfiguredError: No API key configured.
            ClassifierTimeoutError: HTTP-level timeout.
            ClassifierConnectionError: Service unreachable.
            ClassifierServiceError: Non-2xx status or an explicit refusal.
            ClassifierResponseError: Malformed or schema-invalid response.
        """
        if not self._settings.is_configured:
            raise ClassifierNotConfiguredError("Classification service API key is not configured")

        client = self._get_client()
        try:
            response = await client.post("/chat/completions", json=self._payload(request))
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ClassifierTimeoutError(f"Classification request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise ClassifierServiceError(
                f"Classification service returned {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.TransportError as e:
            raise ClassifierConnectionError(
                f"Cannot connect to classification service at {self._settings.base_url}: {e}"
            ) from e

        analysis = self._parse(response)
        logger.debug(
            "Classification received: reading_id=%s, risk_level=%s",
            request.reading.reading_id,
            analysis.risk_level.value,
        )
        return analysis

    def _parse(self, response: httpx.Response) -> ClassifierAnalysis:
        """Extract and validate the analysis from a chat completions response."""
        try:
            body = response.json()
            message = body["choices"][0]["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ClassifierResponseError(f"Unexpected response structure: {e}") from e

        refusal = message.get("refusal") if isinstance(message, dict) else None
        if refusal:
            raise ClassifierServiceError(f"Classification refused: {refusal}")

        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise ClassifierResponseError("Response contained no analysis content")

        try:
            return ClassifierAnalysis.model_validate_json(content)
        except ValidationError as e:
            raise ClassifierResponseError(
                f"Analysis failed schema validation: {e.error_count()} error(s)"
            ) from e
