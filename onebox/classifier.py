"""Classification and embedding client for an OpenAI-compatible HTTP API."""

from __future__ import annotations

import json
from typing import Any, Protocol

import httpx
import structlog
from pydantic import ValidationError

from .config import ClassifierConfig
from .errors import ClassificationError, RateLimitedError
from .models import MIN_CONFIDENCE, EnrichmentResult

logger = structlog.get_logger()

SYSTEM_PROMPT = (
    "You are an expert email classifier with high accuracy. Analyze emails carefully "
    "and categorize them precisely based on sender intent and content context."
)

_CATEGORY_GUIDE = """\
Categories:
- Interested: positive responses, inquiries, requests for more information, expressions of interest
- Meeting Booked: calendar invites, meeting confirmations, scheduling requests, appointment bookings
- Not Interested: rejections, unsubscribes, negative responses, "not at this time" messages
- Spam: promotional content, suspicious emails, mass marketing, phishing attempts
- Out of Office: auto-replies, vacation messages, away notifications, automated responses"""

_RESPONSE_FORMAT = """\
Respond with only a JSON object in this exact format:
{"category": "category_name", "confidence": 0.95, "reasoning": "Brief explanation"}"""


def build_prompt(text: str) -> str:
    return (
        "Analyze this email and categorize it into one of these categories.\n\n"
        f"{_CATEGORY_GUIDE}\n\n"
        f"Email to analyze:\n{text}\n\n"
        "Provide a confidence score between 0.1 and 1.0 and brief reasoning.\n\n"
        f"{_RESPONSE_FORMAT}"
    )


def parse_classification(content: str) -> EnrichmentResult:
    """Turn the model's reply into an :class:`EnrichmentResult`.

    Tolerates a surrounding Markdown code fence.  Unknown labels and
    malformed JSON raise :class:`ClassificationError`.
    """
    body = content.strip()
    if body.startswith("```"):
        body = body.strip("`")
        body = body.removeprefix("json").strip()
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ClassificationError(f"response is not JSON: {content[:200]!r}") from exc
    if not isinstance(parsed, dict):
        raise ClassificationError("response is not a JSON object")

    try:
        return EnrichmentResult.model_validate(
            {
                "label": parsed.get("category") or parsed.get("label"),
                "confidence": parsed.get("confidence", MIN_CONFIDENCE),
                "reasoning": parsed.get("reasoning"),
            }
        )
    except (ValidationError, TypeError, ValueError) as exc:
        raise ClassificationError(f"unusable classification: {exc}") from exc


class Classifier(Protocol):
    async def classify(self, text: str) -> EnrichmentResult: ...


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


class Completer(Protocol):
    async def complete(
        self,
        system: str,
        prompt: str,
        *,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> str: ...


class ModelClient(Classifier, Embedder, Completer, Protocol):
    """Everything the service asks of the model API."""


class ClassifierClient:
    """Talks to ``/chat/completions`` and ``/embeddings``.

    HTTP 429 surfaces as :class:`RateLimitedError` so callers can apply a
    cooldown; every other failure is a plain :class:`ClassificationError`.
    """

    def __init__(self, config: ClassifierConfig) -> None:
        self._config = config
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        headers = {"Content-Type": "application/json"}
        api_key = self._config.api_key.get_secret_value()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=self._config.base_url.rstrip("/"),
            timeout=httpx.Timeout(self._config.timeout_seconds),
            headers=headers,
        )
        logger.info("classifier_client_started", base_url=self._config.base_url, model=self._config.model)

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("classifier_client_stopped")

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def classify(self, text: str) -> EnrichmentResult:
        content = await self.complete(SYSTEM_PROMPT, build_prompt(text), temperature=0.1, max_tokens=200)
        result = parse_classification(content)
        logger.debug("message_classified", label=result.label.value, confidence=result.confidence)
        return result

    async def complete(
        self,
        system: str,
        prompt: str,
        *,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> str:
        """Single-turn chat completion; returns the assistant's text."""
        payload = {
            "model": self._config.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        data = await self._post("/chat/completions", payload)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ClassificationError("completion response has no content") from exc
        if not content:
            raise ClassificationError("completion response is empty")
        return content

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> list[float]:
        data = await self._post(
            "/embeddings",
            {"model": self._config.embedding_model, "input": text},
        )
        try:
            return [float(v) for v in data["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ClassificationError("embedding response is malformed") from exc

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        if self._client is None:
            raise AssertionError("Client not started")
        try:
            response = await self._client.post(path, json=payload)
        except httpx.HTTPError as exc:
            raise ClassificationError(f"request failed: {exc}") from exc

        if response.status_code == 429:
            raise RateLimitedError(retry_after=_retry_after(response))
        if response.is_error:
            raise ClassificationError(
                f"{path} returned HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ClassificationError(f"{path} returned a non-JSON body") from exc


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None

