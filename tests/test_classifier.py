"""Tests for onebox.classifier."""

from __future__ import annotations

import json

import httpx
import pytest
import respx

from onebox.classifier import ClassifierClient, parse_classification
from onebox.config import ClassifierConfig
from onebox.errors import ClassificationError, RateLimitedError
from onebox.models import Label

BASE_URL = "http://classifier.test/v1"


def _completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


@pytest.fixture
def classifier_config() -> ClassifierConfig:
    return ClassifierConfig(base_url=BASE_URL, api_key="sk-test", model="test-model", timeout_seconds=5.0)


@pytest.fixture
async def client(classifier_config: ClassifierConfig):
    c = ClassifierClient(classifier_config)
    await c.start()
    yield c
    await c.stop()


class TestParseClassification:
    def test_plain_json(self):
        result = parse_classification('{"category": "Meeting Booked", "confidence": 0.8, "reasoning": "invite"}')
        assert result.label == Label.MEETING_BOOKED
        assert result.confidence == 0.8
        assert result.reasoning == "invite"

    def test_code_fence_is_tolerated(self):
        result = parse_classification('```json\n{"category": "Spam", "confidence": 0.6}\n```')
        assert result.label == Label.SPAM

    def test_confidence_is_clamped(self):
        assert parse_classification('{"category": "Spam", "confidence": 3}').confidence == 1.0
        assert parse_classification('{"category": "Spam", "confidence": 0}').confidence == 0.1

    def test_camel_case_label_accepted(self):
        assert parse_classification('{"category": "OutOfOffice", "confidence": 0.5}').label == Label.OUT_OF_OFFICE

    def test_unknown_label_rejected(self):
        with pytest.raises(ClassificationError):
            parse_classification('{"category": "Newsletter", "confidence": 0.5}')

    def test_not_json_rejected(self):
        with pytest.raises(ClassificationError):
            parse_classification("I think this is spam")


class TestClassifierClient:
    @pytest.mark.asyncio
    @respx.mock
    async def test_classify_success(self, client: ClassifierClient):
        route = respx.post(f"{BASE_URL}/chat/completions").respond(
            200,
            json=_completion('{"category": "Interested", "confidence": 0.92, "reasoning": "wants pricing"}'),
        )

        result = await client.classify("From: a@b.com\nSubject: Pricing?\n\nCan you send pricing?")

        assert result.label == Label.INTERESTED
        assert result.confidence == 0.92
        request = route.calls[0].request
        assert request.headers["authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["model"] == "test-model"
        assert "Can you send pricing?" in body["messages"][1]["content"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_rate_limit_is_distinguishable(self, client: ClassifierClient):
        respx.post(f"{BASE_URL}/chat/completions").respond(429, headers={"Retry-After": "7"})

        with pytest.raises(RateLimitedError) as exc_info:
            await client.classify("text")
        assert exc_info.value.retry_after == 7.0

    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error(self, client: ClassifierClient):
        respx.post(f"{BASE_URL}/chat/completions").respond(500, text="boom")

        with pytest.raises(ClassificationError) as exc_info:
            await client.classify("text")
        assert not isinstance(exc_info.value, RateLimitedError)

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_error(self, client: ClassifierClient):
        respx.post(f"{BASE_URL}/chat/completions").mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(ClassificationError):
            await client.classify("text")

    @pytest.mark.asyncio
    @respx.mock
    async def test_empty_completion(self, client: ClassifierClient):
        respx.post(f"{BASE_URL}/chat/completions").respond(200, json={"choices": []})

        with pytest.raises(ClassificationError):
            await client.classify("text")

    @pytest.mark.asyncio
    @respx.mock
    async def test_complete_sends_sampling_settings(self, client: ClassifierClient):
        route = respx.post(f"{BASE_URL}/chat/completions").respond(
            200, json=_completion("Reply: Sure.\nReasoning: Short.")
        )

        content = await client.complete("be brief", "draft a reply", temperature=0.8, max_tokens=300)

        assert content == "Reply: Sure.\nReasoning: Short."
        body = json.loads(route.calls[0].request.content)
        assert body["messages"] == [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "draft a reply"},
        ]
        assert body["temperature"] == 0.8
        assert body["max_tokens"] == 300

    @pytest.mark.asyncio
    @respx.mock
    async def test_blank_completion_rejected(self, client: ClassifierClient):
        respx.post(f"{BASE_URL}/chat/completions").respond(200, json=_completion(""))

        with pytest.raises(ClassificationError):
            await client.complete("system", "prompt")

    @pytest.mark.asyncio
    @respx.mock
    async def test_embed(self, client: ClassifierClient):
        respx.post(f"{BASE_URL}/embeddings").respond(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})

        assert await client.embed("hello") == [0.1, 0.2, 0.3]

    @pytest.mark.asyncio
    async def test_requires_start(self, classifier_config: ClassifierConfig):
        with pytest.raises(AssertionError):
            await ClassifierClient(classifier_config).classify("text")
