import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[2]))
import httpx
import pytest

from companion.services import providers
from companion.services.config import Settings
from companion.services.conversation import Turn
from companion.services.openrouter import OpenRouterProvider
from companion.services.providers import (
    BackoffState,
    ExternalProvider,
    GeminiProvider,
    GroqProvider,
    ImageResult,
    ProviderFailure,
    ProviderReply,
    ReplyRequest,
    parse_retry_after,
)


class DummyResponse:
    def __init__(self, status_code=200, payload=None, headers=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.headers = headers or {}
        self.text = ""

    def json(self):
        return self._payload


class DummyClient:
    """Stands in for httpx.AsyncClient; replays queued responses."""

    responses = []
    calls = []

    def __init__(self, *args, **kwargs):
        self.timeout = kwargs.get("timeout")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        pass

    async def post(self, url, json=None, headers=None, **kwargs):
        DummyClient.calls.append({"url": url, "json": json, "headers": headers, "timeout": self.timeout})
        response = DummyClient.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture(autouse=True)
def dummy_client(monkeypatch):
    DummyClient.responses = []
    DummyClient.calls = []
    monkeypatch.setattr(providers.httpx, "AsyncClient", DummyClient)
    return DummyClient


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def settings(**overrides):
    values = {
        "GROQ_API_KEY": "groq-key",
        "OPENROUTER_API_KEY": "or-key",
        "EXTERNAL_API_BASE_URL": "https://companion.example/",
        "EXTERNAL_API_KEY": "ext-key",
        "EXTERNAL_CLIENT_SECRET": "ext-secret",
        "GEMINI_API_KEY": "gem-key",
        "PROVIDER_TIMEOUT_SECONDS": 7,
    }
    values.update(overrides)
    return Settings(**values)


def request(**overrides):
    fields = {
        "system_prompt": "be kind",
        "user_message": "hi",
        "max_tokens": 96,
        "history": [Turn("1", "user", "earlier", 0), Turn("2", "assistant", "reply", 0)],
    }
    fields.update(overrides)
    return ReplyRequest(**fields)


def completion(text):
    return DummyResponse(200, {"choices": [{"message": {"content": text}}]})


@pytest.mark.asyncio
async def test_groq_success_sends_history_and_budget(dummy_client):
    dummy_client.responses = [completion(" Hello ")]
    result = await GroqProvider(settings()).generate_reply(request())

    assert result == ProviderReply("Hello", "groq")
    call = dummy_client.calls[0]
    assert call["url"].endswith("/chat/completions")
    assert call["headers"]["Authorization"] == "Bearer groq-key"
    assert call["json"]["max_tokens"] == 96
    assert call["timeout"] == 7
    roles = [m["role"] for m in call["json"]["messages"]]
    assert roles == ["system", "user", "assistant", "user"]


@pytest.mark.asyncio
async def test_missing_key_fails_without_network(dummy_client):
    result = await GroqProvider(settings(GROQ_API_KEY="")).generate_reply(request())
    assert isinstance(result, ProviderFailure)
    assert (result.status_code, result.reason) == (503, "missing_api_key")
    assert dummy_client.calls == []


@pytest.mark.asyncio
async def test_rate_limit_pauses_only_that_provider(dummy_client):
    clock = FakeClock()
    backoff = BackoffState(clock=clock)
    groq = GroqProvider(settings(), backoff)
    openrouter = OpenRouterProvider(settings(), backoff)
    dummy_client.responses = [
        DummyResponse(429, {"error": {"message": "Please retry in 12.5s"}}),
        completion("from openrouter"),
    ]

    first = await groq.generate_reply(request())
    assert (first.status_code, first.reason, first.retry_after_seconds) == (429, "rate_limited", 12.5)

    second = await groq.generate_reply(request())
    assert second.status_code == 429
    assert len(dummy_client.calls) == 1

    other = await openrouter.generate_reply(request())
    assert other == ProviderReply("from openrouter", "openrouter")

    clock.now += 13
    assert not backoff.is_paused("groq")


@pytest.mark.asyncio
async def test_timeout_is_a_retryable_failure(dummy_client):
    dummy_client.responses = [httpx.ReadTimeout("slow")]
    result = await GroqProvider(settings()).generate_reply(request())
    assert (result.status_code, result.reason) == (504, "timeout")


@pytest.mark.asyncio
async def test_transport_error_is_request_failed(dummy_client):
    dummy_client.responses = [httpx.ConnectError("refused")]
    result = await OpenRouterProvider(settings()).generate_reply(request())
    assert (result.status_code, result.reason) == (503, "request_failed")


@pytest.mark.asyncio
async def test_bad_request_keeps_status(dummy_client):
    dummy_client.responses = [DummyResponse(400, {"error": {"message": "bad prompt"}})]
    result = await GroqProvider(settings()).generate_reply(request())
    assert result.status_code == 400
    assert result.message == "bad prompt"
    assert result.to_dict() == {"provider": "groq", "statusCode": 400, "reason": "upstream_non_ok", "message": "bad prompt"}


@pytest.mark.asyncio
async def test_empty_reply_is_a_failure(dummy_client):
    dummy_client.responses = [completion("   ")]
    result = await OpenRouterProvider(settings()).generate_reply(request())
    assert (result.status_code, result.reason) == (503, "empty_reply")


@pytest.mark.asyncio
async def test_openrouter_no_key():
    result = await OpenRouterProvider(settings(OPENROUTER_API_KEY="")).generate_reply(request())
    assert result.message == "OpenRouter API key is not configured."


@pytest.mark.asyncio
async def test_external_provider_payload(dummy_client):
    dummy_client.responses = [DummyResponse(200, {"reply": "namaste"})]
    result = await ExternalProvider(settings()).generate_reply(request(context={"mode": "Chill"}))

    assert result == ProviderReply("namaste", "external")
    call = dummy_client.calls[0]
    assert call["url"] == "https://companion.example/v1/chat"
    assert call["headers"] == {"x-api-key": "ext-key", "x-client-secret": "ext-secret"}
    assert call["json"]["systemPrompt"] == "be kind"
    assert call["json"]["context"] == {"mode": "Chill"}
    assert len(call["json"]["history"]) == 2


@pytest.mark.asyncio
async def test_external_provider_unconfigured():
    result = await ExternalProvider(settings(EXTERNAL_API_KEY="")).generate_reply(request())
    assert result.reason == "missing_credentials"


@pytest.mark.asyncio
async def test_gemini_reply_maps_roles(dummy_client):
    dummy_client.responses = [DummyResponse(200, {"candidates": [{"content": {"parts": [{"text": "premium hi"}]}}]})]
    result = await GeminiProvider(settings()).generate_reply(request(max_tokens=420))

    assert result == ProviderReply("premium hi", "gemini")
    body = dummy_client.calls[0]["json"]
    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
    assert body["generationConfig"]["maxOutputTokens"] == 420
    assert dummy_client.calls[0]["headers"] == {"x-goog-api-key": "gem-key"}


@pytest.mark.asyncio
async def test_gemini_image_returns_data_uri(dummy_client):
    parts = [{"text": "A moonlit lake"}, {"inlineData": {"mimeType": "image/png", "data": "QUJD"}}]
    dummy_client.responses = [DummyResponse(200, {"candidates": [{"content": {"parts": parts}}]})]
    result = await GeminiProvider(settings(IMAGE_TIMEOUT_SECONDS=90)).generate_image("draw a lake")

    assert isinstance(result, ImageResult)
    assert result.caption == "A moonlit lake"
    assert result.image_url == "data:image/png;base64,QUJD"
    assert dummy_client.calls[0]["timeout"] == 90


@pytest.mark.asyncio
async def test_gemini_embed(dummy_client):
    dummy_client.responses = [DummyResponse(200, {"embedding": {"values": [0.1, 0.2]}})]
    assert await GeminiProvider(settings()).embed("text") == [0.1, 0.2]


@pytest.mark.asyncio
async def test_gemini_rate_limit_uses_retry_info(dummy_client):
    payload = {
        "error": {
            "message": "quota",
            "details": [{"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": "30s"}],
        }
    }
    dummy_client.responses = [DummyResponse(429, payload)]
    backoff = BackoffState(clock=FakeClock())
    result = await GeminiProvider(settings(), backoff).generate_reply(request())
    assert result.retry_after_seconds == 30
    assert backoff.remaining("gemini") == 30


def test_parse_retry_after_defaults():
    assert parse_retry_after({}) == 60
    assert parse_retry_after({"retry_after": "5"}) == 5
    assert parse_retry_after({}, {"retry-after": "3"}) == 3
    assert parse_retry_after({"error": {"message": "no hint"}}) == 60
