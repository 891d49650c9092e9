"""HTTP clients for the chat, image and embedding providers.

Every client call returns a value: `ProviderReply` (or `ImageResult`,
or a list of floats for embeddings) on success and `ProviderFailure`
otherwise. HTTP errors, timeouts and rate limits are normalised here so
the router can fail over without relying on exceptions.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import httpx

from .config import Settings

logger = logging.getLogger(__name__)

DEFAULT_RETRY_SECONDS = 60.0
DEFAULT_IMAGE_CAPTION = "Tumhari khwahish ko maine tasveer de di hai."
EXTERNAL_HISTORY_LIMIT = 10


@dataclass
class ProviderReply:
    text: str
    provider: str


@dataclass
class ProviderFailure:
    provider: str
    status_code: int
    reason: str
    message: str
    retry_after_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "statusCode": self.status_code,
            "reason": self.reason,
            "message": self.message,
        }


@dataclass
class ImageResult:
    caption: str
    image_url: str
    provider: str = "gemini"


@dataclass
class ReplyRequest:
    system_prompt: str
    user_message: str
    max_tokens: int
    history: Sequence[Any] = ()
    context: Dict[str, Any] = field(default_factory=dict)


class BackoffState:
    """Per-provider cool-down deadlines after a 429."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._until: Dict[str, float] = {}

    def pause(self, provider: str, seconds: float) -> None:
        self._until[provider] = self._clock() + max(0.0, float(seconds))

    def remaining(self, provider: str) -> float:
        return max(0.0, self._until.get(provider, 0.0) - self._clock())

    def is_paused(self, provider: str) -> bool:
        return self.remaining(provider) > 0


def _positive_seconds(value: Any) -> Optional[float]:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None


def parse_retry_after(payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> float:
    """Seconds to wait before calling a rate-limited provider again."""
    headers = headers or {}
    for candidate in (headers.get("retry-after"), payload.get("retry_after")):
        seconds = _positive_seconds(candidate)
        if seconds:
            return seconds

    error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
    for item in error.get("details") or []:
        if isinstance(item, dict) and item.get("@type", "").endswith("google.rpc.RetryInfo"):
            match = re.match(r"^([\d.]+)s$", str(item.get("retryDelay", "")), re.IGNORECASE)
            if match and _positive_seconds(match.group(1)):
                return float(match.group(1))

    match = re.search(r"retry.*?([\d.]+)\s*s", str(error.get("message", "")), re.IGNORECASE)
    if match and _positive_seconds(match.group(1)):
        return float(match.group(1))
    return DEFAULT_RETRY_SECONDS


def _read_json(resp: Any) -> Dict[str, Any]:
    try:
        payload = resp.json()
    except ValueError:
        return {"raw": getattr(resp, "text", "")}
    return payload if isinstance(payload, dict) else {"data": payload}


def _upstream_message(payload: Dict[str, Any]) -> str:
    error = payload.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or "upstream_error")
    if isinstance(error, str):
        return error
    return str(payload.get("message") or "upstream_error")


def openai_messages(system_prompt: str, history: Sequence[Any], user_message: str) -> List[Dict[str, str]]:
    messages = [{"role": "system", "content": system_prompt}]
    for turn in history:
        text = (turn.text or "").strip()
        if text:
            messages.append({"role": "assistant" if turn.role == "assistant" else "user", "content": text})
    messages.append({"role": "user", "content": user_message})
    return messages


def openai_reply_text(payload: Dict[str, Any]) -> str:
    content = (payload.get("choices") or [{}])[0].get("message", {}).get("content", "")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts = [part if isinstance(part, str) else str(part.get("text", "")).strip() for part in content]
        return "\n".join(p for p in parts if p).strip()
    return ""


class HttpProvider:
    """Shared request handling: backoff, timeouts and error normalisation."""

    name = "provider"

    def __init__(self, timeout: float, backoff: Optional[BackoffState] = None) -> None:
        self.timeout = timeout
        self.backoff = backoff or BackoffState()

    @property
    def configured(self) -> bool:
        return True

    def failure(self, status_code: int, reason: str, message: str, retry_after: Optional[float] = None) -> ProviderFailure:
        return ProviderFailure(self.name, status_code, reason, message, retry_after)

    async def post_json(
        self,
        url: str,
        body: Dict[str, Any],
        headers: Dict[str, str],
        timeout: Optional[float] = None,
    ) -> Union[Dict[str, Any], ProviderFailure]:
        if self.backoff.is_paused(self.name):
            remaining = self.backoff.remaining(self.name)
            return self.failure(
                429,
                "rate_limited",
                f"{self.name} temporarily paused due to previous rate limit.",
                remaining,
            )

        try:
            async with httpx.AsyncClient(timeout=timeout or self.timeout) as client:
                resp = await client.post(url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("%s request timed out: %s", self.name, exc)
            return self.failure(504, "timeout", f"{self.name} request timed out.")
        except httpx.HTTPError as exc:
            logger.warning("%s request failed: %s", self.name, exc)
            return self.failure(503, "request_failed", str(exc) or "request_failed")

        payload = _read_json(resp)
        if resp.status_code == 429:
            retry_after = parse_retry_after(payload, dict(getattr(resp, "headers", {}) or {}))
            self.backoff.pause(self.name, retry_after)
            return self.failure(429, "rate_limited", f"{self.name} rate limit reached.", retry_after)
        if resp.status_code >= 400:
            return self.failure(resp.status_code, "upstream_non_ok", _upstream_message(payload))
        return payload


class GroqProvider(HttpProvider):
    name = "groq"

    def __init__(self, settings: Settings, backoff: Optional[BackoffState] = None) -> None:
        super().__init__(settings.PROVIDER_TIMEOUT_SECONDS, backoff)
        self.api_key = settings.GROQ_API_KEY
        self.base_url = settings.GROQ_API_BASE_URL.rstrip("/")
        self.model = settings.GROQ_CHAT_MODEL

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.base_url)

    async def generate_reply(self, request: ReplyRequest) -> Union[ProviderReply, ProviderFailure]:
        if not self.api_key:
            return self.failure(503, "missing_api_key", "Groq API key is not configured.")
        if not self.base_url:
            return self.failure(503, "missing_base_url", "Groq base URL is not configured.")

        payload = await self.post_json(
            f"{self.base_url}/chat/completions",
            {
                "model": self.model,
                "messages": openai_messages(request.system_prompt, request.history, request.user_message),
                "temperature": 0.85,
                "max_tokens": request.max_tokens,
            },
            {"Authorization": f"Bearer {self.api_key}"},
        )
        if isinstance(payload, ProviderFailure):
            return payload
        text = openai_reply_text(payload)
        if not text:
            return self.failure(503, "empty_reply", "Groq returned an empty reply.")
        return ProviderReply(text, self.name)


class ExternalProvider(HttpProvider):
    """Hosted companion chat API (`POST /v1/chat`)."""

    name = "external"

    def __init__(self, settings: Settings, backoff: Optional[BackoffState] = None) -> None:
        super().__init__(settings.PROVIDER_TIMEOUT_SECONDS, backoff)
        self.base_url = settings.EXTERNAL_API_BASE_URL.rstrip("/")
        self.api_key = settings.EXTERNAL_API_KEY
        self.client_secret = settings.EXTERNAL_CLIENT_SECRET

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key and self.client_secret)

    async def generate_reply(self, request: ReplyRequest) -> Union[ProviderReply, ProviderFailure]:
        if not self.configured:
            return self.failure(503, "missing_credentials", "External chat API is not configured.")

        history = [
            {"role": "assistant" if turn.role == "assistant" else "user", "content": turn.text.strip()}
            for turn in list(request.history)[-EXTERNAL_HISTORY_LIMIT:]
            if (turn.text or "").strip()
        ]
        body: Dict[str, Any] = {
            "message": request.user_message,
            "history": history,
            "context": request.context,
        }
        if request.system_prompt.strip():
            body["systemPrompt"] = request.system_prompt.strip()

        payload = await self.post_json(
            f"{self.base_url}/v1/chat",
            body,
            {"x-api-key": self.api_key, "x-client-secret": self.client_secret},
        )
        if isinstance(payload, ProviderFailure):
            return payload
        text = str(payload.get("reply") or payload.get("message") or payload.get("text") or "").strip()
        if not text:
            return self.failure(503, "empty_reply", "External chat API returned an empty reply.")
        return ProviderReply(text, self.name)


def _gemini_text(payload: Dict[str, Any]) -> str:
    parts = ((payload.get("candidates") or [{}])[0].get("content") or {}).get("parts") or []
    return "\n".join(str(part.get("text", "")) for part in parts).strip()


class GeminiProvider(HttpProvider):
    """Premium text replies, image synthesis and embeddings."""

    name = "gemini"

    def __init__(self, settings: Settings, backoff: Optional[BackoffState] = None) -> None:
        super().__init__(settings.PROVIDER_TIMEOUT_SECONDS, backoff)
        self.api_key = settings.GEMINI_API_KEY
        self.base_url = settings.GEMINI_BASE_URL.rstrip("/")
        self.chat_model = settings.GEMINI_CHAT_MODEL
        self.image_model = settings.GEMINI_IMAGE_MODEL
        self.embed_model = settings.GEMINI_EMBED_MODEL
        self.image_timeout = settings.IMAGE_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _call(
        self, model: str, action: str, body: Dict[str, Any], timeout: Optional[float] = None
    ) -> Union[Dict[str, Any], ProviderFailure]:
        if not self.api_key:
            return self.failure(503, "missing_api_key", "Gemini API key is not configured on server.")
        return await self.post_json(
            f"{self.base_url}/{model}:{action}",
            body,
            {"x-goog-api-key": self.api_key},
            timeout=timeout,
        )

    async def generate_reply(self, request: ReplyRequest) -> Union[ProviderReply, ProviderFailure]:
        contents = [
            {"role": "model" if turn.role == "assistant" else "user", "parts": [{"text": turn.text.strip()}]}
            for turn in request.history
            if (turn.text or "").strip()
        ]
        contents.append({"role": "user", "parts": [{"text": request.user_message}]})
        payload = await self._call(
            self.chat_model,
            "generateContent",
            {
                "systemInstruction": {"parts": [{"text": request.system_prompt}]},
                "contents": contents,
                "generationConfig": {"temperature": 0.9, "topP": 0.95, "maxOutputTokens": request.max_tokens},
            },
        )
        if isinstance(payload, ProviderFailure):
            return payload
        text = _gemini_text(payload)
        if not text:
            return self.failure(503, "empty_reply", "Gemini returned an empty reply.")
        return ProviderReply(text, self.name)

    async def generate_image(self, prompt: str) -> Union[ImageResult, ProviderFailure]:
        payload = await self._call(
            self.image_model,
            "generateContent",
            {
                "contents": [
                    {
                        "role": "user",
                        "parts": [{"text": f"Create a single cinematic image with mysterious poetic tone. Prompt: {prompt}"}],
                    }
                ]
            },
            timeout=self.image_timeout,
        )
        if isinstance(payload, ProviderFailure):
            return payload

        caption = []
        image_url = ""
        parts = ((payload.get("candidates") or [{}])[0].get("content") or {}).get("parts") or []
        for part in parts:
            if part.get("text"):
                caption.append(part["text"])
            inline = part.get("inlineData") or {}
            if inline.get("data") and inline.get("mimeType"):
                image_url = f"data:{inline['mimeType']};base64,{inline['data']}"
        return ImageResult("\n".join(caption).strip() or DEFAULT_IMAGE_CAPTION, image_url, self.name)

    async def embed(self, text: str) -> Union[List[float], ProviderFailure]:
        payload = await self._call(self.embed_model, "embedContent", {"content": {"parts": [{"text": text or ""}]}})
        if isinstance(payload, ProviderFailure):
            return payload
        values = (payload.get("embedding") or {}).get("values") or []
        if not values:
            return self.failure(503, "empty_embedding", "Gemini returned an empty embedding.")
        return [float(v) for v in values]
