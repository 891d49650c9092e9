"""Client for the OpenRouter chat completions API."""

from typing import Optional, Union

from .config import Settings
from .providers import (
    BackoffState,
    HttpProvider,
    ProviderFailure,
    ProviderReply,
    ReplyRequest,
    openai_messages,
    openai_reply_text,
)


class OpenRouterProvider(HttpProvider):
    name = "openrouter"

    def __init__(self, settings: Settings, backoff: Optional[BackoffState] = None) -> None:
        super().__init__(settings.PROVIDER_TIMEOUT_SECONDS, backoff)
        self.api_key = settings.OPENROUTER_API_KEY
        self.url = settings.OPENROUTER_URL
        self.model = settings.OPENROUTER_CHAT_MODEL

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def generate_reply(self, request: ReplyRequest) -> Union[ProviderReply, ProviderFailure]:
        """Send the prompt and history to OpenRouter and return the reply text."""

        if not self.api_key:
            return self.failure(503, "missing_api_key", "OpenRouter API key is not configured.")

        data = {
            "model": self.model,
            "messages": openai_messages(request.system_prompt, request.history, request.user_message),
            "max_tokens": request.max_tokens,
        }
        payload = await self.post_json(self.url, data, {"Authorization": f"Bearer {self.api_key}"})
        if isinstance(payload, ProviderFailure):
            return payload

        content = openai_reply_text(payload)
        if not content:
            return self.failure(503, "empty_reply", "OpenRouter returned an empty reply.")
        return ProviderReply(content, self.name)
