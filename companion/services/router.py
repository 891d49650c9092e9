"""Provider selection and failover for a single chat generation."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from .config import SUPPORTED_FREE_PROVIDERS
from .assets import is_data_uri
from .errors import ProviderUnavailableError, UpstreamRejectedError
from .identity import Identity
from .prompts import build_system_instruction, prompt_options_for
from .providers import ImageResult, ProviderFailure, ReplyRequest
from .quota import has_unlimited_access
from .telemetry import ChatEventLogger, preview_text

IMAGE_REQUEST_RE = re.compile(r"show me|draw|image of|picture of|dikhao|banao|tasveer", re.IGNORECASE)
DEFAULT_IMAGE_TEXT = "Tasveer tayyar hai."


class ImageRequestClassifier(Protocol):
    def is_image_request(self, text: str) -> bool: ...


class KeywordImageClassifier:
    def __init__(self, pattern: re.Pattern = IMAGE_REQUEST_RE) -> None:
        self.pattern = pattern

    def is_image_request(self, text: str) -> bool:
        return bool(self.pattern.search(text or ""))


def normalize_provider_order(order: Optional[Iterable[str]]) -> List[str]:
    """Lower-case, drop unknown names and duplicates; empty falls back to the default chain."""
    result: List[str] = []
    for item in order or []:
        name = str(item or "").strip().lower()
        if name in SUPPORTED_FREE_PROVIDERS and name not in result:
            result.append(name)
    return result or list(SUPPORTED_FREE_PROVIDERS)


@dataclass
class GenerationRequest:
    identity: Identity
    mode: str
    text: str
    history: Sequence = ()
    voice_mode: bool = False
    memory_lines: Sequence[str] = ()
    message_count: int = 0


@dataclass
class GenerationResult:
    text: str
    provider: str
    image_url: str = ""
    failures: List[ProviderFailure] = field(default_factory=list)


class ProviderFailoverRouter:
    def __init__(
        self,
        free_providers: Dict[str, object],
        premium_provider,
        provider_order: Optional[Iterable[str]] = None,
        classifier: Optional[ImageRequestClassifier] = None,
        asset_store=None,
    ) -> None:
        self.free_providers = free_providers
        self.premium_provider = premium_provider
        self.provider_order = normalize_provider_order(provider_order)
        self.classifier = classifier or KeywordImageClassifier()
        self.asset_store = asset_store

    def is_image_request(self, text: str) -> bool:
        return self.classifier.is_image_request(text)

    def _reply_request(self, provider: str, request: GenerationRequest, context: Optional[dict] = None) -> ReplyRequest:
        options = prompt_options_for(
            provider,
            request.identity,
            voice_mode=request.voice_mode,
            memory_lines=request.memory_lines,
            extra_limits=[f"provider_chain={'->'.join(self.provider_order)}"] if context is not None else (),
        )
        history = list(request.history)[-options.history_window:]
        prompt = build_system_instruction(
            request.identity,
            request.mode,
            options,
            history=history,
            current_input=request.text,
            message_count=request.message_count,
        )
        return ReplyRequest(
            system_prompt=prompt,
            user_message=request.text,
            max_tokens=options.max_tokens,
            history=history,
            context=context or {},
        )

    async def generate(self, request: GenerationRequest, log: Optional[ChatEventLogger] = None) -> GenerationResult:
        log = log or ChatEventLogger(scope="router")
        unlimited = has_unlimited_access(request.identity)
        image_requested = self.is_image_request(request.text)

        if unlimited and image_requested:
            return await self._generate_image(request, log)

        if unlimited or request.voice_mode:
            if image_requested:
                log.event("image_request_redirected_to_chat", reason="image_reserved_for_unlimited")
            return await self._generate_premium(request, log)

        if image_requested:
            log.event("image_request_redirected_to_chat", reason="free_provider_no_image_generation")
        return await self._generate_free(request, log)

    async def generate_free(self, request: GenerationRequest, log: Optional[ChatEventLogger] = None) -> GenerationResult:
        """Run the free provider chain only, regardless of tier."""
        return await self._generate_free(request, log or ChatEventLogger(scope="router"))

    async def _generate_premium(self, request: GenerationRequest, log: ChatEventLogger) -> GenerationResult:
        provider = self.premium_provider.name
        log.event(
            "chat_generation_started",
            provider=provider,
            historyCount=len(request.history),
            memoryCount=len(request.memory_lines),
            voiceMode=request.voice_mode,
        )
        result = await self.premium_provider.generate_reply(self._reply_request(provider, request))
        if isinstance(result, ProviderFailure):
            log.warn_event("provider_attempt_failed", **result.to_dict())
            if result.status_code == 400:
                raise UpstreamRejectedError(result.message, details={"provider": provider})
            raise ProviderUnavailableError([result], provider=provider)

        log.event(
            "chat_generation_completed",
            provider=provider,
            assistantTextLength=len(result.text),
            assistantPreview=preview_text(result.text),
        )
        return GenerationResult(result.text, provider)

    async def _generate_free(self, request: GenerationRequest, log: ChatEventLogger) -> GenerationResult:
        failures: List[ProviderFailure] = []
        for name in self.provider_order:
            provider = self.free_providers.get(name)
            if provider is None:
                failures.append(ProviderFailure(name, 503, "not_registered", f"{name} provider is not registered."))
                continue

            log.event(
                "chat_generation_started",
                provider=name,
                historyCount=len(request.history),
                memoryCount=0,
                voiceMode=False,
            )
            context = None
            if name == "external":
                context = {
                    "mode": request.mode,
                    "tier": request.identity.tier,
                    "voiceMode": request.voice_mode,
                    "providerChain": self.provider_order,
                }
            result = await provider.generate_reply(self._reply_request(name, request, context))

            if isinstance(result, ProviderFailure):
                failures.append(result)
                log.warn_event("provider_attempt_failed", **result.to_dict())
                if result.status_code == 400:
                    raise UpstreamRejectedError(
                        result.message,
                        details={"provider": name, "failures": [f.to_dict() for f in failures]},
                    )
                continue

            log.event(
                "chat_generation_completed",
                provider=name,
                assistantTextLength=len(result.text),
                assistantPreview=preview_text(result.text),
                failedProviders=[f.provider for f in failures],
            )
            return GenerationResult(result.text, name, failures=failures)

        log.error_event("all_providers_failed", failures=[f.to_dict() for f in failures])
        raise ProviderUnavailableError(failures, provider="free_provider_router")

    async def _generate_image(self, request: GenerationRequest, log: ChatEventLogger) -> GenerationResult:
        provider = self.premium_provider.name
        log.event("image_generation_started", promptPreview=preview_text(request.text))
        result = await self.premium_provider.generate_image(request.text)
        if isinstance(result, ProviderFailure):
            log.error_event("image_generation_failed", **result.to_dict())
            if result.status_code == 400:
                raise UpstreamRejectedError(result.message, details={"provider": provider})
            raise ProviderUnavailableError([result], provider=provider)

        image: ImageResult = result
        text = image.caption or DEFAULT_IMAGE_TEXT
        image_url = image.image_url
        log.event("image_generation_completed", hasImageData=bool(image_url), assistantTextLength=len(text))

        if is_data_uri(image_url) and self.asset_store is not None and self.asset_store.configured:
            owner_id = request.identity.owner_id
            log.event("image_upload_started", provider="imagekit")
            uploaded = await self.asset_store.upload_data_uri(
                image_url,
                file_name=f"chat-image-{owner_id}-{int(time.time() * 1000)}",
                folder=f"{self.asset_store.folder.rstrip('/')}/users/{owner_id}/chat-images",
                tags=["chat-image", owner_id, request.mode],
            )
            image_url = uploaded.url
            log.event("image_upload_completed", imageUrlPreview=preview_text(image_url))

        return GenerationResult(text, provider, image_url=image_url)
