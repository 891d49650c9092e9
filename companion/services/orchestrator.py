"""Chat message flow: validation, quota, persistence, generation and usage."""

from __future__ import annotations

import asyncio
import enum
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .config import DEFAULT_MODE, VALID_MODES, Settings
from .conversation import ASSISTANT, USER, ConversationStore, Turn
from .errors import AuthRequirementError, QuotaExceededError, ValidationError
from .identity import Identity
from .ledger import UsageLedger, utc_date_key
from .memory import MemoryAugmenter
from .quota import QuotaProfile, has_unlimited_access, resolve_quota_profile
from .router import GenerationRequest, ProviderFailoverRouter
from .store import StorageBackend
from .telemetry import ChatEventLogger, error_payload, preview_text

CONTEXT_HISTORY_LIMIT = 12
MIN_VOICE_SECONDS = 1
MAX_VOICE_SECONDS = 600


class FlowState(str, enum.Enum):
    VALIDATING = "validating"
    QUOTA_CHECKING = "quota_checking"
    PERSISTING_USER_TURN = "persisting_user_turn"
    BUILDING_CONTEXT = "building_context"
    GENERATING = "generating"
    PERSISTING_ASSISTANT_TURN = "persisting_assistant_turn"
    COMMITTING_USAGE = "committing_usage"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SendResult:
    user_turn: Turn
    assistant_turn: Turn
    usage: Dict[str, Any]
    mode: str
    provider: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userMessage": self.user_turn.to_dict(),
            "assistantMessage": self.assistant_turn.to_dict(),
            "usage": self.usage,
            "mode": self.mode,
        }


def resolve_mode(mode: Optional[str], identity: Identity) -> str:
    requested = (mode or "").strip()
    if requested:
        if requested not in VALID_MODES:
            raise ValidationError("Invalid mode.", code="INVALID_MODE", details={"allowedModes": VALID_MODES})
        return requested
    preferred = (identity.preferred_mode or "").strip()
    return preferred if preferred in VALID_MODES else DEFAULT_MODE


def usage_summary(profile: QuotaProfile, message_count: int) -> Dict[str, Any]:
    usage: Dict[str, Any] = {
        "messageCount": message_count,
        "maxFreeMessages": profile.ceiling,
        "modeLimit": profile.ceiling,
        "limitType": profile.category,
        "isPremium": profile.is_premium,
        "isHost": profile.is_host,
    }
    if profile.is_limited:
        usage["remainingMessages"] = max(0, (profile.ceiling or 0) - message_count)
    return usage


class ChatOrchestrator:
    def __init__(
        self,
        settings: Settings,
        store: StorageBackend,
        conversation: ConversationStore,
        router: ProviderFailoverRouter,
        memory: Optional[MemoryAugmenter] = None,
        ledger: Optional[UsageLedger] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.conversation = conversation
        self.router = router
        self.memory = memory
        self.ledger = ledger or UsageLedger(store)

    @property
    def vector_memory_enabled(self) -> bool:
        return self.memory is not None and self.memory.enabled

    def _voice_duration(self, value: Any) -> int:
        if value is None or value == "":
            return self.settings.DEFAULT_VOICE_MESSAGE_SECONDS
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            parsed = math.nan
        seconds = math.floor(parsed) if math.isfinite(parsed) else 0
        if not MIN_VOICE_SECONDS <= seconds <= MAX_VOICE_SECONDS:
            raise ValidationError(
                f"Voice duration must be between {MIN_VOICE_SECONDS} and {MAX_VOICE_SECONDS} seconds.",
                code="INVALID_VOICE_DURATION",
            )
        return seconds

    async def send_message(
        self,
        identity: Identity,
        text: str,
        mode: Optional[str] = None,
        voice_mode: bool = False,
        voice_duration_seconds: Optional[float] = None,
        request_id: str = "",
    ) -> SendResult:
        started = time.monotonic()
        state = FlowState.VALIDATING
        safe_text = (text or "").strip()
        voice_mode = bool(voice_mode)
        profile = resolve_quota_profile(identity, self.settings)
        log = ChatEventLogger(
            request_id=request_id,
            owner_id=identity.owner_id,
            mode=(mode or "").strip(),
            scope="orchestrator.send_message",
            verbose=self.settings.CHAT_DEBUG_LOGS,
        )
        log.event(
            "validation_started",
            textLength=len(safe_text),
            textPreview=preview_text(safe_text),
            voiceMode=voice_mode,
            limitType=profile.category,
        )

        try:
            if not safe_text:
                raise ValidationError("Message text is required.", code="EMPTY_MESSAGE")
            if len(safe_text) > self.settings.MAX_MESSAGE_LENGTH:
                raise ValidationError(
                    "Message is too long.",
                    code="MESSAGE_TOO_LONG",
                    details={"maxLength": self.settings.MAX_MESSAGE_LENGTH},
                )
            safe_mode = resolve_mode(mode, identity)
            log = log.bind(mode=safe_mode)
            if voice_mode and not identity.is_authenticated:
                raise AuthRequirementError("Voice is available only after login.", code="VOICE_LOGIN_REQUIRED")
            voice_seconds = self._voice_duration(voice_duration_seconds) if voice_mode else 0

            state = FlowState.QUOTA_CHECKING
            message_count = await self.ledger.get_mode_count(identity, safe_mode)
            if profile.is_limited and message_count >= (profile.ceiling or 0):
                raise QuotaExceededError(
                    "Message limit reached for this mode. Upgrade to continue unlimited chat.",
                    code="MODE_LIMIT_REACHED",
                    details={
                        "mode": safe_mode,
                        "modeLimit": profile.ceiling,
                        "messageCount": message_count,
                        "remainingMessages": 0,
                        "limitType": profile.category,
                    },
                )

            date_key = utc_date_key()
            applies_voice_cap = identity.is_authenticated and profile.category == "free" and voice_mode
            voice_used = await self.ledger.get_voice_seconds_used(identity, date_key) if applies_voice_cap else 0
            cap = self.settings.FREE_DAILY_VOICE_SECONDS
            if applies_voice_cap and voice_used + voice_seconds > cap:
                raise QuotaExceededError(
                    "Daily voice limit reached for free users.",
                    code="DAILY_VOICE_LIMIT_REACHED",
                    details={
                        "dailyLimitSeconds": cap,
                        "secondsUsed": voice_used,
                        "remainingVoiceSeconds": max(0, cap - voice_used),
                        "requestedVoiceSeconds": voice_seconds,
                        "limitType": profile.category,
                    },
                )

            unlimited = has_unlimited_access(identity)
            remember = unlimited and self.vector_memory_enabled
            log.event(
                "validation_passed",
                limitType=profile.category,
                modeMessageCount=message_count,
                modeLimit=profile.ceiling,
                dailyVoiceSecondsUsed=voice_used,
                vectorMemoryEnabled=self.vector_memory_enabled,
            )

            state = FlowState.PERSISTING_USER_TURN
            user_turn = await self.conversation.append(identity, safe_mode, USER, safe_text, with_vector=remember)
            log.event("user_message_saved", messageId=user_turn.id, role=USER)

            message_count = await self.ledger.increment_mode_count(identity, safe_mode)
            total_messages = message_count
            if identity.is_authenticated:
                total_messages = await self.store.increment_account_messages(identity.key)
                if applies_voice_cap:
                    voice_used = await self.ledger.add_voice_seconds(identity, date_key, voice_seconds)

            state = FlowState.BUILDING_CONTEXT
            history = await self.conversation.recent_history(identity, safe_mode, CONTEXT_HISTORY_LIMIT)
            history = [turn for turn in history if turn.id != user_turn.id]
            memory_lines = []
            if unlimited and self.memory is not None:
                memory_lines = await self.memory.augment(identity, safe_mode, safe_text, unlimited)
            log.event(
                "context_built",
                historyCount=len(history),
                memoryCount=len(memory_lines),
                imageRequested=self.router.is_image_request(safe_text),
                hasUnlimitedAccess=unlimited,
            )

            state = FlowState.GENERATING
            result = await self.router.generate(
                GenerationRequest(
                    identity=identity,
                    mode=safe_mode,
                    text=safe_text,
                    history=history,
                    voice_mode=voice_mode,
                    memory_lines=memory_lines,
                    message_count=total_messages,
                ),
                log,
            )

            state = FlowState.PERSISTING_ASSISTANT_TURN
            assistant_turn = await self.conversation.append(
                identity, safe_mode, ASSISTANT, result.text, image_url=result.image_url, with_vector=remember
            )
            log.event(
                "assistant_message_saved",
                messageId=assistant_turn.id,
                role=ASSISTANT,
                hasImageUrl=bool(result.image_url),
            )

            state = FlowState.COMMITTING_USAGE
            # Upserts complete before the reply is returned, so index latency adds to the response time.
            if remember:
                await self._remember(identity, safe_mode, user_turn, assistant_turn, log)

            usage = usage_summary(profile, message_count)
            state = FlowState.DONE
            log.event(
                "message_flow_completed",
                durationMs=int((time.monotonic() - started) * 1000),
                provider=result.provider,
                usage=usage,
            )
            return SendResult(user_turn, assistant_turn, usage, safe_mode, result.provider)
        except Exception as exc:
            payload = error_payload(exc)
            failures = getattr(exc, "failures", None)
            if failures:
                payload["failures"] = [f.to_dict() for f in failures]
            log.error_event(
                "message_flow_failed",
                state=FlowState.FAILED.value,
                failedAt=state.value,
                durationMs=int((time.monotonic() - started) * 1000),
                **payload,
            )
            raise

    async def _remember(
        self,
        identity: Identity,
        mode: str,
        user_turn: Turn,
        assistant_turn: Turn,
        log: ChatEventLogger,
    ) -> None:
        results = await asyncio.gather(
            self.memory.remember(identity, mode, user_turn.id, user_turn.text, user_turn.vector_id),
            self.memory.remember(identity, mode, assistant_turn.id, assistant_turn.text, assistant_turn.vector_id),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        if errors:
            log.warn_event("vector_memory_upsert_failed", **error_payload(errors[0]))
            return
        log.event(
            "vector_memory_upserted",
            userMessageId=user_turn.id,
            assistantMessageId=assistant_turn.id,
            upserted=sum(1 for r in results if r is True),
        )

    async def get_history(self, identity: Identity, mode: Optional[str] = None, limit: int = 40) -> Dict[str, Any]:
        safe_mode = resolve_mode(mode, identity)
        turns = await self.conversation.recent_history(identity, safe_mode, limit)
        return {"mode": safe_mode, "messages": [turn.to_dict() for turn in turns]}

    async def clear_history(self, identity: Identity, mode: Optional[str] = None) -> Dict[str, Any]:
        safe_mode = resolve_mode(mode, identity)
        deleted = await self.conversation.delete_all(identity, safe_mode)
        return {"mode": safe_mode, "deletedCount": deleted}
