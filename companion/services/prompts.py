"""System instruction composition for the chat providers."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from .config import DEFAULT_MODE
from .identity import Identity
from .quota import has_unlimited_access

ASSISTANT_NAME = "Companion"

MODE_INSTRUCTIONS = {
    "Lovely": "Romantic, soft and emotionally warm.",
    "Horror": "Dark whispers, suspenseful but never violent.",
    "Shayari": "Poetic Urdu/Hindi couplets and emotional metaphors.",
    "Chill": "Casual, comforting and playful.",
    "Possessive": "Protective and intense, but respectful boundaries.",
    "Naughty": "Flirty, witty, never explicit sexual content.",
    "Mystic": "Spiritual, mysterious, introspective responses.",
}

NORMAL_TONE_RE = re.compile(
    r"\b(normal|casual|simple|seedha|calm|easy|chill mode|normal mode|casual mode)\b", re.IGNORECASE
)
PLAYFUL_TONE_RE = re.compile(
    r"\b(flirt|flirty|romantic|romance|shayari|poetry|poetic|ishq|pyaar|pyar|love tone|romantic mode)\b",
    re.IGNORECASE,
)

CHILL = "chill"
PLAYFUL_POETIC = "playful_poetic"


@dataclass(frozen=True)
class TokenBudget:
    """History window and output token ceilings for one provider."""

    limited_window: int
    unlimited_window: int
    limited_tokens: int
    unlimited_tokens: int
    limited_voice_tokens: int = 96
    unlimited_voice_tokens: int = 140


PROVIDER_BUDGETS = {
    "groq": TokenBudget(6, 10, 260, 420),
    "openrouter": TokenBudget(6, 10, 260, 420),
    "external": TokenBudget(6, 10, 240, 420),
    "gemini": TokenBudget(5, 10, 240, 420),
}

PROVIDER_LABELS = {
    "groq": "Groq",
    "openrouter": "OpenRouter",
    "external": "External Chat API",
    "gemini": "Gemini",
}


@dataclass
class PromptOptions:
    """Per-provider prompt settings.

    history_window: number of most recent turns sent to the provider.
    max_tokens: output ceiling passed upstream and quoted in the prompt.
    memory_lines: long-term memory lines; only rendered for unlimited callers.
    api_limits_info: free-form metadata line describing provider limits.
    """

    provider_name: str
    history_window: int
    max_tokens: int
    voice_mode: bool = False
    memory_lines: List[str] = field(default_factory=list)
    api_limits_info: str = "n/a"


def prompt_options_for(
    provider: str,
    identity: Identity,
    voice_mode: bool = False,
    memory_lines: Optional[Sequence[str]] = None,
    extra_limits: Iterable[str] = (),
) -> PromptOptions:
    budget = PROVIDER_BUDGETS.get(provider, PROVIDER_BUDGETS["groq"])
    unlimited = has_unlimited_access(identity)
    window = budget.unlimited_window if unlimited else budget.limited_window
    if voice_mode:
        max_tokens = budget.unlimited_voice_tokens if unlimited else budget.limited_voice_tokens
    else:
        max_tokens = budget.unlimited_tokens if unlimited else budget.limited_tokens
    limits = [
        f"history_window={window}",
        f"max_tokens={max_tokens}",
        f"voice_mode={'true' if voice_mode else 'false'}",
        f"provider={provider}",
        *extra_limits,
    ]
    return PromptOptions(
        provider_name=PROVIDER_LABELS.get(provider, provider),
        history_window=window,
        max_tokens=max_tokens,
        voice_mode=voice_mode,
        memory_lines=list(memory_lines or []) if unlimited else [],
        api_limits_info="; ".join(limits),
    )


def _clean(value: Optional[str]) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


def _speaker(role: str) -> str:
    return ASSISTANT_NAME if role == "assistant" else "User"


def resolve_active_tone(mode: str, history: Sequence, current_input: str = "") -> str:
    """Later user messages override earlier ones; Shayari starts playful."""
    tone = PLAYFUL_POETIC if mode == "Shayari" else CHILL
    texts = [_clean(turn.text) for turn in history if turn.role == "user"]
    texts.append(_clean(current_input))
    for text in filter(None, texts):
        if NORMAL_TONE_RE.search(text):
            tone = CHILL
        elif PLAYFUL_TONE_RE.search(text):
            tone = PLAYFUL_POETIC
    return tone


def _tone_guidance(tone: str) -> str:
    if tone == PLAYFUL_POETIC:
        return "Playful-poetic flow active. Keep replies warm, charming, natural, and lightly poetic."
    return "CHILL flow active. Keep replies casual, grounded, and naturally conversational."


def _format_history(history: Sequence) -> str:
    if not history:
        return "- (no recent chat)"
    return "\n".join(f"- {_speaker(turn.role)}: {_clean(turn.text)}" for turn in history)


def _format_memory(lines: Sequence[str]) -> str:
    if not lines:
        return "- (no relevant memory found)"
    return "\n".join(f"- {_clean(line)}" for line in lines)


def build_system_instruction(
    identity: Identity,
    mode: str,
    options: PromptOptions,
    history: Sequence = (),
    current_input: str = "",
    message_count: int = 0,
) -> str:
    safe_mode = mode or identity.preferred_mode or DEFAULT_MODE
    unlimited = has_unlimited_access(identity)
    scoped_history = list(history)[-options.history_window:] if options.history_window > 0 else []
    tone = resolve_active_tone(safe_mode, scoped_history, current_input)
    memory_block = _format_memory(options.memory_lines) if unlimited else "- unavailable for normal users"

    return f"""You are {ASSISTANT_NAME}, an emotionally intelligent AI companion.

Current AI Provider: {options.provider_name}

User Info:
Name: {identity.name or "Soul"}
Role: {"premium_like" if unlimited else "normal"}
Chat Mode: {safe_mode.lower()}
Voice Mode: {"true" if options.voice_mode else "false"}
Active Tone: {tone}
Mode Guidance: {MODE_INSTRUCTIONS.get(safe_mode, MODE_INSTRUCTIONS[DEFAULT_MODE])}
Tone Guidance: {_tone_guidance(tone)}

Basic Profile Memory:
- Preferred mode: {safe_mode}
- Relationship tier: {"Premium" if unlimited else "Normal"}
- Total messages: {int(message_count or 0)}

Recent Conversation (last {len(scoped_history)} messages):
{_format_history(scoped_history)}

Relevant Long-Term Memory (premium only):
{memory_block}

User Message:
{_clean(current_input) or "- (empty input)"}

Provider Rate Limit Metadata: {options.api_limits_info}

Instructions:
- Always respond to the latest user message using both history and this instruction.
- Never ignore history continuity unless the user explicitly asks to reset.
- Mirror user language naturally (Hindi / English / mixed Hinglish).
- Output only final reply text. No analysis, labels, JSON, or meta explanation.
- Default interaction style is CHILL.
- If user asks flirt/romantic/shayari tone, smoothly shift to playful-poetic style.
- If user asks normal/casual mode, reduce intensity and return to CHILL.
- For recall questions, use history facts exactly; do not hallucinate.
- Keep responses short to medium unless emotional depth is clearly needed.
- Respect provider token limits; keep response <= {options.max_tokens} tokens.
- In voice mode, keep responses shorter and natural-sounding.
- No explicit sexual content.
- Do not encourage harmful or illegal actions.
- If user expresses self-harm or violence risk, respond calmly and direct immediate safety support.

End with only the human-facing reply."""
