import logging
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[2]))
import pytest

from companion.services.conversation import Turn
from companion.services.errors import RateLimitedError
from companion.services.identity import guest_identity, registered_identity
from companion.services.prompts import (
    CHILL,
    PLAYFUL_POETIC,
    build_system_instruction,
    prompt_options_for,
    resolve_active_tone,
)
from companion.services.ratelimit import RateLimiter
from companion.services.store import AccountRecord
from companion.services.telemetry import ChatEventLogger, preview_text

GUEST = guest_identity({}, client_host="1.1.1.1")
PREMIUM = registered_identity(AccountRecord(id="p1", name="Mira", tier="Premium"))


def test_prompt_options_budget_by_tier_and_voice():
    free = prompt_options_for("groq", GUEST)
    assert (free.history_window, free.max_tokens) == (6, 260)
    premium = prompt_options_for("groq", PREMIUM)
    assert (premium.history_window, premium.max_tokens) == (10, 420)
    voice = prompt_options_for("gemini", PREMIUM, voice_mode=True)
    assert voice.max_tokens == 140
    assert "voice_mode=true" in voice.api_limits_info


def test_memory_lines_dropped_for_limited_callers():
    options = prompt_options_for("groq", GUEST, memory_lines=["user: secret"])
    assert options.memory_lines == []
    prompt = build_system_instruction(GUEST, "Lovely", options, current_input="hi")
    assert "unavailable for normal users" in prompt


def test_system_instruction_includes_history_and_mode():
    options = prompt_options_for("gemini", PREMIUM, memory_lines=["user: likes rain"])
    history = [Turn("1", "user", "hello", 0), Turn("2", "assistant", "hi Mira", 0)]
    prompt = build_system_instruction(PREMIUM, "Horror", options, history=history, current_input="tell me a story")
    assert "Name: Mira" in prompt
    assert "Chat Mode: horror" in prompt
    assert "- User: hello" in prompt
    assert "- Companion: hi Mira" in prompt
    assert "- user: likes rain" in prompt
    assert f"<= {options.max_tokens} tokens" in prompt


def test_active_tone_follows_latest_request():
    history = [Turn("1", "user", "be romantic please", 0)]
    assert resolve_active_tone("Lovely", history) == PLAYFUL_POETIC
    assert resolve_active_tone("Lovely", history, "back to normal mode") == CHILL
    assert resolve_active_tone("Shayari", []) == PLAYFUL_POETIC


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_rate_limiter_fixed_window():
    clock = FakeClock()
    limiter = RateLimiter(2, 60, "slow down", "GUEST_CHAT_RATE_LIMITED", clock=clock)
    limiter.hit("guest:a")
    limiter.hit("guest:a")
    with pytest.raises(RateLimitedError) as info:
        limiter.hit("guest:a")
    assert info.value.code == "GUEST_CHAT_RATE_LIMITED"
    assert info.value.status_code == 429
    assert info.value.details["retryAfterMs"] == 60000

    limiter.hit("guest:b")
    clock.now = 61
    limiter.hit("guest:a")


def test_preview_text_truncates():
    assert preview_text("a  b\n c") == "a b c"
    assert preview_text("x" * 200).endswith("...")
    assert len(preview_text("x" * 200)) == 163


def test_event_logger_prefix_and_levels(caplog):
    caplog.set_level(logging.DEBUG, logger="companion.chat")
    log = ChatEventLogger(request_id="r1", owner_id="o1", scope="test")
    log.event("validation_started", textLength=3)
    child = log.bind(mode="Chill")
    child.warn_event("provider_attempt_failed", provider="groq")

    assert caplog.records[0].levelno == logging.DEBUG
    assert "[chat] request=r1 owner=o1 scope=test validation_started" in caplog.records[0].getMessage()
    assert caplog.records[1].levelno == logging.WARNING
    assert "mode=Chill" in caplog.records[1].getMessage()
    assert [stage for stage, _ in log.events] == ["validation_started", "provider_attempt_failed"]


def test_event_logger_verbose_uses_info(caplog):
    caplog.set_level(logging.DEBUG, logger="companion.chat")
    ChatEventLogger(verbose=True).event("context_built")
    assert caplog.records[0].levelno == logging.INFO
