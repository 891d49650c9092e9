"""Periodic warm-up calls through the free provider chain.

Hosted free-tier models go cold between conversations. When enabled, a
background task replays a short slice of recent history through the free
chain every `AI_KEEPALIVE_INTERVAL_SECONDS` so the next real message is
answered quickly.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import re
from typing import Awaitable, Callable, List, Optional

from .config import DEFAULT_MODE, Settings
from .conversation import ASSISTANT, USER, ConversationStore, Turn
from .identity import registered_identity
from .router import GenerationRequest, ProviderFailoverRouter
from .store import AccountRecord
from .telemetry import ChatEventLogger

logger = logging.getLogger(__name__)

MAX_SAMPLE_LENGTH = 280
KEEPALIVE_ACCOUNT = AccountRecord(id="keepalive_worker", name="Companion Keepalive")


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()[:MAX_SAMPLE_LENGTH]


def warmup_message(history: List[Turn]) -> str:
    latest = next((t.text for t in reversed(history) if t.role == USER), "")
    if latest:
        return f'Warmup ping for model readiness. Latest user intent sample: "{latest}"'
    return "Warmup ping for model readiness. Stay prepared for the next conversation."


class KeepAliveWorker:
    def __init__(
        self,
        settings: Settings,
        conversation: ConversationStore,
        router: ProviderFailoverRouter,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.conversation = conversation
        self.router = router
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._in_flight = False
        self.identity = registered_identity(KEEPALIVE_ACCOUNT)

    @property
    def enabled(self) -> bool:
        if not self.settings.AI_KEEPALIVE_ENABLED:
            return False
        return any(
            getattr(self.router.free_providers.get(name), "configured", False) for name in self.router.provider_order
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def recent_history(self) -> List[Turn]:
        limit = self.settings.AI_KEEPALIVE_HISTORY_LIMIT
        turns = await self.conversation.latest_across_owners(max(10, limit * 5))
        history = []
        for turn in turns:
            text = _normalize(turn.text)
            if turn.role in (USER, ASSISTANT) and text:
                history.append(dataclasses.replace(turn, text=text))
        return history[-limit:]

    async def tick(self) -> bool:
        """Send one warm-up message; True when a provider answered."""
        if self._in_flight:
            return False
        self._in_flight = True
        try:
            history = await self.recent_history()
            result = await self.router.generate_free(
                GenerationRequest(
                    identity=self.identity,
                    mode=DEFAULT_MODE,
                    text=warmup_message(history),
                    history=history,
                ),
                ChatEventLogger(owner_id=self.identity.owner_id, scope="keepalive"),
            )
            logger.debug("Keepalive answered by %s", result.provider)
            return True
        except Exception as exc:
            logger.warning("AI-model keepalive tick failed: %s", exc)
            return False
        finally:
            self._in_flight = False

    async def _run(self) -> None:
        while True:
            await self.tick()
            await self._sleep(self.settings.AI_KEEPALIVE_INTERVAL_SECONDS)

    def start(self) -> bool:
        if self.running:
            return True
        if not self.enabled:
            logger.info("AI-model keepalive disabled or missing provider config.")
            return False
        self._task = asyncio.create_task(self._run())
        logger.info("AI-model keepalive started (every %ss).", round(self.settings.AI_KEEPALIVE_INTERVAL_SECONDS))
        return True

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
