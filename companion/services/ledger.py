"""Usage ledger: per (identity, mode) message counters and daily voice seconds."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from .errors import DuplicateKeyError
from .identity import Identity
from .store import StorageBackend, UsageSnapshot, VoiceSnapshot

logger = logging.getLogger(__name__)


def utc_date_key(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%d")


class UsageLedger:
    def __init__(self, store: StorageBackend) -> None:
        self._store = store

    async def get_mode_count(self, identity: Identity, mode: str) -> int:
        record = await self._store.find_usage(identity.key, mode)
        return record.message_count if record else 0

    async def increment_mode_count(self, identity: Identity, mode: str) -> int:
        await self._ensure_usage(identity, mode)
        return await self._store.increment_usage(identity.key, mode)

    async def get_voice_seconds_used(self, identity: Identity, date_key: str) -> int:
        record = await self._store.find_voice_usage(identity.key)
        if record is None or record.date_key != date_key:
            return 0
        return record.seconds_used

    async def add_voice_seconds(self, identity: Identity, date_key: str, seconds: int) -> int:
        await self._ensure_voice(identity)
        return await self._store.add_voice_seconds(identity.key, date_key, max(0, int(seconds)))

    async def _ensure_usage(self, identity: Identity, mode: str) -> UsageSnapshot:
        try:
            return await self._store.upsert_usage(identity.key, mode, identity.metadata)
        except DuplicateKeyError:
            # Two first messages raced on the unique (identity, mode) key; the other one won.
            logger.debug("Usage upsert raced for %s/%s, re-reading", identity.key[:12], mode)
            record = await self._store.find_usage(identity.key, mode)
            if record is None:
                raise
            return record

    async def _ensure_voice(self, identity: Identity) -> VoiceSnapshot:
        try:
            return await self._store.upsert_voice_usage(identity.key)
        except DuplicateKeyError:
            record = await self._store.find_voice_usage(identity.key)
            if record is None:
                raise
            return record
