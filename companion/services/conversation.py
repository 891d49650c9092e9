"""Encrypted conversation history scoped by owner and mode."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import timezone
from typing import Any, Dict, Iterable, List

from .encryption import content_hash, decrypt_for_owner, encrypt_for_owner
from .errors import IntegrityError
from .identity import Identity
from .store import StorageBackend, StoredTurn

USER = "user"
ASSISTANT = "assistant"

MAX_HISTORY_LIMIT = 200


@dataclass
class Turn:
    id: str
    role: str
    text: str
    timestamp: int
    image_url: str = ""
    vector_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("vector_id")
        image_url = data.pop("image_url")
        if image_url:
            data["imageUrl"] = image_url
        return data


def clamp_limit(limit: int) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        value = 40
    return max(1, min(value, MAX_HISTORY_LIMIT))


class ConversationStore:
    def __init__(self, store: StorageBackend, key: bytes) -> None:
        self._store = store
        self._key = key

    def _render(self, owner_id: str, record: StoredTurn) -> Turn:
        text = decrypt_for_owner(owner_id, record.payload, self._key)
        return Turn(
            id=record.id,
            role=record.role,
            text=text,
            timestamp=int(record.created_at.replace(tzinfo=timezone.utc).timestamp() * 1000),
            image_url=record.image_url,
            vector_id=record.vector_id,
        )

    async def append(
        self,
        identity: Identity,
        mode: str,
        role: str,
        plaintext: str,
        image_url: str = "",
        with_vector: bool = False,
    ) -> Turn:
        payload = encrypt_for_owner(identity.owner_id, plaintext, self._key)
        record = await self._store.insert_turn(
            owner_id=identity.owner_id,
            mode=mode,
            role=role,
            payload=payload,
            content_hash=content_hash(plaintext),
            vector_id=uuid.uuid4().hex if with_vector else "",
            image_url=image_url,
        )
        return self._render(identity.owner_id, record)

    async def recent_history(self, identity: Identity, mode: str, limit: int = 40) -> List[Turn]:
        records = await self._store.list_recent_turns(identity.owner_id, mode, clamp_limit(limit))
        return [self._render(identity.owner_id, record) for record in reversed(records)]

    async def latest_across_owners(self, limit: int) -> List[Turn]:
        """Most recent turns of every owner, oldest first; undecryptable turns are skipped."""
        turns = []
        for record in reversed(await self._store.list_latest_turns(clamp_limit(limit))):
            try:
                turns.append(self._render(record.owner_id, record))
            except IntegrityError:
                continue
        return turns

    async def fetch_records(self, identity: Identity, ids: Iterable[str]) -> List[StoredTurn]:
        wanted = [str(i).strip() for i in ids if str(i or "").strip()]
        if not wanted:
            return []
        return await self._store.list_turns_by_ids(identity.owner_id, wanted)

    async def fetch_by_ids(self, identity: Identity, ids: Iterable[str]) -> List[Turn]:
        records = await self.fetch_records(identity, ids)
        return [self._render(identity.owner_id, record) for record in records]

    def decrypt_record(self, identity: Identity, record: StoredTurn) -> Turn:
        return self._render(identity.owner_id, record)

    async def delete_all(self, identity: Identity, mode: str) -> int:
        return await self._store.delete_turns(identity.owner_id, mode)
