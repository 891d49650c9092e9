"""Long-term memory: vector recall of earlier turns for unlimited callers."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from .config import Settings
from .conversation import ConversationStore
from .errors import IntegrityError
from .identity import Identity
from .providers import GeminiProvider, ProviderFailure

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 4


def namespace_for(owner_id: str) -> str:
    return f"user-{owner_id}"


class PineconeIndex:
    """Minimal Pinecone data-plane client (upsert and query)."""

    def __init__(self, api_key: str, host: str, timeout: float = 30.0) -> None:
        self.api_key = api_key
        host = (host or "").rstrip("/")
        if host and not host.startswith("http"):
            host = f"https://{host}"
        self.host = host
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "PineconeIndex":
        return cls(settings.PINECONE_API_KEY, settings.PINECONE_INDEX_HOST, settings.PROVIDER_TIMEOUT_SECONDS)

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.host)

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Api-Key": self.api_key}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(f"{self.host}{path}", json=body, headers=headers)
            resp.raise_for_status()
            return resp.json()

    async def upsert(self, namespace: str, vector_id: str, values: List[float], metadata: Dict[str, Any]) -> None:
        await self._post(
            "/vectors/upsert",
            {"namespace": namespace, "vectors": [{"id": vector_id, "values": values, "metadata": metadata}]},
        )

    async def query(
        self,
        namespace: str,
        values: List[float],
        top_k: int = DEFAULT_TOP_K,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        body: Dict[str, Any] = {
            "namespace": namespace,
            "vector": values,
            "topK": top_k,
            "includeValues": False,
            "includeMetadata": True,
        }
        if filter:
            body["filter"] = filter
        result = await self._post("/query", body)
        return list(result.get("matches") or [])


class MemoryAugmenter:
    def __init__(
        self,
        index: PineconeIndex,
        embedder: GeminiProvider,
        conversation: ConversationStore,
        top_k: int = DEFAULT_TOP_K,
    ) -> None:
        self.index = index
        self.embedder = embedder
        self.conversation = conversation
        self.top_k = top_k

    @property
    def enabled(self) -> bool:
        return self.index.configured and self.embedder.configured

    async def augment(self, identity: Identity, mode: str, text: str, has_unlimited_access: bool) -> List[str]:
        """Return up to top-K "<role>: <text>" lines for earlier related turns.

        Best effort: any embedding, index or storage failure yields an empty
        list and turns that fail to decrypt are skipped.
        """
        if not self.enabled or not has_unlimited_access or not (text or "").strip():
            return []

        try:
            values = await self.embedder.embed(text)
            if isinstance(values, ProviderFailure):
                logger.info("Memory embedding unavailable: %s (%s)", values.reason, values.status_code)
                return []
            return await self._recall(identity, mode, values)
        except Exception as exc:
            logger.warning("Memory recall failed for %s: %s", identity.owner_id, exc)
            return []

    async def _recall(self, identity: Identity, mode: str, values: List[float]) -> List[str]:
        matches = await self.index.query(
            namespace_for(identity.owner_id),
            values,
            top_k=self.top_k,
            filter={"mode": {"$eq": mode}},
        )
        turn_ids = []
        for match in matches:
            turn_id = str((match.get("metadata") or {}).get("turn_id") or "")
            if turn_id and turn_id not in turn_ids:
                turn_ids.append(turn_id)
        if not turn_ids:
            return []

        records = await self.conversation.fetch_records(identity, turn_ids)
        lines = []
        for record in records:
            try:
                turn = self.conversation.decrypt_record(identity, record)
            except IntegrityError:
                logger.warning("Skipping memory turn %s: decryption failed", record.id)
                continue
            lines.append(f"{turn.role}: {turn.text}")
        return lines[: self.top_k]

    async def remember(
        self,
        identity: Identity,
        mode: str,
        turn_id: str,
        text: str,
        vector_id: str = "",
    ) -> bool:
        """Embed one turn and upsert it into the owner's namespace.

        Returns False when the embedding is unavailable; index errors propagate.
        """
        if not self.enabled or not (text or "").strip():
            return False
        values = await self.embedder.embed(text)
        if isinstance(values, ProviderFailure):
            return False
        await self.index.upsert(
            namespace_for(identity.owner_id),
            vector_id or str(turn_id),
            values,
            {"mode": mode, "turn_id": str(turn_id), "ts": int(time.time() * 1000)},
        )
        return True
