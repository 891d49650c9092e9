"""Storage backends.

`StorageBackend` is the narrow set of key/document operations the chat core
needs. Two implementations exist: `SqlStore` (SQLAlchemy, durable) and
`MemoryStore` (in-process, for tests and local runs). One of them is built
at startup by `create_store` and passed down explicitly.

Counter updates are single atomic statements on the stored record; callers
never read-modify-write counters in application code.
"""

from __future__ import annotations

import itertools
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from sqlalchemy import case, delete, exc as sa_exc, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from . import models
from .config import DEFAULT_MODE, Settings
from .database import create_engine_for, create_session_factory, create_tables
from .encryption import EncryptedPayload
from .errors import DuplicateKeyError, StorageError

logger = logging.getLogger(__name__)

GUEST_METADATA_FIELDS = ("ip_hash", "device_hash", "session_hash", "user_agent_hash")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class AccountRecord:
    id: str
    name: str = ""
    token_hash: str = ""
    tier: str = "Free"
    role: str = "normal"
    is_host: bool = False
    preferred_mode: str = DEFAULT_MODE
    message_count: int = 0


@dataclass
class UsageSnapshot:
    identity_key: str
    mode: str
    message_count: int = 0
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class VoiceSnapshot:
    identity_key: str
    date_key: str = ""
    seconds_used: int = 0


@dataclass
class StoredTurn:
    id: str
    owner_id: str
    mode: str
    role: str
    payload: EncryptedPayload
    content_hash: str
    vector_id: str = ""
    image_url: str = ""
    created_at: datetime = field(default_factory=_utcnow)


class StorageBackend(Protocol):
    name: str

    async def initialize(self) -> None: ...

    async def close(self) -> None: ...

    async def create_account(
        self,
        *,
        name: str,
        token_hash: str,
        tier: str = "Free",
        role: str = "normal",
        is_host: bool = False,
        preferred_mode: str = DEFAULT_MODE,
    ) -> AccountRecord: ...

    async def find_account(self, account_id: str) -> Optional[AccountRecord]: ...

    async def find_account_by_token(self, token_hash: str) -> Optional[AccountRecord]: ...

    async def update_account(self, account_id: str, **fields) -> Optional[AccountRecord]: ...

    async def increment_account_messages(self, account_id: str) -> int: ...

    async def find_usage(self, identity_key: str, mode: str) -> Optional[UsageSnapshot]: ...

    async def upsert_usage(
        self, identity_key: str, mode: str, metadata: Optional[Dict[str, str]] = None
    ) -> UsageSnapshot: ...

    async def increment_usage(self, identity_key: str, mode: str, amount: int = 1) -> int: ...

    async def find_voice_usage(self, identity_key: str) -> Optional[VoiceSnapshot]: ...

    async def upsert_voice_usage(self, identity_key: str) -> VoiceSnapshot: ...

    async def add_voice_seconds(self, identity_key: str, date_key: str, seconds: int) -> int: ...

    async def insert_turn(
        self,
        *,
        owner_id: str,
        mode: str,
        role: str,
        payload: EncryptedPayload,
        content_hash: str,
        vector_id: str = "",
        image_url: str = "",
    ) -> StoredTurn: ...

    async def list_recent_turns(self, owner_id: str, mode: str, limit: int) -> List[StoredTurn]: ...

    async def list_latest_turns(self, limit: int) -> List[StoredTurn]: ...

    async def list_turns_by_ids(self, owner_id: str, ids: Iterable[str]) -> List[StoredTurn]: ...

    async def delete_turns(self, owner_id: str, mode: str) -> int: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryStore:
    """Process-local store. Methods never await internally, so each one is
    atomic with respect to other coroutines on the same event loop."""

    name = "memory"

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.accounts: Dict[str, AccountRecord] = {}
        self.usage: Dict[Tuple[str, str], UsageSnapshot] = {}
        self.voice: Dict[str, VoiceSnapshot] = {}
        self.turns: List[StoredTurn] = []

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def create_account(
        self,
        *,
        name: str,
        token_hash: str,
        tier: str = "Free",
        role: str = "normal",
        is_host: bool = False,
        preferred_mode: str = DEFAULT_MODE,
    ) -> AccountRecord:
        if any(a.token_hash == token_hash for a in self.accounts.values()):
            raise DuplicateKeyError("Account token already registered.")
        account = AccountRecord(
            id=f"mem_{next(self._ids)}",
            name=name,
            token_hash=token_hash,
            tier=tier,
            role=role,
            is_host=is_host,
            preferred_mode=preferred_mode,
        )
        self.accounts[account.id] = account
        return replace(account)

    async def find_account(self, account_id: str) -> Optional[AccountRecord]:
        account = self.accounts.get(account_id)
        return replace(account) if account else None

    async def find_account_by_token(self, token_hash: str) -> Optional[AccountRecord]:
        for account in self.accounts.values():
            if account.token_hash == token_hash:
                return replace(account)
        return None

    async def update_account(self, account_id: str, **fields) -> Optional[AccountRecord]:
        account = self.accounts.get(account_id)
        if account is None:
            return None
        for key, value in fields.items():
            setattr(account, key, value)
        return replace(account)

    async def increment_account_messages(self, account_id: str) -> int:
        account = self.accounts.get(account_id)
        if account is None:
            raise StorageError(f"Account {account_id} not found.")
        account.message_count += 1
        return account.message_count

    async def find_usage(self, identity_key: str, mode: str) -> Optional[UsageSnapshot]:
        record = self.usage.get((identity_key, mode))
        return replace(record, metadata=dict(record.metadata)) if record else None

    async def upsert_usage(
        self, identity_key: str, mode: str, metadata: Optional[Dict[str, str]] = None
    ) -> UsageSnapshot:
        record = self.usage.setdefault((identity_key, mode), UsageSnapshot(identity_key, mode))
        for key in GUEST_METADATA_FIELDS:
            if metadata and metadata.get(key):
                record.metadata[key] = metadata[key]
        return replace(record, metadata=dict(record.metadata))

    async def increment_usage(self, identity_key: str, mode: str, amount: int = 1) -> int:
        record = self.usage.get((identity_key, mode))
        if record is None:
            raise StorageError("Usage record missing; upsert before incrementing.")
        record.message_count += amount
        return record.message_count

    async def find_voice_usage(self, identity_key: str) -> Optional[VoiceSnapshot]:
        record = self.voice.get(identity_key)
        return replace(record) if record else None

    async def upsert_voice_usage(self, identity_key: str) -> VoiceSnapshot:
        return replace(self.voice.setdefault(identity_key, VoiceSnapshot(identity_key)))

    async def add_voice_seconds(self, identity_key: str, date_key: str, seconds: int) -> int:
        record = self.voice.get(identity_key)
        if record is None:
            raise StorageError("Voice usage record missing; upsert before adding seconds.")
        if record.date_key != date_key:
            record.date_key = date_key
            record.seconds_used = 0
        record.seconds_used += seconds
        return record.seconds_used

    async def insert_turn(
        self,
        *,
        owner_id: str,
        mode: str,
        role: str,
        payload: EncryptedPayload,
        content_hash: str,
        vector_id: str = "",
        image_url: str = "",
    ) -> StoredTurn:
        turn = StoredTurn(
            id=str(next(self._ids)),
            owner_id=owner_id,
            mode=mode,
            role=role,
            payload=payload,
            content_hash=content_hash,
            vector_id=vector_id,
            image_url=image_url,
        )
        self.turns.append(turn)
        return turn

    async def list_recent_turns(self, owner_id: str, mode: str, limit: int) -> List[StoredTurn]:
        matching = [t for t in self.turns if t.owner_id == owner_id and t.mode == mode]
        matching.reverse()
        return matching[:limit]

    async def list_latest_turns(self, limit: int) -> List[StoredTurn]:
        return list(reversed(self.turns[-limit:])) if limit > 0 else []

    async def list_turns_by_ids(self, owner_id: str, ids: Iterable[str]) -> List[StoredTurn]:
        wanted = set(ids)
        matching = [t for t in self.turns if t.owner_id == owner_id and t.id in wanted]
        matching.reverse()
        return matching

    async def delete_turns(self, owner_id: str, mode: str) -> int:
        before = len(self.turns)
        self.turns = [t for t in self.turns if not (t.owner_id == owner_id and t.mode == mode)]
        return before - len(self.turns)


# ---------------------------------------------------------------------------
# SQLAlchemy backend
# ---------------------------------------------------------------------------


def _account(row: models.Account) -> AccountRecord:
    return AccountRecord(
        id=row.id,
        name=row.name or "",
        token_hash=row.token_hash or "",
        tier=row.tier or "Free",
        role=row.role or "normal",
        is_host=bool(row.is_host),
        preferred_mode=row.preferred_mode or DEFAULT_MODE,
        message_count=row.message_count or 0,
    )


def _usage(row: models.UsageRecord) -> UsageSnapshot:
    metadata = {key: getattr(row, key) for key in GUEST_METADATA_FIELDS if getattr(row, key)}
    return UsageSnapshot(row.identity_key, row.mode, row.message_count or 0, metadata)


def _turn(row: models.MessageTurn) -> StoredTurn:
    return StoredTurn(
        id=str(row.id),
        owner_id=row.owner_id,
        mode=row.mode,
        role=row.role,
        payload=EncryptedPayload(row.cipher_text, row.iv, row.auth_tag),
        content_hash=row.content_hash,
        vector_id=row.vector_id or "",
        image_url=row.image_url or "",
        created_at=row.created_at,
    )


class SqlStore:
    name = "sql"

    def __init__(self, engine: AsyncEngine, sessions: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        self._engine = engine
        self._sessions = sessions or create_session_factory(engine)

    @classmethod
    def from_url(cls, url: str) -> "SqlStore":
        return cls(create_engine_for(url))

    async def initialize(self) -> None:
        await create_tables(self._engine)

    async def close(self) -> None:
        await self._engine.dispose()

    async def create_account(
        self,
        *,
        name: str,
        token_hash: str,
        tier: str = "Free",
        role: str = "normal",
        is_host: bool = False,
        preferred_mode: str = DEFAULT_MODE,
    ) -> AccountRecord:
        row = models.Account(
            id=uuid.uuid4().hex,
            name=name,
            token_hash=token_hash,
            tier=tier,
            role=role,
            is_host=is_host,
            preferred_mode=preferred_mode,
            message_count=0,
        )
        try:
            async with self._sessions() as session, session.begin():
                session.add(row)
        except sa_exc.IntegrityError as exc:
            raise DuplicateKeyError("Account token already registered.") from exc
        except sa_exc.SQLAlchemyError as exc:
            raise StorageError("Account could not be created.") from exc
        return _account(row)

    async def find_account(self, account_id: str) -> Optional[AccountRecord]:
        async with self._sessions() as session:
            row = await session.get(models.Account, account_id)
            return _account(row) if row else None

    async def find_account_by_token(self, token_hash: str) -> Optional[AccountRecord]:
        async with self._sessions() as session:
            row = await session.scalar(select(models.Account).where(models.Account.token_hash == token_hash))
            return _account(row) if row else None

    async def update_account(self, account_id: str, **fields) -> Optional[AccountRecord]:
        try:
            async with self._sessions() as session, session.begin():
                row = await session.get(models.Account, account_id)
                if row is None:
                    return None
                for key, value in fields.items():
                    setattr(row, key, value)
                return _account(row)
        except sa_exc.SQLAlchemyError as exc:
            raise StorageError("Account could not be updated.") from exc

    async def increment_account_messages(self, account_id: str) -> int:
        try:
            async with self._sessions() as session, session.begin():
                result = await session.execute(
                    update(models.Account)
                    .where(models.Account.id == account_id)
                    .values(message_count=models.Account.message_count + 1)
                )
                if result.rowcount == 0:
                    raise StorageError(f"Account {account_id} not found.")
                return await session.scalar(
                    select(models.Account.message_count).where(models.Account.id == account_id)
                )
        except sa_exc.SQLAlchemyError as exc:
            raise StorageError("Account message count could not be updated.") from exc

    async def find_usage(self, identity_key: str, mode: str) -> Optional[UsageSnapshot]:
        async with self._sessions() as session:
            row = await session.scalar(
                select(models.UsageRecord).where(
                    models.UsageRecord.identity_key == identity_key,
                    models.UsageRecord.mode == mode,
                )
            )
            return _usage(row) if row else None

    async def upsert_usage(
        self, identity_key: str, mode: str, metadata: Optional[Dict[str, str]] = None
    ) -> UsageSnapshot:
        changes = {key: metadata[key] for key in GUEST_METADATA_FIELDS if metadata and metadata.get(key)}
        try:
            async with self._sessions() as session, session.begin():
                row = await session.scalar(
                    select(models.UsageRecord).where(
                        models.UsageRecord.identity_key == identity_key,
                        models.UsageRecord.mode == mode,
                    )
                )
                if row is None:
                    row = models.UsageRecord(identity_key=identity_key, mode=mode, message_count=0, **changes)
                    session.add(row)
                    await session.flush()
                else:
                    for key, value in changes.items():
                        setattr(row, key, value)
                    row.last_seen_at = _utcnow()
                return _usage(row)
        except sa_exc.IntegrityError as exc:
            raise DuplicateKeyError("Usage record was created concurrently.") from exc
        except sa_exc.SQLAlchemyError as exc:
            raise StorageError("Usage record could not be saved.") from exc

    async def increment_usage(self, identity_key: str, mode: str, amount: int = 1) -> int:
        where = (models.UsageRecord.identity_key == identity_key, models.UsageRecord.mode == mode)
        try:
            async with self._sessions() as session, session.begin():
                result = await session.execute(
                    update(models.UsageRecord)
                    .where(*where)
                    .values(message_count=models.UsageRecord.message_count + amount, last_seen_at=_utcnow())
                )
                if result.rowcount == 0:
                    raise StorageError("Usage record missing; upsert before incrementing.")
                return await session.scalar(select(models.UsageRecord.message_count).where(*where))
        except sa_exc.SQLAlchemyError as exc:
            raise StorageError("Usage counter could not be incremented.") from exc

    async def find_voice_usage(self, identity_key: str) -> Optional[VoiceSnapshot]:
        async with self._sessions() as session:
            row = await session.scalar(select(models.VoiceUsage).where(models.VoiceUsage.identity_key == identity_key))
            return VoiceSnapshot(row.identity_key, row.date_key or "", row.seconds_used or 0) if row else None

    async def upsert_voice_usage(self, identity_key: str) -> VoiceSnapshot:
        try:
            async with self._sessions() as session, session.begin():
                row = await session.scalar(
                    select(models.VoiceUsage).where(models.VoiceUsage.identity_key == identity_key)
                )
                if row is None:
                    row = models.VoiceUsage(identity_key=identity_key, date_key="", seconds_used=0)
                    session.add(row)
                    await session.flush()
                return VoiceSnapshot(row.identity_key, row.date_key or "", row.seconds_used or 0)
        except sa_exc.IntegrityError as exc:
            raise DuplicateKeyError("Voice usage record was created concurrently.") from exc
        except sa_exc.SQLAlchemyError as exc:
            raise StorageError("Voice usage record could not be saved.") from exc

    async def add_voice_seconds(self, identity_key: str, date_key: str, seconds: int) -> int:
        voice = models.VoiceUsage
        try:
            async with self._sessions() as session, session.begin():
                # seconds_used is assigned first so the CASE sees the stored date on every dialect.
                result = await session.execute(
                    update(voice)
                    .where(voice.identity_key == identity_key)
                    .ordered_values(
                        (voice.seconds_used, case((voice.date_key == date_key, voice.seconds_used + seconds), else_=seconds)),
                        (voice.date_key, date_key),
                    )
                )
                if result.rowcount == 0:
                    raise StorageError("Voice usage record missing; upsert before adding seconds.")
                return await session.scalar(select(voice.seconds_used).where(voice.identity_key == identity_key))
        except sa_exc.SQLAlchemyError as exc:
            raise StorageError("Voice usage could not be updated.") from exc

    async def insert_turn(
        self,
        *,
        owner_id: str,
        mode: str,
        role: str,
        payload: EncryptedPayload,
        content_hash: str,
        vector_id: str = "",
        image_url: str = "",
    ) -> StoredTurn:
        row = models.MessageTurn(
            owner_id=owner_id,
            mode=mode,
            role=role,
            cipher_text=payload.cipher_text,
            iv=payload.iv,
            auth_tag=payload.auth_tag,
            content_hash=content_hash,
            vector_id=vector_id,
            image_url=image_url,
            created_at=_utcnow(),
        )
        try:
            async with self._sessions() as session, session.begin():
                session.add(row)
                await session.flush()
                return _turn(row)
        except sa_exc.SQLAlchemyError as exc:
            raise StorageError("Message could not be saved.") from exc

    async def list_recent_turns(self, owner_id: str, mode: str, limit: int) -> List[StoredTurn]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(models.MessageTurn)
                .where(models.MessageTurn.owner_id == owner_id, models.MessageTurn.mode == mode)
                .order_by(models.MessageTurn.id.desc())
                .limit(limit)
            )
            return [_turn(row) for row in rows]

    async def list_latest_turns(self, limit: int) -> List[StoredTurn]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(models.MessageTurn).order_by(models.MessageTurn.id.desc()).limit(limit)
            )
            return [_turn(row) for row in rows]

    async def list_turns_by_ids(self, owner_id: str, ids: Iterable[str]) -> List[StoredTurn]:
        numeric = [int(i) for i in ids if str(i).isdigit()]
        if not numeric:
            return []
        async with self._sessions() as session:
            rows = await session.scalars(
                select(models.MessageTurn)
                .where(models.MessageTurn.owner_id == owner_id, models.MessageTurn.id.in_(numeric))
                .order_by(models.MessageTurn.id.desc())
            )
            return [_turn(row) for row in rows]

    async def delete_turns(self, owner_id: str, mode: str) -> int:
        try:
            async with self._sessions() as session, session.begin():
                result = await session.execute(
                    delete(models.MessageTurn).where(
                        models.MessageTurn.owner_id == owner_id, models.MessageTurn.mode == mode
                    )
                )
                return result.rowcount or 0
        except sa_exc.SQLAlchemyError as exc:
            raise StorageError("History could not be cleared.") from exc


def create_store(settings: Settings) -> StorageBackend:
    """Pick the storage backend once, at startup."""
    if settings.STORAGE_BACKEND == "memory":
        logger.info("Storage backend: in-memory")
        return MemoryStore()
    logger.info("Storage backend: sql (%s)", settings.DATABASE_URL.split("://", 1)[0])
    return SqlStore.from_url(settings.DATABASE_URL)
