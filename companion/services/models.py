"""SQLAlchemy models for accounts, usage ledgers and encrypted chat turns."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return uuid.uuid4().hex


class Account(Base):
    __tablename__ = "accounts"

    id = Column(String(32), primary_key=True, default=_new_id)
    name = Column(String, default="")
    token_hash = Column(String(64), unique=True, index=True)
    tier = Column(String(16), default="Free")
    role = Column(String(16), default="normal")
    is_host = Column(Boolean, default=False)
    preferred_mode = Column(String(32), default="Lovely")
    message_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=_utcnow)


class UsageRecord(Base):
    __tablename__ = "usage_records"
    __table_args__ = (UniqueConstraint("identity_key", "mode", name="uq_usage_identity_mode"),)

    id = Column(Integer, primary_key=True, index=True)
    identity_key = Column(String(128), nullable=False, index=True)
    mode = Column(String(32), nullable=False)
    message_count = Column(Integer, default=0, nullable=False)
    ip_hash = Column(String(64), default="")
    device_hash = Column(String(64), default="")
    session_hash = Column(String(64), default="")
    user_agent_hash = Column(String(64), default="")
    last_seen_at = Column(DateTime, default=_utcnow)
    created_at = Column(DateTime, default=_utcnow)


class VoiceUsage(Base):
    __tablename__ = "voice_usage"

    id = Column(Integer, primary_key=True, index=True)
    identity_key = Column(String(128), unique=True, nullable=False, index=True)
    date_key = Column(String(10), default="", nullable=False)
    seconds_used = Column(Integer, default=0, nullable=False)


class MessageTurn(Base):
    __tablename__ = "message_turns"

    # Integer ids double as insertion order for recency queries.
    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(128), nullable=False, index=True)
    mode = Column(String(32), nullable=False, index=True)
    role = Column(String(16), nullable=False)
    cipher_text = Column(Text, nullable=False)
    iv = Column(String(32), nullable=False)
    auth_tag = Column(String(32), nullable=False)
    content_hash = Column(String(64), nullable=False, index=True)
    vector_id = Column(String(64), default="")
    image_url = Column(Text, default="")
    created_at = Column(DateTime, default=_utcnow, index=True)
