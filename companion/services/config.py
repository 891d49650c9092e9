"""Centralized configuration for the companion chat backend.

Settings are read from the process environment after loading the project
`.env` file. Every other module receives a `Settings` instance explicitly
instead of reading `os.environ` on its own.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

PROJECT_ROOT = Path(__file__).resolve().parents[2]
ENV_PATH = PROJECT_ROOT / ".env"

VALID_MODES = ["Lovely", "Horror", "Shayari", "Chill", "Possessive", "Naughty", "Mystic"]
VALID_TIERS = ["Free", "Premium"]
DEFAULT_MODE = "Lovely"

SUPPORTED_FREE_PROVIDERS = ["groq", "openrouter", "external"]


def _parse_bool(value: object, fallback: bool = False) -> bool:
    normalized = str(value if value is not None else "").strip().lower()
    if not normalized:
        return fallback
    return normalized in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Storage: "sql" (SQLAlchemy) or "memory" (in-process test double)
    STORAGE_BACKEND: str = "sql"
    DATABASE_URL: str = f"sqlite+aiosqlite:///{PROJECT_ROOT / 'companion.db'}"

    # Encryption at rest
    ENCRYPTION_KEY: str = "companion-dev-secret"

    # Quotas
    GUEST_MODE_MESSAGE_LIMIT: int = 7
    FREE_MODE_MESSAGE_LIMIT: int = 10
    FREE_DAILY_VOICE_SECONDS: int = 300
    DEFAULT_VOICE_MESSAGE_SECONDS: int = 60
    MAX_MESSAGE_LENGTH: int = 4000

    # Request throttling
    GUEST_CHAT_RATE_LIMIT_PER_MINUTE: int = 15
    CHAT_RATE_LIMIT_PER_MINUTE: int = 45

    # Free-tier provider chain, tried in order
    FREE_CHAT_PROVIDER_ORDER: list[str] = list(SUPPORTED_FREE_PROVIDERS)
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    IMAGE_TIMEOUT_SECONDS: float = 120.0

    # Free-chain keep-alive pings
    AI_KEEPALIVE_ENABLED: bool = False
    AI_KEEPALIVE_INTERVAL_SECONDS: float = 30.0
    AI_KEEPALIVE_HISTORY_LIMIT: int = 6

    # Groq (OpenAI-compatible)
    GROQ_API_KEY: str = ""
    GROQ_API_BASE_URL: str = "https://api.groq.com/openai/v1"
    GROQ_CHAT_MODEL: str = "llama-3.1-8b-instant"

    # OpenRouter
    OPENROUTER_API_KEY: str = ""
    OPENROUTER_URL: str = "https://openrouter.ai/api/v1/chat/completions"
    OPENROUTER_CHAT_MODEL: str = "openrouter/auto"

    # Hosted companion chat API
    EXTERNAL_API_BASE_URL: str = ""
    EXTERNAL_API_KEY: str = ""
    EXTERNAL_CLIENT_SECRET: str = ""

    # Gemini (premium text, images, embeddings)
    GEMINI_API_KEY: str = ""
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta/models"
    GEMINI_CHAT_MODEL: str = "gemini-2.0-flash"
    GEMINI_IMAGE_MODEL: str = "gemini-2.5-flash-image"
    GEMINI_EMBED_MODEL: str = "text-embedding-004"

    # Vector memory (Pinecone data plane)
    PINECONE_API_KEY: str = ""
    PINECONE_INDEX_HOST: str = ""

    # Asset store (ImageKit)
    IMAGEKIT_PRIVATE_KEY: str = ""
    IMAGEKIT_UPLOAD_URL: str = "https://upload.imagekit.io/api/v1/files/upload"
    IMAGEKIT_FOLDER: str = "/companion"

    # Logging
    CHAT_DEBUG_LOGS: bool = False
    LOG_LEVEL: str = "INFO"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    SSL_CERTFILE: Optional[str] = None
    SSL_KEYFILE: Optional[str] = None

    @field_validator("FREE_CHAT_PROVIDER_ORDER", mode="before")
    @classmethod
    def parse_provider_order(cls, v: str | list[str] | None) -> list[str]:
        if isinstance(v, list):
            return [str(item).strip().lower() for item in v if str(item).strip()]
        if isinstance(v, str) and v.strip():
            return [item.strip().lower() for item in v.split(",") if item.strip()]
        return []

    @field_validator("AI_KEEPALIVE_INTERVAL_SECONDS")
    @classmethod
    def clamp_keepalive_interval(cls, v: float) -> float:
        return max(10.0, v)

    @field_validator("AI_KEEPALIVE_HISTORY_LIMIT")
    @classmethod
    def clamp_keepalive_history(cls, v: int) -> int:
        return max(2, min(12, v))

    @field_validator("STORAGE_BACKEND", mode="before")
    @classmethod
    def parse_backend(cls, v: str) -> str:
        backend = str(v or "sql").strip().lower()
        if backend not in ("sql", "memory"):
            raise ValueError(f"Unknown STORAGE_BACKEND={backend!r}. Supported: sql, memory")
        return backend

    @property
    def encryption_key_bytes(self) -> bytes:
        return hashlib.sha256(self.ENCRYPTION_KEY.encode("utf-8")).digest()

    @property
    def vector_memory_enabled(self) -> bool:
        return bool(self.PINECONE_API_KEY and self.PINECONE_INDEX_HOST and self.GEMINI_API_KEY)

    @property
    def asset_store_enabled(self) -> bool:
        return bool(self.IMAGEKIT_PRIVATE_KEY)


def load_settings(env_path: Path | None = ENV_PATH, **overrides) -> Settings:
    """Build settings from `.env` plus the environment; explicit overrides win."""
    if env_path is not None and os.getenv("SKIP_DOTENV", "").lower() != "true":
        load_dotenv(env_path)

    values: dict[str, object] = {}
    for name in Settings.model_fields:
        raw = os.getenv(name)
        if raw is not None and raw != "":
            values[name] = raw
    for flag in ("CHAT_DEBUG_LOGS", "AI_KEEPALIVE_ENABLED"):
        if flag in values:
            values[flag] = _parse_bool(values[flag])
    values.update(overrides)
    return Settings(**values)
