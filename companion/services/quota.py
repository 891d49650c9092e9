"""Access tiers and quota profiles."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import Settings
from .identity import Identity


@dataclass(frozen=True)
class QuotaProfile:
    category: str
    ceiling: Optional[int]
    is_limited: bool
    is_premium: bool = False
    is_host: bool = False


def is_host(identity: Identity) -> bool:
    if identity.is_host:
        return True
    return (identity.role or "normal").strip().lower() == "host"


def is_premium(identity: Identity) -> bool:
    return (identity.tier or "Free") == "Premium"


def has_unlimited_access(identity: Identity) -> bool:
    return identity.is_authenticated and (is_premium(identity) or is_host(identity))


def resolve_quota_profile(identity: Identity, settings: Settings) -> QuotaProfile:
    if not identity.is_authenticated:
        return QuotaProfile("guest", settings.GUEST_MODE_MESSAGE_LIMIT, True)
    premium = is_premium(identity)
    if is_host(identity):
        return QuotaProfile("host", None, False, is_premium=premium, is_host=True)
    if premium:
        return QuotaProfile("premium", None, False, is_premium=True)
    return QuotaProfile("free", settings.FREE_MODE_MESSAGE_LIMIT, True)
