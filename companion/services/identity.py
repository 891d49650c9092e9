"""Caller identity: registered accounts and guest fingerprints.

Guest fingerprints are a plain SHA-256 over request metadata. They keep the
storage key stable for an anonymous caller; they are an anti-abuse heuristic
and easy to spoof, not an authentication mechanism.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from .config import DEFAULT_MODE
from .encryption import content_hash as sha256_hex
from .store import AccountRecord

REGISTERED = "registered"
GUEST = "guest"


@dataclass(frozen=True)
class Identity:
    kind: str
    key: str
    owner_id: str
    tier: str = "Free"
    role: str = "normal"
    is_host: bool = False
    name: str = ""
    preferred_mode: str = DEFAULT_MODE
    rate_limit_key: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_authenticated(self) -> bool:
        return self.kind == REGISTERED


def hash_token(token: str) -> str:
    return sha256_hex(token.strip())


def registered_identity(account: AccountRecord) -> Identity:
    return Identity(
        kind=REGISTERED,
        key=account.id,
        owner_id=account.id,
        tier=account.tier,
        role=account.role,
        is_host=account.is_host,
        name=account.name,
        preferred_mode=account.preferred_mode or DEFAULT_MODE,
        rate_limit_key=f"user:{account.id}",
    )


def _first_non_empty(*values: Optional[str]) -> str:
    for value in values:
        if value and value.strip():
            return value.strip()
    return ""


def _client_ip(headers: Mapping[str, str], client_host: Optional[str]) -> str:
    forwarded = headers.get("x-forwarded-for", "")
    for part in forwarded.split(","):
        if part.strip():
            return part.strip()
    return (client_host or "unknown").strip() or "unknown"


def guest_identity(
    headers: Mapping[str, str],
    cookies: Optional[Mapping[str, str]] = None,
    client_host: Optional[str] = None,
) -> Identity:
    """Derive a guest identity from request metadata.

    `headers` must be a case-insensitive mapping or use lower-case keys.
    """
    cookies = cookies or {}
    ip_address = _client_ip(headers, client_host)
    user_agent = headers.get("user-agent", "").strip()
    accept_language = headers.get("accept-language", "").strip()
    device_id = _first_non_empty(
        headers.get("x-device-id"),
        headers.get("x-client-device-id"),
        headers.get("x-client-id"),
        cookies.get("guest_device_id"),
        cookies.get("device_id"),
    )
    session_id = _first_non_empty(
        headers.get("x-session-id"),
        cookies.get("guest_session_id"),
        cookies.get("session_id"),
    )

    raw = "|".join(
        [
            f"ip:{ip_address}",
            f"ua:{user_agent or 'unknown'}",
            f"lang:{accept_language or 'unknown'}",
            f"device:{device_id or 'none'}",
            f"session:{session_id or 'none'}",
        ]
    )
    fingerprint = sha256_hex(raw)

    return Identity(
        kind=GUEST,
        key=fingerprint,
        owner_id=f"guest_{fingerprint[:24]}",
        rate_limit_key=f"guest:{fingerprint}",
        metadata={
            "ip_hash": sha256_hex(ip_address),
            "device_hash": sha256_hex(device_id) if device_id else "",
            "session_hash": sha256_hex(session_id) if session_id else "",
            "user_agent_hash": sha256_hex(user_agent) if user_agent else "",
        },
    )
