"""Account tier and role changes."""

from __future__ import annotations

import logging
from typing import Optional

from .config import VALID_TIERS
from .errors import StorageError, ValidationError
from .store import AccountRecord, StorageBackend

logger = logging.getLogger(__name__)


async def _update(store: StorageBackend, account_id: str, **fields) -> AccountRecord:
    account: Optional[AccountRecord] = await store.update_account(account_id, **fields)
    if account is None:
        raise StorageError(f"Account {account_id} not found.", code="ACCOUNT_NOT_FOUND", status_code=404)
    return account


async def set_tier(store: StorageBackend, account_id: str, tier: str) -> AccountRecord:
    """Change the subscription tier only; a host grant is left in place."""
    if tier not in VALID_TIERS:
        raise ValidationError("Invalid tier.", code="INVALID_TIER", details={"allowedTiers": VALID_TIERS})
    account = await _update(store, account_id, tier=tier)
    logger.info("Account %s moved to %s (host=%s)", account_id, tier, account.is_host)
    return account


async def mark_premium(store: StorageBackend, account_id: str) -> AccountRecord:
    return await set_tier(store, account_id, "Premium")


async def mark_free(store: StorageBackend, account_id: str) -> AccountRecord:
    return await set_tier(store, account_id, "Free")


async def grant_host(store: StorageBackend, account_id: str) -> AccountRecord:
    account = await _update(store, account_id, role="host", is_host=True)
    logger.info("Account %s granted host access", account_id)
    return account
