from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from chatwarden.api.schemas import normalize_ip
from chatwarden.logging import get_logger
from chatwarden.service.errors import ValidationFailed
from chatwarden.storage.common import DocumentStore
from chatwarden.storage.models import (
    ADDRESS_BANS,
    ADDRESS_USAGE,
    USER_BANS,
    AddressUsage,
    BanRecord,
    utcnow,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class BanStatus:
    banned: bool
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None

    def to_response(self) -> Dict[str, Any]:
        if not self.banned:
            return {"banned": False}
        return {
            "banned": True,
            "reason": self.reason,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass(frozen=True)
class AddressLimit:
    count: int
    max_accounts: int
    limit_exceeded: bool

    def to_response(self) -> Dict[str, Any]:
        return {
            "accountCount": self.count,
            "maxAccounts": self.max_accounts,
            "isLimitExceeded": self.limit_exceeded,
        }


def _address(value: str) -> str:
    try:
        return normalize_ip(value)
    except ValueError as exc:
        raise ValidationFailed(
            "Invalid IP address", detail=[{"field": "ipAddress", "message": str(exc)}]
        ) from None


class NetworkAbuseGuard:
    """Pre-authentication abuse checks run at signup and sign-in.

    Ban expiry is lazy: an expired record is deleted the first time a lookup
    sees it. Two concurrent lookups may both try the delete; the loser's
    delete is a no-op.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def _active_ban(
        self, collection: str, target_field: str, target: str
    ) -> BanStatus:
        now = utcnow()
        active: List[BanRecord] = []
        for document in self.store.find(collection, **{target_field: target}):
            ban = BanRecord.from_document(document, target_field)
            if ban.is_expired(now):
                self.store.delete(collection, ban.id)
                logger.info(
                    "ban_expired_removed",
                    collection=collection,
                    ban_id=ban.id,
                    expired_at=ban.expires_at.isoformat() if ban.expires_at else None,
                )
                continue
            active.append(ban)
        if not active:
            return BanStatus(banned=False)
        # Permanent bans outrank any dated one, otherwise the latest expiry wins
        winner = max(
            active,
            key=lambda b: (b.expires_at is None, b.expires_at or b.banned_at),
        )
        return BanStatus(banned=True, reason=winner.reason, expires_at=winner.expires_at)

    def check_ban(self, address: str) -> BanStatus:
        return self._active_ban(ADDRESS_BANS, "ip_address", _address(address))

    def check_user_ban(self, user_id: str) -> BanStatus:
        return self._active_ban(USER_BANS, "user_id", user_id)

    def check_address_limit(self, address: str, max_accounts: int) -> AddressLimit:
        records = self.store.find(ADDRESS_USAGE, ip_address=_address(address))
        count = len(records)
        return AddressLimit(
            count=count, max_accounts=max_accounts, limit_exceeded=count >= max_accounts
        )

    def record_address_usage(
        self, user_id: str, address: str, email: Optional[str] = None
    ) -> str:
        """Link ``user_id`` to ``address``; repeat calls only refresh ``last_used``."""
        ip = _address(address)
        now = utcnow()
        existing = self.store.find(ADDRESS_USAGE, user_id=user_id, ip_address=ip)
        if existing:
            usage_id = str(existing[0]["id"])
            self.store.update(ADDRESS_USAGE, usage_id, {"last_used": now.isoformat()})
            return usage_id
        usage = AddressUsage(
            id=uuid.uuid4().hex,
            user_id=user_id,
            ip_address=ip,
            email=email or "",
            recorded_at=now,
            last_used=now,
        )
        return self.store.create(ADDRESS_USAGE, usage.to_document(), key=usage.id)
