from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

SUBJECTS = "subjects"
USER_BANS = "user_bans"
ADDRESS_BANS = "address_bans"
ADDRESS_USAGE = "address_usage"
LICENSES = "licenses"
AUDIT_LOG = "audit_log"

COLLECTIONS = (SUBJECTS, USER_BANS, ADDRESS_BANS, ADDRESS_USAGE, LICENSES, AUDIT_LOG)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump_dt(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _load_dt(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        parsed = raw
    else:
        parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Subject:
    id: str
    email: str = ""
    is_admin: bool = False
    display_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "is_admin": self.is_admin,
            "display_name": self.display_name,
            "created_at": _dump_dt(self.created_at),
        }

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "Subject":
        return cls(
            id=str(data["id"]),
            email=data.get("email") or "",
            # Anything but a literal True is not an admin
            is_admin=data.get("is_admin") is True,
            display_name=data.get("display_name"),
            created_at=_load_dt(data.get("created_at")) or utcnow(),
        )

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "isAdmin": self.is_admin,
            "displayName": self.display_name,
            "createdAt": _dump_dt(self.created_at),
        }


@dataclass
class BanRecord:
    """A user or network-address ban; ``target`` is a user id or IP literal."""

    id: str
    target: str
    reason: str
    banned_by: str
    banned_at: datetime
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at

    def to_document(self, target_field: str) -> Dict[str, Any]:
        return {
            "id": self.id,
            target_field: self.target,
            "reason": self.reason,
            "banned_by": self.banned_by,
            "banned_at": _dump_dt(self.banned_at),
            "expires_at": _dump_dt(self.expires_at),
        }

    @classmethod
    def from_document(cls, data: Dict[str, Any], target_field: str) -> "BanRecord":
        return cls(
            id=str(data["id"]),
            target=str(data[target_field]),
            reason=data.get("reason", ""),
            banned_by=data.get("banned_by", ""),
            banned_at=_load_dt(data.get("banned_at")) or utcnow(),
            expires_at=_load_dt(data.get("expires_at")),
        )


@dataclass
class AddressUsage:
    id: str
    user_id: str
    ip_address: str
    email: str
    recorded_at: datetime
    last_used: datetime

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "ip_address": self.ip_address,
            "email": self.email,
            "recorded_at": _dump_dt(self.recorded_at),
            "last_used": _dump_dt(self.last_used),
        }

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "AddressUsage":
        recorded_at = _load_dt(data.get("recorded_at")) or utcnow()
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            ip_address=str(data["ip_address"]),
            email=data.get("email") or "",
            recorded_at=recorded_at,
            last_used=_load_dt(data.get("last_used")) or recorded_at,
        )


@dataclass
class License:
    key: str
    plan: str
    validity_days: int
    issued_by: str
    issued_at: datetime
    expires_at: datetime
    redeemed_by: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "plan": self.plan,
            "validity_days": self.validity_days,
            "issued_by": self.issued_by,
            "issued_at": _dump_dt(self.issued_at),
            "expires_at": _dump_dt(self.expires_at),
            "redeemed_by": self.redeemed_by,
        }

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "License":
        issued_at = _load_dt(data.get("issued_at")) or utcnow()
        return cls(
            key=str(data["key"]),
            plan=data["plan"],
            validity_days=int(data["validity_days"]),
            issued_by=data.get("issued_by", ""),
            issued_at=issued_at,
            expires_at=_load_dt(data.get("expires_at")) or issued_at,
            redeemed_by=data.get("redeemed_by"),
        )


@dataclass
class AuditEntry:
    id: str
    admin_id: str
    action: str
    target: str
    detail: str = ""
    created_at: datetime = field(default_factory=utcnow)

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "admin_id": self.admin_id,
            "action": self.action,
            "target": self.target,
            "detail": self.detail,
            "created_at": _dump_dt(self.created_at),
        }

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            id=str(data["id"]),
            admin_id=data.get("admin_id", ""),
            action=data.get("action", ""),
            target=data.get("target", ""),
            detail=data.get("detail", ""),
            created_at=_load_dt(data.get("created_at")) or utcnow(),
        )
