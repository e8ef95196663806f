from __future__ import annotations

import base64
import hashlib
import secrets
import uuid
from datetime import timedelta
from typing import List, Optional, Union

from chatwarden.api.schemas import LicensePlan
from chatwarden.logging import get_logger
from chatwarden.service.audit import AuditAction, AuditSink
from chatwarden.service.errors import TargetNotFound, ValidationFailed
from chatwarden.service.identity import IdentityProvider
from chatwarden.service.privilege import AdminIdentity
from chatwarden.storage.common import DocumentStore
from chatwarden.storage.errors import ConstraintViolation
from chatwarden.storage.models import (
    ADDRESS_BANS,
    LICENSES,
    SUBJECTS,
    USER_BANS,
    BanRecord,
    License,
    Subject,
    utcnow,
)

logger = get_logger(__name__)

# 160 bits of entropy, rendered as four groups of eight base32 characters
LICENSE_KEY_BYTES = 20
_LICENSE_KEY_ATTEMPTS = 3


def generate_license_key() -> str:
    raw = base64.b32encode(secrets.token_bytes(LICENSE_KEY_BYTES)).decode("ascii")
    return "-".join(raw[i : i + 8] for i in range(0, len(raw), 8))


def license_fingerprint(key: str) -> str:
    """Short non-reversible handle for a key, safe to put in logs."""
    return "license:" + hashlib.sha256(key.encode()).hexdigest()[:12]


class ModerationEngine:
    """Privileged state transitions.

    Every public operation takes an :class:`AdminIdentity`, which only
    :class:`~chatwarden.service.privilege.PrivilegeGate` hands out, and writes
    exactly one audit entry after the mutation succeeds.
    """

    def __init__(
        self,
        store: DocumentStore,
        audit: AuditSink,
        identity_provider: Optional[IdentityProvider] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.identity_provider = identity_provider

    def _require_subject(self, user_id: str) -> Subject:
        document = self.store.get(SUBJECTS, user_id)
        if not document:
            raise TargetNotFound("User not found", detail={"userId": user_id})
        return Subject.from_document(document)

    def _create_ban(
        self,
        collection: str,
        target_field: str,
        target: str,
        admin: AdminIdentity,
        reason: str,
        duration_days: int,
    ) -> BanRecord:
        now = utcnow()
        ban = BanRecord(
            id=uuid.uuid4().hex,
            target=target,
            reason=reason,
            banned_by=admin.admin_id,
            banned_at=now,
            expires_at=now + timedelta(days=duration_days),
        )
        self.store.create(collection, ban.to_document(target_field), key=ban.id)
        return ban

    def ban_user(
        self, admin: AdminIdentity, target_user_id: str, reason: str, duration_days: int
    ) -> str:
        self._require_subject(target_user_id)
        ban = self._create_ban(
            USER_BANS, "user_id", target_user_id, admin, reason, duration_days
        )
        self.audit.record(admin, AuditAction.BAN_USER, target_user_id, reason)
        return ban.id

    def ban_ip(
        self, admin: AdminIdentity, address: str, reason: str, duration_days: int
    ) -> str:
        ban = self._create_ban(
            ADDRESS_BANS, "ip_address", address, admin, reason, duration_days
        )
        self.audit.record(admin, AuditAction.BAN_IP, address, reason)
        return ban.id

    async def delete_user(self, admin: AdminIdentity, target_user_id: str) -> None:
        self._require_subject(target_user_id)
        if not self.store.delete(SUBJECTS, target_user_id):
            # Lost a race with a concurrent delete
            raise TargetNotFound("User not found", detail={"userId": target_user_id})
        if self.identity_provider is not None:
            try:
                await self.identity_provider.delete_account(target_user_id)
            except Exception as exc:
                # The subject record is already gone; surface for operator follow-up
                logger.error(
                    "identity_account_removal_failed",
                    user_id=target_user_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        self.audit.record(admin, AuditAction.DELETE_USER, target_user_id, "account deleted")

    def create_license(
        self,
        admin: AdminIdentity,
        plan: Union[LicensePlan, str],
        validity_days: int,
    ) -> str:
        try:
            tier = LicensePlan(plan)
        except ValueError:
            raise ValidationFailed(
                "Invalid license plan",
                detail=[{"field": "plan", "message": f"unknown plan {plan!r}"}],
            ) from None
        now = utcnow()
        for _ in range(_LICENSE_KEY_ATTEMPTS):
            license_ = License(
                key=generate_license_key(),
                plan=tier.value,
                validity_days=validity_days,
                issued_by=admin.admin_id,
                issued_at=now,
                expires_at=now + timedelta(days=validity_days),
            )
            try:
                self.store.create(LICENSES, license_.to_document(), key=license_.key)
            except ConstraintViolation:
                continue
            break
        else:
            raise RuntimeError("could not allocate a unique license key")
        self.audit.record(
            admin,
            AuditAction.CREATE_LICENSE,
            license_fingerprint(license_.key),
            f"{tier.value} plan, {validity_days} days",
        )
        return license_.key

    def set_admin(self, admin: AdminIdentity, target_user_id: str, is_admin: bool) -> Subject:
        subject = self._require_subject(target_user_id)
        if not self.store.update(SUBJECTS, target_user_id, {"is_admin": is_admin is True}):
            raise TargetNotFound("User not found", detail={"userId": target_user_id})
        subject.is_admin = is_admin is True
        action = AuditAction.GRANT_ADMIN if subject.is_admin else AuditAction.REVOKE_ADMIN
        self.audit.record(admin, action, target_user_id, f"is_admin={str(subject.is_admin).lower()}")
        return subject

    def list_subjects(self, admin: AdminIdentity, limit: int = 500) -> List[Subject]:
        subjects = [Subject.from_document(doc) for doc in self.store.find(SUBJECTS)]
        subjects.sort(key=lambda s: s.created_at, reverse=True)
        logger.info("admin_list_subjects", admin_id=admin.admin_id, count=len(subjects))
        return subjects[:limit]
