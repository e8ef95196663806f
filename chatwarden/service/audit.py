from __future__ import annotations

import uuid
from enum import Enum
from typing import Optional

from chatwarden.logging import get_logger
from chatwarden.service.privilege import AdminIdentity
from chatwarden.storage.common import DocumentStore
from chatwarden.storage.models import AUDIT_LOG, AuditEntry, utcnow

logger = get_logger("chatwarden.audit")


class AuditAction(str, Enum):
    BAN_USER = "ban_user"
    BAN_IP = "ban_ip"
    DELETE_USER = "delete_user"
    CREATE_LICENSE = "create_license"
    GRANT_ADMIN = "grant_admin"
    REVOKE_ADMIN = "revoke_admin"


_VERBS = {
    AuditAction.BAN_USER: "banned user",
    AuditAction.BAN_IP: "banned IP",
    AuditAction.DELETE_USER: "deleted user",
    AuditAction.CREATE_LICENSE: "created license",
    AuditAction.GRANT_ADMIN: "granted admin to",
    AuditAction.REVOKE_ADMIN: "revoked admin from",
}


def format_admin_action(admin_id: str, action: AuditAction, target: str, reason: str) -> str:
    """Render the stable line scraped by external log tooling."""
    return f"[ADMIN_ACTION] {admin_id} {_VERBS[action]} {target}. Reason: {reason}"


class AuditSink:
    """Append-only record of completed privileged mutations.

    Best effort: a failed write is logged and swallowed so it can never fail
    or roll back the moderation action that triggered it.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def record(
        self,
        admin: AdminIdentity,
        action: AuditAction,
        target: str,
        detail: Optional[str] = None,
    ) -> Optional[str]:
        reason = detail or "n/a"
        try:
            logger.info(
                format_admin_action(admin.admin_id, action, target, reason),
                admin_id=admin.admin_id,
                action=action.value,
                target=target,
            )
            entry = AuditEntry(
                id=uuid.uuid4().hex,
                admin_id=admin.admin_id,
                action=action.value,
                target=target,
                detail=detail or "",
                created_at=utcnow(),
            )
            return self.store.create(AUDIT_LOG, entry.to_document(), key=entry.id)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                admin_id=admin.admin_id,
                action=action.value,
                target=target,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
