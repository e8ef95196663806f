from __future__ import annotations

from dataclasses import dataclass

from chatwarden.logging import get_logger
from chatwarden.service.errors import NotAdmin
from chatwarden.service.identity import SubjectIdentity
from chatwarden.storage.common import DocumentStore
from chatwarden.storage.models import SUBJECTS

logger = get_logger(__name__)


@dataclass(frozen=True)
class AdminIdentity:
    """Proof that a subject passed the privilege gate on this request."""

    admin_id: str
    email: str = ""


class PrivilegeGate:
    """The only component that can establish admin authority.

    The subject record is re-read on every call; nothing is cached, so a
    revoked flag takes effect on the revoked admin's very next request.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def require_admin(self, identity: SubjectIdentity) -> AdminIdentity:
        subject_id = identity.subject_id
        try:
            document = self.store.get(SUBJECTS, subject_id)
        except Exception as exc:
            # Fail closed: a store error is never read as "admin"
            logger.warning(
                "privilege_check_failed",
                subject_id=subject_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise NotAdmin("privilege lookup failed") from None
        if not isinstance(document, dict):
            logger.warning("privilege_denied", subject_id=subject_id, reason="no_subject")
            raise NotAdmin("subject not found")
        if document.get("is_admin") is not True:
            logger.warning("privilege_denied", subject_id=subject_id, reason="flag_not_set")
            raise NotAdmin("subject is not an admin")
        return AdminIdentity(admin_id=subject_id, email=document.get("email") or "")
