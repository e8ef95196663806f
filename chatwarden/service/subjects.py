from __future__ import annotations

from typing import Optional

from chatwarden.logging import get_logger
from chatwarden.service.identity import SubjectIdentity
from chatwarden.storage.common import DocumentStore
from chatwarden.storage.errors import ConstraintViolation
from chatwarden.storage.models import SUBJECTS, Subject

logger = get_logger(__name__)


class SubjectDirectory:
    """Self-service creation of the caller's own subject record.

    Only the verified identity and a display name flow into the record;
    ``is_admin`` is always written ``False`` here.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def get(self, subject_id: str) -> Optional[Subject]:
        document = self.store.get(SUBJECTS, subject_id)
        return Subject.from_document(document) if document else None

    def ensure_subject(
        self, identity: SubjectIdentity, display_name: Optional[str] = None
    ) -> Subject:
        existing = self.get(identity.subject_id)
        if existing:
            return existing
        subject = Subject(
            id=identity.subject_id,
            email=identity.email or "",
            is_admin=False,
            display_name=display_name,
        )
        try:
            self.store.create(SUBJECTS, subject.to_document(), key=subject.id)
        except ConstraintViolation:
            # Concurrent first login created it; return the stored copy
            stored = self.get(identity.subject_id)
            if stored:
                return stored
            raise
        logger.info("subject_registered", subject_id=subject.id)
        return subject
