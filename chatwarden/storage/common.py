"""Common storage contract shared between memory and postgres implementations.

Both backends expose the same document-store surface: documents are plain
JSON-compatible dicts addressed by ``collection`` + ``key``. Services never
reach past this protocol, so the backends are interchangeable.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional, Protocol

from chatwarden.storage.errors import ConstraintViolation
from chatwarden.storage.models import COLLECTIONS


class DocumentStore(Protocol):
    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]: ...

    def create(
        self, collection: str, document: Dict[str, Any], key: Optional[str] = None
    ) -> str: ...

    def update(self, collection: str, key: str, fields: Dict[str, Any]) -> bool: ...

    def delete(self, collection: str, key: str) -> bool: ...

    def find(self, collection: str, **equals: Any) -> List[Dict[str, Any]]: ...

    def verify_connection(self) -> None: ...


def ensure_collection(collection: str) -> str:
    """Reject unknown collection names before they reach a backend."""
    if collection not in COLLECTIONS:
        raise ValueError(f"unknown collection: {collection}")
    return collection


def new_document_key() -> str:
    return uuid.uuid4().hex


def prepare_document(
    collection: str, document: Dict[str, Any], key: Optional[str]
) -> tuple[str, Dict[str, Any]]:
    """Resolve the key for a new document and stamp it into the body as ``id``."""
    ensure_collection(collection)
    resolved = key or document.get("id") or new_document_key()
    if not isinstance(resolved, str):
        raise ConstraintViolation("document key must be a string", {"key": repr(resolved)})
    body = dict(document)
    body["id"] = resolved
    return resolved, body


def matches(document: Dict[str, Any], equals: Dict[str, Any]) -> bool:
    # Same semantics as JSONB containment: a missing field never matches
    return all(
        field in document and document[field] == value for field, value in equals.items()
    )
