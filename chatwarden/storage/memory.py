from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from chatwarden.logging import get_logger
from chatwarden.storage.common import ensure_collection, matches, prepare_document
from chatwarden.storage.errors import ConstraintViolation, StoreUnavailable
from chatwarden.storage.models import COLLECTIONS

Collections = Dict[str, Dict[str, Dict[str, Any]]]


class MemoryStore:
    """In-process document store persisted to a JSON file under ``fs_root``.

    Writes are copy-on-write: the changed collection is built aside, the whole
    state is written to disk, and only then swapped into ``self.collections``.
    A failed write leaves both the in-memory view and the file as they were.
    """

    def __init__(self, fs_root: str = "/tmp/chatwarden") -> None:
        self.logger = get_logger(__name__)
        self.collections: Collections = {name: {} for name in COLLECTIONS}
        # RLock so nested helpers can re-enter within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state(self.collections)

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        if not self.fs_root.is_dir():
            raise StoreUnavailable("memory store root missing", {"path": str(self.fs_root)})

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        ensure_collection(collection)
        with self._data_lock:
            document = self.collections[collection].get(key)
            return copy.deepcopy(document) if document is not None else None

    def create(
        self, collection: str, document: Dict[str, Any], key: Optional[str] = None
    ) -> str:
        resolved, body = prepare_document(collection, document, key)
        with self._data_lock:
            if resolved in self.collections[collection]:
                raise ConstraintViolation(
                    "document already exists", {"collection": collection, "key": resolved}
                )
            docs = dict(self.collections[collection])
            docs[resolved] = copy.deepcopy(body)
            self._commit(collection, docs)
        return resolved

    def update(self, collection: str, key: str, fields: Dict[str, Any]) -> bool:
        ensure_collection(collection)
        with self._data_lock:
            current = self.collections[collection].get(key)
            if current is None:
                return False
            changes = {k: v for k, v in fields.items() if k != "id"}
            docs = dict(self.collections[collection])
            docs[key] = {**current, **copy.deepcopy(changes)}
            self._commit(collection, docs)
            return True

    def delete(self, collection: str, key: str) -> bool:
        ensure_collection(collection)
        with self._data_lock:
            if key not in self.collections[collection]:
                return False
            docs = {k: v for k, v in self.collections[collection].items() if k != key}
            self._commit(collection, docs)
            return True

    def find(self, collection: str, **equals: Any) -> List[Dict[str, Any]]:
        ensure_collection(collection)
        with self._data_lock:
            return [
                copy.deepcopy(doc)
                for doc in self.collections[collection].values()
                if matches(doc, equals)
            ]

    def _commit(self, collection: str, docs: Dict[str, Dict[str, Any]]) -> None:
        candidate = {**self.collections, collection: docs}
        self._persist_state(candidate)
        self.collections = candidate

    def _persist_state(self, collections: Collections) -> None:
        path = self._state_path()
        tmp_name = None
        try:
            payload = json.dumps(collections, indent=2)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(path.parent), prefix=".memory_store.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            # Readers only ever see the old file or the complete new one
            os.replace(tmp_name, path)
            tmp_name = None
        except (OSError, TypeError, ValueError) as exc:
            self.logger.error("memory_store_persist_failed", path=str(path), error=str(exc))
            raise StoreUnavailable(
                f"failed to persist in-memory state: {exc}", {"path": str(path)}
            ) from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    def _load_state(self) -> bool:
        path = self._state_path()
        # try/except instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            # Refuse to start over a damaged file; starting empty would overwrite it
            self.logger.error("memory_store_state_unreadable", path=str(path), error=str(exc))
            raise StoreUnavailable(
                f"memory store state unreadable: {exc}", {"path": str(path)}
            ) from exc
        if not isinstance(data, dict):
            raise StoreUnavailable(
                "memory store state is not a JSON object", {"path": str(path)}
            )
        for name in COLLECTIONS:
            raw = data.get(name) or {}
            if isinstance(raw, dict):
                self.collections[name] = {str(k): v for k, v in raw.items()}
        return True
