from __future__ import annotations

import contextlib
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from chatwarden.logging import get_logger
from chatwarden.storage.common import ensure_collection, prepare_document
from chatwarden.storage.errors import ConstraintViolation, StoreUnavailable


class PostgresStore:
    """Postgres-backed document store: one JSONB row per document."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        """Yield a pooled connection, translating infrastructure failures."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, errors.InterfaceError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("document store unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS document (
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    body JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    PRIMARY KEY (collection, id)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS document_body_gin ON document USING GIN (body jsonb_path_ops)"
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        ensure_collection(collection)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT body FROM document WHERE collection = %s AND id = %s",
                (collection, key),
            ).fetchone()
        return dict(row["body"]) if row else None

    def create(
        self, collection: str, document: Dict[str, Any], key: Optional[str] = None
    ) -> str:
        resolved, body = prepare_document(collection, document, key)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO document (collection, id, body) VALUES (%s, %s, %s)",
                    (collection, resolved, Jsonb(body)),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "document already exists", {"collection": collection, "key": resolved}
            )
        return resolved

    def update(self, collection: str, key: str, fields: Dict[str, Any]) -> bool:
        ensure_collection(collection)
        changes = {k: v for k, v in fields.items() if k != "id"}
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE document
                SET body = body || %s, updated_at = now()
                WHERE collection = %s AND id = %s
                """,
                (Jsonb(changes), collection, key),
            )
            return result.rowcount > 0

    def delete(self, collection: str, key: str) -> bool:
        ensure_collection(collection)
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM document WHERE collection = %s AND id = %s",
                (collection, key),
            )
            return result.rowcount > 0

    def find(self, collection: str, **equals: Any) -> List[Dict[str, Any]]:
        ensure_collection(collection)
        with self._connect() as conn:
            if equals:
                rows = conn.execute(
                    "SELECT body FROM document WHERE collection = %s AND body @> %s ORDER BY created_at",
                    (collection, Jsonb(equals)),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT body FROM document WHERE collection = %s ORDER BY created_at",
                    (collection,),
                ).fetchall()
        return [dict(row["body"]) for row in rows]

    def close(self) -> None:
        self.pool.close()
