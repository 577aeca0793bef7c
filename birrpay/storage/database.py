import asyncio
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

import aiosqlite

from birrpay.core.resilience import PermanentStoreError, TransientStoreError
from birrpay.models.enums import WriteType
from birrpay.models.writes import PendingWrite, WriteOutcome
from birrpay.storage.base import Document

logger = logging.getLogger(__name__)


def _classify(exc: sqlite3.Error) -> TransientStoreError | PermanentStoreError:
    # Locked/busy databases and I/O hiccups clear up on retry.
    if isinstance(exc, sqlite3.OperationalError):
        return TransientStoreError(str(exc))
    return PermanentStoreError(str(exc))


class SQLiteDocumentStore:
    """Async SQLite-backed document store.

    Documents are JSON objects keyed by ``(collection, doc_id)``. Merge
    writes are shallow, top-level field updates. All SQL in the
    application lives in this class.

    Writes share one connection and therefore one transaction, so every
    method that commits holds ``_write_lock``.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = str(db_path)
        self.connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open connection, enable WAL mode, execute schema."""
        self.connection = await aiosqlite.connect(self.db_path)
        self.connection.row_factory = aiosqlite.Row
        schema_path = Path(__file__).parent / "schema.sql"
        schema_sql = schema_path.read_text()
        await self.connection.executescript(schema_sql)
        await self.connection.execute("PRAGMA journal_mode=WAL")
        await self.connection.commit()
        logger.info(f"Document store initialized at {self.db_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self.connection:
            await self.connection.close()
            self.connection = None

    async def __aenter__(self) -> "SQLiteDocumentStore":
        await self.initialize()
        return self

    async def __aexit__(
        self, exc_type: type | None, exc_val: Exception | None, exc_tb: object
    ) -> None:
        await self.close()

    def _conn(self) -> aiosqlite.Connection:
        if self.connection is None:
            raise TransientStoreError("Document store is not connected")
        return self.connection

    # ── Documents ─────────────────────────────────────────────────────────

    async def get_document(self, collection: str, doc_id: str) -> Document | None:
        try:
            cursor = await self._conn().execute(
                "SELECT data FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            )
            row = await cursor.fetchone()
        except sqlite3.Error as exc:
            raise _classify(exc) from exc
        if row is None:
            return None
        return json.loads(row["data"])

    async def set_document(
        self, collection: str, doc_id: str, document: Document, merge: bool = False
    ) -> None:
        async with self._write_lock:
            try:
                await self._write(collection, doc_id, document, merge=merge)
                await self._conn().commit()
            except sqlite3.Error as exc:
                raise _classify(exc) from exc
            except (TypeError, ValueError) as exc:
                raise PermanentStoreError(f"Document is not JSON-serialisable: {exc}") from exc

    async def delete_document(self, collection: str, doc_id: str) -> bool:
        async with self._write_lock:
            try:
                cursor = await self._conn().execute(
                    "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id),
                )
                await self._conn().commit()
            except sqlite3.Error as exc:
                raise _classify(exc) from exc
        return cursor.rowcount > 0

    async def count(self, collection: str) -> int:
        try:
            cursor = await self._conn().execute(
                "SELECT COUNT(*) AS n FROM documents WHERE collection = ?", (collection,)
            )
            row = await cursor.fetchone()
        except sqlite3.Error as exc:
            raise _classify(exc) from exc
        return row["n"] if row else 0

    async def bulk_write(
        self, collection: str, operation: WriteType, items: list[PendingWrite]
    ) -> list[WriteOutcome]:
        """Apply *items* in order and commit once.

        Per-item failures are reported in the returned outcomes; a failure
        to commit rolls the call back and raises for the whole call.
        """
        conn = self._conn()
        outcomes: list[WriteOutcome] = []
        async with self._write_lock:
            for item in items:
                try:
                    await self._apply(collection, operation, item)
                except (PermanentStoreError, TypeError, ValueError) as exc:
                    outcomes.append(
                        WriteOutcome(
                            doc_id=item.doc_id, ok=False, error=str(exc), retriable=False
                        )
                    )
                except sqlite3.Error as exc:
                    err = _classify(exc)
                    outcomes.append(
                        WriteOutcome(
                            doc_id=item.doc_id,
                            ok=False,
                            error=str(err),
                            retriable=isinstance(err, TransientStoreError),
                        )
                    )
                else:
                    outcomes.append(WriteOutcome(doc_id=item.doc_id, ok=True))
            try:
                await conn.commit()
            except sqlite3.Error as exc:
                await conn.rollback()
                raise _classify(exc) from exc
        return outcomes

    # ── Internals ─────────────────────────────────────────────────────────

    async def _apply(self, collection: str, operation: WriteType, item: PendingWrite) -> None:
        if operation == WriteType.DELETE:
            await self._conn().execute(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, item.doc_id),
            )
            return
        if operation == WriteType.UPDATE:
            existing = await self._read_raw(collection, item.doc_id)
            if existing is None:
                raise PermanentStoreError(
                    f"Cannot update missing document {collection}/{item.doc_id}"
                )
            await self._write(collection, item.doc_id, item.payload, merge=True, existing=existing)
            return
        await self._write(collection, item.doc_id, item.payload, merge=False)

    async def _read_raw(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        cursor = await self._conn().execute(
            "SELECT data FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        )
        row = await cursor.fetchone()
        return json.loads(row["data"]) if row else None

    async def _write(
        self,
        collection: str,
        doc_id: str,
        document: Document,
        *,
        merge: bool,
        existing: dict[str, Any] | None = None,
    ) -> None:
        data = dict(document)
        if merge:
            if existing is None:
                existing = await self._read_raw(collection, doc_id)
            data = {**(existing or {}), **document}
        await self._conn().execute(
            """INSERT INTO documents (collection, doc_id, data, updated_at)
               VALUES (?, ?, ?, datetime('now'))
               ON CONFLICT(collection, doc_id) DO UPDATE SET
                   data = excluded.data,
                   updated_at = excluded.updated_at""",
            (collection, doc_id, json.dumps(data)),
        )
