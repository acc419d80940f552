"""
SQLite persistence backend for PathDB.

All documents live in a single SQLite file with one row per document.
Payloads are stored as JSON text in the codec's wire form, so timestamps
survive the round trip.

Invariants:
    - One SQLite file per store
    - Every commit() runs in a single transaction
    - (collection_path, doc_id) is unique

How to change safely:
    - Schema migrations must be backward compatible
    - Bump SCHEMA_VERSION and migrate in _create_schema

Table schema:
    documents:
        - collection_path TEXT
        - doc_id TEXT
        - data_json TEXT
        - create_time_ns INTEGER (Unix ns)
        - update_time_ns INTEGER (Unix ns)
        - PRIMARY KEY (collection_path, doc_id)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .. import codec
from ..errors import BackendClosedError, BackendError
from ..timestamp import Timestamp
from .base import DeleteWrite, PutWrite, StoredDocument, Write

logger = logging.getLogger(__name__)


class SqliteBackend:
    """SQLite-backed implementation of StorageBackend.

    Thread safety:
        Each operation opens its own connection; SQLite serializes
        writers and WAL mode allows concurrent readers.

    Example:
        >>> backend = SqliteBackend("/var/lib/pathdb")
        >>> await backend.connect()
        >>> await backend.commit([PutWrite(doc)])
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        database_name: str = "pathdb",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the backend.

        Args:
            data_dir: Directory for the SQLite database file
            database_name: File stem of the database
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.data_dir = Path(data_dir)
        safe_name = "".join(c for c in database_name if c.isalnum() or c in "-_")
        self.db_path = self.data_dir / f"{safe_name}.db"
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._connected = False
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        if not self._connected:
            raise BackendClosedError("Not connected")

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                collection_path TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                data_json TEXT NOT NULL DEFAULT '{}',
                create_time_ns INTEGER NOT NULL,
                update_time_ns INTEGER NOT NULL,
                PRIMARY KEY (collection_path, doc_id)
            );

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def connect(self) -> None:
        """Create the database file and schema if needed."""
        async with self._lock:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self._connected = True
            with self._get_connection() as conn:
                self._create_schema(conn)
        logger.info("SQLite backend connected", extra={"db_path": str(self.db_path)})

    async def close(self) -> None:
        self._connected = False
        logger.info("SQLite backend closed", extra={"db_path": str(self.db_path)})

    def _row_to_document(self, row: sqlite3.Row) -> StoredDocument:
        return StoredDocument(
            collection_path=row["collection_path"],
            doc_id=row["doc_id"],
            data=codec.loads(row["data_json"]),
            create_time=Timestamp.from_nanos(row["create_time_ns"]),
            update_time=Timestamp.from_nanos(row["update_time_ns"]),
        )

    async def get(self, collection_path: str, doc_id: str) -> StoredDocument | None:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM documents WHERE collection_path = ? AND doc_id = ?",
                (collection_path, doc_id),
            )
            row = cursor.fetchone()
            if not row:
                return None
            return self._row_to_document(row)

    async def scan(self, collection_path: str) -> list[StoredDocument]:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM documents WHERE collection_path = ? ORDER BY doc_id",
                (collection_path,),
            )
            return [self._row_to_document(row) for row in cursor.fetchall()]

    async def commit(self, writes: list[Write]) -> None:
        # Serialize before opening the transaction so codec failures write nothing
        rows = []
        for write in writes:
            if isinstance(write, PutWrite):
                doc = write.document
                rows.append(
                    (
                        "put",
                        (
                            doc.collection_path,
                            doc.doc_id,
                            codec.dumps(doc.data),
                            doc.create_time.to_nanos(),
                            doc.update_time.to_nanos(),
                        ),
                    )
                )
            elif isinstance(write, DeleteWrite):
                rows.append(("delete", (write.collection_path, write.doc_id)))
            else:
                raise BackendError(f"Unknown write type: {type(write).__name__}")

        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    for kind, params in rows:
                        if kind == "put":
                            conn.execute(
                                """
                                INSERT OR REPLACE INTO documents
                                (collection_path, doc_id, data_json, create_time_ns, update_time_ns)
                                VALUES (?, ?, ?, ?, ?)
                                """,
                                params,
                            )
                        else:
                            conn.execute(
                                "DELETE FROM documents WHERE collection_path = ? AND doc_id = ?",
                                params,
                            )
                    conn.execute("COMMIT")

                except sqlite3.Error as e:
                    conn.execute("ROLLBACK")
                    raise BackendError(f"SQLite commit failed: {e}")

        logger.debug("Committed writes to SQLite", extra={"writes": len(writes)})

    async def get_stats(self) -> dict[str, int]:
        """Document and collection counts."""
        with self._get_connection() as conn:
            stats = {}
            cursor = conn.execute("SELECT COUNT(*) FROM documents")
            stats["documents"] = cursor.fetchone()[0]
            cursor = conn.execute("SELECT COUNT(DISTINCT collection_path) FROM documents")
            stats["collections"] = cursor.fetchone()[0]
            return stats
