"""SQLite-backed content-addressed document store.

Documents point at content rows by the SHA-256 of their body; vectors hang off
the same hash, so two paths with identical bytes share one embedding set. The
ingestion governor only reads ``documents``/``content`` and writes
``content_vectors`` (through ``VectorWriter``); ``add_document`` and
``deactivate`` exist for the crawler side and for tests.
"""

import hashlib
import logging
from collections.abc import Iterator
from datetime import datetime
from pathlib import Path

import sqlite_utils

import config
from types_models import DocumentRef

logger = logging.getLogger(__name__)

# Active hashes with no sequence-0 vector; shared by the work queue and the breakdown.
UNEMBEDDED_SQL = """
SELECT c.hash AS hash,
       length(CAST(c.doc AS BLOB)) AS size,
       MIN(d.path) AS path
FROM content c
JOIN documents d ON d.hash = c.hash AND d.active = 1
LEFT JOIN content_vectors v ON v.hash = c.hash AND v.seq = 0
WHERE v.hash IS NULL
GROUP BY c.hash
"""

ACTIVE_SQL = """
SELECT c.hash AS hash,
       length(CAST(c.doc AS BLOB)) AS size,
       MIN(d.path) AS path
FROM content c
JOIN documents d ON d.hash = c.hash AND d.active = 1
GROUP BY c.hash
"""


def content_hash(body: str) -> str:
    """SHA-256 hex digest of the UTF-8 body bytes."""
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


class ContentStore:
    """Read access to documents and content, plus schema management."""

    def __init__(self, db_path: Path | str = config.DB_PATH) -> None:
        super().__init__()
        self.db_path = Path(db_path)
        self.db = sqlite_utils.Database(str(self.db_path))

    def ensure_schema(self) -> None:
        """Create the content, documents, and content_vectors tables if missing."""
        table_names = set(self.db.table_names())

        if "content" not in table_names:
            self.db["content"].create(
                {"hash": str, "doc": str, "created_at": str},
                pk="hash",
            )

        if "documents" not in table_names:
            documents = self.db["documents"]
            documents.create(
                {
                    "id": int,
                    "collection": str,
                    "path": str,
                    "hash": str,
                    "active": int,
                    "created_at": str,
                    "modified_at": str,
                },
                pk="id",
                not_null={"collection", "path", "hash", "active"},
                defaults={"active": 1},
            )
            documents.create_index(["collection", "path"], unique=True)
            documents.create_index(["hash"])

        if "content_vectors" not in table_names:
            self.db["content_vectors"].create(
                {
                    "hash": str,
                    "seq": int,
                    "pos": int,
                    "model": str,
                    "dim": int,
                    "embedding": bytes,
                    "embedded_at": str,
                },
                pk=("hash", "seq"),
            )

    def add_document(
        self,
        path: str,
        body: str,
        *,
        collection: str = config.DEFAULT_COLLECTION,
    ) -> str:
        """Insert (or re-point) a document at its content-addressed body."""
        digest = content_hash(body)
        now = datetime.now().isoformat()
        with self.db.conn:
            self.db.execute(
                "INSERT OR IGNORE INTO content (hash, doc, created_at) VALUES (?, ?, ?)",
                [digest, body, now],
            )
            self.db.execute(
                """
                INSERT INTO documents (collection, path, hash, active, created_at, modified_at)
                VALUES (?, ?, ?, 1, ?, ?)
                ON CONFLICT(collection, path) DO UPDATE SET
                    hash = excluded.hash,
                    active = 1,
                    modified_at = excluded.modified_at
                """,
                [collection, path, digest, now, now],
            )
        return digest

    def deactivate(
        self, path: str, *, collection: str = config.DEFAULT_COLLECTION
    ) -> bool:
        """Soft-delete a document; returns False when no active row matched."""
        with self.db.conn:
            cursor = self.db.execute(
                "UPDATE documents SET active = 0, modified_at = ? "
                + "WHERE collection = ? AND path = ? AND active = 1",
                [datetime.now().isoformat(), collection, path],
            )
        return cursor.rowcount > 0

    def documents_needing_embedding(self) -> Iterator[DocumentRef]:
        """Yield active hashes lacking vectors, ordered by hash.

        The rows are fetched with a single statement before the first yield, so
        writes made while the caller iterates never add or drop entries.
        Calling again starts a fresh snapshot.
        """
        rows = self.db.execute(UNEMBEDDED_SQL + " ORDER BY c.hash").fetchall()
        for hash_, size, path in rows:
            yield DocumentRef(hash=hash_, size=size, path=path)

    def active_documents(self) -> Iterator[DocumentRef]:
        """Yield every active hash, embedded or not, ordered by hash."""
        rows = self.db.execute(ACTIVE_SQL + " ORDER BY c.hash").fetchall()
        for hash_, size, path in rows:
            yield DocumentRef(hash=hash_, size=size, path=path)

    def get_content(self, hash_: str) -> str:
        row = self.db.execute(
            "SELECT doc FROM content WHERE hash = ?", [hash_]
        ).fetchone()
        if row is None:
            raise KeyError(hash_)
        return str(row[0] or "")

    def vector_sequences(self, hash_: str) -> list[int]:
        rows = self.db.execute(
            "SELECT seq FROM content_vectors WHERE hash = ? ORDER BY seq", [hash_]
        ).fetchall()
        return [int(row[0]) for row in rows]

    def count_embedded(self) -> int:
        """Active hashes that have at least a sequence-0 vector."""
        row = self.db.execute(
            """
            SELECT COUNT(DISTINCT d.hash)
            FROM documents d
            JOIN content_vectors v ON v.hash = d.hash AND v.seq = 0
            WHERE d.active = 1
            """
        ).fetchone()
        return int(row[0]) if row else 0

    def prune_orphan_vectors(self) -> int:
        """Delete vectors whose hash no active document references."""
        with self.db.conn:
            cursor = self.db.execute(
                """
                DELETE FROM content_vectors
                WHERE hash NOT IN (SELECT hash FROM documents WHERE active = 1)
                """
            )
        removed = cursor.rowcount
        if removed:
            logger.info("🧹 Removed %d orphaned vector rows", removed)
        return removed


__all__ = ["ACTIVE_SQL", "ContentStore", "UNEMBEDDED_SQL", "content_hash"]
