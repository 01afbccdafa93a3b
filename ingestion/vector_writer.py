"""Atomic persistence of a document's vector set.

A hash's vectors are replaced as a whole: the delete of any previous set and
the insert of ``seq = 0..k-1`` share one SQLite transaction, so a concurrent
reader sees either the old complete set, the new complete set, or nothing.
"""

import logging
import sqlite3
from collections.abc import Iterator, Sequence
from datetime import datetime

import numpy as np
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

import config
from ingestion.errors import WriteFailure
from ingestion.store import ContentStore
from types_models import Chunk

logger = logging.getLogger(__name__)

_INSERT_SQL = """
INSERT INTO content_vectors (hash, seq, pos, model, dim, embedding, embedded_at)
VALUES (?, ?, ?, ?, ?, ?, ?)
"""


class _DatabaseBusy(RuntimeError):
    """Wraps a locked/busy SQLite error so tenacity can retry it."""


class VectorWriter:
    """Writes complete (hash, seq, vector) sets, never partial ones."""

    def __init__(self, store: ContentStore, model_name: str = config.EMBED_MODEL) -> None:
        super().__init__()
        self._store = store
        self._model_name = model_name

    def _rows(
        self,
        hash_: str,
        chunks: Sequence[Chunk],
        vectors: Sequence[Sequence[float]] | np.ndarray,
    ) -> Iterator[tuple[object, ...]]:
        # Rows are converted lazily so a bad vector aborts mid-insert and
        # exercises the rollback path rather than failing up front.
        embedded_at = datetime.now().isoformat()
        dim: int | None = None
        for seq, (chunk, vector) in enumerate(zip(chunks, vectors)):
            row = np.asarray(vector, dtype=np.float32).reshape(-1)
            if dim is None:
                dim = int(row.shape[0])
            if row.shape[0] != dim or dim == 0:
                raise ValueError(
                    f"vector {seq} has dimension {row.shape[0]}, expected {dim}"
                )
            yield (
                hash_,
                seq,
                chunk.pos,
                self._model_name,
                dim,
                row.tobytes(),
                embedded_at,
            )

    @retry(
        retry=retry_if_exception_type(_DatabaseBusy),
        stop=stop_after_attempt(config.WRITE_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def _write_with_retry(
        self,
        hash_: str,
        chunks: Sequence[Chunk],
        vectors: Sequence[Sequence[float]] | np.ndarray,
    ) -> int:
        conn = self._store.db.conn
        try:
            with conn:
                _ = conn.execute("DELETE FROM content_vectors WHERE hash = ?", [hash_])
                cursor = conn.executemany(
                    _INSERT_SQL, self._rows(hash_, chunks, vectors)
                )
        except sqlite3.OperationalError as exc:
            message = str(exc).lower()
            if "locked" in message or "busy" in message:
                raise _DatabaseBusy(str(exc)) from exc
            raise
        return cursor.rowcount

    def write(
        self,
        hash_: str,
        chunks: Sequence[Chunk],
        vectors: Sequence[Sequence[float]] | np.ndarray,
    ) -> int:
        """Replace the vector set for ``hash_``; returns the number of rows written."""
        if len(chunks) != len(vectors):
            raise WriteFailure(
                f"{len(chunks)} chunks but {len(vectors)} vectors for {hash_[:12]}"
            )
        if not chunks:
            raise WriteFailure(f"refusing to write an empty vector set for {hash_[:12]}")

        try:
            written = self._write_with_retry(hash_, chunks, vectors)
        except (sqlite3.Error, ValueError, TypeError, _DatabaseBusy) as exc:
            logger.error("Vector write for %s rolled back: %s", hash_[:12], exc)
            raise WriteFailure(
                f"Failed to persist vectors for {hash_[:12]}: {exc}"
            ) from exc

        logger.debug("Persisted %d vectors for %s", written, hash_[:12])
        return written


__all__ = ["VectorWriter"]
