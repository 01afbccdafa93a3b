"""Pending vs. too-large accounting for documents that still lack vectors.

Counts are always recomputed from the store: the ceiling can change between
invocations and every embed pass mutates the vector table.
"""

from __future__ import annotations

import logging

from ingestion.store import UNEMBEDDED_SQL, ContentStore
from types_models import EmbedBreakdown, EmbedStatus

logger = logging.getLogger(__name__)

_BREAKDOWN_SQL = f"""
SELECT COALESCE(SUM(CASE WHEN u.size <= ? THEN 1 ELSE 0 END), 0) AS pending,
       COALESCE(SUM(CASE WHEN u.size > ? THEN 1 ELSE 0 END), 0) AS too_large
FROM ({UNEMBEDDED_SQL}) AS u
"""


def breakdown(store: ContentStore, ceiling: int) -> EmbedBreakdown:
    """Partition active, non-embedded documents by ``size <= ceiling``."""
    if ceiling <= 0:
        raise ValueError(f"ceiling must be positive, got {ceiling}")
    row = store.db.execute(_BREAKDOWN_SQL, [ceiling, ceiling]).fetchone()
    pending, too_large = (int(row[0]), int(row[1])) if row else (0, 0)
    return EmbedBreakdown(pending=pending, too_large=too_large)


def embedding_status(store: ContentStore, ceiling: int) -> EmbedStatus:
    """Embedded/pending/too-large counts for the ``status`` action."""
    split = breakdown(store, ceiling)
    embedded = store.count_embedded()
    logger.debug(
        "Status: embedded=%d pending=%d too_large=%d (ceiling %d)",
        embedded,
        split.pending,
        split.too_large,
        ceiling,
    )
    return EmbedStatus(
        embedded=embedded,
        pending=split.pending,
        too_large=split.too_large,
        ceiling=ceiling,
    )


__all__ = ["breakdown", "embedding_status"]
