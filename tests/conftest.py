from __future__ import annotations

from pathlib import Path

import pytest

from ingestion.store import ContentStore


@pytest.fixture
def store(tmp_path: Path) -> ContentStore:
    content_store = ContentStore(tmp_path / "documents.db")
    content_store.ensure_schema()
    return content_store
