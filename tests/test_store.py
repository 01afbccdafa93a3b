from __future__ import annotations

import pytest

from ingestion.store import ContentStore, content_hash
from ingestion.vector_writer import VectorWriter
from types_models import Chunk

from fakes import fake_vector


def _embed(store: ContentStore, hash_: str, pieces: int = 1) -> None:
    chunks = [
        Chunk(seq=i, text=f"piece {i}", pos=i * 10, token_count=2) for i in range(pieces)
    ]
    _ = VectorWriter(store).write(hash_, chunks, [fake_vector(c.text) for c in chunks])


def test_ensure_schema_is_idempotent(store: ContentStore) -> None:
    store.ensure_schema()
    store.ensure_schema()

    assert {"content", "documents", "content_vectors"} <= set(store.db.table_names())


def test_identical_bodies_share_one_hash(store: ContentStore) -> None:
    first = store.add_document("a.txt", "same words")
    second = store.add_document("nested/b.txt", "same words")

    assert first == second == content_hash("same words")
    refs = list(store.documents_needing_embedding())
    assert len(refs) == 1
    assert refs[0].path == "a.txt"
    assert refs[0].size == len("same words".encode("utf-8"))


def test_size_is_utf8_byte_length(store: ContentStore) -> None:
    body = "naïve café ☕"
    _ = store.add_document("unicode.txt", body)

    (ref,) = store.documents_needing_embedding()

    assert ref.size == len(body.encode("utf-8"))
    assert ref.size > len(body)


def test_worklist_excludes_embedded_and_inactive(store: ContentStore) -> None:
    embedded = store.add_document("done.txt", "already embedded")
    pending = store.add_document("todo.txt", "still pending")
    _ = store.add_document("gone.txt", "deleted document")
    assert store.deactivate("gone.txt")
    _embed(store, embedded)

    hashes = [ref.hash for ref in store.documents_needing_embedding()]

    assert hashes == [pending]
    assert store.count_embedded() == 1


def test_worklist_is_ordered_by_hash_and_restartable(store: ContentStore) -> None:
    for i in range(5):
        _ = store.add_document(f"doc{i}.txt", f"body number {i}")

    first = [ref.hash for ref in store.documents_needing_embedding()]
    _embed(store, first[0])
    second = [ref.hash for ref in store.documents_needing_embedding()]

    assert first == sorted(first)
    assert second == first[1:]


def test_worklist_snapshot_ignores_writes_during_iteration(store: ContentStore) -> None:
    for i in range(3):
        _ = store.add_document(f"doc{i}.txt", f"snapshot body {i}")

    seen = []
    for ref in store.documents_needing_embedding():
        seen.append(ref.hash)
        _embed(store, ref.hash)

    assert len(seen) == 3
    assert list(store.documents_needing_embedding()) == []


def test_repointing_a_path_replaces_its_hash(store: ContentStore) -> None:
    old = store.add_document("notes.txt", "draft")
    new = store.add_document("notes.txt", "final")

    hashes = {ref.hash for ref in store.active_documents()}

    assert hashes == {new}
    assert old not in hashes


def test_deactivate_unknown_path_returns_false(store: ContentStore) -> None:
    assert store.deactivate("missing.txt") is False


def test_get_content_unknown_hash_raises(store: ContentStore) -> None:
    with pytest.raises(KeyError):
        _ = store.get_content("0" * 64)


def test_prune_orphan_vectors(store: ContentStore) -> None:
    kept = store.add_document("keep.txt", "keep me")
    dropped = store.add_document("drop.txt", "drop me")
    _embed(store, kept, pieces=2)
    _embed(store, dropped, pieces=3)
    _ = store.deactivate("drop.txt")

    removed = store.prune_orphan_vectors()

    assert removed == 3
    assert store.vector_sequences(kept) == [0, 1]
    assert store.vector_sequences(dropped) == []
