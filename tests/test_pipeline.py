from __future__ import annotations

import logging
import os
import signal
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

from ingestion import chunking
from ingestion.accelerator import AcceleratorGuard
from ingestion.chunking import Chunker
from ingestion.embedder import EmbeddingInvoker
from ingestion.errors import ModelError
from ingestion.pipeline import IngestionGovernor, print_summary
from ingestion.store import ContentStore
from ingestion.vector_writer import VectorWriter
from types_models import EmbedOptions, EmbedSummary, ResourceLimits

from fakes import (
    ABORT_MARKER,
    AbortOnAcceleratorFactory,
    CharTokenizer,
    InlineGuard,
)

CEILING = 1_000


def _governor(
    store: ContentStore,
    guard: object,
    tmp_path: Path,
    *,
    ceiling: int = CEILING,
    layers: int | None = 0,
    chunker: Chunker | None = None,
) -> IngestionGovernor:
    return IngestionGovernor(
        store,
        ResourceLimits(max_embed_bytes=ceiling, gpu_layers=layers),
        chunker=chunker or Chunker(CharTokenizer(), size=50, overlap=10),
        invoker=EmbeddingInvoker(guard),  # type: ignore[arg-type]
        guard=guard,  # type: ignore[arg-type]
        writer=VectorWriter(store),
        crash_log=tmp_path / "crash_log.txt",
    )


def test_embeds_pending_documents(store: ContentStore, tmp_path: Path) -> None:
    short = store.add_document("short.txt", "a brief document")
    longer = store.add_document("long.txt", "word " * 60)
    guard = InlineGuard()

    summary = _governor(store, guard, tmp_path).run()

    assert summary.embedded == 2
    assert summary.failed == 0
    assert store.vector_sequences(short) == [0]
    assert store.vector_sequences(longer) == list(range(len(store.vector_sequences(longer))))
    assert len(store.vector_sequences(longer)) == 8
    assert summary.chunk_total == 9
    assert list(store.documents_needing_embedding()) == []


def test_second_pass_has_nothing_to_do(store: ContentStore, tmp_path: Path) -> None:
    _ = store.add_document("a.txt", "already handled")
    guard = InlineGuard()
    _ = _governor(store, guard, tmp_path).run()

    summary = _governor(store, guard, tmp_path).run()

    assert summary.embedded == 0
    assert len(guard.calls) == 1


def test_oversized_document_is_skipped_with_warning(
    store: ContentStore, tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    big = store.add_document("big.txt", "b" * 2_000)
    small = store.add_document("small.txt", "s" * 200)
    guard = InlineGuard()

    with caplog.at_level(logging.WARNING):
        summary = _governor(store, guard, tmp_path).run()

    assert summary.skipped_too_large == 1
    assert summary.embedded == 1
    assert store.vector_sequences(big) == []
    assert store.vector_sequences(small) != []
    (skip,) = summary.skipped
    assert (skip.path, skip.reason, skip.size, skip.limit) == (
        "big.txt",
        "too large",
        2_000,
        CEILING,
    )
    messages = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert any("big.txt" in m and "2000" in m and str(CEILING) in m for m in messages)
    assert all("b" * 50 not in call[0] for call in guard.calls)


def test_size_limit_can_be_bypassed(store: ContentStore, tmp_path: Path) -> None:
    big = store.add_document("big.txt", "b" * 2_000)

    summary = _governor(store, InlineGuard(), tmp_path).run(
        EmbedOptions(ignore_size_limit=True)
    )

    assert summary.embedded == 1
    assert summary.skipped_too_large == 0
    assert store.vector_sequences(big) != []


def test_blank_document_is_skipped_as_empty(store: ContentStore, tmp_path: Path) -> None:
    blank = store.add_document("blank.txt", "   \n  ")

    summary = _governor(store, InlineGuard(), tmp_path).run()

    assert summary.skipped_empty == 1
    assert summary.skipped[0].reason == "empty"
    assert store.vector_sequences(blank) == []


def test_model_error_fails_one_document_and_continues(
    store: ContentStore, tmp_path: Path
) -> None:
    _ = store.add_document("a.txt", "first body")
    _ = store.add_document("b.txt", "second body")

    class _FlakyGuard(InlineGuard):
        def run(self, chunks: list[str]) -> object:
            if any("first" in chunk for chunk in chunks):
                raise ModelError("model unavailable")
            return super().run(chunks)

    crash_log = tmp_path / "crash_log.txt"
    summary = _governor(store, _FlakyGuard(), tmp_path).run()

    assert summary.failed == 1
    assert summary.embedded == 1
    assert summary.failures == {"a.txt": "model unavailable"}
    log_text = crash_log.read_text(encoding="utf-8")
    assert "FAILED DOCUMENT: a.txt" in log_text
    assert "ERROR TYPE: ModelError" in log_text


def test_malformed_model_output_is_a_document_failure(
    store: ContentStore, tmp_path: Path
) -> None:
    _ = store.add_document("a.txt", "body")

    class _WrongCountGuard(InlineGuard):
        def run(self, chunks: list[str]) -> object:
            return super().run(chunks + ["extra"])

    summary = _governor(store, _WrongCountGuard(), tmp_path).run()

    assert summary.failed == 1
    assert summary.embedded == 0


def test_force_reembeds_and_prunes_orphans(store: ContentStore, tmp_path: Path) -> None:
    kept = store.add_document("kept.txt", "k" * 120)
    gone = store.add_document("gone.txt", "g" * 30)
    _ = _governor(store, InlineGuard(), tmp_path).run()
    _ = store.deactivate("gone.txt")
    guard = InlineGuard()

    summary = _governor(store, guard, tmp_path).run(EmbedOptions(force=True))

    assert summary.embedded == 1
    assert len(guard.calls) == 1
    assert store.vector_sequences(kept) == [0, 1, 2]
    assert store.vector_sequences(gone) == []


def test_interrupt_stops_before_next_document(store: ContentStore, tmp_path: Path) -> None:
    for i in range(3):
        _ = store.add_document(f"d{i}.txt", f"document {i}")

    class _StoppingGuard(InlineGuard):
        governor: IngestionGovernor | None = None

        def run(self, chunks: list[str]) -> object:
            assert self.governor is not None
            self.governor.request_stop()
            return super().run(chunks)

    guard = _StoppingGuard()
    governor = _governor(store, guard, tmp_path)
    guard.governor = governor

    summary = governor.run()

    assert summary.interrupted
    assert summary.embedded == 1
    assert len(list(store.documents_needing_embedding())) == 2


def test_tokenizer_load_failure_fails_documents_without_aborting(
    store: ContentStore, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _offline(_name: str) -> object:
        raise ConnectionError("could not fetch cl100k_base")

    monkeypatch.setattr(chunking, "_DEFAULT_TOKENIZER", None)
    monkeypatch.setitem(sys.modules, "tiktoken", SimpleNamespace(get_encoding=_offline))
    _ = store.add_document("a.txt", "first body")
    _ = store.add_document("b.txt", "second body")
    guard = InlineGuard()

    summary = _governor(
        store, guard, tmp_path, chunker=Chunker(size=50, overlap=10)
    ).run()

    assert summary.failed == 2
    assert summary.embedded == 0
    assert guard.calls == []
    assert all("tokenizer" in message for message in summary.failures.values())
    assert "ERROR TYPE: ModelError" in (tmp_path / "crash_log.txt").read_text(
        encoding="utf-8"
    )


class _InterruptingGuard(InlineGuard):
    """Delivers real SIGINTs to this process while the first document embeds."""

    def __init__(self, interrupts: int) -> None:
        super().__init__()
        self.interrupts = interrupts

    def run(self, chunks: list[str]) -> object:
        pending, self.interrupts = self.interrupts, 0
        for _ in range(pending):
            os.kill(os.getpid(), signal.SIGINT)
        return super().run(chunks)


@pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX signal delivery")
def test_first_sigint_finishes_current_document_then_stops(
    store: ContentStore, tmp_path: Path
) -> None:
    for i in range(3):
        _ = store.add_document(f"d{i}.txt", f"document {i}")
    previous = signal.getsignal(signal.SIGINT)

    summary = _governor(store, _InterruptingGuard(1), tmp_path).run()

    assert summary.interrupted
    assert summary.embedded == 1
    assert summary.failed == 0
    assert len(list(store.documents_needing_embedding())) == 2
    assert signal.getsignal(signal.SIGINT) is previous


@pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX signal delivery")
def test_second_sigint_aborts_and_restores_handler(
    store: ContentStore, tmp_path: Path
) -> None:
    for i in range(3):
        _ = store.add_document(f"d{i}.txt", f"document {i}")
    previous = signal.getsignal(signal.SIGINT)

    with pytest.raises(KeyboardInterrupt):
        _ = _governor(store, _InterruptingGuard(2), tmp_path).run()

    assert signal.getsignal(signal.SIGINT) is previous
    assert len(list(store.documents_needing_embedding())) == 3


def test_disable_accelerator_option_reaches_guard(store: ContentStore, tmp_path: Path) -> None:
    guard = InlineGuard()

    _ = _governor(store, guard, tmp_path).run(EmbedOptions(disable_accelerator=True))

    assert guard.disabled


def test_accelerator_abort_fails_document_and_run_continues(
    store: ContentStore, tmp_path: Path
) -> None:
    crashing = store.add_document("x.txt", f"this document makes the driver go {ABORT_MARKER}")
    healthy = [store.add_document(f"ok{i}.txt", f"ordinary document {i}") for i in range(2)]

    guard = AcceleratorGuard(
        4,
        encoder_factory=AbortOnAcceleratorFactory(),
        batch_size=4,
        memory_probe=lambda: 8 * 1024 * 1024 * 1024,
    )
    with guard:
        summary = _governor(store, guard, tmp_path, layers=4).run()

    assert store.vector_sequences(crashing) == []
    assert all(store.vector_sequences(hash_) == [0] for hash_ in healthy)
    assert summary.embedded == 2
    assert summary.failed == 1
    assert summary.accelerator_failures == 1
    assert "x.txt" in summary.failures
    assert "DOCVEC_GPU_LAYERS=0" in summary.failures["x.txt"]
    assert guard.accelerator_disabled
    assert [ref.hash for ref in store.documents_needing_embedding()] == [crashing]


def test_print_summary_always_reports_counts(capsys: pytest.CaptureFixture[str]) -> None:
    summary = EmbedSummary(embedded=3, skipped_too_large=1, failed=1, chunk_total=12)
    summary.failures["bad.txt"] = "model unavailable"

    print_summary(summary, ResourceLimits(max_embed_bytes=CEILING, gpu_layers=0))

    out = capsys.readouterr().out
    assert "Documents embedded: 3" in out
    assert "Chunks: 12" in out
    assert f"> {CEILING} bytes): 1" in out
    assert "bad.txt: model unavailable" in out

