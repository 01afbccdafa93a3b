"""Top-level orchestration for an embedding pass.

The governor walks the store's worklist in hash order and, per document:
gates on the byte ceiling, loads and chunks the body, embeds the chunks
through the accelerator guard, then replaces the hash's vector set in one
transaction. Failures are scoped to the document that raised them; only a
second operator interrupt ends the pass early with an exception.
"""

from __future__ import annotations

import json
import logging
import signal
import threading
import time
import traceback
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from types import FrameType

import config
from ingestion.accelerator import AcceleratorGuard
from ingestion.breakdown import breakdown, embedding_status
from ingestion.chunking import Chunker
from ingestion.embedder import EmbeddingInvoker, SentenceTransformerFactory
from ingestion.errors import (
    AcceleratorExhausted,
    DocumentTooLarge,
    ModelError,
    WriteFailure,
)
from ingestion.limits import resolve_byte_ceiling, resolve_limits
from ingestion.models import DocumentTiming
from ingestion.progress import ConsoleSpinnerProgress, EmbedStage
from ingestion.store import ContentStore
from ingestion.vector_writer import VectorWriter
from types_models import (
    DocumentRef,
    EmbedOptions,
    EmbedStatus,
    EmbedSummary,
    ResourceLimits,
    SkippedDocument,
    embed_status_to_dict,
)

logger = logging.getLogger(__name__)


class IngestionGovernor:
    """Drives one sequential embedding pass over the content store."""

    def __init__(
        self,
        store: ContentStore,
        limits: ResourceLimits,
        *,
        chunker: Chunker,
        invoker: EmbeddingInvoker,
        guard: AcceleratorGuard,
        writer: VectorWriter,
        progress: ConsoleSpinnerProgress | None = None,
        crash_log: Path | str = config.CRASH_LOG_FILE,
    ) -> None:
        super().__init__()
        self._store = store
        self._limits = limits
        self._chunker = chunker
        self._invoker = invoker
        self._guard = guard
        self._writer = writer
        self._progress = progress or ConsoleSpinnerProgress(enabled=False)
        self._crash_log = Path(crash_log)
        self._stop_requested = False

    def request_stop(self) -> None:
        """Finish the current document, then end the pass."""
        self._stop_requested = True

    @contextmanager
    def _deferred_interrupts(self) -> Iterator[None]:
        # signal.signal() is only legal on the main thread.
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def _handler(_signum: int, _frame: FrameType | None) -> None:
            if self._stop_requested:
                raise KeyboardInterrupt
            self._stop_requested = True
            logger.warning(
                "⏸️  Interrupt received; stopping after the current document "
                + "(press Ctrl+C again to abort immediately)"
            )

        previous = signal.signal(signal.SIGINT, _handler)
        try:
            yield
        finally:
            _ = signal.signal(signal.SIGINT, previous)

    def _worklist(self, options: EmbedOptions) -> list[DocumentRef]:
        if options.force:
            self._progress.update(stage=EmbedStage.PRUNING)
            _ = self._store.prune_orphan_vectors()
            return list(self._store.active_documents())
        return list(self._store.documents_needing_embedding())

    def _skip(
        self,
        summary: EmbedSummary,
        ref: DocumentRef,
        reason: str,
        limit: int | None = None,
    ) -> None:
        summary.skipped.append(
            SkippedDocument(
                hash=ref.hash, path=ref.path, reason=reason, size=ref.size, limit=limit
            )
        )
        if reason == "too large":
            summary.skipped_too_large += 1
        else:
            summary.skipped_empty += 1
        self._progress.update(
            stage=EmbedStage.DOCUMENT_SKIPPED,
            message=f"Skipped {ref.path} ({reason})",
            skipped=summary.skipped_total,
        )

    def _record_failure(
        self, summary: EmbedSummary, ref: DocumentRef, exc: Exception
    ) -> None:
        """Count the failure and append a crash-log block; call from an except clause."""
        summary.failed += 1
        summary.failures[ref.path] = str(exc)
        error_type = type(exc).__name__
        self._progress.write_line(f"❌ Failed to embed {ref.path}: {error_type}: {exc}")
        logger.error("Embedding failed for %s (%s): %s", ref.path, ref.hash[:12], exc)

        with open(self._crash_log, "a", encoding="utf-8") as handle:
            _ = handle.write(f"\n{'=' * 60}\n")
            _ = handle.write(f"FAILED DOCUMENT: {ref.path}\n")
            _ = handle.write(f"CONTENT HASH: {ref.hash}\n")
            _ = handle.write(f"ERROR TYPE: {error_type}\n")
            _ = handle.write(f"ERROR: {exc}\n")
            _ = handle.write("TRACEBACK:\n")
            _ = handle.write(traceback.format_exc())
            _ = handle.write(f"\n{'=' * 60}\n")

        self._progress.update(stage=EmbedStage.DOCUMENT_FAILED, failed=summary.failed)

    def _embed_document(
        self, ref: DocumentRef, options: EmbedOptions, summary: EmbedSummary
    ) -> None:
        limit = self._limits.max_embed_bytes
        if not options.ignore_size_limit and ref.size > limit:
            skip = DocumentTooLarge(ref.path, ref.size, limit)
            logger.warning("⚠️  Skipping %s", skip)
            self._skip(summary, ref, "too large", limit)
            return

        started = time.perf_counter()
        self._progress.update(stage=EmbedStage.CHUNKING, message=f"Chunking {ref.path}")
        body = self._store.get_content(ref.hash)
        chunks = self._chunker.chunk(body)
        if not chunks:
            logger.info("Skipping %s: no text to embed", ref.path)
            self._skip(summary, ref, "empty")
            return
        chunked = time.perf_counter()

        self._progress.update(
            stage=EmbedStage.EMBEDDING,
            message=f"Embedding {len(chunks)} chunk(s) from {ref.path}",
        )
        vectors = self._invoker.embed([chunk.text for chunk in chunks])
        embedded = time.perf_counter()

        self._progress.update(stage=EmbedStage.PERSISTING)
        written = self._writer.write(ref.hash, chunks, vectors)
        persisted = time.perf_counter()

        summary.embedded += 1
        summary.chunk_total += written
        if options.verbose:
            timing: DocumentTiming = {
                "chunk": chunked - started,
                "embed": embedded - chunked,
                "persist": persisted - embedded,
                "chunks": written,
            }
            print(
                f"   ✅ {ref.path}: {timing['chunks']} chunks | "
                + f"chunk {timing['chunk']:.2f}s, embed {timing['embed']:.2f}s, "
                + f"persist {timing['persist']:.2f}s "
                + f"(accelerator layers: {self._guard.last_layers})"
            )

    def run(self, options: EmbedOptions | None = None) -> EmbedSummary:
        """Embed every document that needs it; returns the pass accounting."""
        options = options or EmbedOptions()
        summary = EmbedSummary()
        self._stop_requested = False
        if options.disable_accelerator:
            self._guard.disable_accelerator()

        with self._deferred_interrupts():
            self._progress.start(stage=EmbedStage.DISCOVERY)
            try:
                worklist = self._worklist(options)
                logger.info(
                    "Embedding pass over %d document(s) (force=%s)",
                    len(worklist),
                    options.force,
                )
                self._progress.update(total_documents=len(worklist))

                for done, ref in enumerate(worklist):
                    if self._stop_requested:
                        summary.interrupted = True
                        self._progress.update(stage=EmbedStage.INTERRUPTED)
                        logger.warning(
                            "Stopped with %d document(s) left unprocessed",
                            len(worklist) - done,
                        )
                        break

                    self._progress.update(
                        stage=EmbedStage.DOCUMENT_STARTED,
                        message=f"Processing {ref.path}",
                        documents_done=done,
                    )
                    try:
                        self._embed_document(ref, options, summary)
                    except AcceleratorExhausted as exc:
                        self._record_failure(summary, ref, exc)
                        summary.accelerator_failures += 1
                        self._guard.disable_accelerator()
                        logger.warning(
                            "⚠️  The accelerator crashed the embedding worker; remaining "
                            + "documents will be embedded on CPU. Set %s=0 or pass "
                            + "--no-gpu to skip the accelerator from the start.",
                            config.GPU_LAYERS_ENV,
                        )
                    except (ModelError, WriteFailure) as exc:
                        self._record_failure(summary, ref, exc)
                    else:
                        self._progress.update(
                            stage=EmbedStage.DOCUMENT_COMPLETED,
                            chunk_total=summary.chunk_total,
                        )
                    self._progress.update(documents_done=done + 1)

                self._progress.update(stage=EmbedStage.COMPLETED)
            finally:
                self._progress.stop()

        return summary


def print_summary(summary: EmbedSummary, limits: ResourceLimits) -> None:
    """Emit final statistics for an embedding pass."""
    print("-------------------------------------------------")
    print(
        f"✅ Done. Documents embedded: {summary.embedded} | Chunks: {summary.chunk_total}"
    )
    print(
        f"📏 Skipped (too large, > {limits.max_embed_bytes} bytes): "
        + f"{summary.skipped_too_large}"
    )
    print(f"📭 Skipped (empty): {summary.skipped_empty}")
    print(f"⚠️  Failed: {summary.failed}")
    if summary.accelerator_failures:
        print(f"💥 Accelerator crashes: {summary.accelerator_failures}")
        print(f"   💡 Rerun with --no-gpu or {config.GPU_LAYERS_ENV}=0 to stay on CPU")

    if summary.failures:
        print("📊 Failures:")
        for path, message in sorted(summary.failures.items()):
            print(f"   • {path}: {message}")
        print(f"   (Details in {config.CRASH_LOG_FILE})")

    if summary.interrupted:
        print("⏸️  Interrupted. Re-run to continue where this pass stopped.")


def print_status(status: EmbedStatus) -> None:
    print(f"📦 Embedded: {status.embedded}")
    print(f"⏳ Pending: {status.pending}")
    print(f"📏 Too large (> {status.ceiling} bytes): {status.too_large}")


def run_embedding(
    db_path: Path | str = config.DB_PATH,
    options: EmbedOptions | None = None,
    *,
    model_name: str = config.EMBED_MODEL,
    environ: Mapping[str, str] | None = None,
) -> EmbedSummary:
    """Build the production components and run one embedding pass."""
    options = options or EmbedOptions()
    limits = resolve_limits(environ, disable_accelerator=options.disable_accelerator)

    store = ContentStore(db_path)
    store.ensure_schema()

    crash_log_path = Path(config.CRASH_LOG_FILE)
    if crash_log_path.exists():
        # A stale report would be confused with failures from this run.
        crash_log_path.unlink()
        print("🗑️  Cleared previous crash log")

    split = breakdown(store, limits.max_embed_bytes)
    print(f"📝 Database: {store.db_path}")
    print(f"🧠 Model: {model_name}")
    print(f"📏 Size limit: {limits.max_embed_bytes} bytes")
    print(f"🎮 Accelerator: {limits.accelerator_mode}")
    if not options.force:
        print(f"⏳ Pending: {split.pending} | Too large: {split.too_large}")

    with AcceleratorGuard(
        limits.gpu_layers,
        encoder_factory=SentenceTransformerFactory(model_name),
    ) as guard:
        governor = IngestionGovernor(
            store,
            limits,
            chunker=Chunker(),
            invoker=EmbeddingInvoker(guard),
            guard=guard,
            writer=VectorWriter(store, model_name),
            progress=ConsoleSpinnerProgress(enabled=False if options.verbose else None),
        )
        summary = governor.run(options)

    print_summary(summary, limits)
    return summary


def show_status(
    db_path: Path | str = config.DB_PATH,
    *,
    environ: Mapping[str, str] | None = None,
    as_json: bool = False,
) -> EmbedStatus:
    store = ContentStore(db_path)
    store.ensure_schema()
    status = embedding_status(store, resolve_byte_ceiling(environ))
    if as_json:
        print(json.dumps(embed_status_to_dict(status)))
    else:
        print_status(status)
    return status


__all__ = [
    "IngestionGovernor",
    "print_status",
    "print_summary",
    "run_embedding",
    "show_status",
]
