from __future__ import annotations

import sys
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class EmbedStage(str, Enum):
    """Stages of an embedding pass, as shown by the spinner."""

    DISCOVERY = "discovery"
    PRUNING = "pruning"
    DOCUMENT_STARTED = "document_started"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    PERSISTING = "persisting"
    DOCUMENT_SKIPPED = "document_skipped"
    DOCUMENT_FAILED = "document_failed"
    DOCUMENT_COMPLETED = "document_completed"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"

    @property
    def default_message(self) -> str:
        defaults: dict[EmbedStage, str] = {
            EmbedStage.DISCOVERY: "Finding documents without vectors...",
            EmbedStage.PRUNING: "Pruning orphaned vectors...",
            EmbedStage.DOCUMENT_STARTED: "Loading document...",
            EmbedStage.CHUNKING: "Chunking document...",
            EmbedStage.EMBEDDING: "Embedding chunks...",
            EmbedStage.PERSISTING: "Writing vectors...",
            EmbedStage.DOCUMENT_SKIPPED: "Skipping document...",
            EmbedStage.DOCUMENT_FAILED: "Document failed.",
            EmbedStage.DOCUMENT_COMPLETED: "Document embedded.",
            EmbedStage.INTERRUPTED: "Stopping after interrupt...",
            EmbedStage.COMPLETED: "Embedding pass complete.",
        }
        return defaults.get(self, "Working...")


@dataclass
class _ProgressSnapshot:
    stage: EmbedStage = EmbedStage.DISCOVERY
    message: str = "Preparing embedding pass..."
    total_documents: Optional[int] = None
    documents_done: int = 0
    chunk_total: int = 0
    skipped: int = 0
    failed: int = 0


class ConsoleSpinnerProgress:
    """Single-line spinner with per-document status during an embedding pass."""

    def __init__(self, *, enabled: Optional[bool] = None, interval: float = 0.12) -> None:
        super().__init__()
        self._enabled = sys.stdout.isatty() if enabled is None else enabled
        self._interval = max(interval, 0.05)
        self._frames = ["-", "\\", "|", "/"]
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._snapshot = _ProgressSnapshot()
        self._render_thread: threading.Thread | None = None
        self._last_line_length = 0
        self._active = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start(
        self,
        *,
        stage: EmbedStage | None = None,
        total_documents: Optional[int] = None,
    ) -> None:
        if not self._enabled:
            return

        self.update(stage=stage, total_documents=total_documents)
        if self._active:
            return

        self._stop_event.clear()
        self._render_thread = threading.Thread(
            target=self._render_loop, daemon=True, name="embedding-spinner"
        )
        self._render_thread.start()
        self._active = True

    def update(
        self,
        *,
        stage: EmbedStage | None = None,
        message: str | None = None,
        total_documents: Optional[int] = None,
        documents_done: Optional[int] = None,
        chunk_total: Optional[int] = None,
        skipped: Optional[int] = None,
        failed: Optional[int] = None,
    ) -> None:
        if not self._enabled:
            return

        with self._lock:
            snap = self._snapshot
            if stage is not None:
                snap.stage = stage
                snap.message = message or stage.default_message
            elif message is not None:
                snap.message = message
            if total_documents is not None:
                snap.total_documents = total_documents
            if documents_done is not None:
                snap.documents_done = max(documents_done, 0)
            if chunk_total is not None:
                snap.chunk_total = max(chunk_total, 0)
            if skipped is not None:
                snap.skipped = max(skipped, 0)
            if failed is not None:
                snap.failed = max(failed, 0)

    def write_line(self, text: str) -> None:
        """Print a full line without tearing the spinner."""
        if not self._enabled:
            print(text)
            return

        with self._lock:
            self._clear_line_locked()
            print(text)
            _ = sys.stdout.flush()

    def stop(self) -> None:
        if not self._enabled or not self._active:
            return

        self._stop_event.set()
        if self._render_thread is not None:
            self._render_thread.join()
        self._render_thread = None
        self._active = False

        with self._lock:
            self._clear_line_locked()

    def _render_loop(self) -> None:
        frame_index = 0
        while not self._stop_event.is_set():
            with self._lock:
                snapshot = replace(self._snapshot)
            frame = self._frames[frame_index % len(self._frames)]
            frame_index += 1
            self._write_inline(self._build_line(frame, snapshot))
            if self._stop_event.wait(self._interval):
                break

    def _build_line(self, frame: str, snapshot: _ProgressSnapshot) -> str:
        parts: list[str] = [frame]
        if snapshot.total_documents:
            done = min(snapshot.documents_done, snapshot.total_documents)
            parts.append(f"[{done}/{snapshot.total_documents}]")
        parts.append(snapshot.message.strip())

        counters = [
            f"{label}={value}"
            for label, value in (
                ("chunks", snapshot.chunk_total),
                ("skipped", snapshot.skipped),
                ("failed", snapshot.failed),
            )
            if value
        ]
        if counters:
            parts.append("(" + " | ".join(counters) + ")")
        return " ".join(parts)

    def _write_inline(self, line: str) -> None:
        with self._lock:
            pad = max(self._last_line_length - len(line), 0)
            _ = sys.stdout.write("\r" + line + " " * pad)
            _ = sys.stdout.flush()
            self._last_line_length = len(line)

    def _clear_line_locked(self) -> None:
        if self._last_line_length <= 0:
            return
        _ = sys.stdout.write("\r" + " " * self._last_line_length + "\r")
        _ = sys.stdout.flush()
        self._last_line_length = 0


__all__ = ["ConsoleSpinnerProgress", "EmbedStage"]
