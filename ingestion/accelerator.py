"""Accelerator guard: layer-budget resolution and supervised, isolated encoding."""

from __future__ import annotations

import logging
from enum import Enum
from types import TracebackType

import numpy as np

import config
from ingestion.errors import (
    AcceleratorExhausted,
    AcceleratorUnavailable,
    ModelError,
    WorkerTerminated,
)
from ingestion.models import EncoderFactory, MemoryProbe
from ingestion.worker import (
    REPLY_ACCELERATOR,
    REPLY_OK,
    REPLY_UNAVAILABLE,
    EmbeddingWorker,
)
from utils.gpu_status import query_free_accelerator_memory

logger = logging.getLogger(__name__)

_MIB = 1024 * 1024


class GuardState(Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    EXECUTING = "executing"
    FELL_BACK = "fell_back"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


class AcceleratorGuard:
    """Runs encode calls in an isolated worker, on the accelerator when it is safe.

    Graceful accelerator failures fall back to a CPU worker for the same call.
    A worker that dies abnormally is never retried here; the caller decides
    what to do with ``AcceleratorExhausted``.
    """

    def __init__(
        self,
        layer_budget: int | None,
        *,
        encoder_factory: EncoderFactory,
        batch_size: int = config.BATCH_SIZE,
        memory_probe: MemoryProbe = query_free_accelerator_memory,
        min_headroom_bytes: int = config.MIN_GPU_HEADROOM_MB * _MIB,
        start_method: str = config.WORKER_START_METHOD,
    ) -> None:
        super().__init__()
        self.layer_budget = layer_budget
        self._factory = encoder_factory
        self._batch_size = batch_size
        self._probe = memory_probe
        self._min_headroom = min_headroom_bytes
        self._start_method = start_method
        self._workers: dict[int, EmbeddingWorker] = {}
        self._disabled = layer_budget == 0
        self._state = GuardState.IDLE
        self.last_layers: int | None = None

    @property
    def state(self) -> GuardState:
        return self._state

    @property
    def accelerator_disabled(self) -> bool:
        return self._disabled

    def disable_accelerator(self) -> None:
        """Route every later call to the CPU worker and release accelerated ones."""
        if self._disabled:
            return
        self._disabled = True
        for layers in [layers for layers in self._workers if layers > 0]:
            self._workers.pop(layers).close()
        logger.warning("Accelerator disabled for the remainder of this run")

    def resolve_layers(self) -> int:
        """Number of transformer layers to place on the accelerator for the next call."""
        if self._disabled:
            return 0

        free_bytes = self._probe()
        if free_bytes is None:
            logger.debug("No accelerator detected; embedding on CPU")
            return 0
        if free_bytes < self._min_headroom:
            logger.warning(
                "⚠️  Only %.0f MiB accelerator memory free (need %.0f MiB); embedding on CPU",
                free_bytes / _MIB,
                self._min_headroom / _MIB,
            )
            return 0

        if self.layer_budget is None:
            return config.MAX_GPU_LAYERS
        return self.layer_budget

    def _worker(self, layers: int) -> EmbeddingWorker:
        worker = self._workers.get(layers)
        if worker is None:
            worker = EmbeddingWorker(
                self._factory,
                layers=layers,
                batch_size=self._batch_size,
                start_method=self._start_method,
            )
            self._workers[layers] = worker
        return worker

    def _execute(self, layers: int, chunks: list[str]) -> np.ndarray:
        try:
            kind, payload = self._worker(layers).request(chunks)
        except WorkerTerminated as exc:
            _ = self._workers.pop(layers, None)
            self._state = GuardState.ABORTED
            if layers > 0:
                raise AcceleratorExhausted(exc.exitcode, layers) from exc
            raise ModelError(f"CPU embedding worker crashed: {exc}") from exc

        if kind == REPLY_OK:
            return payload
        if kind == REPLY_ACCELERATOR:
            raise AcceleratorUnavailable(payload)
        if kind == REPLY_UNAVAILABLE:
            # The model cannot load accelerated at all; stop asking this run.
            self.disable_accelerator()
            raise AcceleratorUnavailable(payload)
        self._state = GuardState.FAILED
        raise ModelError(payload)

    def run(self, chunks: list[str]) -> np.ndarray:
        """Encode ``chunks`` in the worker; returns one row per chunk."""
        self._state = GuardState.RESOLVING
        layers = self.resolve_layers()

        self._state = GuardState.EXECUTING
        try:
            vectors = self._execute(layers, chunks)
        except AcceleratorUnavailable as exc:
            logger.warning(
                "⚠️  Accelerator could not run %d layer(s): %s. Falling back to CPU",
                layers,
                exc,
            )
            # The CPU attempt runs while the state still reads FELL_BACK.
            self._state = GuardState.FELL_BACK
            layers = 0
            try:
                vectors = self._execute(0, chunks)
            except AcceleratorUnavailable as cpu_exc:
                self._state = GuardState.FAILED
                raise ModelError(f"CPU embedding failed: {cpu_exc}") from cpu_exc

        self._state = GuardState.SUCCEEDED
        self.last_layers = layers
        return vectors

    def close(self) -> None:
        for worker in self._workers.values():
            worker.close()
        self._workers.clear()

    def __enter__(self) -> "AcceleratorGuard":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


__all__ = ["AcceleratorGuard", "GuardState"]
