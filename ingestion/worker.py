"""Process-isolated embedding worker.

The CUDA runtime can abort the whole process when an allocation fails deep in
native code; no Python exception or signal handler gets a chance to run. The
model therefore lives in a spawned child that keeps it loaded between requests.
The supervisor sees a crash only as EOF on the pipe plus a non-zero exit code
or a signal, which ``EmbeddingWorker`` turns into ``WorkerTerminated``.

Wire protocol (pickled tuples over a duplex ``multiprocessing.Pipe``):
  supervisor -> worker: ("encode", list[str]) | ("stop", None)
  worker -> supervisor: ("ok", ndarray) | ("accelerator", str) | ("model", str)
                        | ("unavailable", str) when the accelerated model cannot load
"""

from __future__ import annotations

import logging
import multiprocessing
import signal
from multiprocessing.connection import Connection
from typing import TYPE_CHECKING, Any

import config
from ingestion.embedder import encode_chunks, is_accelerator_oom
from ingestion.errors import WorkerTerminated
from ingestion.models import EncoderFactory

if TYPE_CHECKING:
    from multiprocessing.process import BaseProcess

logger = logging.getLogger(__name__)

REQUEST_ENCODE = "encode"
REQUEST_STOP = "stop"
REPLY_OK = "ok"
REPLY_ACCELERATOR = "accelerator"
REPLY_MODEL = "model"
REPLY_UNAVAILABLE = "unavailable"

_LOG_FORMAT = "%(asctime)s - %(levelname)s - [worker] %(message)s"


def _worker_main(
    conn: Connection,
    factory: EncoderFactory,
    layers: int,
    batch_size: int,
    log_level: int,
) -> None:
    """Child-process loop: load the model on first use, then serve encode requests."""
    # Operator interrupts are handled by the supervisor between documents.
    _ = signal.signal(signal.SIGINT, signal.SIG_IGN)
    logging.basicConfig(level=log_level, format=_LOG_FORMAT)

    model = None
    accelerated = layers > 0
    while True:
        try:
            kind, payload = conn.recv()
        except EOFError:
            break
        if kind == REQUEST_STOP:
            break

        if model is None:
            try:
                model = factory(layers)
            except Exception as exc:
                # Load-time refusals are reported apart from encode-time OOM.
                reply = (
                    REPLY_UNAVAILABLE
                    if accelerated and is_accelerator_oom(exc)
                    else REPLY_MODEL
                )
                conn.send((reply, f"{type(exc).__name__}: {exc}"))
                continue

        try:
            vectors = encode_chunks(
                model, payload, batch_size=batch_size, accelerated=accelerated
            )
        except Exception as exc:
            reply = (
                REPLY_ACCELERATOR
                if accelerated and is_accelerator_oom(exc)
                else REPLY_MODEL
            )
            conn.send((reply, f"{type(exc).__name__}: {exc}"))
            continue
        conn.send((REPLY_OK, vectors))
    conn.close()


class EmbeddingWorker:
    """Supervisor-side handle on one embedding child process."""

    def __init__(
        self,
        factory: EncoderFactory,
        *,
        layers: int,
        batch_size: int = config.BATCH_SIZE,
        start_method: str = config.WORKER_START_METHOD,
        poll_interval: float = config.WORKER_POLL_INTERVAL,
    ) -> None:
        super().__init__()
        self.layers = layers
        self.batch_size = batch_size
        self._factory = factory
        self._ctx = multiprocessing.get_context(start_method)
        self._poll_interval = poll_interval
        self._process: "BaseProcess | None" = None
        self._conn: Connection | None = None

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def start(self) -> None:
        if self.is_alive:
            return
        parent_conn, child_conn = self._ctx.Pipe(duplex=True)
        process = self._ctx.Process(
            target=_worker_main,
            args=(
                child_conn,
                self._factory,
                self.layers,
                self.batch_size,
                logging.getLogger().getEffectiveLevel(),
            ),
            name=f"embedding-worker-{self.layers}",
            daemon=True,
        )
        process.start()
        # Drop our copy of the child's end so its death surfaces as EOF here.
        child_conn.close()
        self._process = process
        self._conn = parent_conn
        logger.info(
            "Started embedding worker pid=%s (layers on accelerator: %d)",
            process.pid,
            self.layers,
        )

    def _reap(self) -> WorkerTerminated:
        process = self._process
        exitcode: int | None = None
        if process is not None:
            process.join(timeout=5)
            exitcode = process.exitcode
        if self._conn is not None:
            self._conn.close()
        self._process = None
        self._conn = None
        error = WorkerTerminated(exitcode)
        logger.error("💥 %s", error)
        return error

    def request(self, chunks: list[str]) -> tuple[str, Any]:
        """Send one encode request and block until the reply or the worker's death."""
        self.start()
        conn = self._conn
        process = self._process
        assert conn is not None and process is not None

        try:
            conn.send((REQUEST_ENCODE, chunks))
        except OSError:
            raise self._reap() from None

        while True:
            try:
                if conn.poll(self._poll_interval):
                    kind, payload = conn.recv()
                    return kind, payload
            except (EOFError, OSError):
                raise self._reap() from None
            if not process.is_alive() and not conn.poll(0):
                raise self._reap()

    def close(self) -> None:
        process = self._process
        conn = self._conn
        if process is None:
            return
        if conn is not None:
            try:
                conn.send((REQUEST_STOP, None))
            except OSError:
                pass
        process.join(timeout=10)
        if process.is_alive():
            logger.warning("Embedding worker pid=%s did not stop; terminating", process.pid)
            process.terminate()
            process.join(timeout=5)
        if conn is not None:
            conn.close()
        self._process = None
        self._conn = None


__all__ = [
    "EmbeddingWorker",
    "REPLY_ACCELERATOR",
    "REPLY_MODEL",
    "REPLY_OK",
    "REPLY_UNAVAILABLE",
]
