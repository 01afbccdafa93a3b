"""Exception taxonomy for the embedding ingestion run.

Only ``ModelError``, ``AcceleratorExhausted`` and ``WriteFailure`` ever reach
the governor, and all three are scoped to a single document: the pass records
them and moves on. ``ConfigInvalid`` is recovered inside the resolver and
``WorkerTerminated`` is translated by the accelerator guard before it escapes.
"""

from __future__ import annotations

import signal


class EmbeddingPipelineError(RuntimeError):
    """Base class for all ingestion governor failures."""


class ConfigInvalid(EmbeddingPipelineError, ValueError):
    """A resource-limit override could not be parsed or is out of range."""

    def __init__(self, name: str, raw: str, reason: str) -> None:
        super().__init__(f"{name}={raw!r} is invalid: {reason}")
        self.name = name
        self.raw = raw
        self.reason = reason


class DocumentTooLarge(EmbeddingPipelineError):
    """Skip decision: the document body exceeds the configured byte ceiling."""

    def __init__(self, path: str, size: int, limit: int) -> None:
        super().__init__(
            f"{path} is {size} bytes, above the embedding limit of {limit} bytes"
        )
        self.path = path
        self.size = size
        self.limit = limit


class ModelError(EmbeddingPipelineError):
    """The embedding model could not produce vectors for a document."""


class AcceleratorUnavailable(EmbeddingPipelineError):
    """The accelerator refused the work gracefully (out of memory, no device)."""


class AcceleratorExhausted(ModelError):
    """The embedding worker died abnormally while running on the accelerator."""

    def __init__(self, exitcode: int | None, layers: int) -> None:
        reason = describe_exitcode(exitcode)
        super().__init__(
            f"Embedding worker terminated ({reason}) with {layers} layer(s) offloaded "
            + "to the accelerator. Rerun with --no-gpu or DOCVEC_GPU_LAYERS=0 "
            + "to embed without acceleration."
        )
        self.exitcode = exitcode
        self.layers = layers


class WorkerTerminated(EmbeddingPipelineError):
    """The isolated worker process exited outside the request/response protocol."""

    def __init__(self, exitcode: int | None) -> None:
        super().__init__(f"Embedding worker terminated ({describe_exitcode(exitcode)})")
        self.exitcode = exitcode

    @property
    def signal_name(self) -> str | None:
        if self.exitcode is None or self.exitcode >= 0:
            return None
        try:
            return signal.Signals(-self.exitcode).name
        except ValueError:
            return None


class WriteFailure(EmbeddingPipelineError):
    """Persisting a document's vector set failed and was rolled back."""


def describe_exitcode(exitcode: int | None) -> str:
    """Render a multiprocessing exit code as an operator-readable reason."""
    if exitcode is None:
        return "no exit status"
    if exitcode < 0:
        try:
            return f"signal {signal.Signals(-exitcode).name}"
        except ValueError:
            return f"signal {-exitcode}"
    return f"exit code {exitcode}"


__all__ = [
    "AcceleratorExhausted",
    "AcceleratorUnavailable",
    "ConfigInvalid",
    "DocumentTooLarge",
    "EmbeddingPipelineError",
    "ModelError",
    "WorkerTerminated",
    "WriteFailure",
    "describe_exitcode",
]
