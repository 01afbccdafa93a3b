from __future__ import annotations

from typing import Any, Callable, Protocol, Sequence, TypedDict, runtime_checkable


@runtime_checkable
class EmbeddingModel(Protocol):
    """Structural type for sentence embedding models.

    Defines the interface for converting text sentences into numerical vector embeddings.
    The main implementation is SentenceTransformer from the sentence-transformers library.

    Design rationale: Protocol captures the exact method signature of
    SentenceTransformer.encode() without requiring the full class. Structural typing
    allows us to accept any embedding model with this signature, enabling:
    - Lightweight fakes in tests that still cross the worker process boundary
    - Type-safe dependency injection into the embedding worker

    Return type (Any) is intentional: models can return numpy arrays, tensors, lists,
    or other numeric types depending on parameters and the underlying implementation.

    Used in:
    - ingestion/embedder.py: encode_chunks() batches through this interface
    - ingestion/worker.py: the child process holds one instance for its lifetime
    """

    def encode(
        self,
        sentences: list[str],
        *,
        batch_size: int,
        convert_to_numpy: bool,
        normalize_embeddings: bool,
    ) -> Any: ...


@runtime_checkable
class EncoderFactory(Protocol):
    """Picklable callable that builds an embedding model inside the worker.

    The factory crosses the process boundary (spawn pickles it by reference), so
    implementations must be module-level classes or functions. ``layers`` is the
    number of transformer blocks the guard allows on the accelerator; 0 means
    CPU only.
    """

    def __call__(self, layers: int) -> EmbeddingModel: ...


@runtime_checkable
class Tokenizer(Protocol):
    """Structural type for token encoders (tiktoken.Encoding in production)."""

    def encode(self, text: str) -> list[int]: ...

    def decode(self, tokens: Sequence[int]) -> str: ...


MemoryProbe = Callable[[], "int | None"]
"""Returns free accelerator memory in bytes, or None when no accelerator exists."""


class DocumentTiming(TypedDict):
    chunk: float
    embed: float
    persist: float
    chunks: int


__all__ = [
    "DocumentTiming",
    "EmbeddingModel",
    "EncoderFactory",
    "MemoryProbe",
    "Tokenizer",
]
