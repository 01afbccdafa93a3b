"""Picklable test doubles shared by the worker, guard and governor tests.

Factories here cross the spawn boundary by reference, so they must stay
module-level and import nothing heavier than numpy.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from ingestion.errors import AcceleratorUnavailable

DIM = 8
ABORT_MARKER = "boom"


class CharTokenizer:
    """One token per character keeps window arithmetic easy to check."""

    def encode(self, text: str) -> list[int]:
        return [ord(ch) for ch in text]

    def decode(self, tokens: Sequence[int]) -> str:
        return "".join(chr(token) for token in tokens)


def fake_vector(text: str, layers: int = 0) -> list[float]:
    """Deterministic row; column 0 records which worker produced it."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [float(layers)] + [byte / 255.0 for byte in digest[: DIM - 1]]


class HashingModel:
    def __init__(self, layers: int = 0) -> None:
        super().__init__()
        self.layers = layers

    def encode(
        self,
        sentences: list[str],
        *,
        batch_size: int,
        convert_to_numpy: bool,
        normalize_embeddings: bool,
    ) -> np.ndarray:
        return np.asarray(
            [fake_vector(sentence, self.layers) for sentence in sentences],
            dtype=np.float32,
        )


class AbortingModel(HashingModel):
    def encode(
        self,
        sentences: list[str],
        *,
        batch_size: int,
        convert_to_numpy: bool,
        normalize_embeddings: bool,
    ) -> np.ndarray:
        if any(ABORT_MARKER in sentence for sentence in sentences):
            os.abort()
        return super().encode(
            sentences,
            batch_size=batch_size,
            convert_to_numpy=convert_to_numpy,
            normalize_embeddings=normalize_embeddings,
        )


class OutOfMemoryModel(HashingModel):
    def encode(
        self,
        sentences: list[str],
        *,
        batch_size: int,
        convert_to_numpy: bool,
        normalize_embeddings: bool,
    ) -> np.ndarray:
        raise RuntimeError("CUDA out of memory. Tried to allocate 2.00 GiB")


class BrokenModel(HashingModel):
    def encode(
        self,
        sentences: list[str],
        *,
        batch_size: int,
        convert_to_numpy: bool,
        normalize_embeddings: bool,
    ) -> np.ndarray:
        raise RuntimeError("model weights are corrupt")


@dataclass(frozen=True)
class HashingFactory:
    def __call__(self, layers: int) -> HashingModel:
        return HashingModel(layers)


@dataclass(frozen=True)
class AbortOnAcceleratorFactory:
    """Native crash whenever the accelerated worker sees the abort marker."""

    def __call__(self, layers: int) -> HashingModel:
        if layers > 0:
            return AbortingModel(layers)
        return HashingModel(layers)


@dataclass(frozen=True)
class AbortAlwaysFactory:
    def __call__(self, layers: int) -> HashingModel:
        return AbortingModel(layers)


@dataclass(frozen=True)
class RefusingAcceleratorFactory:
    def __call__(self, layers: int) -> HashingModel:
        if layers > 0:
            raise AcceleratorUnavailable("simulated: no room for the requested layers")
        return HashingModel(layers)


@dataclass(frozen=True)
class OutOfMemoryOnAcceleratorFactory:
    def __call__(self, layers: int) -> HashingModel:
        if layers > 0:
            return OutOfMemoryModel(layers)
        return HashingModel(layers)


@dataclass(frozen=True)
class BrokenFactory:
    def __call__(self, layers: int) -> HashingModel:
        return BrokenModel(layers)


class InlineGuard:
    """In-process stand-in for AcceleratorGuard; no worker, no accelerator."""

    def __init__(self, model: HashingModel | None = None) -> None:
        super().__init__()
        self.model = model or HashingModel()
        self.disabled = False
        self.calls: list[list[str]] = []
        self.last_layers: int | None = None

    def run(self, chunks: list[str]) -> np.ndarray:
        self.calls.append(list(chunks))
        self.last_layers = self.model.layers
        return self.model.encode(
            chunks, batch_size=16, convert_to_numpy=True, normalize_embeddings=True
        )

    def disable_accelerator(self) -> None:
        self.disabled = True


class ByteTokenizer:
    """One token per UTF-8 byte, like a byte-level BPE with no merges."""

    def encode(self, text: str) -> list[int]:
        return list(text.encode("utf-8"))

    def decode(self, tokens: Sequence[int]) -> str:
        return bytes(tokens).decode("utf-8", errors="replace")
