"""Embedding model loading and batched encoding.

Two halves live here. ``SentenceTransformerFactory`` and ``encode_chunks`` run
inside the isolated worker process and are the only code that touches torch
and the accelerator. ``EmbeddingInvoker`` runs in the supervising process and
validates what comes back across the boundary: one fixed-width float32 row
per chunk, in chunk order.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import numpy.typing as npt

import config
from ingestion.errors import AcceleratorUnavailable, ModelError
from ingestion.models import EmbeddingModel

if TYPE_CHECKING:
    from ingestion.accelerator import AcceleratorGuard

FloatMatrix = npt.NDArray[np.float32]

logger = logging.getLogger(__name__)


def _get_torch():
    """Import torch lazily to avoid heavy startup cost."""
    import torch

    return torch


def _loaded_torch() -> Any | None:
    # Fakes used in tests never import torch; only consult it once a real model has.
    return sys.modules.get("torch")


def is_accelerator_oom(exc: BaseException) -> bool:
    """True when ``exc`` signals the accelerator ran out of memory or refused work."""
    if isinstance(exc, AcceleratorUnavailable):
        return True
    torch = _loaded_torch()
    if torch is not None:
        oom_type = getattr(torch, "OutOfMemoryError", None) or getattr(
            torch.cuda, "OutOfMemoryError", None
        )
        if oom_type is not None and isinstance(exc, oom_type):
            return True
    if isinstance(exc, RuntimeError):
        message = str(exc).lower()
        return "out of memory" in message or "cublas_status_alloc_failed" in message
    return False


def release_accelerator_cache() -> None:
    torch = _loaded_torch()
    if torch is not None and torch.cuda.is_available():
        torch.cuda.empty_cache()


def _move_to_device(value: Any, device: Any) -> Any:
    torch = _get_torch()
    if isinstance(value, torch.Tensor):
        return value.to(device)
    if isinstance(value, tuple):
        return tuple(_move_to_device(item, device) for item in value)
    if isinstance(value, list):
        return [_move_to_device(item, device) for item in value]
    if isinstance(value, dict):
        return {key: _move_to_device(item, device) for key, item in value.items()}
    return value


def _pin_block_inputs(block: Any, device: Any) -> None:
    """Move a block's inputs onto ``device`` before it runs."""

    def _pre_hook(_module: Any, args: Any, kwargs: Any) -> tuple[Any, Any]:
        return _move_to_device(args, device), _move_to_device(kwargs, device)

    _ = block.register_forward_pre_hook(_pre_hook, with_kwargs=True)


def transformer_blocks(model: Any) -> Any | None:
    """Locate the stack of transformer blocks inside a SentenceTransformer."""
    try:
        auto_model = model[0].auto_model
    except (AttributeError, IndexError, KeyError, TypeError):
        return None

    for path in ("encoder.layer", "encoder.layers", "layers", "transformer.layer", "h"):
        target = auto_model
        for attr in path.split("."):
            target = getattr(target, attr, None)
            if target is None:
                break
        if target is not None and hasattr(target, "__len__") and len(target) > 0:
            return target
    return None


def offload_layers(model: Any, layers: int) -> int:
    """Place up to ``layers`` transformer blocks on CUDA; returns blocks offloaded.

    When the budget covers every block (or the architecture is not recognised)
    the whole model moves. Otherwise the first ``layers`` blocks move and
    forward pre-hooks shuttle activations across the device seam.
    """
    torch = _get_torch()
    cuda = torch.device("cuda")
    blocks = transformer_blocks(model)

    if blocks is None or layers >= len(blocks):
        model.to(cuda)
        depth = len(blocks) if blocks is not None else layers
        logger.info("🎮 Model fully offloaded to the accelerator (%d blocks)", depth)
        return depth

    cpu = torch.device("cpu")
    for index, block in enumerate(blocks):
        if index < layers:
            block.to(cuda)
            _pin_block_inputs(block, cuda)
        else:
            _pin_block_inputs(block, cpu)
    logger.info(
        "🎮 Offloaded %d of %d transformer blocks to the accelerator", layers, len(blocks)
    )
    return layers


@dataclass(frozen=True)
class SentenceTransformerFactory:
    """Builds a SentenceTransformer inside the worker for a given layer budget."""

    model_name: str = config.EMBED_MODEL

    def __call__(self, layers: int) -> EmbeddingModel:
        from sentence_transformers import SentenceTransformer

        torch = _get_torch()
        torch.set_num_threads(config.TORCH_NUM_THREADS)
        try:
            model = SentenceTransformer(self.model_name, device="cpu")
        except (OSError, ValueError) as exc:
            raise ModelError(f"Could not load {self.model_name}: {exc}") from exc

        if layers <= 0:
            return model

        if not torch.cuda.is_available():
            raise AcceleratorUnavailable("CUDA is not available in the embedding worker")

        try:
            _ = offload_layers(model, layers)
        except Exception as exc:
            if not is_accelerator_oom(exc):
                raise
            _ = model.to("cpu")
            release_accelerator_cache()
            raise AcceleratorUnavailable(
                f"Not enough accelerator memory to offload {layers} layer(s): {exc}"
            ) from exc
        return model


def _encode_embeddings(
    model: EmbeddingModel,
    chunks: list[str],
    *,
    batch_size: int,
    accelerated: bool,
) -> FloatMatrix:
    """Encode chunks to np.ndarray using torch autocast to keep GPU RAM in check."""
    torch = _loaded_torch()
    if torch is None:
        embs_raw = model.encode(
            chunks,
            batch_size=batch_size,
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
    else:
        with (
            torch.inference_mode(),
            torch.autocast(
                "cuda",
                dtype=torch.float16,
                enabled=accelerated and torch.cuda.is_available(),
            ),
        ):
            embs_raw = model.encode(
                chunks,
                batch_size=batch_size,
                convert_to_numpy=True,
                normalize_embeddings=True,
            )
    embs = np.asarray(embs_raw, dtype=np.float32)
    if accelerated:
        release_accelerator_cache()
    return embs


def encode_chunks(
    model: EmbeddingModel,
    chunks: list[str],
    *,
    batch_size: int = config.BATCH_SIZE,
    accelerated: bool = False,
) -> FloatMatrix:
    """Encode chunks, retrying once with a smaller batch when CUDA reports OOM.

    A second accelerator failure is raised as ``AcceleratorUnavailable`` so the
    supervisor can rerun the same chunks on CPU.
    """
    try:
        return _encode_embeddings(
            model, chunks, batch_size=batch_size, accelerated=accelerated
        )
    except Exception as exc:
        if not accelerated or not is_accelerator_oom(exc):
            raise
        logger.error("⚠️  Accelerator out of memory during embedding: %s", exc)
        release_accelerator_cache()

    smaller_batch = max(1, batch_size // config.BATCH_SIZE_RETRY_DIVISOR)
    logger.info("🔄 Retrying embedding with smaller batch size: %s", smaller_batch)
    try:
        return _encode_embeddings(
            model, chunks, batch_size=smaller_batch, accelerated=accelerated
        )
    except Exception as retry_exc:
        release_accelerator_cache()
        if is_accelerator_oom(retry_exc):
            raise AcceleratorUnavailable(
                f"Accelerator out of memory after reducing batch size to {smaller_batch}: {retry_exc}"
            ) from retry_exc
        raise


class EmbeddingInvoker:
    """Supervisor-side entry point: chunks in, one vector per chunk out."""

    def __init__(self, guard: "AcceleratorGuard") -> None:
        super().__init__()
        self._guard = guard
        self._dim: int | None = None

    @property
    def dimension(self) -> int | None:
        return self._dim

    def embed(self, chunks: Sequence[str]) -> FloatMatrix:
        texts = list(chunks)
        if not texts:
            return np.zeros((0, self._dim or 0), dtype=np.float32)

        vectors = np.asarray(self._guard.run(texts), dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape[0] != len(texts):
            raise ModelError(
                f"Model returned shape {vectors.shape} for {len(texts)} chunks"
            )
        if vectors.shape[1] == 0:
            raise ModelError("Model returned zero-width vectors")
        if self._dim is None:
            self._dim = int(vectors.shape[1])
        elif vectors.shape[1] != self._dim:
            raise ModelError(
                f"Model returned {vectors.shape[1]}-dim vectors, expected {self._dim}"
            )
        return vectors


__all__ = [
    "EmbeddingInvoker",
    "FloatMatrix",
    "SentenceTransformerFactory",
    "encode_chunks",
    "is_accelerator_oom",
    "offload_layers",
    "release_accelerator_cache",
    "transformer_blocks",
]
