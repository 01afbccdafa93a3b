"""
Embedding ingestion subsystem.

Each module owns one stage of a pass (limits, store access, chunking, the
accelerator guard and its worker, embedding, vector writes, accounting) so the
governor in `pipeline` can be composed from small, testable pieces.
"""

from ingestion import (
    accelerator,
    breakdown,
    chunking,
    cli,
    embedder,
    environment,
    errors,
    limits,
    models,
    pipeline,
    progress,
    store,
    vector_writer,
    worker,
)

__all__ = [
    "models",
    "errors",
    "limits",
    "store",
    "chunking",
    "worker",
    "accelerator",
    "embedder",
    "vector_writer",
    "breakdown",
    "pipeline",
    "progress",
    "environment",
    "cli",
]
