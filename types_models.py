"""
Type definitions and Pydantic models for DocVec.

This module provides strong, validated type definitions for the values that
flow between the ingestion governor's components: per-run limits and options,
document references read from the store, chunks, and run accounting.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

import config


class ResourceLimits(BaseModel):
    """Resource guards resolved once per run from the environment."""

    max_embed_bytes: int = Field(
        gt=0, description="Documents above this UTF-8 byte size are not embedded"
    )
    gpu_layers: int | None = Field(
        default=None,
        ge=0,
        le=config.MAX_GPU_LAYERS,
        description="Layers to offload to the accelerator; None lets the guard decide",
    )

    model_config = ConfigDict(frozen=True)

    @property
    def accelerator_mode(self) -> str:
        if self.gpu_layers is None:
            return "auto"
        if self.gpu_layers == 0:
            return "disabled"
        return f"{self.gpu_layers} layers"


class EmbedOptions(BaseModel):
    """Named switches for one embedding pass."""

    force: bool = Field(
        default=False, description="Re-embed every active document, replacing vectors"
    )
    ignore_size_limit: bool = Field(
        default=False, description="Embed documents regardless of the byte ceiling"
    )
    disable_accelerator: bool = Field(
        default=False, description="Run the embedding model on CPU only"
    )
    verbose: bool = Field(default=False, description="Print per-document timings")

    model_config = ConfigDict(frozen=True)


class DocumentRef(BaseModel):
    """Content hash awaiting embedding, with its size and a representative path."""

    hash: str = Field(min_length=1, description="SHA-256 of the document body")
    size: int = Field(ge=0, description="UTF-8 byte length of the body")
    path: str = Field(description="Smallest active path referencing the hash")

    model_config = ConfigDict(frozen=True)


class Chunk(BaseModel):
    """Token-bounded span of a document body."""

    seq: int = Field(ge=0, description="Position of the chunk within the document")
    text: str = Field(description="Decoded chunk text")
    pos: int = Field(ge=0, description="Character offset of the chunk in the body")
    token_count: int = Field(ge=1, description="Tokens covered by the chunk")

    model_config = ConfigDict(frozen=True)


class SkippedDocument(BaseModel):
    """Why a document was passed over during a run."""

    hash: str
    path: str
    reason: str = Field(description="'too large' or 'empty'")
    size: int = Field(ge=0)
    limit: int | None = Field(default=None, description="Ceiling in effect, if any")

    model_config = ConfigDict(frozen=True)


class EmbedSummary(BaseModel):
    """Accounting for a single governor pass."""

    embedded: int = 0
    skipped_too_large: int = 0
    skipped_empty: int = 0
    failed: int = 0
    accelerator_failures: int = 0
    chunk_total: int = 0
    interrupted: bool = False
    skipped: list[SkippedDocument] = Field(default_factory=list)
    failures: dict[str, str] = Field(
        default_factory=dict, description="Document path -> error message"
    )

    @property
    def skipped_total(self) -> int:
        return self.skipped_too_large + self.skipped_empty


class EmbedBreakdown(BaseModel):
    """Partition of active, non-embedded documents by the size ceiling."""

    pending: int = Field(ge=0)
    too_large: int = Field(ge=0)

    model_config = ConfigDict(frozen=True)

    @property
    def total(self) -> int:
        return self.pending + self.too_large


class EmbedStatus(BaseModel):
    """Snapshot printed by the ``status`` action."""

    embedded: int = Field(ge=0)
    pending: int = Field(ge=0)
    too_large: int = Field(ge=0)
    ceiling: int = Field(gt=0)

    model_config = ConfigDict(frozen=True)

    @field_validator("embedded", "pending", "too_large", mode="before")
    @classmethod
    def _coerce_null_counts(cls, v: Any) -> int:
        """SQLite SUM() over zero rows yields NULL."""
        return 0 if v is None else v


def embed_status_to_dict(status: EmbedStatus) -> dict[str, Any]:
    """Convert EmbedStatus to the ``{embedded, pending, tooLarge}`` report shape."""
    return {
        "embedded": status.embedded,
        "pending": status.pending,
        "tooLarge": status.too_large,
    }
