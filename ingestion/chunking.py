"""Token-window chunking ahead of embedding.

Chunk boundaries are a pure function of the body and the window parameters:
re-embedding a document must reproduce the same sequence indices, so nothing
here may depend on the model, the device or batch sizes. Windows are measured
in tokens, the unit of the embedding model's context limit.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Sequence

import config
from ingestion.errors import ModelError
from ingestion.models import Tokenizer
from types_models import Chunk

if TYPE_CHECKING:
    import tiktoken

logger = logging.getLogger(__name__)


class TiktokenTokenizer:
    """Adapter that lets document text containing special-token markers through."""

    def __init__(self, encoding: "tiktoken.Encoding") -> None:
        super().__init__()
        self._encoding = encoding

    def encode(self, text: str) -> list[int]:
        return self._encoding.encode(text, disallowed_special=())

    def decode(self, tokens: Sequence[int]) -> str:
        return self._encoding.decode(list(tokens))


_DEFAULT_TOKENIZER: Tokenizer | None = None

# A character spans at most four byte-level tokens; one more covers merges.
_MAX_BOUNDARY_RETREAT = 8


def get_default_tokenizer() -> Tokenizer:
    """Load the tiktoken encoding lazily; it is only needed once a body is chunked.

    The encoding file is fetched on first use, so an offline machine without a
    warm cache fails here. That surfaces as ``ModelError`` and is handled like
    any other per-document model failure.
    """
    global _DEFAULT_TOKENIZER

    if _DEFAULT_TOKENIZER is None:
        try:
            import tiktoken

            encoding = tiktoken.get_encoding(config.TOKENIZER_ENCODING)
        except Exception as exc:
            raise ModelError(
                f"Could not load tokenizer {config.TOKENIZER_ENCODING}: "
                + f"{type(exc).__name__}: {exc}"
            ) from exc
        _DEFAULT_TOKENIZER = TiktokenTokenizer(encoding)
    return _DEFAULT_TOKENIZER


def _clean_cut(
    text: str,
    tokenizer: Tokenizer,
    tokens: Sequence[int],
    start: int,
    pos: int,
    cut: int,
) -> tuple[int, str]:
    """Move ``cut`` back to a token boundary that does not split a character.

    ``pos`` is the character offset where ``tokens[start]`` begins. A boundary
    is clean when the decoded span is literally the body text at ``pos``; a cut
    through a multi-byte character decodes to U+FFFD instead. If no clean
    boundary lies within reach the raw cut is kept.
    """
    floor = max(start + 1, cut - _MAX_BOUNDARY_RETREAT)
    for candidate in range(cut, floor - 1, -1):
        piece = tokenizer.decode(tokens[start:candidate])
        if text.startswith(piece, pos):
            return candidate, piece
    return cut, tokenizer.decode(tokens[start:cut])


def chunk_text(
    text: str,
    tokenizer: Tokenizer,
    *,
    size: int,
    overlap: int,
) -> list[Chunk]:
    """Split ``text`` into windows of at most ``size`` tokens.

    Consecutive windows share up to ``overlap`` tokens. Window edges are pulled
    back to character boundaries, so ``Chunk.pos`` is the true character offset
    of each chunk. A blank body yields no chunks; a body that fits in one
    window yields exactly one.
    """
    if size <= 0:
        raise ValueError(f"chunk size must be positive, got {size}")
    if not 0 <= overlap < size:
        raise ValueError(
            f"chunk overlap must be in [0, {size}), got {overlap}"
        )

    if not text.strip():
        return []

    tokens = tokenizer.encode(text)
    if not tokens:
        return []

    step = size - overlap
    total = len(tokens)
    chunks: list[Chunk] = []
    start = 0
    pos = 0
    while True:
        end, piece = _clean_cut(
            text, tokenizer, tokens, start, pos, min(start + size, total)
        )
        chunks.append(
            Chunk(seq=len(chunks), text=piece, pos=pos, token_count=end - start)
        )
        if end >= total:
            break
        # The next window never starts past this one's end, so no token is dropped.
        next_start, head = _clean_cut(
            text, tokenizer, tokens, start, pos, min(start + step, end)
        )
        pos += len(head)
        start = next_start
    return chunks


class Chunker:
    """Chunk document bodies with a fixed token budget and overlap."""

    def __init__(
        self,
        tokenizer: Tokenizer | None = None,
        *,
        size: int = config.CHUNK_SIZE_TOKENS,
        overlap: int = config.CHUNK_OVERLAP_TOKENS,
    ) -> None:
        super().__init__()
        if size <= 0 or not 0 <= overlap < size:
            raise ValueError(
                f"invalid chunk window: size={size}, overlap={overlap}"
            )
        self._tokenizer = tokenizer
        self.size = size
        self.overlap = overlap

    @property
    def tokenizer(self) -> Tokenizer:
        if self._tokenizer is None:
            self._tokenizer = get_default_tokenizer()
        return self._tokenizer

    def chunk(self, body: str) -> list[Chunk]:
        chunks = chunk_text(body, self.tokenizer, size=self.size, overlap=self.overlap)
        logger.debug("Chunked %d characters into %d chunk(s)", len(body), len(chunks))
        return chunks


__all__ = [
    "Chunker",
    "TiktokenTokenizer",
    "chunk_text",
    "get_default_tokenizer",
]
