"""
Text Chunking for provider-safe synthesis.

The provider rejects or degrades on very long inputs, so texts above the
sync threshold are split into chunks of at most ``max_chunk_size``
characters before they become a batch job.

Strategy:
    1. Collapse whitespace runs to single spaces.
    2. Split into sentences after . ! ? … when followed by whitespace.
    3. Pack whole sentences into a chunk until the next one would overflow.
    4. A sentence longer than the limit is packed word by word instead.
    5. A single word longer than the limit is emitted as its own chunk.

Because sentences and words are only ever separated at single spaces,
``" ".join(split_text(t, n))`` equals the whitespace-normalised ``t``.

Example:
    >>> split_text("First sentence. Second one!", max_chunk_size=20)
    ['First sentence.', 'Second one!']
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List

from tts_gateway.core.logging import get_logger, verbose
from tts_gateway.utils.timeit import timeit

_LOG = get_logger("tts-gateway.chunker")

# Sentence boundary: terminal punctuation (possibly repeated) then a space
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?…]) ")


@dataclass
class ChunkResult:
    """
    Chunks plus how long splitting took.

    Attributes:
        chunks: Ordered chunk texts.
        timings_s: {"chunk": seconds}.
    """
    chunks: List[str]
    timings_s: Dict[str, float]


def normalize_whitespace(text: str) -> str:
    return " ".join(text.split())


def split_sentences(text: str) -> List[str]:
    """Split already-normalised text into sentences, keeping punctuation."""
    if not text:
        return []
    return [s for s in _SENTENCE_BOUNDARY.split(text) if s]


def _pack(pieces: Iterable[str], max_chunk_size: int) -> List[str]:
    """Greedily join pieces with single spaces while they fit."""
    out: List[str] = []
    current = ""
    for piece in pieces:
        if not current:
            current = piece
        elif len(current) + 1 + len(piece) <= max_chunk_size:
            current = f"{current} {piece}"
        else:
            out.append(current)
            current = piece
    if current:
        out.append(current)
    return out


def split_text(text: str, max_chunk_size: int) -> List[str]:
    """
    Split text into chunks no longer than max_chunk_size.

    Only a single word that is itself longer than the limit can produce
    an oversized chunk. Empty or whitespace-only input gives [].

    Args:
        text: Input text.
        max_chunk_size: Maximum characters per chunk (> 0).

    Returns:
        Ordered list of chunks.
    """
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")

    normalized = normalize_whitespace(text)
    if not normalized:
        return []
    if len(normalized) <= max_chunk_size:
        return [normalized]

    chunks: List[str] = []
    pending: List[str] = []
    for sentence in split_sentences(normalized):
        if len(sentence) <= max_chunk_size:
            pending.append(sentence)
            continue
        chunks.extend(_pack(pending, max_chunk_size))
        pending = []
        chunks.extend(_pack(sentence.split(" "), max_chunk_size))
    chunks.extend(_pack(pending, max_chunk_size))
    return chunks


def chunk_text(text: str, max_chunk_size: int) -> ChunkResult:
    """split_text with timing, for callers that log the stage."""
    with timeit("chunk") as t:
        chunks = split_text(text, max_chunk_size)
    verbose(_LOG, "chunked", chunks=len(chunks), max_chars=max_chunk_size, seconds=round(t.seconds, 4))
    return ChunkResult(chunks=chunks, timings_s={"chunk": t.seconds})
