"""Chunk source text and pack chunks into model-call-sized batches."""

from __future__ import annotations

from dataclasses import dataclass

CHUNK_TOKEN_BUDGET = 6_000
CHUNK_CHAR_BUDGET = CHUNK_TOKEN_BUDGET * 4     # ~4 chars per token

EXTRACT_MAX_TOKENS = 4096
TOKENS_PER_EXTRA_CHUNK = 1024
MAX_OUTPUT_TOKENS_CAP = 16384

_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True)
class SourceChunk:
    source: str             # label, e.g. a path relative to the workspace
    text: str
    chunk_index: int = 0    # 0-based position within its source

    @property
    def label(self) -> str:
        if self.chunk_index > 0:
            return f"{self.source} (part {self.chunk_index + 1})"
        return self.source


@dataclass(frozen=True)
class SourceBatch:
    chunks: tuple[SourceChunk, ...]
    total_chars: int
    batch_index: int

    @property
    def labels(self) -> list[str]:
        return [c.label for c in self.chunks]


def chunk_text(text: str, source: str, size: int = CHUNK_CHAR_BUDGET) -> list[SourceChunk]:
    """Split trimmed text into fixed-size character chunks. Blank input gives []."""
    trimmed = text.strip()
    return [
        SourceChunk(source=source, text=trimmed[offset:offset + size], chunk_index=i)
        for i, offset in enumerate(range(0, len(trimmed), size))
    ]


def pack(chunks: list[SourceChunk], char_budget: int) -> list[SourceBatch]:
    """Greedy sequential packing that keeps input order.

    A chunk that alone exceeds the budget gets a batch of its own. A budget of
    0 puts every chunk in its own batch.
    """
    if char_budget <= 0:
        return [SourceBatch((c,), len(c.text), i) for i, c in enumerate(chunks)]

    batches: list[SourceBatch] = []
    current: list[SourceChunk] = []
    current_chars = 0
    for chunk in chunks:
        size = len(chunk.text)
        if current and current_chars + size > char_budget:
            batches.append(SourceBatch(tuple(current), current_chars, len(batches)))
            current, current_chars = [], 0
        current.append(chunk)
        current_chars += size
    if current:
        batches.append(SourceBatch(tuple(current), current_chars, len(batches)))
    return batches


def batch_to_prompt(batch: SourceBatch) -> str:
    return _SEPARATOR.join(f"[BOOTSTRAP SOURCE: {c.label}]\n{c.text}" for c in batch.chunks)


def max_output_tokens(chunk_count: int) -> int:
    """Output budget scaled by how many chunks share one call."""
    if chunk_count <= 1:
        return EXTRACT_MAX_TOKENS
    return min(EXTRACT_MAX_TOKENS + (chunk_count - 1) * TOKENS_PER_EXTRA_CHUNK, MAX_OUTPUT_TOKENS_CAP)
