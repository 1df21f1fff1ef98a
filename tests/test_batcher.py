"""Chunking, packing and prompt rendering for bootstrap batches."""

from __future__ import annotations

import random

import pytest

from mg.bootstrap.batcher import (
    EXTRACT_MAX_TOKENS,
    MAX_OUTPUT_TOKENS_CAP,
    SourceChunk,
    batch_to_prompt,
    chunk_text,
    max_output_tokens,
    pack,
)


def _chunks(sizes: list[int]) -> list[SourceChunk]:
    return [SourceChunk(source=f"s{i}.md", text="x" * n) for i, n in enumerate(sizes)]


class TestChunkText:
    def test_blank_input_gives_nothing(self):
        assert chunk_text("   \n\t", "a.md") == []

    def test_splits_at_size_and_numbers_parts(self):
        chunks = chunk_text("  abcdefghij  ", "a.md", size=4)
        assert [c.text for c in chunks] == ["abcd", "efgh", "ij"]
        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        assert chunks[0].label == "a.md"
        assert chunks[2].label == "a.md (part 3)"


class TestPack:
    def test_reproduces_input_order(self):
        rng = random.Random(7)
        chunks = _chunks([rng.randint(1, 120) for _ in range(60)])
        batches = pack(chunks, 200)
        flattened = [c for b in batches for c in b.chunks]
        assert flattened == chunks

    @pytest.mark.parametrize("budget", [1, 50, 100, 250, 1000])
    def test_budget_respected_unless_single_oversized(self, budget):
        rng = random.Random(budget)
        chunks = _chunks([rng.randint(1, 300) for _ in range(40)])
        for batch in pack(chunks, budget):
            assert batch.total_chars == sum(len(c.text) for c in batch.chunks)
            if batch.total_chars > budget:
                assert len(batch.chunks) == 1

    def test_batch_indices_are_sequential(self):
        batches = pack(_chunks([10, 10, 10, 10]), 25)
        assert [b.batch_index for b in batches] == [0, 1]

    def test_zero_budget_is_one_chunk_per_batch(self):
        batches = pack(_chunks([5, 5, 5]), 0)
        assert [len(b.chunks) for b in batches] == [1, 1, 1]

    def test_empty(self):
        assert pack([], 100) == []


def test_prompt_marks_each_source():
    chunks = [SourceChunk("a.md", "alpha"), SourceChunk("b.md", "beta", chunk_index=1)]
    prompt = batch_to_prompt(pack(chunks, 1000)[0])
    assert prompt == "[BOOTSTRAP SOURCE: a.md]\nalpha\n\n---\n\n[BOOTSTRAP SOURCE: b.md (part 2)]\nbeta"


def test_max_output_tokens_scales_and_caps():
    assert max_output_tokens(1) == EXTRACT_MAX_TOKENS
    assert max_output_tokens(3) == EXTRACT_MAX_TOKENS + 2 * 1024
    assert max_output_tokens(100) == MAX_OUTPUT_TOKENS_CAP
