"""Heuristic candidate clustering with model-confirmed merges."""

from mg.dedup.run import DedupRunResult, SemanticDedupResult, run_dedup, run_maintenance, run_semantic_dedup

__all__ = ["DedupRunResult", "SemanticDedupResult", "run_dedup", "run_maintenance", "run_semantic_dedup"]
