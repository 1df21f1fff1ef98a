"""Dedup orchestrators.

run_dedup
    0. incremental scope: only pairs touching nodes updated since lastDedupAt
    1. heuristic candidate clusters from registry metadata
    2. one model call to confirm clusters as merge plans
    3. execute plans, append audit entries, advance DedupState

A failed model call, non-JSON reply or schema mismatch returns before step 3,
leaving lastDedupAt where it was.

run_semantic_dedup is the heavier cross-check over coarser blocks with node
bodies included. run_maintenance runs both once after bootstrap completes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from mg.bootstrap.state import mark_maintenance_done, read_state, write_state
from mg.dedup.candidates import cluster_candidates, generate_candidate_pairs, generate_semantic_blocks
from mg.dedup.merge import MergeError, MergePlan, execute_merge
from mg.dedup.prompts import (
    DEDUP_SYSTEM_PROMPT,
    SEMANTIC_SYSTEM_PROMPT,
    build_dedup_prompt,
    build_semantic_prompt,
    parse_merge_plans,
    parse_semantic_suggestions,
)
from mg.dedup.state import DedupState, append_audit_entry, load_dedup_state, save_dedup_state
from mg.models import utcnow
from mg.store import FileStore, FrontmatterError, Registry

if TYPE_CHECKING:
    from pathlib import Path

    from mg.config import MGConfig
    from mg.dedup.merge import MergeResult
    from mg.llm import ModelClient

logger = logging.getLogger("mg.dedup")

DEDUP_MAX_TOKENS = 4096
SEMANTIC_MAX_TOKENS = 4096


@dataclass
class DedupRunResult:
    clusters_processed: int = 0
    merges_executed: int = 0
    nodes_archived: int = 0
    conflicts_detected: int = 0
    tokens_used: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class SemanticDedupResult:
    blocks_processed: int = 0
    merges_executed: int = 0
    nodes_archived: int = 0
    tokens_used: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class MaintenanceResult:
    ran: bool
    reason: str = ""
    dedup: DedupRunResult | None = None
    semantic: SemanticDedupResult | None = None

    @property
    def errors(self) -> list[str]:
        return [*(self.dedup.errors if self.dedup else []), *(self.semantic.errors if self.semantic else [])]


def _advance(graph_dir: Path, state: DedupState, merges: int) -> None:
    try:
        save_dedup_state(graph_dir, DedupState(
            last_dedup_at=utcnow(),
            runs_completed=state.runs_completed + 1,
            total_merges=state.total_merges + merges,
        ))
    except OSError:
        logger.exception("failed to save dedup state")


def _execute_plans(
    plans: list[MergePlan], store: FileStore, registry: Registry, graph_dir: Path, errors: list[str],
) -> list[tuple[MergePlan, MergeResult]]:
    """Run each plan on its own; a failing plan is recorded and the rest continue."""
    ids = {nid for p in plans for nid in (p.keep_node_id, *p.merge_node_ids)}
    file_paths = registry.get_file_paths(ids)
    done = []
    for plan in plans:
        try:
            result = execute_merge(plan, file_paths, store, registry)
        except (MergeError, OSError, FrontmatterError) as exc:
            msg = f"merge failed for keeper {plan.keep_node_id!r} (losers {', '.join(plan.merge_node_ids)}): {exc}"
            logger.error(msg)
            errors.append(msg)
            continue
        try:
            append_audit_entry(graph_dir, result.audit_entry)
        except OSError:
            logger.exception("failed to append audit entry for %s", plan.keep_node_id)
        done.append((plan, result))
    return done


async def run_dedup(cfg: MGConfig, client: ModelClient) -> DedupRunResult:
    """One literal dedup pass. Never raises; problems land in result.errors."""
    result = DedupRunResult()
    graph_dir = cfg.graph_dir
    state = load_dedup_state(graph_dir)
    store = FileStore(graph_dir)
    registry = Registry(store)

    try:
        entries = registry.entries()
    except OSError as exc:
        msg = f"failed to read registry: {exc}"
        logger.error(msg)
        result.errors.append(msg)
        return result

    pairs = generate_candidate_pairs(entries, state.last_dedup_at, cfg.dedup)
    if not pairs:
        logger.info("dedup: no candidate pairs, skipping model call")
        _advance(graph_dir, state, 0)
        return result

    clusters = cluster_candidates(pairs, cfg.dedup.max_cluster_size, cfg.dedup.max_clusters_per_run)
    result.clusters_processed = len(clusters)
    logger.info("dedup: %d pair(s) in %d cluster(s)", len(pairs), len(clusters))

    try:
        gen = await asyncio.to_thread(client.generate, DEDUP_SYSTEM_PROMPT, build_dedup_prompt(clusters), DEDUP_MAX_TOKENS)
    except Exception as exc:
        msg = f"model call failed: {exc}"
        logger.error("dedup: %s", msg)
        result.errors.append(msg)
        return result
    result.tokens_used = gen.tokens_used

    try:
        plans = parse_merge_plans(gen.text)
    except ValueError as exc:
        msg = f"invalid merge plans from model: {exc} (response starts {gen.text[:200]!r})"
        logger.error("dedup: %s", msg)
        result.errors.append(msg)
        return result

    if not plans:
        logger.info("dedup: model found no true duplicates")
    for plan, merged in _execute_plans(plans, store, registry, graph_dir, result.errors):
        result.merges_executed += 1
        result.nodes_archived += merged.nodes_archived
        result.conflicts_detected += len(plan.conflicts)

    _advance(graph_dir, state, result.merges_executed)
    logger.info(
        "dedup completed: %d cluster(s), %d merge(s), %d archived, %d conflict(s), %d tokens",
        result.clusters_processed, result.merges_executed, result.nodes_archived,
        result.conflicts_detected, result.tokens_used,
    )
    return result


async def run_semantic_dedup(cfg: MGConfig, client: ModelClient) -> SemanticDedupResult:
    """One semantic pass over blocks; does not touch DedupState. Never raises."""
    sd = cfg.semantic_dedup
    result = SemanticDedupResult()
    if not sd.enabled:
        return result

    store = FileStore(cfg.graph_dir)
    registry = Registry(store)
    try:
        entries = registry.entries()
    except OSError as exc:
        msg = f"failed to read registry: {exc}"
        logger.error("semantic dedup: %s", msg)
        result.errors.append(msg)
        return result

    blocks = generate_semantic_blocks(entries, sd)
    if not blocks:
        logger.info("semantic dedup: no candidate blocks, skipping model call")
        return result
    result.blocks_processed = len(blocks)

    paths = registry.get_file_paths(nid for b in blocks for nid in b.node_ids)
    bodies: dict[str, str] = {}
    for node_id, path in paths.items():
        try:
            bodies[node_id] = store.read(path).body
        except (OSError, FrontmatterError) as exc:
            logger.warning("semantic dedup: cannot read %s, excluded: %s", node_id, exc)

    prompt = build_semantic_prompt(blocks, bodies, sd.max_body_chars_per_node)
    try:
        gen = await asyncio.to_thread(client.generate, SEMANTIC_SYSTEM_PROMPT, prompt, SEMANTIC_MAX_TOKENS)
    except Exception as exc:
        msg = f"model call failed: {exc}"
        logger.error("semantic dedup: %s", msg)
        result.errors.append(msg)
        return result
    result.tokens_used = gen.tokens_used

    try:
        suggestions = parse_semantic_suggestions(gen.text, sd.semantic_merge_threshold)
    except ValueError as exc:
        msg = f"invalid suggestions from model: {exc}"
        logger.error("semantic dedup: %s", msg)
        result.errors.append(msg)
        return result

    keys = {e.id: e.canonical_key for e in entries}
    plans = [
        MergePlan(
            keep_node_id=s.keep_node_id,
            merge_node_ids=list(s.merge_node_ids),
            alias_keys=[keys[m] for m in s.merge_node_ids if keys.get(m)],
        )
        for s in suggestions
    ]
    for _, merged in _execute_plans(plans, store, registry, cfg.graph_dir, result.errors):
        result.merges_executed += 1
        result.nodes_archived += merged.nodes_archived

    logger.info(
        "semantic dedup completed: %d block(s), %d merge(s), %d archived, %d tokens",
        result.blocks_processed, result.merges_executed, result.nodes_archived, result.tokens_used,
    )
    return result


async def run_maintenance(cfg: MGConfig, client: ModelClient) -> MaintenanceResult:
    """Dedup then semantic dedup, once per completed bootstrap."""
    state = read_state(cfg.graph_dir)
    if state is None or state.status != "completed":
        return MaintenanceResult(ran=False, reason="bootstrap has not completed")
    if state.maintenance_done:
        return MaintenanceResult(ran=False, reason="maintenance already done")

    dedup = await run_dedup(cfg, client)
    semantic = await run_semantic_dedup(cfg, client)
    # re-read: a concurrent bootstrap may have moved on
    current = read_state(cfg.graph_dir) or state
    write_state(cfg.graph_dir, mark_maintenance_done(current))
    return MaintenanceResult(ran=True, reason="post-bootstrap maintenance", dedup=dedup, semantic=semantic)
