"""Candidate generation for dedup: registry metadata only, no node bodies read.

Literal pass:
    1. drop archived and structural nodes (moc, index, now, reflection)
    2. bucket by (type, canonical-key prefix)
    3. score pairs inside each bucket
    4. incremental scope: skip pairs where both sides predate the last run
    5. volatile types: skip pairs updated too far apart
    6. keep pairs at or above the threshold, capped per bucket
    7. union-find clustering in descending score order, size-capped

Semantic pass (generate_semantic_blocks) groups more coarsely by
(type, domain) inside a time window and extracts blocks greedily.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING

from mg.dedup.similarity import combined_similarity, key_prefix
from mg.models import parse_ts

if TYPE_CHECKING:
    from mg.config import DedupConfig, SemanticDedupConfig
    from mg.models import RegistryEntry

EXCLUDED_TYPES = frozenset({"moc", "index", "now", "reflection"})
VOLATILE_TYPES = frozenset({"episode", "fact"})

_DOMAIN_BY_PREFIX = {
    "identity": "identity",
    "identities": "identity",
    "preference": "preferences",
    "preferences": "preferences",
    "project": "projects",
    "projects": "projects",
    "decision": "decisions",
    "decisions": "decisions",
}


@dataclass(frozen=True)
class CandidatePair:
    a: RegistryEntry
    b: RegistryEntry
    score: float


@dataclass
class CandidateCluster:
    node_ids: list[str]
    entries: dict[str, RegistryEntry]
    max_score: float


@dataclass
class SemanticBlock:
    node_ids: list[str]
    entries: dict[str, RegistryEntry]
    domain: str
    max_score: float = 0.0


def _eligible(entries: list[RegistryEntry]) -> list[RegistryEntry]:
    return [e for e in entries if not e.archived and e.type not in EXCLUDED_TYPES]


def _days_apart(a: RegistryEntry, b: RegistryEntry) -> float | None:
    ta, tb = parse_ts(a.updated), parse_ts(b.updated)
    if ta is None or tb is None:
        return None
    return abs((ta - tb).total_seconds()) / 86400


def generate_candidate_pairs(
    entries: list[RegistryEntry],
    last_dedup_at: str | None,
    cfg: DedupConfig,
) -> list[CandidatePair]:
    stable = set(cfg.stable_types)
    since = parse_ts(last_dedup_at)

    buckets: dict[str, list[RegistryEntry]] = defaultdict(list)
    for entry in _eligible(entries):
        buckets[f"{entry.type}:{key_prefix(entry.canonical_key)}"].append(entry)

    def predates(e: RegistryEntry) -> bool:
        updated = parse_ts(e.updated)
        return since is not None and updated is not None and updated < since

    pairs: list[CandidatePair] = []
    for bucket in buckets.values():
        kept = 0
        for i, a in enumerate(bucket):
            if kept >= cfg.max_pairs_per_bucket:
                break
            for b in bucket[i + 1:]:
                if kept >= cfg.max_pairs_per_bucket:
                    break
                if predates(a) and predates(b):
                    continue
                if a.type in VOLATILE_TYPES and a.type not in stable:
                    days = _days_apart(a, b)
                    if days is not None and days > cfg.stale_days_threshold:
                        continue
                score = combined_similarity(a.description, b.description, a.canonical_key, b.canonical_key)
                if score >= cfg.similarity_threshold:
                    pairs.append(CandidatePair(a, b, score))
                    kept += 1
    return pairs


def cluster_candidates(pairs: list[CandidatePair], max_cluster_size: int, max_clusters: int) -> list[CandidateCluster]:
    """Single-linkage clusters, strongest pairs first, never growing past max_cluster_size."""
    ordered = sorted(pairs, key=lambda p: (-p.score, p.a.id, p.b.id))
    parent: dict[str, str] = {}
    members: dict[str, list[str]] = {}
    best: dict[str, float] = {}
    entries: dict[str, RegistryEntry] = {}

    def find(x: str) -> str:
        root = x
        while parent[root] != root:
            root = parent[root]
        while parent[x] != root:
            parent[x], x = root, parent[x]
        return root

    for pair in ordered:
        for e in (pair.a, pair.b):
            if e.id not in parent:
                parent[e.id] = e.id
                members[e.id] = [e.id]
                best[e.id] = 0.0
                entries[e.id] = e
        ra, rb = find(pair.a.id), find(pair.b.id)
        if ra == rb:
            best[ra] = max(best[ra], pair.score)
            continue
        if len(members[ra]) + len(members[rb]) > max_cluster_size:
            continue
        parent[rb] = ra
        members[ra].extend(members.pop(rb))
        best[ra] = max(best[ra], best.pop(rb), pair.score)

    clusters = [
        CandidateCluster(node_ids=ids, entries={i: entries[i] for i in ids}, max_score=best[root])
        for root, ids in members.items()
        if len(ids) >= 2
    ]
    clusters.sort(key=lambda c: (-c.max_score, c.node_ids[0]))
    return clusters[:max_clusters]


# ---------------------------------------------------------------------------
# Semantic blocks
# ---------------------------------------------------------------------------


def resolve_domain(entry: RegistryEntry) -> str:
    """First moc link wins, then the canonical-key prefix map, else 'misc'."""
    for link in entry.links:
        name = link.rsplit("/", 1)[-1]
        if name.startswith("moc-") and len(name) > 4:
            return name[4:]
    return _DOMAIN_BY_PREFIX.get(key_prefix(entry.canonical_key), "misc")


def generate_semantic_blocks(entries: list[RegistryEntry], cfg: SemanticDedupConfig) -> list[SemanticBlock]:
    eligible = _eligible(entries)
    if len(eligible) < 2:
        return []

    groups: dict[tuple[str, str], list[RegistryEntry]] = defaultdict(list)
    for entry in eligible:
        groups[(entry.type, resolve_domain(entry))].append(entry)

    blocks: list[SemanticBlock] = []

    for (_, domain), group in groups.items():
        if len(group) < 2 or len(blocks) >= cfg.max_blocks_per_run:
            continue
        by_id = {e.id: e for e in group}
        adjacency: dict[str, set[str]] = defaultdict(set)
        scores: dict[frozenset[str], float] = {}
        for i, a in enumerate(group):
            for b in group[i + 1:]:
                days = _days_apart(a, b)
                if days is not None and days > cfg.time_window_days:
                    continue
                score = combined_similarity(a.description, b.description, a.canonical_key, b.canonical_key)
                if score >= cfg.heuristic_prefilter_threshold:
                    adjacency[a.id].add(b.id)
                    adjacency[b.id].add(a.id)
                    scores[frozenset((a.id, b.id))] = score

        assigned: set[str] = set()
        while len(blocks) < cfg.max_blocks_per_run:
            # highest unassigned degree first; ties resolve to the smallest id
            ranked = sorted(
                (-len(nbrs - assigned), node_id)
                for node_id, nbrs in adjacency.items()
                if node_id not in assigned
            )
            if not ranked or ranked[0][0] == 0:
                break
            seed = ranked[0][1]
            block_ids = [seed]
            assigned.add(seed)
            for nbr in sorted(adjacency[seed] - assigned):
                if len(block_ids) >= cfg.max_block_size:
                    break
                block_ids.append(nbr)
                assigned.add(nbr)
            max_score = max(
                (scores.get(frozenset((x, y)), 0.0) for i, x in enumerate(block_ids) for y in block_ids[i + 1:]),
                default=0.0,
            )
            blocks.append(SemanticBlock(
                node_ids=block_ids,
                entries={i: by_id[i] for i in block_ids},
                domain=domain,
                max_score=max_score,
            ))

    blocks.sort(key=lambda b: (-b.max_score, b.node_ids[0]))
    return blocks[:cfg.max_blocks_per_run]
