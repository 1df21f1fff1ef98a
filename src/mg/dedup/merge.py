"""Merge executor: fold losers into a keeper, archive them, redirect links.

Order of operations matters:
    1. read and parse the keeper (missing, unreadable or archived raises, nothing is touched)
    2. write the patched keeper
    3. archive each loser with mergedInto -> keeper
    4. rewrite inbound links that point at an archived loser
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from mg.models import GraphNode, utcnow
from mg.store import FrontmatterError

if TYPE_CHECKING:
    from pathlib import Path

    from mg.store import FileStore, Registry

logger = logging.getLogger("mg.merge")


class MergeError(Exception):
    """A merge plan could not be executed."""


class KeeperUnavailableError(MergeError):
    """The keeper node could not be resolved or read; no loser was archived."""

    def __init__(self, keep_node_id: str, merge_node_ids: list[str], reason: str) -> None:
        self.keep_node_id = keep_node_id
        self.merge_node_ids = list(merge_node_ids)
        self.reason = reason
        super().__init__(f"keeper {keep_node_id} unavailable ({reason}); losers untouched: {', '.join(merge_node_ids)}")


@dataclass
class MergePatch:
    description: str | None = None
    tags: list[str] = field(default_factory=list)
    links: list[str] = field(default_factory=list)
    body_append: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        if self.description is not None:
            d["description"] = self.description
        if self.tags:
            d["tags"] = list(self.tags)
        if self.links:
            d["links"] = list(self.links)
        if self.body_append is not None:
            d["bodyAppend"] = self.body_append
        return d


@dataclass
class MergePlan:
    keep_node_id: str
    merge_node_ids: list[str]
    alias_keys: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    patch: MergePatch = field(default_factory=MergePatch)


@dataclass
class AuditEntry:
    timestamp: str
    keep_node_id: str
    merged_node_ids: list[str]
    alias_keys: list[str]
    conflicts: list[str]
    patch: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "keepNodeId": self.keep_node_id,
            "mergedNodeIds": list(self.merged_node_ids),
            "aliasKeys": list(self.alias_keys),
            "conflicts": list(self.conflicts),
            "patch": dict(self.patch),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> AuditEntry:
        """Raises ValueError if the shape is wrong."""
        if not isinstance(d, dict):
            raise ValueError("audit entry is not an object")
        ts, keep, merged = d.get("timestamp"), d.get("keepNodeId"), d.get("mergedNodeIds")
        if not isinstance(ts, str) or not isinstance(keep, str) or not keep:
            raise ValueError("audit entry needs timestamp and keepNodeId strings")
        if not isinstance(merged, list) or not all(isinstance(m, str) for m in merged):
            raise ValueError("mergedNodeIds must be a list of strings")
        patch = d.get("patch")
        return cls(
            timestamp=ts,
            keep_node_id=keep,
            merged_node_ids=merged,
            alias_keys=[str(a) for a in d.get("aliasKeys") or []],
            conflicts=[str(c) for c in d.get("conflicts") or []],
            patch=patch if isinstance(patch, dict) else {},
        )


@dataclass
class MergeResult:
    audit_entry: AuditEntry
    nodes_archived: int


def _union(*lists: list[str]) -> list[str]:
    return list(dict.fromkeys(x for lst in lists for x in lst))


def apply_patch(node: GraphNode, patch: MergePatch, alias_keys: list[str], merged_ids: list[str]) -> GraphNode:
    """Return a patched copy of node; the input is left untouched."""
    body = node.body
    if patch.body_append:
        body = f"{body.rstrip()}\n\n{patch.body_append}" if body.strip() else patch.body_append
    return replace(
        node,
        description=patch.description if patch.description else node.description,
        tags=_union(node.tags, patch.tags),
        links=[link for link in _union(node.links, patch.links) if link != node.id],
        aliases=_union(node.aliases, [a for a in alias_keys if a != node.canonical_key]),
        merged_from=_union(node.merged_from, merged_ids),
        body=body,
        updated=utcnow(),
        extra=dict(node.extra),
    )


def _read_keeper(plan: MergePlan, file_paths: dict[str, Path], store: FileStore) -> tuple[GraphNode, Path]:
    path = file_paths.get(plan.keep_node_id)
    if path is None:
        raise KeeperUnavailableError(plan.keep_node_id, plan.merge_node_ids, "location unknown")
    try:
        keeper = store.read(path)
    except (OSError, FrontmatterError) as exc:
        raise KeeperUnavailableError(plan.keep_node_id, plan.merge_node_ids, str(exc)) from exc
    if keeper.archived:
        raise KeeperUnavailableError(plan.keep_node_id, plan.merge_node_ids, "keeper is archived")
    return keeper, path


def _is_archived(node_id: str, file_paths: dict[str, Path], store: FileStore) -> bool:
    path = file_paths.get(node_id)
    if path is None:
        return False
    try:
        return store.read(path).archived
    except (OSError, FrontmatterError):
        return False  # reported when archiving is attempted


def execute_merge(plan: MergePlan, file_paths: dict[str, Path], store: FileStore, registry: Registry) -> MergeResult:
    """Apply one merge plan. Raises KeeperUnavailableError before touching any loser.

    Losers that are already archived were merged elsewhere; they are skipped
    and left out of the audit entry. Raises MergeError when none are left.
    """
    keeper, keeper_path = _read_keeper(plan, file_paths, store)
    losers: list[str] = []
    for nid in dict.fromkeys(plan.merge_node_ids):
        if nid == plan.keep_node_id:
            continue
        if _is_archived(nid, file_paths, store):
            logger.warning("merge %s: %s is already archived, skipping", plan.keep_node_id, nid)
            continue
        losers.append(nid)
    if not losers:
        msg = f"merge {plan.keep_node_id}: no live losers left to merge"
        raise MergeError(msg)

    patched = apply_patch(keeper, plan.patch, plan.alias_keys, losers)
    store.write(patched, keeper_path)
    try:
        registry.update(
            patched.id,
            description=patched.description,
            updated=patched.updated,
            tags=list(patched.tags),
            links=list(patched.links),
        )
    except (KeyError, OSError):
        logger.exception("registry update failed for keeper %s", patched.id)

    archived: list[str] = []
    for loser_id in losers:
        path = file_paths.get(loser_id)
        if path is None:
            logger.warning("merge %s: loser %s has no known location, skipping", plan.keep_node_id, loser_id)
            continue
        try:
            loser = store.read(path)
            loser.archived = True
            loser.merged_into = patched.id
            loser.updated = utcnow()
            store.write(loser, path)
        except (OSError, FrontmatterError):
            logger.exception("merge %s: failed to archive %s", plan.keep_node_id, loser_id)
            continue
        try:
            registry.update(loser_id, archived=True, updated=loser.updated)
        except (KeyError, OSError):
            logger.exception("registry update failed for archived node %s", loser_id)
        archived.append(loser_id)

    if archived:
        redirect_links(archived, patched.id, store, registry)

    audit = AuditEntry(
        timestamp=utcnow(),
        keep_node_id=patched.id,
        merged_node_ids=losers,
        alias_keys=list(plan.alias_keys),
        conflicts=list(plan.conflicts),
        patch=plan.patch.to_dict(),
    )
    logger.info("merged %s into %s (%d archived)", ", ".join(losers), patched.id, len(archived))
    return MergeResult(audit_entry=audit, nodes_archived=len(archived))


def redirect_links(archived_ids: list[str], keeper_id: str, store: FileStore, registry: Registry) -> int:
    """Point every link at an archived id to the keeper instead. Returns nodes rewritten."""
    gone = set(archived_ids)
    referrers = [e for e in registry.entries() if e.id not in gone and gone.intersection(e.links)]
    rewritten = 0
    for entry in referrers:
        path = store.resolve(entry.file_path)
        try:
            node = store.read(path)
            links = _union([keeper_id if link in gone else link for link in node.links])
            if node.id == keeper_id:
                links = [link for link in links if link != keeper_id]
            node.links = links
            store.write(node, path)
            registry.update(node.id, links=list(links))
        except (OSError, FrontmatterError, KeyError):
            logger.exception("failed to redirect links in %s", entry.id)
            continue
        rewritten += 1
    return rewritten
