"""Data models for the file-backed memory graph."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

NODE_TYPES = (
    "identity", "preference", "project", "decision", "fact",
    "episode", "reflection", "moc", "index", "now",
)
PRIORITIES = ("high", "medium", "low")

# frontmatter keys written in this order; anything else round-trips via GraphNode.extra
_FRONTMATTER_KEYS = (
    "id", "description", "type", "priority", "created", "updated",
    "canonicalKey", "aliases", "links", "tags", "archived", "mergedInto", "mergedFrom",
)


def utcnow() -> str:
    return datetime.now(UTC).isoformat()


def parse_ts(value: str | None) -> datetime | None:
    """Parse an ISO 8601 timestamp (``Z`` suffix accepted). Naive values are taken as UTC."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def slugify(text: str) -> str:
    """File-safe slug: lowercase, runs of anything but letters/digits/dots become '-'."""
    slug = re.sub(r"[^\w.]+|_+", "-", text.lower()).strip("-.")
    return slug or "node"


def node_id_for(canonical_key: str) -> str:
    return f"mg/{slugify(canonical_key)}"


def _str_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


@dataclass
class GraphNode:
    """A node file: YAML frontmatter plus markdown body."""

    id: str
    type: str
    description: str = ""
    canonical_key: str = ""
    priority: str = "medium"
    created: str = ""
    updated: str = ""
    tags: list[str] = field(default_factory=list)
    links: list[str] = field(default_factory=list)
    aliases: list[str] = field(default_factory=list)
    archived: bool = False
    merged_into: str | None = None
    merged_from: list[str] = field(default_factory=list)
    body: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_frontmatter(cls, fm: dict[str, Any], body: str = "") -> GraphNode:
        return cls(
            id=str(fm["id"]),
            type=str(fm.get("type", "fact")),
            description=str(fm.get("description", "") or ""),
            canonical_key=str(fm.get("canonicalKey", "") or ""),
            priority=str(fm.get("priority", "medium") or "medium"),
            created=str(fm.get("created", "") or ""),
            updated=str(fm.get("updated", "") or ""),
            tags=_str_list(fm.get("tags")),
            links=_str_list(fm.get("links")),
            aliases=_str_list(fm.get("aliases")),
            archived=bool(fm.get("archived", False)),
            merged_into=fm.get("mergedInto"),
            merged_from=_str_list(fm.get("mergedFrom")),
            body=body,
            extra={k: v for k, v in fm.items() if k not in _FRONTMATTER_KEYS},
        )

    def to_frontmatter(self) -> dict[str, Any]:
        fm: dict[str, Any] = {
            "id": self.id,
            "description": self.description,
            "type": self.type,
            "priority": self.priority,
            "created": self.created,
            "updated": self.updated,
        }
        if self.canonical_key:
            fm["canonicalKey"] = self.canonical_key
        if self.aliases:
            fm["aliases"] = list(self.aliases)
        if self.links:
            fm["links"] = list(self.links)
        if self.tags:
            fm["tags"] = list(self.tags)
        if self.archived:
            fm["archived"] = True
        if self.merged_into:
            fm["mergedInto"] = self.merged_into
        if self.merged_from:
            fm["mergedFrom"] = list(self.merged_from)
        fm.update(self.extra)
        return fm


@dataclass
class RegistryEntry:
    """Metadata-only projection of a GraphNode (no body)."""

    id: str
    type: str
    description: str = ""
    canonical_key: str = ""
    priority: str = "medium"
    created: str = ""
    updated: str = ""
    file_path: str = ""             # relative to the graph root
    archived: bool = False
    links: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_node(cls, node: GraphNode, file_path: str) -> RegistryEntry:
        return cls(
            id=node.id,
            type=node.type,
            description=node.description,
            canonical_key=node.canonical_key,
            priority=node.priority,
            created=node.created,
            updated=node.updated,
            file_path=file_path,
            archived=node.archived,
            links=list(node.links),
            tags=list(node.tags),
        )

    @classmethod
    def from_dict(cls, node_id: str, d: dict[str, Any]) -> RegistryEntry:
        return cls(
            id=node_id,
            type=d.get("type", "fact"),
            description=d.get("description", ""),
            canonical_key=d.get("canonicalKey", ""),
            priority=d.get("priority", "medium"),
            created=d.get("created", ""),
            updated=d.get("updated", ""),
            file_path=d.get("filePath", ""),
            archived=bool(d.get("archived", False)),
            links=_str_list(d.get("links")),
            tags=_str_list(d.get("tags")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "canonicalKey": self.canonical_key,
            "priority": self.priority,
            "created": self.created,
            "updated": self.updated,
            "filePath": self.file_path,
            "archived": self.archived,
            "links": list(self.links),
            "tags": list(self.tags),
        }
