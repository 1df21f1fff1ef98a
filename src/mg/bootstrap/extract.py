"""Turn one batch of source text into graph nodes.

The model is asked for {"nodes": [...]}; each node is upserted by canonical
key, so re-running a batch updates the nodes it produced last time instead of
duplicating them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from mg.llm import parse_json_response
from mg.models import NODE_TYPES, PRIORITIES, GraphNode, RegistryEntry, node_id_for, utcnow

if TYPE_CHECKING:
    from mg.store import FileStore, Registry

logger = logging.getLogger("mg.bootstrap")

# structural types are maintained elsewhere, never extracted from sources
_EXTRACTABLE_TYPES = tuple(t for t in NODE_TYPES if t not in ("moc", "index", "now", "reflection"))

EXTRACT_SYSTEM_PROMPT = f"""\
You extract durable knowledge about the user from their notes and logs into a knowledge graph.

Each source section starts with a line "[BOOTSTRAP SOURCE: <label>]". Sections are separated by "---".

For every distinct, durable piece of knowledge produce one node:
- type: one of {", ".join(_EXTRACTABLE_TYPES)}
- canonicalKey: stable dotted key, lowercase, e.g. "preferences.editor_theme", "projects.mg_rewrite"
- description: one line under 100 characters
- body: optional markdown with supporting detail
- priority: high | medium | low
- tags: optional list of short tags
- links: optional list of related node ids ("mg/<canonicalKey>")

Skip small talk, transient chatter and anything not worth remembering.
Respond with JSON only, no prose:
{{"nodes": [{{"type": "preference", "canonicalKey": "preferences.dark_mode", "description": "User prefers dark mode", "priority": "medium", "tags": ["ui"]}}]}}
If nothing is worth keeping return {{"nodes": []}}.
"""


@dataclass
class ExtractedNode:
    type: str
    canonical_key: str
    description: str
    body: str = ""
    priority: str = "medium"
    tags: list[str] = field(default_factory=list)
    links: list[str] = field(default_factory=list)


def _clean_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def parse_extraction(text: str) -> list[ExtractedNode]:
    """Validate the model output. Raises ValueError when it is not {"nodes": [...]}."""
    data = parse_json_response(text)
    if not isinstance(data, dict) or not isinstance(data.get("nodes"), list):
        raise ValueError('expected an object with a "nodes" array')
    nodes: list[ExtractedNode] = []
    for raw in data["nodes"]:
        if not isinstance(raw, dict):
            continue
        node_type = str(raw.get("type", "")).strip().lower()
        key = str(raw.get("canonicalKey", "")).strip().lower()
        if node_type not in _EXTRACTABLE_TYPES or not key:
            logger.debug("dropping extracted node with type=%r key=%r", node_type, key)
            continue
        priority = str(raw.get("priority", "medium")).lower()
        nodes.append(ExtractedNode(
            type=node_type,
            canonical_key=key,
            description=str(raw.get("description", "")).strip()[:200],
            body=str(raw.get("body", "") or "").strip(),
            priority=priority if priority in PRIORITIES else "medium",
            tags=_clean_list(raw.get("tags")),
            links=_clean_list(raw.get("links")),
        ))
    return nodes


def _union(a: list[str], b: list[str]) -> list[str]:
    return list(dict.fromkeys([*a, *b]))


def _fresh_id(registry: Registry, canonical_key: str) -> str:
    """node id for a new node; archived nodes keep their ids, so suffix around them."""
    base = node_id_for(canonical_key)
    candidate, n = base, 2
    while registry.get(candidate) is not None:
        candidate = f"{base}-{n}"
        n += 1
    return candidate


def upsert_node(store: FileStore, registry: Registry, extracted: ExtractedNode) -> GraphNode:
    """Create the node or fold the extraction into the live node with the same key."""
    now = utcnow()
    existing = registry.find_by_canonical_key(extracted.canonical_key)
    if existing is not None and existing.type == extracted.type:
        path = store.resolve(existing.file_path)
        node = store.read(path)
        node.description = extracted.description or node.description
        node.tags = _union(node.tags, extracted.tags)
        node.links = _union(node.links, extracted.links)
        if extracted.body and extracted.body not in node.body:
            node.body = f"{node.body.rstrip()}\n\n{extracted.body}" if node.body.strip() else extracted.body
        node.updated = now
    else:
        node = GraphNode(
            id=_fresh_id(registry, extracted.canonical_key),
            type=extracted.type,
            description=extracted.description,
            canonical_key=extracted.canonical_key,
            priority=extracted.priority,
            created=now,
            updated=now,
            tags=extracted.tags,
            links=extracted.links,
            body=extracted.body,
        )
        path = store.path_for(node.type, node.id)
    store.write(node, path)
    registry.upsert(RegistryEntry.from_node(node, store.relpath(path)))
    return node
