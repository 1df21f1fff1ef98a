"""Prompts for the dedup passes and strict parsing of their responses."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from mg.dedup.merge import MergePatch, MergePlan
from mg.llm import parse_json_response

if TYPE_CHECKING:
    from mg.dedup.candidates import CandidateCluster, SemanticBlock


class ResponseSchemaError(ValueError):
    """The model answered with JSON of the wrong shape."""


DEDUP_SYSTEM_PROMPT = """\
You deduplicate nodes in a personal knowledge graph.

Rules:
1. Only merge nodes that describe the SAME real-world concept or fact.
2. Keep the most complete node (keepNodeId).
3. Carry canonical keys of merged nodes over as aliasKeys.
4. If nodes hold contradictory values, list them in "conflicts" and do not merge them.
5. Keep string values under 100 characters.

Respond with JSON only:
{
  "mergePlans": [
    {
      "keepNodeId": "id of the node to keep",
      "mergeNodeIds": ["ids of nodes to archive"],
      "aliasKeys": ["canonical keys from merged nodes"],
      "conflicts": [],
      "patch": {"description": "optional improved description", "tags": []}
    }
  ]
}
Omit clusters that hold no true duplicates. If there are none, return {"mergePlans": []}.
"""

SEMANTIC_SYSTEM_PROMPT = """\
You find semantic duplicates in a personal knowledge graph: nodes that capture the same
concept, event or fact in different words. Related but distinct knowledge is not a duplicate.

For each group of duplicates pick the most complete node as keeper and rate 0-100 how
similar the merged nodes are to it:
  90-100 same content, different wording
  80-89  same core concept, minor differences in scope
  70-79  overlapping with meaningful differences
  <70    not duplicates, do not suggest

Be conservative: false merges lose information. Each node may appear in at most one suggestion.

Respond with JSON only:
{"suggestions": [{"keepNodeId": "mg/preferences.dark-mode", "mergeNodeIds": ["mg/preferences.dark-theme"], "similarityScore": 92, "rationale": "same preference, different key"}]}
If there are no duplicates return {"suggestions": []}.
"""


def _cell(value: str) -> str:
    return value.replace("|", "\\|").replace("\n", " ")


def build_dedup_prompt(clusters: list[CandidateCluster]) -> str:
    if not clusters:
        return 'No candidate clusters to evaluate. Return: {"mergePlans": []}'
    sections = []
    for n, cluster in enumerate(clusters, 1):
        lines = [
            f"## Cluster {n} (similarity: {cluster.max_score:.2f})",
            "",
            "| nodeId | canonicalKey | type | description | updated | tags |",
            "|--------|--------------|------|-------------|---------|------|",
        ]
        for node_id in cluster.node_ids:
            e = cluster.entries.get(node_id)
            if e is None:
                continue
            lines.append(
                f"| {node_id} | {_cell(e.canonical_key or '(none)')} | {e.type} "
                f"| {_cell(e.description)} | {e.updated} | {', '.join(e.tags)} |"
            )
        sections.append("\n".join(lines))
    body = "\n\n".join(sections)
    return (
        "Evaluate these clusters of possibly duplicate nodes.\n"
        "Produce a merge plan for each cluster with true duplicates; skip clusters of distinct concepts.\n\n"
        f"{body}\n\n"
        'Return JSON with a "mergePlans" array.'
    )


def _str_list(value: Any, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ResponseSchemaError(f"{field_name} must be a list of strings")
    return list(value)


def _parse_patch(raw: Any) -> MergePatch:
    if raw is None:
        return MergePatch()
    if not isinstance(raw, dict):
        raise ResponseSchemaError("patch must be an object")
    description = raw.get("description")
    body_append = raw.get("bodyAppend")
    return MergePatch(
        description=description if isinstance(description, str) and description.strip() else None,
        tags=_str_list(raw.get("tags"), "patch.tags"),
        links=_str_list(raw.get("links"), "patch.links"),
        body_append=body_append if isinstance(body_append, str) and body_append.strip() else None,
    )


def parse_merge_plans(text: str) -> list[MergePlan]:
    """Raises ValueError for invalid JSON, ResponseSchemaError for the wrong shape."""
    data = parse_json_response(text)
    if not isinstance(data, dict) or not isinstance(data.get("mergePlans"), list):
        raise ResponseSchemaError('expected an object with a "mergePlans" array')
    plans = []
    for i, raw in enumerate(data["mergePlans"]):
        if not isinstance(raw, dict):
            raise ResponseSchemaError(f"mergePlans[{i}] is not an object")
        keep = raw.get("keepNodeId")
        if not isinstance(keep, str) or not keep:
            raise ResponseSchemaError(f"mergePlans[{i}].keepNodeId must be a non-empty string")
        merge_ids = _str_list(raw.get("mergeNodeIds"), f"mergePlans[{i}].mergeNodeIds")
        plans.append(MergePlan(
            keep_node_id=keep,
            merge_node_ids=merge_ids,
            alias_keys=_str_list(raw.get("aliasKeys"), f"mergePlans[{i}].aliasKeys"),
            conflicts=_str_list(raw.get("conflicts"), f"mergePlans[{i}].conflicts"),
            patch=_parse_patch(raw.get("patch")),
        ))
    return plans


# ---------------------------------------------------------------------------
# Semantic pass
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SemanticSuggestion:
    keep_node_id: str
    merge_node_ids: tuple[str, ...]
    similarity_score: int
    rationale: str


def build_semantic_prompt(blocks: list[SemanticBlock], bodies: dict[str, str], max_body_chars: int) -> str:
    parts = [f"Analyze these {len(blocks)} blocks for semantic duplicates. Only merge nodes within the same block.", ""]
    for n, block in enumerate(blocks, 1):
        parts.append(f"## Block {n}: domain {block.domain} ({len(block.node_ids)} nodes)")
        parts.append("")
        for node_id in block.node_ids:
            e = block.entries.get(node_id)
            if e is None:
                continue
            body = bodies.get(node_id, "")
            if len(body) > max_body_chars:
                body = body[:max_body_chars] + "...[truncated]"
            parts.append(f"### {node_id}")
            parts.append(f"- type: {e.type}")
            parts.append(f"- description: {e.description}")
            if e.canonical_key:
                parts.append(f"- key: {e.canonical_key}")
            if e.tags:
                parts.append(f"- tags: {', '.join(e.tags)}")
            parts.append(f"- updated: {e.updated}")
            if body.strip():
                parts.append(f"\n```\n{body}\n```")
            parts.append("")
    return "\n".join(parts)


def parse_semantic_suggestions(text: str, threshold: int) -> list[SemanticSuggestion]:
    """Validate {"suggestions": [...]} and keep those scoring at or above threshold."""
    data = parse_json_response(text)
    if not isinstance(data, dict) or not isinstance(data.get("suggestions"), list):
        raise ResponseSchemaError('expected an object with a "suggestions" array')
    out = []
    for i, raw in enumerate(data["suggestions"]):
        if not isinstance(raw, dict):
            raise ResponseSchemaError(f"suggestions[{i}] is not an object")
        keep = raw.get("keepNodeId")
        merge_ids = raw.get("mergeNodeIds")
        score = raw.get("similarityScore")
        rationale = raw.get("rationale")
        if not isinstance(keep, str) or not keep:
            raise ResponseSchemaError(f"suggestions[{i}].keepNodeId must be a non-empty string")
        if not isinstance(merge_ids, list) or not merge_ids or not all(isinstance(m, str) and m for m in merge_ids):
            raise ResponseSchemaError(f"suggestions[{i}].mergeNodeIds must list at least one id")
        if not isinstance(score, int) or isinstance(score, bool) or not 0 <= score <= 100:
            raise ResponseSchemaError(f"suggestions[{i}].similarityScore must be an integer 0-100")
        if not isinstance(rationale, str):
            raise ResponseSchemaError(f"suggestions[{i}].rationale must be a string")
        if score >= threshold:
            out.append(SemanticSuggestion(keep, tuple(merge_ids), score, rationale))
    return out
