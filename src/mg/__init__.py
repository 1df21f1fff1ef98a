"""File-backed memory graph: markdown nodes with YAML frontmatter, plus a JSON registry.

Layout:
    .mg/
        nodes/<type>/<slug>.md       # source of truth
        .registry.json               # metadata index (reconstructable from nodes/)
        .bootstrap-state.json        # resumable ingestion progress
        .dedup-state.json            # incremental dedup watermark
        .dedup-audit.jsonl           # one line per executed merge

Two maintenance pipelines run against a graph root:
    bootstrap   source material -> batches -> model extraction -> nodes
    dedup       registry metadata -> candidate clusters -> model-confirmed merges
"""

from mg.config import MGConfig, init_config, load_config
from mg.models import GraphNode, RegistryEntry
from mg.store import FileStore, Registry

__all__ = ["FileStore", "GraphNode", "MGConfig", "Registry", "RegistryEntry", "init_config", "load_config"]
