"""Shared fixtures: a temporary graph project, node helpers, a scripted model client."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from mg.config import init_config, load_config
from mg.llm import Generation
from mg.models import GraphNode, RegistryEntry, node_id_for
from mg.store import FileStore, Registry


class FakeClient:
    """ModelClient returning scripted replies in order.

    Each item is a str (reply text), a dict (dumped as JSON) or an exception
    instance (raised). When the script runs out, `default` is replied.
    """

    def __init__(self, *script, default: str | None = '{"nodes": []}') -> None:
        self.script = list(script)
        self.default = default
        self.calls: list[dict] = []
        self._lock = threading.Lock()

    def generate(self, system: str, user: str, max_tokens: int) -> Generation:
        with self._lock:
            self.calls.append({"system": system, "user": user, "max_tokens": max_tokens})
            item = self.script.pop(0) if self.script else self.default
        if isinstance(item, BaseException):
            raise item
        if item is None:
            raise AssertionError("FakeClient called more often than scripted")
        text = json.dumps(item) if isinstance(item, dict) else item
        return Generation(text=text, input_tokens=10, output_tokens=5)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    init_config(tmp_path, name="test")
    return tmp_path


@pytest.fixture
def cfg(project: Path):
    c = load_config(project)
    c.bootstrap.concurrency = 2
    c.ensure_dirs()
    return c


@pytest.fixture
def store(cfg) -> FileStore:
    return FileStore(cfg.graph_dir)


@pytest.fixture
def registry(store: FileStore) -> Registry:
    return Registry(store)


def add_node(
    store: FileStore,
    registry: Registry,
    canonical_key: str,
    description: str,
    *,
    node_type: str = "preference",
    updated: str = "2024-06-01T00:00:00+00:00",
    **fields,
) -> tuple[GraphNode, Path]:
    """Write a node file and register it. Returns the node and its path."""
    node = GraphNode(
        id=fields.pop("id", node_id_for(canonical_key)),
        type=node_type,
        description=description,
        canonical_key=canonical_key,
        created=fields.pop("created", updated),
        updated=updated,
        **fields,
    )
    path = store.write(node)
    registry.upsert(RegistryEntry.from_node(node, store.relpath(path)))
    return node, path


def write_memory(root: Path, name: str, text: str) -> Path:
    path = root / "memory" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path
