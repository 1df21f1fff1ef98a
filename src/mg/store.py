"""Read and write node files and the registry index.

FileStore is the node-file API:
    store = FileStore("/path/to/.mg")
    node = store.read(store.nodes_dir / "preference" / "preferences.dark-mode.md")
    store.write(node)

Node file layout:
    ---
    id: mg/preferences.dark-mode
    description: user prefers dark mode
    type: preference
    ...
    ---
    <markdown body>

Registry (.registry.json, read-modify-write under flock):
    {
      "version": 1,
      "nodes": {
        "mg/preferences.dark-mode": {"type": "preference", "filePath": "nodes/preference/...", ...}
      }
    }
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from mg.models import GraphNode, RegistryEntry, slugify

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

logger = logging.getLogger("mg.store")

_FENCE = "---"
_REGISTRY_FILENAME = ".registry.json"
_REGISTRY_VERSION = 1


class FrontmatterError(ValueError):
    """A node file is missing its frontmatter fence or holds an invalid mapping."""


# ---------------------------------------------------------------------------
# File primitives
# ---------------------------------------------------------------------------


def atomic_write(path: Path, text: str) -> None:
    """Write text to a sibling temp file, then rename over path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        with tmp.open("w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        tmp.replace(path)
    finally:
        tmp.unlink(missing_ok=True)


def read_text_or_none(path: Path) -> str | None:
    """Return file contents, or None if the file does not exist."""
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def parse_frontmatter(raw: str) -> tuple[dict[str, Any], str]:
    """Split a node file into (frontmatter mapping, body)."""
    text = raw.lstrip("\ufeff")
    if not text.startswith(_FENCE):
        raise FrontmatterError("missing opening '---' fence")
    rest = text[len(_FENCE):]
    end = rest.find(f"\n{_FENCE}")
    if end == -1:
        raise FrontmatterError("missing closing '---' fence")
    try:
        fm = yaml.safe_load(rest[:end])
    except yaml.YAMLError as exc:
        raise FrontmatterError(f"invalid YAML frontmatter: {exc}") from exc
    if not isinstance(fm, dict):
        raise FrontmatterError("frontmatter is not a mapping")
    if not fm.get("id"):
        raise FrontmatterError("frontmatter has no id")
    body = rest[end + len(_FENCE) + 1:]
    if body.startswith("\n"):
        body = body[1:]
    return fm, body


def serialize_frontmatter(fm: dict[str, Any], body: str) -> str:
    dumped = yaml.safe_dump(fm, sort_keys=False, allow_unicode=True, default_flow_style=False)
    return f"{_FENCE}\n{dumped}{_FENCE}\n{body}"


# ---------------------------------------------------------------------------
# Node files
# ---------------------------------------------------------------------------


class FileStore:
    """Markdown node files under <graph_dir>/nodes/<type>/."""

    def __init__(self, graph_dir: Path | str) -> None:
        self.graph_dir = Path(graph_dir)
        self.nodes_dir = self.graph_dir / "nodes"
        self.nodes_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, node_type: str, node_id: str) -> Path:
        return self.nodes_dir / node_type / f"{slugify(node_id.rsplit('/', 1)[-1])}.md"

    def relpath(self, path: Path) -> str:
        return path.relative_to(self.graph_dir).as_posix()

    def resolve(self, rel: str) -> Path:
        return self.graph_dir / rel

    def iter_paths(self) -> Iterator[Path]:
        yield from sorted(self.nodes_dir.rglob("*.md"))

    def read(self, path: Path) -> GraphNode:
        """Load a node file. Raises OSError or FrontmatterError."""
        fm, body = parse_frontmatter(path.read_text(encoding="utf-8"))
        return GraphNode.from_frontmatter(fm, body)

    def write(self, node: GraphNode, path: Path | None = None) -> Path:
        target = path or self.path_for(node.type, node.id)
        atomic_write(target, serialize_frontmatter(node.to_frontmatter(), node.body))
        return target


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class Registry:
    """JSON metadata index over all node files, keyed by node id."""

    def __init__(self, store: FileStore) -> None:
        self.store = store
        self.path = store.graph_dir / _REGISTRY_FILENAME
        self._lock = threading.Lock()
        self._cache: dict[str, RegistryEntry] | None = None

    @contextlib.contextmanager
    def _flocked(self) -> Iterator[None]:
        lock_path = self.path.with_suffix(".lock")
        with self._lock, lock_path.open("a") as f:
            fcntl.flock(f, fcntl.LOCK_EX)
            # other processes may have written since our last call
            self._cache = None
            try:
                yield
            finally:
                fcntl.flock(f, fcntl.LOCK_UN)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, RegistryEntry]:
        if self._cache is not None:
            return self._cache
        raw = read_text_or_none(self.path)
        if raw is None:
            self._cache = self._scan()
            self._save()
            return self._cache
        try:
            data = json.loads(raw)
            nodes = data["nodes"]
            self._cache = {nid: RegistryEntry.from_dict(nid, d) for nid, d in nodes.items()}
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError):
            logger.warning("registry %s is corrupt, rebuilding from node files", self.path)
            self._cache = self._scan()
            self._save()
        return self._cache

    def _scan(self) -> dict[str, RegistryEntry]:
        entries: dict[str, RegistryEntry] = {}
        for path in self.store.iter_paths():
            try:
                node = self.store.read(path)
            except (OSError, FrontmatterError):
                logger.warning("skipping unreadable node file %s", path)
                continue
            entries[node.id] = RegistryEntry.from_node(node, self.store.relpath(path))
        return entries

    def _save(self) -> None:
        data = {
            "version": _REGISTRY_VERSION,
            "nodes": {nid: e.to_dict() for nid, e in sorted((self._cache or {}).items())},
        }
        atomic_write(self.path, json.dumps(data, indent=2, ensure_ascii=False))

    def entries(self) -> list[RegistryEntry]:
        with self._flocked():
            return list(self._load().values())

    def get(self, node_id: str) -> RegistryEntry | None:
        with self._flocked():
            return self._load().get(node_id)

    def find_by_canonical_key(self, canonical_key: str) -> RegistryEntry | None:
        """First non-archived entry whose canonical key matches."""
        with self._flocked():
            for entry in self._load().values():
                if entry.canonical_key == canonical_key and not entry.archived:
                    return entry
        return None

    def get_file_paths(self, node_ids: Iterable[str]) -> dict[str, Path]:
        """Absolute paths for the ids the registry knows; unknown ids are omitted."""
        with self._flocked():
            loaded = self._load()
            return {
                nid: self.store.resolve(loaded[nid].file_path)
                for nid in node_ids
                if nid in loaded and loaded[nid].file_path
            }

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def upsert(self, entry: RegistryEntry) -> None:
        with self._flocked():
            self._load()[entry.id] = entry
            self._save()

    def update(self, node_id: str, **changes: Any) -> None:
        """Overwrite fields on an existing entry. Raises KeyError for unknown ids."""
        with self._flocked():
            loaded = self._load()
            entry = loaded[node_id]
            for key, value in changes.items():
                if not hasattr(entry, key):
                    msg = f"unknown registry field: {key}"
                    raise AttributeError(msg)
                setattr(entry, key, value)
            self._save()

    def rebuild(self) -> int:
        with self._flocked():
            self._cache = self._scan()
            self._save()
            return len(self._cache)
