"""MGConfig: project-local config for the memory graph.

Default layout (all relative to the project root):

    mg.toml               # project config (git-tracked)
    .env                  # optional: ANTHROPIC_API_KEY (gitignore this)
    memory/               # workspace markdown read by bootstrap
    .mg/                  # graph root
        nodes/
            <type>/
                <slug>.md # YAML frontmatter + body
        .registry.json    # metadata index (rebuilt from nodes/ when missing)
        .bootstrap-lock
        .bootstrap-state.json
        .bootstrap-failures.jsonl
        .dedup-state.json
        .dedup-audit.jsonl

mg.toml example:

    [mg]
    name = "my-project"
    # graph_dir = ".mg"   # default

    [model]
    model = "claude-3-5-haiku-latest"
    timeout = 60.0

    [bootstrap]
    batch_char_budget = 24000   # 0 = one chunk per call
    batch_budget_per_run = 20   # 0 = unlimited
    concurrency = 3
    workspace_memory = true
    log_dirs = []

    [dedup]
    similarity_threshold = 0.45
    max_clusters_per_run = 30
    max_cluster_size = 8
    max_pairs_per_bucket = 20
    stale_days_threshold = 90
    stable_types = ["identity", "preference", "decision", "project"]

    [semantic_dedup]
    enabled = true
    heuristic_prefilter_threshold = 0.25
    semantic_merge_threshold = 85
    max_block_size = 5
    max_blocks_per_run = 15
    max_body_chars_per_node = 500
    time_window_days = 30
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

_CONFIG_FILENAME = "mg.toml"
_DEFAULT_GRAPH_DIR = ".mg"
_GITIGNORE_CONTENT = ".bootstrap-lock\n*.tmp\n"

_DEFAULT_STABLE_TYPES = ["identity", "preference", "decision", "project"]


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


@dataclass
class ModelConfig:
    provider: str = "anthropic"
    model: str = "claude-3-5-haiku-latest"
    timeout: float = 60.0           # seconds per external-model call
    api_key: str = ""


@dataclass
class BootstrapConfig:
    batch_char_budget: int = 24000     # chars per model call, 0 disables batching
    batch_budget_per_run: int = 20     # batches per invocation before pausing, 0 = unlimited
    concurrency: int = 3
    workspace_memory: bool = True      # read <workspace>/memory/**/*.md
    log_dirs: list[str] = field(default_factory=list)


@dataclass
class DedupConfig:
    similarity_threshold: float = 0.45
    max_clusters_per_run: int = 30
    max_cluster_size: int = 8          # [2, 20]
    max_pairs_per_bucket: int = 20
    stale_days_threshold: int = 90     # volatile types only
    stable_types: list[str] = field(default_factory=lambda: list(_DEFAULT_STABLE_TYPES))


@dataclass
class SemanticDedupConfig:
    enabled: bool = True
    heuristic_prefilter_threshold: float = 0.25
    semantic_merge_threshold: int = 85     # [50, 100]
    max_block_size: int = 5                # [2, 10]
    max_blocks_per_run: int = 15           # [1, 50]
    max_body_chars_per_node: int = 500     # [100, 2000]
    time_window_days: int = 30             # [1, 90]


@dataclass
class MGConfig:
    """Resolved configuration for a memory graph project."""

    root: Path                      # directory that contains mg.toml
    name: str = ""
    graph_dir: Path = field(default_factory=Path)
    model: ModelConfig = field(default_factory=ModelConfig)
    bootstrap: BootstrapConfig = field(default_factory=BootstrapConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    semantic_dedup: SemanticDedupConfig = field(default_factory=SemanticDedupConfig)

    @property
    def nodes_dir(self) -> Path:
        return self.graph_dir / "nodes"

    def ensure_dirs(self) -> None:
        """Create graph_dir and nodes/ if they don't exist."""
        self.nodes_dir.mkdir(parents=True, exist_ok=True)
        gitignore = self.graph_dir / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(_GITIGNORE_CONTENT)


def _load_env(root: Path) -> dict[str, str]:
    """Parse a simple KEY=VALUE .env file."""
    env_file = root / ".env"
    if not env_file.exists():
        return {}
    env: dict[str, str] = {}
    for line in env_file.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            k, _, v = line.partition("=")
            env[k.strip()] = v.strip().strip('"').strip("'")
    return env


def load_config(root: Path | str | None = None) -> MGConfig:
    """Load mg.toml from root (or search upward from cwd if root is None)."""
    root_path = _find_root(Path(root) if root else Path.cwd())
    config_path = root_path / _CONFIG_FILENAME

    raw: dict[str, Any] = {}
    if config_path.exists():
        with config_path.open("rb") as f:
            raw = tomllib.load(f)

    env = _load_env(root_path)
    if "ANTHROPIC_API_KEY" in env:
        os.environ.setdefault("ANTHROPIC_API_KEY", env["ANTHROPIC_API_KEY"])

    mg_section = raw.get("mg", {})
    model_section = raw.get("model", {})
    boot_section = raw.get("bootstrap", {})
    dedup_section = raw.get("dedup", {})
    sem_section = raw.get("semantic_dedup", {})

    api_key = env.get("ANTHROPIC_API_KEY") or os.environ.get("ANTHROPIC_API_KEY", "")

    return MGConfig(
        root=root_path,
        name=mg_section.get("name", root_path.name),
        graph_dir=root_path / mg_section.get("graph_dir", _DEFAULT_GRAPH_DIR),
        model=ModelConfig(
            provider=model_section.get("provider", "anthropic"),
            model=model_section.get("model", "claude-3-5-haiku-latest"),
            timeout=float(model_section.get("timeout", 60.0)),
            api_key=api_key,
        ),
        bootstrap=BootstrapConfig(
            batch_char_budget=max(0, int(boot_section.get("batch_char_budget", 24000))),
            batch_budget_per_run=max(0, int(boot_section.get("batch_budget_per_run", 20))),
            concurrency=max(1, int(boot_section.get("concurrency", 3))),
            workspace_memory=bool(boot_section.get("workspace_memory", True)),
            log_dirs=[str(d) for d in boot_section.get("log_dirs", [])],
        ),
        dedup=DedupConfig(
            similarity_threshold=_clamp(float(dedup_section.get("similarity_threshold", 0.45)), 0.0, 1.0),
            max_clusters_per_run=max(1, int(dedup_section.get("max_clusters_per_run", 30))),
            max_cluster_size=int(_clamp(int(dedup_section.get("max_cluster_size", 8)), 2, 20)),
            max_pairs_per_bucket=max(1, int(dedup_section.get("max_pairs_per_bucket", 20))),
            stale_days_threshold=max(0, int(dedup_section.get("stale_days_threshold", 90))),
            stable_types=list(dedup_section.get("stable_types", _DEFAULT_STABLE_TYPES)),
        ),
        semantic_dedup=SemanticDedupConfig(
            enabled=bool(sem_section.get("enabled", True)),
            heuristic_prefilter_threshold=_clamp(
                float(sem_section.get("heuristic_prefilter_threshold", 0.25)), 0.0, 1.0,
            ),
            semantic_merge_threshold=int(_clamp(int(sem_section.get("semantic_merge_threshold", 85)), 50, 100)),
            max_block_size=int(_clamp(int(sem_section.get("max_block_size", 5)), 2, 10)),
            max_blocks_per_run=int(_clamp(int(sem_section.get("max_blocks_per_run", 15)), 1, 50)),
            max_body_chars_per_node=int(_clamp(int(sem_section.get("max_body_chars_per_node", 500)), 100, 2000)),
            time_window_days=int(_clamp(int(sem_section.get("time_window_days", 30)), 1, 90)),
        ),
    )


def _find_root(start: Path) -> Path:
    """Walk upward from start looking for mg.toml."""
    for directory in (start, *start.parents):
        if (directory / _CONFIG_FILENAME).exists():
            return directory
    return start


def init_config(root: Path, name: str | None = None) -> Path:
    """Write a default mg.toml at root. Raises if already exists."""
    config_path = root / _CONFIG_FILENAME
    if config_path.exists():
        msg = f"mg.toml already exists at {config_path}"
        raise FileExistsError(msg)

    project_name = name or root.name
    content = f"""\
[mg]
name = "{project_name}"
# graph_dir = ".mg"   # default

# [model]
# model = "claude-3-5-haiku-latest"
# timeout = 60.0       # seconds; set ANTHROPIC_API_KEY in .env

# [bootstrap]
# batch_char_budget = 24000   # 0 = one chunk per model call
# batch_budget_per_run = 20   # pause after this many batches, 0 = unlimited
# concurrency = 3
# workspace_memory = true     # ingest memory/**/*.md
# log_dirs = []               # extra directories of .txt/.log/.md/.jsonl files

# [dedup]
# similarity_threshold = 0.45
# max_clusters_per_run = 30
# max_cluster_size = 8
# max_pairs_per_bucket = 20
# stale_days_threshold = 90
# stable_types = ["identity", "preference", "decision", "project"]

# [semantic_dedup]
# enabled = true
# heuristic_prefilter_threshold = 0.25
# semantic_merge_threshold = 85
# max_block_size = 5
# max_blocks_per_run = 15
# max_body_chars_per_node = 500
# time_window_days = 30
"""
    config_path.write_text(content)
    return config_path
