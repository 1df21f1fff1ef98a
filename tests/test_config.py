"""mg.toml loading, defaults, clamping and init."""

from __future__ import annotations

import pytest

from mg.config import init_config, load_config


def test_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    cfg = load_config(tmp_path)
    assert cfg.root == tmp_path
    assert cfg.graph_dir == tmp_path / ".mg"
    assert cfg.dedup.similarity_threshold == 0.45
    assert cfg.bootstrap.batch_char_budget == 24000
    assert cfg.semantic_dedup.semantic_merge_threshold == 85
    assert cfg.model.api_key == ""


def test_values_are_clamped(tmp_path):
    (tmp_path / "mg.toml").write_text(
        '[mg]\nname = "x"\ngraph_dir = "graph"\n'
        "[dedup]\nmax_cluster_size = 99\nsimilarity_threshold = 3\n"
        "[semantic_dedup]\nsemantic_merge_threshold = 10\nmax_block_size = 1\ntime_window_days = 1000\n"
        "[bootstrap]\nconcurrency = 0\nbatch_budget_per_run = -4\n",
    )
    cfg = load_config(tmp_path)
    assert cfg.name == "x"
    assert cfg.graph_dir == tmp_path / "graph"
    assert cfg.dedup.max_cluster_size == 20
    assert cfg.dedup.similarity_threshold == 1.0
    assert cfg.semantic_dedup.semantic_merge_threshold == 50
    assert cfg.semantic_dedup.max_block_size == 2
    assert cfg.semantic_dedup.time_window_days == 90
    assert cfg.bootstrap.concurrency == 1
    assert cfg.bootstrap.batch_budget_per_run == 0


def test_env_file_supplies_api_key(tmp_path, monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    (tmp_path / ".env").write_text('# secrets\nANTHROPIC_API_KEY="sk-test"\n')
    assert load_config(tmp_path).model.api_key == "sk-test"


def test_root_found_upward(tmp_path, monkeypatch):
    init_config(tmp_path, name="proj")
    sub = tmp_path / "a" / "b"
    sub.mkdir(parents=True)
    monkeypatch.chdir(sub)
    assert load_config().root == tmp_path


def test_init_refuses_overwrite(tmp_path):
    path = init_config(tmp_path, name="proj")
    assert 'name = "proj"' in path.read_text()
    with pytest.raises(FileExistsError):
        init_config(tmp_path)


def test_ensure_dirs(tmp_path):
    cfg = load_config(tmp_path)
    cfg.ensure_dirs()
    assert cfg.nodes_dir.is_dir()
    assert (cfg.graph_dir / ".gitignore").exists()
