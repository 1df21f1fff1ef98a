"""CLI commands through click's CliRunner."""

from __future__ import annotations

import pytest
from click.testing import CliRunner
from conftest import FakeClient, add_node, write_memory

from mg.cli import cli
from mg.llm import ServiceUnreachableError


@pytest.fixture
def runner(project, monkeypatch):
    monkeypatch.chdir(project)
    return CliRunner()


@pytest.fixture
def use_client(monkeypatch):
    def install(client):
        monkeypatch.setattr("mg.cli.client_from_config", lambda model_cfg: client)
        return client
    return install


@pytest.fixture
def dark_pair(project, store, registry):
    with (project / "mg.toml").open("a") as f:
        f.write("\n[dedup]\nsimilarity_threshold = 0.3\n")
    add_node(store, registry, "preferences.dark_mode", "user prefers dark mode")
    add_node(store, registry, "preferences.dark_theme", "user prefers dark theme")


MERGE_REPLY = {"mergePlans": [{
    "keepNodeId": "mg/preferences.dark-mode",
    "mergeNodeIds": ["mg/preferences.dark-theme"],
    "aliasKeys": ["preferences.dark_theme"],
}]}


def test_init(tmp_path):
    runner = CliRunner()
    first = runner.invoke(cli, ["init", "demo", "--dir", str(tmp_path)])
    assert first.exit_code == 0, first.output
    assert "Created" in first.output
    assert (tmp_path / ".mg" / "nodes").is_dir()
    second = runner.invoke(cli, ["init", "--dir", str(tmp_path)])
    assert second.exit_code == 0
    assert "already exists" in second.output


def test_status(runner, cfg, store, registry):
    add_node(store, registry, "preferences.dark_mode", "user prefers dark mode")
    result = runner.invoke(cli, ["status"])
    assert result.exit_code == 0, result.output
    assert "preference" in result.output
    assert "never run" in result.output


def test_bootstrap_flags_are_exclusive(runner):
    result = runner.invoke(cli, ["bootstrap", "--force", "--retry-failed"])
    assert result.exit_code == 2


def test_bootstrap_runs(runner, project, use_client):
    write_memory(project, "a.md", "I like dark mode")
    use_client(FakeClient({"nodes": [
        {"type": "preference", "canonicalKey": "preferences.dark_mode", "description": "dark mode"},
    ]}))
    result = runner.invoke(cli, ["bootstrap"])
    assert result.exit_code == 0, result.output
    assert "Bootstrap completed" in result.output
    assert "1 node(s) written" in result.output

    again = runner.invoke(cli, ["bootstrap"])
    assert "skipped: already completed" in again.output


def test_missing_api_key(runner, monkeypatch, cfg):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    result = runner.invoke(cli, ["dedup"])
    assert result.exit_code == 1
    assert "ANTHROPIC_API_KEY" in result.output


def test_dedup_and_audit(runner, dark_pair, use_client):
    assert "No merges recorded." in runner.invoke(cli, ["audit"]).output

    use_client(FakeClient(MERGE_REPLY))
    result = runner.invoke(cli, ["dedup"])
    assert result.exit_code == 0, result.output
    assert "1 merge(s)" in result.output

    audit = runner.invoke(cli, ["audit", "-n", "5"])
    assert "mg/preferences.dark-mode <- mg/preferences.dark-theme" in audit.output
    assert "aliases: preferences.dark_theme" in audit.output


def test_dedup_failure_exits_nonzero(runner, dark_pair, use_client):
    use_client(FakeClient(ServiceUnreachableError("connection refused")))
    result = runner.invoke(cli, ["dedup"])
    assert result.exit_code == 1


def test_maintain_before_bootstrap(runner, cfg, use_client):
    use_client(FakeClient(default=None))
    result = runner.invoke(cli, ["maintain"])
    assert result.exit_code == 0
    assert "Maintenance skipped" in result.output
