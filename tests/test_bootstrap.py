"""Bootstrap pipeline end to end: resume, pause, abort, retry, upsert."""

from __future__ import annotations

import asyncio
import json

import pytest
from conftest import FakeClient, add_node, write_memory

from mg.bootstrap import run_bootstrap
from mg.bootstrap.breaker import RateLimitBreaker
from mg.bootstrap.extract import ExtractedNode, parse_extraction, upsert_node
from mg.bootstrap.failures import FailureLog, compute_quality
from mg.bootstrap.lock import LeaseLock
from mg.bootstrap.sources import gather_sources
from mg.bootstrap.state import read_state
from mg.llm import Generation, RateLimitError, ServiceUnreachableError
from mg.models import RegistryEntry


def _nodes(*items: tuple[str, str, str]) -> dict:
    return {"nodes": [{"type": t, "canonicalKey": k, "description": d} for t, k, d in items]}


DARK = _nodes(("preference", "preferences.dark_mode", "User prefers dark mode"))
NAME = _nodes(("identity", "identity.name", "User is called Sam"))


class RoutedClient:
    """Replies by source label so concurrent workers stay deterministic."""

    def __init__(self, routes: dict, default: str = '{"nodes": []}') -> None:
        self.routes = routes
        self.default = default
        self.calls: list[str] = []

    def generate(self, system: str, user: str, max_tokens: int) -> Generation:
        self.calls.append(user)
        reply = self.default
        for label, routed in self.routes.items():
            if f"[BOOTSTRAP SOURCE: {label}]" in user:
                reply = routed
                break
        if isinstance(reply, BaseException):
            raise reply
        text = json.dumps(reply) if isinstance(reply, dict) else reply
        return Generation(text=text, input_tokens=10, output_tokens=5)

    def saw(self, label: str) -> bool:
        return any(f"[BOOTSTRAP SOURCE: {label}]" in u for u in self.calls)


@pytest.fixture
def three_sources(cfg):
    cfg.bootstrap.batch_char_budget = 0
    write_memory(cfg.root, "a.md", "I always use dark mode.")
    write_memory(cfg.root, "b.md", "My name is Sam.")
    write_memory(cfg.root, "c.md", "random chatter")
    return cfg


def _run(cfg, client, **kwargs):
    kwargs.setdefault("flush_delay", 0.01)
    return asyncio.run(run_bootstrap(cfg, client, **kwargs))


class TestRun:
    def test_full_run(self, three_sources, registry):
        cfg = three_sources
        client = RoutedClient({"memory/a.md": DARK, "memory/b.md": NAME, "memory/c.md": "not json at all"})
        result = _run(cfg, client)

        assert result.ran and result.errors == []
        assert result.batches_processed == 3
        assert result.chunks_succeeded == 2 and result.chunks_failed == 1
        assert result.nodes_written == 2
        assert result.tokens_used == 45
        assert result.status == "completed" and not result.more_work_remaining

        state = read_state(cfg.graph_dir)
        assert (state.status, state.ok, state.fail, state.cursor, state.done) == ("completed", 2, 1, 3, ())
        failures = FailureLog(cfg.graph_dir).read()
        assert [(f.batch_index, f.error_type) for f in failures] == [(2, "parse-empty")]
        assert failures[0].labels == ["memory/c.md"]
        assert registry.find_by_canonical_key("preferences.dark_mode").id == "mg/preferences.dark-mode"
        assert not (cfg.graph_dir / ".bootstrap-lock").exists()

        again = _run(cfg, client)
        assert again.ran is False and again.reason == "already completed"
        assert len(client.calls) == 3

    def test_zero_operations_counts_as_success(self, three_sources):
        result = _run(three_sources, RoutedClient({}))
        assert result.status == "completed"
        assert result.chunks_succeeded == 3
        assert {f.error_type for f in FailureLog(three_sources.graph_dir).read()} == {"zero-operations"}

    def test_budget_pauses_then_resumes(self, three_sources):
        cfg = three_sources
        cfg.bootstrap.batch_budget_per_run = 2
        cfg.bootstrap.concurrency = 1
        client = RoutedClient({}, default=json.dumps(DARK))

        first = _run(cfg, client)
        assert first.status == "paused" and first.more_work_remaining
        assert first.batches_processed == 2
        state = read_state(cfg.graph_dir)
        assert state.done == (0, 1) and state.cursor == 2

        second = _run(cfg, client)
        assert second.status == "completed" and second.batches_processed == 1
        assert len(client.calls) == 3
        assert [client.saw(f"memory/{n}.md") for n in "abc"] == [True, True, True]

    def test_max_batches_overrides_budget(self, three_sources):
        result = _run(three_sources, RoutedClient({}), max_batches=1)
        assert result.batches_processed == 1 and result.status == "paused"

    def test_unreachable_aborts_and_next_run_resumes(self, three_sources):
        cfg = three_sources
        cfg.bootstrap.concurrency = 1
        broken = RoutedClient({"memory/a.md": DARK, "memory/b.md": ServiceUnreachableError("ECONNREFUSED")})

        first = _run(cfg, broken)
        assert first.status == "failed" and first.more_work_remaining
        assert any("aborted" in e for e in first.errors)
        assert not broken.saw("memory/c.md")
        state = read_state(cfg.graph_dir)
        assert state.done == (0,) and state.cursor == 1
        assert "unreachable" in state.last_error

        healthy = RoutedClient({"memory/b.md": NAME})
        second = _run(cfg, healthy)
        assert second.status == "completed"
        assert not healthy.saw("memory/a.md")
        assert healthy.saw("memory/b.md") and healthy.saw("memory/c.md")

    def test_rate_limits_back_off_then_succeed(self, cfg):
        write_memory(cfg.root, "a.md", "dark mode")
        client = FakeClient(RateLimitError("429"), RateLimitError("429"), DARK, default=None)
        breaker = RateLimitBreaker(backoff=lambda n: 0.01)
        result = _run(cfg, client, breaker=breaker)
        assert result.status == "completed" and result.nodes_written == 1
        assert len(client.calls) == 3
        assert breaker.consecutive_failures == 0

    def test_persistent_rate_limit_aborts(self, cfg):
        write_memory(cfg.root, "a.md", "dark mode")
        client = FakeClient(*[RateLimitError("rate limit") for _ in range(5)], default=None)
        result = _run(cfg, client, breaker=RateLimitBreaker(backoff=lambda n: 0.01))
        assert result.status == "failed"
        assert read_state(cfg.graph_dir).done == ()

    def test_skips_while_lock_held(self, three_sources):
        other = LeaseLock(three_sources.graph_dir)
        assert other.acquire()
        try:
            client = RoutedClient({})
            result = _run(three_sources, client)
            assert result.ran is False and "lock" in result.reason
            assert client.calls == []
        finally:
            other.release()

    def test_changed_sources_start_fresh(self, three_sources):
        cfg = three_sources
        cfg.bootstrap.concurrency = 1
        client = RoutedClient({"memory/a.md": "garbage"}, default=json.dumps(DARK))
        _run(cfg, client, max_batches=1)
        assert len(FailureLog(cfg.graph_dir).read()) == 1

        write_memory(cfg.root, "d.md", "new notes")
        result = _run(cfg, client)
        assert result.status == "completed" and result.batches_processed == 4
        assert read_state(cfg.graph_dir).total == 4
        assert [f.batch_index for f in FailureLog(cfg.graph_dir).read()] == [0]

    def test_unexpected_error_keeps_partial_tallies(self, three_sources, monkeypatch):
        def explode(entries):
            raise RuntimeError("quality report exploded")

        monkeypatch.setattr("mg.bootstrap.pipeline.compute_quality", explode)
        result = _run(three_sources, RoutedClient({}, default=json.dumps(DARK)))
        assert result.ran and result.batches_processed == 3
        assert result.chunks_succeeded == 3 and result.nodes_written == 3
        assert result.errors == ["bootstrap failed: quality report exploded"]
        assert not (three_sources.graph_dir / ".bootstrap-lock").exists()

    def test_no_sources(self, cfg):
        client = FakeClient(default=None)
        result = _run(cfg, client)
        assert result.status == "completed"
        assert read_state(cfg.graph_dir).total == 0
        assert client.calls == []


class TestRetryFailed:
    def test_recovers_failed_batches(self, three_sources, registry):
        cfg = three_sources
        _run(cfg, RoutedClient({"memory/a.md": DARK, "memory/b.md": NAME, "memory/c.md": "oops"}))

        client = RoutedClient({"memory/c.md": _nodes(("fact", "facts.chatter", "Chatter"))})
        result = _run(cfg, client, retry_failed=True)
        assert result.ran and not result.more_work_remaining
        assert client.saw("memory/c.md") and len(client.calls) == 1
        state = read_state(cfg.graph_dir)
        assert (state.ok, state.fail, state.status) == (3, 0, "completed")
        assert FailureLog(cfg.graph_dir).read() == []
        assert registry.find_by_canonical_key("facts.chatter") is not None

    def test_still_failing_stays_logged(self, three_sources):
        cfg = three_sources
        _run(cfg, RoutedClient({"memory/a.md": DARK, "memory/b.md": NAME, "memory/c.md": "oops"}))
        result = _run(cfg, RoutedClient({"memory/c.md": "still bad"}), retry_failed=True)
        assert result.more_work_remaining
        assert [f.batch_index for f in FailureLog(cfg.graph_dir).read()] == [2]
        assert read_state(cfg.graph_dir).fail == 1

    def test_requires_finished_run(self, three_sources):
        _run(three_sources, RoutedClient({}), max_batches=1)
        result = _run(three_sources, RoutedClient({}), retry_failed=True)
        assert result.ran is False and "no finished" in result.reason

    def test_nothing_logged(self, three_sources):
        _run(three_sources, RoutedClient({}, default=json.dumps(DARK)))
        result = _run(three_sources, RoutedClient({}), retry_failed=True)
        assert result.ran is False and result.reason == "no failed batches logged"


class TestExtraction:
    def test_parse_drops_invalid_nodes(self):
        text = json.dumps({"nodes": [
            {"type": "Preference", "canonicalKey": "Preferences.Editor", "description": "vim", "priority": "urgent"},
            {"type": "moc", "canonicalKey": "maps.all", "description": "structural"},
            {"type": "fact", "canonicalKey": "", "description": "no key"},
            "not an object",
        ]})
        nodes = parse_extraction(text)
        assert [(n.type, n.canonical_key, n.priority) for n in nodes] == [("preference", "preferences.editor", "medium")]

    def test_parse_requires_nodes_array(self):
        with pytest.raises(ValueError):
            parse_extraction('{"items": []}')

    def test_upsert_folds_into_existing_key(self, store, registry):
        first = upsert_node(store, registry, ExtractedNode(
            "preference", "preferences.dark_mode", "dark mode", body="seen in notes", tags=["ui"],
        ))
        second = upsert_node(store, registry, ExtractedNode(
            "preference", "preferences.dark_mode", "prefers dark mode", body="seen in logs", tags=["theme"],
        ))
        assert second.id == first.id
        assert second.tags == ["ui", "theme"]
        assert "seen in notes" in second.body and "seen in logs" in second.body
        assert len(registry.entries()) == 1

    def test_upsert_suffixes_around_taken_ids(self, store, registry):
        add_node(store, registry, "facts.editor", "archived", node_type="fact", archived=True)
        node = upsert_node(store, registry, ExtractedNode("fact", "facts.editor", "live one"))
        assert node.id == "mg/facts.editor-2"


def test_gather_sources(cfg):
    write_memory(cfg.root, "notes/a.md", "alpha")
    write_memory(cfg.root, "empty.md", "   ")
    logs = cfg.root / "logs"
    logs.mkdir()
    (logs / "day.log").write_text("beta")
    (logs / "blob.bin").write_text("skip me")
    entries = gather_sources(cfg.root, cfg.graph_dir, workspace_memory=True, log_dirs=["logs", "missing"])
    assert [e.label for e in entries] == ["memory/notes/a.md", "logs/day.log"]


def _entry(i: int, node_type: str, archived: bool = False) -> RegistryEntry:
    return RegistryEntry(id=f"mg/n{i}", type=node_type, archived=archived)


class TestQuality:
    def test_missing_personal_types(self):
        report = compute_quality([_entry(1, "fact"), _entry(2, "preference", archived=True)])
        assert report.total_nodes == 1
        assert len(report.warnings) == 2

    def test_low_share(self):
        entries = [_entry(0, "preference"), _entry(1, "identity")] + [_entry(i, "fact") for i in range(2, 60)]
        report = compute_quality(entries)
        assert len(report.warnings) == 1 and "3.3%" in report.warnings[0]

    def test_healthy(self):
        assert compute_quality([_entry(0, "preference"), _entry(1, "identity")]).warnings == []
