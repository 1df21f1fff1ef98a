"""Merge executor: keeper guard, patching, archiving and link redirection."""

from __future__ import annotations

import pytest
from conftest import add_node

from mg.dedup.merge import KeeperUnavailableError, MergeError, MergePatch, MergePlan, apply_patch, execute_merge
from mg.models import GraphNode


def _plan(keep: str, *losers: str, **kw) -> MergePlan:
    return MergePlan(keep_node_id=keep, merge_node_ids=list(losers), **kw)


class TestApplyPatch:
    def test_pure_and_unions(self):
        node = GraphNode(
            id="mg/k", type="preference", description="old", canonical_key="preferences.k",
            tags=["a"], links=["mg/x"], aliases=["preferences.old"], body="body\n\n",
        )
        patch = MergePatch(description="new", tags=["a", "b"], links=["mg/x", "mg/y"], body_append="more")
        out = apply_patch(node, patch, ["preferences.old", "preferences.l", "preferences.k"], ["mg/l"])
        assert out.description == "new"
        assert out.tags == ["a", "b"]
        assert out.links == ["mg/x", "mg/y"]
        assert out.aliases == ["preferences.old", "preferences.l"]
        assert out.merged_from == ["mg/l"]
        assert out.body == "body\n\nmore"
        assert out.updated
        # input untouched
        assert node.description == "old" and node.tags == ["a"] and node.body == "body\n\n"

    def test_empty_patch_preserves_values(self):
        node = GraphNode(id="mg/k", type="fact", description="keep me", body="text")
        out = apply_patch(node, MergePatch(), [], [])
        assert out.description == "keep me"
        assert out.body == "text"


class TestExecuteMerge:
    def test_archives_losers_and_writes_keeper(self, store, registry):
        keep, keep_path = add_node(store, registry, "preferences.dark_mode", "user prefers dark mode", tags=["ui"])
        lose, lose_path = add_node(store, registry, "preferences.dark_theme", "user prefers dark theme", tags=["theme"])
        paths = registry.get_file_paths([keep.id, lose.id])
        plan = _plan(keep.id, lose.id, alias_keys=["preferences.dark_theme"], patch=MergePatch(tags=["theme"]))

        result = execute_merge(plan, paths, store, registry)

        assert result.nodes_archived == 1
        archived = store.read(lose_path)
        assert archived.archived is True
        assert archived.merged_into == keep.id
        kept = store.read(keep_path)
        assert kept.aliases == ["preferences.dark_theme"]
        assert kept.tags == ["ui", "theme"]
        assert kept.merged_from == [lose.id]
        assert registry.get(lose.id).archived is True
        assert result.audit_entry.keep_node_id == keep.id
        assert result.audit_entry.merged_node_ids == [lose.id]

    def test_keeper_unknown_raises_and_touches_nothing(self, store, registry):
        lose, lose_path = add_node(store, registry, "preferences.a", "a")
        before = lose_path.read_bytes()
        with pytest.raises(KeeperUnavailableError) as excinfo:
            execute_merge(_plan("mg/missing", lose.id), registry.get_file_paths([lose.id]), store, registry)
        assert excinfo.value.keep_node_id == "mg/missing"
        assert excinfo.value.merge_node_ids == [lose.id]
        assert lose_path.read_bytes() == before

    @pytest.mark.parametrize("content", ["no frontmatter at all", "---\n: [unbalanced\n---\nbody", "---\n- a list\n---\n"])
    def test_keeper_unparseable_leaves_losers_byte_identical(self, store, registry, content):
        keep, keep_path = add_node(store, registry, "preferences.k", "keeper")
        l1, p1 = add_node(store, registry, "preferences.l1", "loser one")
        l2, p2 = add_node(store, registry, "preferences.l2", "loser two")
        paths = registry.get_file_paths([keep.id, l1.id, l2.id])
        before = {p: p.read_bytes() for p in (p1, p2)}
        keep_path.write_text(content)

        with pytest.raises(KeeperUnavailableError):
            execute_merge(_plan(keep.id, l1.id, l2.id), paths, store, registry)

        assert {p: p.read_bytes() for p in (p1, p2)} == before
        assert registry.get(l1.id).archived is False

    def test_keeper_file_deleted(self, store, registry):
        keep, keep_path = add_node(store, registry, "preferences.k", "keeper")
        lose, lose_path = add_node(store, registry, "preferences.l", "loser")
        paths = registry.get_file_paths([keep.id, lose.id])
        keep_path.unlink()
        with pytest.raises(KeeperUnavailableError):
            execute_merge(_plan(keep.id, lose.id), paths, store, registry)
        assert store.read(lose_path).archived is False

    def test_unknown_loser_skipped(self, store, registry):
        keep, _ = add_node(store, registry, "preferences.k", "keeper")
        lose, lose_path = add_node(store, registry, "preferences.l", "loser")
        paths = registry.get_file_paths([keep.id, lose.id])
        result = execute_merge(_plan(keep.id, lose.id, "mg/ghost"), paths, store, registry)
        assert result.nodes_archived == 1
        assert result.audit_entry.merged_node_ids == [lose.id, "mg/ghost"]
        assert store.read(lose_path).archived

    def test_inbound_links_redirected_without_duplicates(self, store, registry):
        keep, keep_path = add_node(store, registry, "preferences.k", "keeper", links=["mg/preferences.l"])
        lose, _ = add_node(store, registry, "preferences.l", "loser")
        ref1, ref1_path = add_node(store, registry, "projects.one", "one", node_type="project", links=["mg/preferences.l"])
        ref2, ref2_path = add_node(
            store, registry, "projects.two", "two", node_type="project",
            links=["mg/preferences.l", "mg/preferences.k", "mg/other"],
        )
        paths = registry.get_file_paths([keep.id, lose.id])

        execute_merge(_plan(keep.id, lose.id), paths, store, registry)

        assert store.read(ref1_path).links == [keep.id]
        assert store.read(ref2_path).links == [keep.id, "mg/other"]
        assert registry.get(ref1.id).links == [keep.id]
        assert store.read(keep_path).links == []

    def test_chained_plans_never_target_archived_nodes(self, store, registry):
        a, _ = add_node(store, registry, "preferences.a", "a")
        b, b_path = add_node(store, registry, "preferences.b", "b")
        c, c_path = add_node(store, registry, "preferences.c", "c")
        paths = registry.get_file_paths([a.id, b.id, c.id])

        execute_merge(_plan(a.id, b.id), paths, store, registry)
        before = b_path.read_bytes()
        with pytest.raises(KeeperUnavailableError, match="archived"):
            execute_merge(_plan(b.id, c.id), paths, store, registry)
        assert b_path.read_bytes() == before
        assert store.read(c_path).archived is False

    def test_already_archived_loser_skipped(self, store, registry):
        a, _ = add_node(store, registry, "preferences.a", "a")
        b, b_path = add_node(store, registry, "preferences.b", "b")
        c, _ = add_node(store, registry, "preferences.c", "c")
        paths = registry.get_file_paths([a.id, b.id, c.id])

        execute_merge(_plan(a.id, b.id), paths, store, registry)
        with pytest.raises(MergeError, match="no live losers"):
            execute_merge(_plan(c.id, b.id), paths, store, registry)
        assert store.read(b_path).merged_into == a.id
        assert store.read(paths[c.id]).merged_from == []

    def test_mixed_losers_only_archive_live_ones(self, store, registry):
        a, _ = add_node(store, registry, "preferences.a", "a")
        b, _ = add_node(store, registry, "preferences.b", "b")
        c, _ = add_node(store, registry, "preferences.c", "c")
        d, d_path = add_node(store, registry, "preferences.d", "d")
        paths = registry.get_file_paths([a.id, b.id, c.id, d.id])

        execute_merge(_plan(a.id, b.id), paths, store, registry)
        result = execute_merge(_plan(c.id, b.id, d.id), paths, store, registry)
        assert result.nodes_archived == 1
        assert result.audit_entry.merged_node_ids == [d.id]
        assert store.read(d_path).merged_into == c.id
        assert store.read(paths[c.id]).merged_from == [d.id]
