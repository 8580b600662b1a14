"""Tests for incremental tree edits."""

import copy
import os
import time

import pytest

from filescope.errors import NotFound
from filescope.graph import recalculate
from filescope.mutator import (
    add_file_node,
    get_node,
    list_all,
    match_nodes,
    pattern_to_gitignore,
    refresh_file_node,
    remove_file_node,
    update_file_node,
)
from filescope.paths import PathTraversalError
from filescope.scanner import scan_directory


@pytest.fixture
def tree(project_dir, write_files):
    root = write_files(project_dir, {
        "src/a.ts": "import { b } from './b';\nimport { u } from '../lib/util';\n",
        "src/b.ts": "import { u } from '../lib/util';\n",
        "lib/util.ts": "export const u = 1;\n",
        "src/a.test.ts": "import { b } from './b';\n",
    })
    t = scan_directory(root)
    recalculate(t)
    return t


class TestLookup:
    def test_get_node_accepts_relative_and_absolute(self, tree):
        assert get_node(tree, "src/a.ts").path == f"{tree.path}/src/a.ts"
        assert get_node(tree, f"{tree.path}/lib").is_directory

    def test_get_node_missing_or_outside(self, tree):
        assert get_node(tree, "src/nope.ts") is None
        assert get_node(tree, "/etc/passwd") is None

    def test_list_all_files_in_tree_order(self, tree):
        names = [n.name for n in list_all(tree)]
        assert names == ["util.ts", "a.test.ts", "a.ts", "b.ts"]


class TestAddFileNode:
    def test_add_creates_intermediate_directories(self, tree):
        os.makedirs(f"{tree.path}/new/deep")
        with open(f"{tree.path}/new/deep/c.ts", "w") as f:
            f.write("import { u } from '../../lib/util';\n")

        node = add_file_node(tree, "new/deep/c.ts")
        assert node.dependencies == [f"{tree.path}/lib/util.ts"]
        new_dir = get_node(tree, "new")
        assert new_dir.is_directory
        assert [c.name for c in new_dir.children] == ["deep"]
        # new directory sorted among existing ones
        assert [c.name for c in tree.children] == ["lib", "new", "src"]

    def test_add_missing_file(self, tree):
        with pytest.raises(NotFound):
            add_file_node(tree, "src/ghost.ts")

    def test_add_outside_root(self, tree, tmp_path):
        outside = tmp_path / "outside.ts"
        outside.write_text("")
        with pytest.raises(PathTraversalError):
            add_file_node(tree, str(outside))

    def test_add_existing_re_extracts(self, tree):
        path = f"{tree.path}/src/b.ts"
        with open(path, "w") as f:
            f.write("export const b = 2;\n")
        node = add_file_node(tree, path)
        assert node is get_node(tree, path)
        assert node.dependencies == []
        assert sum(1 for n in tree.iter_nodes() if n.path == path) == 1

    def test_add_then_remove_restores_state(self, tree):
        before = copy.deepcopy(tree)
        with open(f"{tree.path}/src/extra.ts", "w") as f:
            f.write("import { b } from './b';\n")

        add_file_node(tree, "src/extra.ts")
        recalculate(tree)
        assert f"{tree.path}/src/extra.ts" in get_node(tree, "src/b.ts").dependents

        remove_file_node(tree, "src/extra.ts")
        recalculate(tree)
        assert tree == before


class TestRemoveFileNode:
    def test_remove_scrubs_edges(self, tree):
        removed = remove_file_node(tree, "lib/util.ts")
        assert removed == [f"{tree.path}/lib/util.ts"]
        util = f"{tree.path}/lib/util.ts"
        for node in tree.iter_nodes():
            assert util not in node.dependencies
            assert util not in node.dependents

    def test_remove_directory_removes_subtree(self, tree):
        removed = remove_file_node(tree, "src")
        assert removed[0] == f"{tree.path}/src"
        assert f"{tree.path}/src/a.ts" in removed
        assert get_node(tree, "src/a.ts") is None
        assert [c.name for c in tree.children] == ["lib"]

    def test_remove_missing(self, tree):
        with pytest.raises(NotFound):
            remove_file_node(tree, "src/ghost.ts")

    def test_remove_root_refused(self, tree):
        with pytest.raises(NotFound):
            remove_file_node(tree, tree.path)


class TestPatterns:
    def test_absolute_path_becomes_anchored(self):
        assert pattern_to_gitignore("/proj/src/gen", "/proj") == "/src/gen"

    def test_globs_pass_through(self):
        assert pattern_to_gitignore("*.test.ts", "/proj") == "*.test.ts"
        assert pattern_to_gitignore("/elsewhere/x", "/proj") == "/elsewhere/x"

    def test_match_nodes_glob(self, tree):
        matches = match_nodes(tree, "*.test.ts")
        assert [n.name for n in matches] == ["a.test.ts"]

    def test_match_nodes_directory_is_topmost(self, tree):
        matches = match_nodes(tree, "src/")
        assert [n.path for n in matches] == [f"{tree.path}/src"]

    def test_match_nodes_absolute(self, tree):
        matches = match_nodes(tree, f"{tree.path}/lib/util.ts")
        assert [n.name for n in matches] == ["util.ts"]


class TestUpdateFileNode:
    def test_summary_and_importance_do_not_change_graph(self, tree):
        changed = update_file_node(tree, "src/a.ts", {"summary": "Entry", "importance": 7})
        node = get_node(tree, "src/a.ts")
        assert changed is False
        assert node.summary == "Entry"
        assert node.importance == 7.0

    @pytest.mark.parametrize("value", [42, -5, 10.01, float("nan")])
    def test_importance_out_of_range_rejected(self, tree, value):
        node = get_node(tree, "src/a.ts")
        before = node.importance
        with pytest.raises(ValueError):
            update_file_node(tree, "src/a.ts", {"summary": "Entry", "importance": value})
        assert node.importance == before
        assert node.summary is None

    def test_dependencies_change_graph(self, tree):
        changed = update_file_node(tree, "src/b.ts", {"dependencies": ["src/a.ts"]})
        assert changed is True
        assert get_node(tree, "src/b.ts").dependencies == [f"{tree.path}/src/a.ts"]

    def test_same_dependencies_no_change(self, tree):
        deps = list(get_node(tree, "src/b.ts").dependencies)
        assert update_file_node(tree, "src/b.ts", {"dependencies": deps}) is False

    def test_unknown_field(self, tree):
        with pytest.raises(ValueError):
            update_file_node(tree, "src/a.ts", {"path": "/x"})

    def test_bad_summary(self, tree):
        with pytest.raises(ValueError):
            update_file_node(tree, "src/a.ts", {"summary": 3})

    def test_missing_node(self, tree):
        with pytest.raises(NotFound):
            update_file_node(tree, "nope.ts", {"summary": "x"})


class TestRefreshFileNode:
    def test_unchanged_mtime_skips_extraction(self, tree):
        assert refresh_file_node(tree, "src/a.ts") is False

    def test_changed_file_re_extracted(self, tree):
        path = f"{tree.path}/src/a.ts"
        with open(path, "w") as f:
            f.write("export const a = 1;\n")
        future = time.time() + 10
        os.utime(path, (future, future))
        assert refresh_file_node(tree, path) is True
        assert get_node(tree, path).dependencies == []
        assert get_node(tree, path).last_modified == os.stat(path).st_mtime

    def test_force(self, tree):
        assert refresh_file_node(tree, "src/a.ts", force=True) is False

    def test_deleted_file(self, tree):
        os.remove(f"{tree.path}/src/a.ts")
        with pytest.raises(NotFound):
            refresh_file_node(tree, "src/a.ts")

    def test_untracked(self, tree):
        with pytest.raises(NotFound):
            refresh_file_node(tree, "src/ghost.ts")
