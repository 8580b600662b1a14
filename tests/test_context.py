"""Tests for ProjectContext: lifecycle, mutations, persistence, and watching."""

import json
import os
from unittest.mock import patch

import pytest

from filescope.config import load_config
from filescope.context import ProjectContext
from filescope.errors import NotFound, PersistenceFailure, ProjectNotSet, ValidationFailure
from filescope.storage import atomic_write_json, load_file_tree
from filescope.watcher import EventKind


@pytest.fixture
def context(data_dir):
    ctx = ProjectContext(data_dir)
    yield ctx
    ctx.shutdown()


@pytest.fixture
def ts_context(context, ts_project):
    context.initialize(ts_project)
    return context


class TestInitialize:
    def test_scans_and_saves(self, context, ts_project, data_dir):
        config = context.initialize(ts_project)
        assert context.is_initialized
        assert context.project_root == ts_project
        assert config.filename == "FileScope-tree-project.json"
        assert os.path.exists(os.path.join(data_dir, config.filename))
        assert load_config(data_dir).base_directory == ts_project

    def test_two_file_scenario(self, ts_context, ts_project):
        a = ts_context.get_node("a.ts")
        b = ts_context.get_node("b.ts")
        assert a.dependencies == [f"{ts_project}/b.ts"]
        assert b.dependents == [f"{ts_project}/a.ts"]
        assert b.importance == 10.0
        assert a.importance < b.importance

    def test_reuses_saved_tree(self, ts_context, ts_project, data_dir):
        ts_context.set_summary("a.ts", "Entry point")
        fresh = ProjectContext(data_dir)
        fresh.initialize(ts_project)
        assert fresh.get_node("a.ts").summary == "Entry point"

    def test_corrupt_saved_tree_rescanned(self, context, ts_project, data_dir, caplog):
        os.makedirs(data_dir, exist_ok=True)
        with open(os.path.join(data_dir, "FileScope-tree-project.json"), "w") as f:
            f.write("{oops")
        context.initialize(ts_project)
        assert len(context.list_all()) == 2
        assert "Discarding saved tree" in caplog.text

    def test_missing_directory(self, context, tmp_path):
        with pytest.raises(NotFound):
            context.initialize(str(tmp_path / "nope"))
        assert not context.is_initialized

    def test_operations_need_a_project(self, context):
        with pytest.raises(ProjectNotSet):
            context.list_all()
        with pytest.raises(ProjectNotSet):
            context.add_node("a.ts")


class TestQueries:
    def test_list_all(self, ts_context):
        assert [n.name for n in ts_context.list_all()] == ["a.ts", "b.ts"]

    def test_find_important_files(self, ts_context, ts_project):
        files = ts_context.find_important_files(limit=1)
        assert files == [{
            "path": f"{ts_project}/b.ts",
            "importance": 10.0,
            "dependentCount": 1,
            "dependencyCount": 0,
            "hasSummary": False,
        }]
        assert [f["path"] for f in ts_context.find_important_files(min_importance=5)] == [
            f"{ts_project}/b.ts"
        ]

    def test_tree_document(self, ts_context):
        doc = ts_context.tree_document()
        assert doc["isDirectory"] is True
        assert len(doc["children"]) == 2


class TestMutations:
    def test_set_summary_persists(self, ts_context, data_dir):
        ts_context.set_summary("b.ts", "Shared constant")
        tree, _ = load_file_tree(ts_context.tree_config.filename, data_dir)
        saved = next(n for n in tree.iter_files() if n.name == "b.ts")
        assert saved.summary == "Shared constant"

    def test_set_importance_out_of_range_rejected(self, ts_context, data_dir):
        before = ts_context.get_node("a.ts").importance
        for value in (42, -5, float("nan")):
            with pytest.raises(ValueError):
                ts_context.set_importance("a.ts", value)
        assert ts_context.get_node("a.ts").importance == before
        tree, _ = load_file_tree(ts_context.tree_config.filename, data_dir)
        saved = next(n for n in tree.iter_files() if n.name == "a.ts")
        assert saved.importance == before

    def test_set_importance_bounds_accepted(self, ts_context):
        assert ts_context.set_importance("a.ts", 10).importance == 10.0
        assert ts_context.set_importance("a.ts", 0).importance == 0.0

    def test_recalculate_replaces_manual_importance(self, ts_context):
        ts_context.set_importance("a.ts", 9)
        stats = ts_context.recalculate()
        assert stats == {"totalFiles": 2, "filesWithImportance": 2}
        assert ts_context.get_node("a.ts").importance == 4.0

    def test_update_dependencies_recomputes(self, ts_context, ts_project):
        ts_context.update_node("b.ts", dependencies=["a.ts"])
        a = ts_context.get_node("a.ts")
        assert a.dependents == [f"{ts_project}/b.ts"]
        assert a.importance == 10.0

    def test_add_and_remove(self, ts_context, ts_project):
        before = ts_context.tree_document()
        with open(os.path.join(ts_project, "c.ts"), "w") as f:
            f.write("import { x } from './b';\n")

        node = ts_context.add_node("c.ts")
        assert node.dependencies == [f"{ts_project}/b.ts"]
        assert ts_context.get_node("b.ts").dependents == [f"{ts_project}/a.ts", f"{ts_project}/c.ts"]

        assert ts_context.remove_node("c.ts") == [f"{ts_project}/c.ts"]
        assert ts_context.tree_document() == before

    def test_remove_missing(self, ts_context):
        with pytest.raises(NotFound):
            ts_context.remove_node("ghost.ts")

    def test_exclude_and_remove(self, context, project_dir, write_files, data_dir):
        root = write_files(project_dir, {
            "a.ts": "import { b } from './b';\n",
            "b.ts": "export const b = 1;\n",
            "a.test.ts": "import { b } from './b';\n",
            "b.test.ts": "import { b } from './b';\n",
        })
        context.initialize(root)
        assert len(context.get_node("b.ts").dependents) == 3

        removed = context.exclude_and_remove("*.test.ts")
        assert sorted(removed) == [f"{root}/a.test.ts", f"{root}/b.test.ts"]
        assert [n.name for n in context.list_all()] == ["a.ts", "b.ts"]
        assert context.get_node("b.ts").dependents == [f"{root}/a.ts"]
        assert "*.test.ts" in load_config(data_dir).exclude_patterns

        # the exclusion survives a fresh scan
        os.remove(os.path.join(data_dir, "FileScope-tree-project.json"))
        fresh = ProjectContext(data_dir)
        fresh.initialize(root)
        assert [n.name for n in fresh.list_all()] == ["a.ts", "b.ts"]

    def test_exclude_absolute_directory(self, context, project_dir, write_files, data_dir):
        root = write_files(project_dir, {"gen/x.ts": "", "src/y.ts": ""})
        context.initialize(root)
        removed = context.exclude_and_remove(f"{root}/gen")
        assert removed == [f"{root}/gen", f"{root}/gen/x.ts"]
        assert "/gen" in load_config(data_dir).exclude_patterns

    def test_exclude_empty_pattern(self, ts_context):
        with pytest.raises(ValueError):
            ts_context.exclude_and_remove("  ")


class TestRollback:
    def test_failed_save_restores_tree(self, ts_context):
        with patch("filescope.context.save_file_tree", side_effect=PersistenceFailure("disk full")):
            with pytest.raises(PersistenceFailure):
                ts_context.set_summary("a.ts", "lost")
        assert ts_context.get_node("a.ts").summary is None

    def test_failed_add_restores_tree(self, ts_context, ts_project):
        with open(os.path.join(ts_project, "c.ts"), "w") as f:
            f.write("import { x } from './b';\n")
        with patch("filescope.context.save_file_tree", side_effect=PersistenceFailure("disk full")):
            with pytest.raises(PersistenceFailure):
                ts_context.add_node("c.ts")
        assert ts_context.get_node("c.ts") is None
        assert ts_context.get_node("b.ts").dependents == [f"{ts_project}/a.ts"]

    def test_failed_settings_save_keeps_excluded_nodes(self, ts_context, ts_project, data_dir):
        with patch("filescope.context.save_config", side_effect=PersistenceFailure("disk full")):
            with pytest.raises(PersistenceFailure):
                ts_context.exclude_and_remove("b.ts")

        assert ts_context.get_node("b.ts") is not None
        assert ts_context.get_node("b.ts").dependents == [f"{ts_project}/a.ts"]
        assert ts_context.app_config.exclude_patterns == []
        assert not ts_context.ignore_filter.should_ignore("b.ts")
        tree, _ = load_file_tree(ts_context.tree_config.filename, data_dir)
        assert sorted(n.name for n in tree.iter_files()) == ["a.ts", "b.ts"]
        assert load_config(data_dir).exclude_patterns == []

    def test_failed_settings_save_leaves_project_unset(self, context, ts_project, data_dir):
        with patch("filescope.context.save_config", side_effect=PersistenceFailure("disk full")):
            with pytest.raises(PersistenceFailure):
                context.initialize(ts_project)
        assert not context.is_initialized
        assert context.app_config.base_directory is None

    def test_rejected_load_leaves_tree(self, ts_context, data_dir):
        current = ts_context.tree
        doc = {"config": {"filename": "FileScope-tree-bad.json", "baseDirectory": "/x"},
               "fileTree": {"path": "/x", "name": "x", "children": []}}
        atomic_write_json(os.path.join(data_dir, "FileScope-tree-bad.json"), doc)
        with pytest.raises(ValidationFailure):
            ts_context.select_file_tree("FileScope-tree-bad.json")
        assert ts_context.tree is current


class TestSavedTrees:
    def test_create_select_delete(self, ts_context, ts_project, write_files, data_dir):
        write_files(ts_project, {"sub/only.py": ""})
        config = ts_context.create_file_tree("sub-tree", "sub")
        assert config.filename == "sub-tree.json"
        assert ts_context.project_root == f"{ts_project}/sub"
        assert [n.name for n in ts_context.list_all()] == ["only.py"]

        names = [t["filename"] for t in ts_context.list_saved_trees()]
        assert names == ["FileScope-tree-project.json", "sub-tree.json"]

        ts_context.select_file_tree("FileScope-tree-project.json")
        assert ts_context.project_root == ts_project

        ts_context.delete_file_tree("sub-tree.json")
        assert ts_context.is_initialized
        ts_context.delete_file_tree("FileScope-tree-project.json")
        assert not ts_context.is_initialized

    def test_select_missing(self, ts_context):
        with pytest.raises(NotFound):
            ts_context.select_file_tree("FileScope-tree-ghost.json")

    def test_create_missing_directory(self, ts_context):
        with pytest.raises(NotFound):
            ts_context.create_file_tree("x.json", "no/such/dir")


class TestFileEvents:
    def test_created_file_added(self, ts_context, ts_project):
        path = f"{ts_project}/c.ts"
        with open(path, "w") as f:
            f.write("import { x } from './b';\n")
        ts_context.handle_file_event(path, EventKind.CREATED)
        assert ts_context.get_node(path) is not None
        assert path in ts_context.get_node("b.ts").dependents

    def test_modified_file_refreshed(self, ts_context, ts_project):
        path = f"{ts_project}/a.ts"
        with open(path, "w") as f:
            f.write("export const a = 1;\n")
        os.utime(path, (1_000_000, 1_000_000))
        ts_context.handle_file_event(path, EventKind.MODIFIED)
        assert ts_context.get_node("a.ts").dependencies == []
        assert ts_context.get_node("b.ts").dependents == []

    def test_deleted_file_removed(self, ts_context, ts_project):
        path = f"{ts_project}/a.ts"
        os.remove(path)
        ts_context.handle_file_event(path, EventKind.DELETED)
        assert ts_context.get_node(path) is None

    def test_kind_reclassified_against_disk(self, ts_context, ts_project):
        # reported as modified, but the file is gone by the time the timer fires
        path = f"{ts_project}/b.ts"
        os.remove(path)
        ts_context.handle_file_event(path, EventKind.MODIFIED)
        assert ts_context.get_node(path) is None

    def test_created_directory_added_recursively(self, ts_context, ts_project, write_files):
        write_files(ts_project, {
            "pkg/x.ts": "import { x } from '../b';\n",
            "pkg/inner/y.ts": "",
            "pkg/node_modules/z.js": "",
            "pkg/.hidden.ts": "",
        })
        ts_context.handle_file_event(f"{ts_project}/pkg", EventKind.CREATED)
        names = sorted(n.name for n in ts_context.list_all())
        assert names == ["a.ts", "b.ts", "x.ts", "y.ts"]

    def test_gates(self, ts_context, ts_project):
        ts_context.app_config.file_watching.update(watch_for_deleted=False, watch_for_new_files=False)
        os.remove(f"{ts_project}/a.ts")
        ts_context.handle_file_event(f"{ts_project}/a.ts", EventKind.DELETED)
        assert ts_context.get_node("a.ts") is not None

        with open(f"{ts_project}/c.ts", "w") as f:
            f.write("")
        ts_context.handle_file_event(f"{ts_project}/c.ts", EventKind.CREATED)
        assert ts_context.get_node("c.ts") is None

    def test_outside_root_ignored(self, ts_context, tmp_path):
        ts_context.handle_file_event(str(tmp_path / "elsewhere.ts"), EventKind.CREATED)
        assert len(ts_context.list_all()) == 2

    def test_failures_logged(self, ts_context, ts_project, caplog):
        with patch("filescope.context.save_file_tree", side_effect=PersistenceFailure("disk full")):
            os.remove(f"{ts_project}/a.ts")
            ts_context.handle_file_event(f"{ts_project}/a.ts", EventKind.DELETED)
        assert "Could not apply deleted event" in caplog.text
        assert ts_context.get_node("a.ts") is not None


class TestWatching:
    @pytest.fixture
    def mock_watcher(self):
        with patch("filescope.context.FileWatcher") as cls:
            cls.return_value.is_running = True
            cls.return_value.cancel_pending.return_value = 1
            cls.return_value.status.return_value = {"isActive": True, "watchedDirectories": 1}
            yield cls

    def test_toggle(self, ts_context, mock_watcher, data_dir):
        assert ts_context.toggle_watching() is True
        mock_watcher.return_value.start.assert_called_once()
        assert load_config(data_dir).file_watching.enabled is True
        assert ts_context.watching_status()["isActive"] is True

        assert ts_context.toggle_watching() is False
        mock_watcher.return_value.stop.assert_called()
        assert ts_context.watcher is None
        assert ts_context.watching_status()["isActive"] is False

    def test_update_config(self, ts_context, mock_watcher, data_dir):
        updated = ts_context.update_watching_config(debounceMs=25, watchForChanged=False)
        assert updated.debounce_ms == 25
        assert ts_context.get_watching_config().watch_for_changed is False
        assert load_config(data_dir).file_watching.debounce_ms == 25
        mock_watcher.assert_not_called()

    def test_update_config_invalid_leaves_settings(self, ts_context, mock_watcher):
        with pytest.raises(ValueError):
            ts_context.update_watching_config(debounceMs=-5)
        assert ts_context.get_watching_config().debounce_ms == 300

    def test_initialize_starts_watcher_when_enabled(self, context, ts_project, mock_watcher):
        context.app_config.file_watching.enabled = True
        context.initialize(ts_project)
        args, kwargs = mock_watcher.call_args
        assert args[0] == ts_project
        assert kwargs["on_event"] == context.handle_file_event
        mock_watcher.return_value.start.assert_called_once_with([])

    def test_removal_cancels_pending_events(self, ts_context, mock_watcher, ts_project):
        ts_context.toggle_watching()
        ts_context.remove_node("a.ts")
        mock_watcher.return_value.cancel_pending.assert_called_once_with([f"{ts_project}/a.ts"])

    def test_shutdown_stops_and_saves(self, ts_context, mock_watcher, data_dir):
        ts_context.toggle_watching()
        path = os.path.join(data_dir, ts_context.tree_config.filename)
        os.remove(path)
        ts_context.shutdown()
        mock_watcher.return_value.stop.assert_called()
        with open(path) as f:
            assert json.load(f)["config"]["filename"] == ts_context.tree_config.filename
