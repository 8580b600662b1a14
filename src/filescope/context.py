"""Per-project state: the active tree, its settings, and its watcher.

ProjectContext is the single owner of a loaded tree. Every mutation runs
under one re-entrant lock, re-derives dependents and importance where the
graph changed, and saves before returning. If the save fails the tree is
restored to its state before the mutation and the error is raised.

Watcher events are delivered to handle_file_event from debounce timer
threads and go through the same lock as tool calls.
"""

import copy
import logging
import os
import threading
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .config import AppConfig, default_data_dir, load_config, save_config
from .errors import FileScopeError, NotFound, PersistenceFailure, ProjectNotSet, ValidationFailure
from .graph import recalculate as recalculate_tree
from .ignore import IgnoreFilter
from .models import FileNode, FileTreeConfig, FileWatchingConfig
from .mutator import (
    add_file_node,
    list_all,
    match_nodes,
    pattern_to_gitignore,
    refresh_file_node,
    remove_file_node,
    update_file_node,
)
from .mutator import get_node as find_node
from .paths import is_within, normalize_path, relative_to
from .scanner import scan_directory
from .storage import (
    default_tree_filename,
    delete_file_tree,
    list_saved_trees,
    load_file_tree,
    save_file_tree,
)
from .watcher import EventKind, FileWatcher

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProjectContext:
    """Owns one project's tree and keeps it consistent and persisted.

    Usage:
        context = ProjectContext(data_dir)
        context.initialize("/path/to/project")
        context.find_important_files(limit=5)
        context.shutdown()
    """

    def __init__(self, data_dir: Optional[str] = None, app_config: Optional[AppConfig] = None):
        self.data_dir = data_dir or default_data_dir()
        self.app_config = app_config or load_config(self.data_dir)
        self.tree: Optional[FileNode] = None
        self.tree_config: Optional[FileTreeConfig] = None
        self.ignore_filter: Optional[IgnoreFilter] = None
        self.watcher: Optional[FileWatcher] = None
        self._lock = threading.RLock()

    @property
    def is_initialized(self) -> bool:
        return self.tree is not None

    @property
    def project_root(self) -> Optional[str]:
        return self.tree.path if self.tree is not None else None

    def _require_tree(self) -> FileNode:
        if self.tree is None:
            raise ProjectNotSet(
                "Project path not set. Call set_project_path or start the server with --base-dir."
            )
        return self.tree

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, path: str) -> FileTreeConfig:
        """Make ``path`` the active project.

        A saved tree for the same root is reused when it loads and validates;
        otherwise the project is scanned from scratch. The result is saved and
        the watcher started if file watching is enabled.

        Raises:
            NotFound: If path is not a directory
            PersistenceFailure: If the tree or settings cannot be saved
        """
        root = normalize_path(path)
        if not os.path.isdir(root):
            raise NotFound(f"Directory not found: {root}", path=root)

        with self._lock:
            ignore_filter = self._make_ignore_filter(root)
            filename = default_tree_filename(root)
            tree, tree_config = None, None
            try:
                loaded = load_file_tree(filename, self.data_dir)
            except (PersistenceFailure, ValidationFailure) as e:
                logger.warning("Discarding saved tree %s: %s", filename, e)
                loaded = None
            if loaded is not None and normalize_path(loaded[0].path) == root:
                tree, tree_config = loaded
                logger.info("Reusing saved tree %s for %s", filename, root)
            else:
                tree = self._build_tree(root, ignore_filter)
                tree_config = FileTreeConfig(filename=filename, base_directory=root, project_root=root)

            save_file_tree(tree_config, tree, self.data_dir)

            previous_base = self.app_config.base_directory
            self.app_config.base_directory = root
            try:
                save_config(self.app_config, self.data_dir)
            except PersistenceFailure:
                self.app_config.base_directory = previous_base
                raise

            self._activate(tree, tree_config, ignore_filter)
            return tree_config

    def create_file_tree(self, filename: str, base_directory: str) -> FileTreeConfig:
        """Scan ``base_directory`` into a new tree saved as ``filename`` and switch to it.

        A relative base directory (including ".") is taken relative to the
        current project root.
        """
        with self._lock:
            current_root = self._require_tree().path
            base = normalize_path(base_directory, base=current_root)
            if not os.path.isdir(base):
                raise NotFound(f"Directory not found: {base}", path=base)
            if not filename.endswith(".json"):
                filename += ".json"

            ignore_filter = self._make_ignore_filter(base)
            tree = self._build_tree(base, ignore_filter)
            tree_config = FileTreeConfig(filename=filename, base_directory=base, project_root=base)
            save_file_tree(tree_config, tree, self.data_dir)
            self._activate(tree, tree_config, ignore_filter)
            logger.info("Created file tree %s for %s", filename, base)
            return tree_config

    def select_file_tree(self, filename: str) -> FileTreeConfig:
        """Switch to a saved tree. A rejected document leaves the current tree in place.

        Raises:
            NotFound: If there is no such saved tree
            ValidationFailure: If the document is malformed
            PersistenceFailure: If it cannot be read
        """
        with self._lock:
            loaded = load_file_tree(filename, self.data_dir)
            if loaded is None:
                raise NotFound(f"File tree not found: {filename}", path=filename)
            tree, tree_config = loaded
            self._activate(tree, tree_config, self._make_ignore_filter(tree.path))
            logger.info("Selected file tree %s (%s)", filename, tree.path)
            return tree_config

    def delete_file_tree(self, filename: str) -> str:
        """Delete a saved tree. Deleting the active one unloads the project."""
        with self._lock:
            path = delete_file_tree(filename, self.data_dir)
            if self.tree_config is not None and self.tree_config.filename == filename:
                self._stop_watcher()
                self.tree = None
                self.tree_config = None
                self.ignore_filter = None
                logger.info("Deleted the active file tree %s", filename)
            return path

    def list_saved_trees(self) -> List[Dict[str, Any]]:
        return list_saved_trees(self.data_dir)

    def shutdown(self) -> None:
        """Stop watching and flush a final save of the active tree."""
        with self._lock:
            self._stop_watcher()
            if self.tree is None or self.tree_config is None:
                return
            try:
                save_file_tree(self.tree_config, self.tree, self.data_dir)
            except PersistenceFailure as e:
                logger.error("Final save of %s failed: %s", self.tree_config.filename, e)

    def _make_ignore_filter(self, root: str) -> IgnoreFilter:
        return IgnoreFilter(root, exclude_patterns=self.app_config.exclude_patterns)

    def _build_tree(self, root: str, ignore_filter: IgnoreFilter) -> FileNode:
        tree = scan_directory(root, ignore_filter=ignore_filter)
        recalculate_tree(tree)
        return tree

    def _activate(self, tree: FileNode, tree_config: FileTreeConfig, ignore_filter: IgnoreFilter) -> None:
        self._stop_watcher()
        self.tree = tree
        self.tree_config = tree_config
        self.ignore_filter = ignore_filter
        if self.app_config.file_watching.enabled:
            self._start_watcher()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_node(self, path: str) -> Optional[FileNode]:
        with self._lock:
            return find_node(self._require_tree(), path)

    def list_all(self) -> List[FileNode]:
        with self._lock:
            return list_all(self._require_tree())

    def tree_document(self) -> Dict[str, Any]:
        with self._lock:
            return self._require_tree().to_dict()

    def find_important_files(self, limit: int = 10, min_importance: float = 0.0) -> List[Dict[str, Any]]:
        """Files at or above ``min_importance``, most important first."""
        with self._lock:
            files = [f for f in list_all(self._require_tree()) if f.importance >= min_importance]
            files.sort(key=lambda f: (-f.importance, f.path))
            return [
                {
                    "path": f.path,
                    "importance": f.importance,
                    "dependentCount": len(f.dependents),
                    "dependencyCount": len(f.dependencies),
                    "hasSummary": bool(f.summary),
                }
                for f in files[:max(0, limit)]
            ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _commit(self, mutation: Callable[[FileNode], T]) -> T:
        """Run ``mutation`` on the tree and save, rolling back on any failure."""
        with self._lock:
            tree = self._require_tree()
            snapshot = copy.deepcopy(tree)
            try:
                result = mutation(tree)
                save_file_tree(self.tree_config, tree, self.data_dir)
            except Exception:
                self.tree = snapshot
                raise
            return result

    def set_summary(self, path: str, text: str) -> FileNode:
        return self.update_node(path, summary=text)

    def set_importance(self, path: str, value: float) -> FileNode:
        """Manual override; holds until the next recalculation.

        Raises:
            ValueError: If value is outside [0, 10]
        """
        return self.update_node(path, importance=value)

    def update_node(self, path: str, **fields: Any) -> FileNode:
        """Apply summary, importance, or dependencies changes to one node.

        Only a dependencies change triggers a recompute; other fields are
        just saved.
        """
        def mutation(tree: FileNode) -> FileNode:
            if update_file_node(tree, path, fields):
                recalculate_tree(tree)
            return find_node(tree, path)

        return self._commit(mutation)

    def recalculate(self) -> Dict[str, int]:
        """Re-derive dependents and importance for the whole tree."""
        def mutation(tree: FileNode) -> Dict[str, int]:
            recalculate_tree(tree)
            files = list_all(tree)
            return {
                "totalFiles": len(files),
                "filesWithImportance": sum(1 for f in files if f.importance > 0),
            }

        return self._commit(mutation)

    def add_node(self, path: str) -> FileNode:
        """Track a file (re-extracting it if already tracked).

        Raises:
            NotFound: If the file does not exist
            PathTraversalError: If it is outside the project root
        """
        def mutation(tree: FileNode) -> FileNode:
            node = add_file_node(tree, path)
            recalculate_tree(tree)
            return node

        node = self._commit(mutation)
        self._watch_ancestors(node.path)
        logger.debug("Added %s", node.path)
        return node

    def remove_node(self, path: str) -> List[str]:
        """Stop tracking a file or directory subtree. Returns the removed paths.

        Raises:
            NotFound: If the path is not tracked
        """
        def mutation(tree: FileNode) -> List[str]:
            removed = remove_file_node(tree, path)
            recalculate_tree(tree)
            return removed

        removed = self._commit(mutation)
        self._forget(removed)
        return removed

    def refresh_node(self, path: str, force: bool = False) -> bool:
        """Re-extract a tracked file after it changed. Returns True if its edges moved."""
        def mutation(tree: FileNode) -> bool:
            changed = refresh_file_node(tree, path, force=force)
            if changed:
                recalculate_tree(tree)
            return changed

        return self._commit(mutation)

    def exclude_and_remove(self, pattern: str) -> List[str]:
        """Remove every node matching ``pattern`` and exclude it from now on.

        Args:
            pattern: gitignore-style glob, or an absolute path inside the root

        Returns:
            Removed paths (subtrees included).
        """
        if not pattern or not pattern.strip():
            raise ValueError("Pattern must not be empty")

        with self._lock:
            root = self._require_tree().path
            standing = pattern_to_gitignore(pattern, root)

            previous_patterns = list(self.app_config.exclude_patterns)

            def mutation(tree: FileNode) -> List[str]:
                removed: List[str] = []
                for node in match_nodes(tree, pattern):
                    removed.extend(remove_file_node(tree, node.path))
                if removed:
                    recalculate_tree(tree)
                if standing not in self.app_config.exclude_patterns:
                    self.app_config.exclude_patterns.append(standing)
                    save_config(self.app_config, self.data_dir)
                return removed

            try:
                removed = self._commit(mutation)
            except Exception:
                self._restore_exclude_patterns(previous_patterns)
                raise
            self._forget(removed)

            if self.ignore_filter is not None:
                self.ignore_filter.add_pattern(standing)
            logger.info("Excluded %r: removed %d node(s)", standing, len(removed))
            return removed

    def _restore_exclude_patterns(self, patterns: List[str]) -> None:
        if self.app_config.exclude_patterns == patterns:
            return
        self.app_config.exclude_patterns = patterns
        try:
            save_config(self.app_config, self.data_dir)
        except PersistenceFailure as e:
            logger.error("Could not restore the saved exclusion list: %s", e)

    def _add_directory(self, directory: str) -> List[FileNode]:
        """Track every non-excluded file under a newly created directory."""
        tree = self._require_tree()
        candidates = []
        for current, dirnames, filenames in os.walk(directory):
            rel_dir = relative_to(normalize_path(current), tree.path)
            dirnames[:] = sorted(
                d for d in dirnames
                if not self._is_excluded(f"{rel_dir}/{d}".lstrip("/"), is_dir=True)
            )
            for name in sorted(filenames):
                if not self._is_excluded(f"{rel_dir}/{name}".lstrip("/")):
                    candidates.append(normalize_path(os.path.join(current, name)))

        def mutation(tree: FileNode) -> List[FileNode]:
            added = []
            for path in candidates:
                try:
                    added.append(add_file_node(tree, path))
                except NotFound:
                    logger.debug("%s vanished before it could be added", path)
            recalculate_tree(tree)
            return added

        added = self._commit(mutation)
        for node in added:
            self._watch_ancestors(node.path)
        logger.info("Added %d file(s) from new directory %s", len(added), directory)
        return added

    def _is_excluded(self, rel_path: str, is_dir: bool = False) -> bool:
        if self.ignore_filter is None:
            return False
        if self.app_config.file_watching.ignore_dot_files and any(
            part.startswith(".") for part in rel_path.split("/")
        ):
            return True
        return self.ignore_filter.should_ignore(rel_path, is_dir=is_dir)

    def _forget(self, removed: List[str]) -> None:
        if self.watcher is not None and removed:
            cancelled = self.watcher.cancel_pending(removed)
            if cancelled:
                logger.debug("Cancelled %d pending event(s) for removed paths", cancelled)

    # ------------------------------------------------------------------
    # File watching
    # ------------------------------------------------------------------

    def get_watching_config(self) -> FileWatchingConfig:
        return self.app_config.file_watching

    def update_watching_config(self, **fields: Any) -> FileWatchingConfig:
        """Change watching options, persist them, and restart the watcher to apply.

        Raises:
            ValueError: On an unknown option or out-of-range value
        """
        with self._lock:
            updated = copy.copy(self.app_config.file_watching)
            updated.update(**fields)
            self.app_config.file_watching = updated
            save_config(self.app_config, self.data_dir)
            self._stop_watcher()
            if updated.enabled and self.tree is not None:
                self._start_watcher()
            return updated

    def toggle_watching(self) -> bool:
        """Flip file watching on or off. Returns the new state."""
        with self._lock:
            enabled = not self.app_config.file_watching.enabled
            self.update_watching_config(enabled=enabled)
            logger.info("File watching %s", "enabled" if enabled else "disabled")
            return enabled

    def watching_status(self) -> Dict[str, Any]:
        with self._lock:
            status: Dict[str, Any] = {
                "enabled": self.app_config.file_watching.enabled,
                "isActive": self.watcher is not None and self.watcher.is_running,
                "config": self.app_config.file_watching.to_dict(),
            }
            if self.watcher is not None:
                status.update(self.watcher.status())
            return status

    def handle_file_event(self, path: str, kind: EventKind) -> None:
        """Apply one debounced filesystem event to the tree.

        The event kind is only a hint; what happens depends on what is on
        disk when the timer fires. Failures are logged, never raised.
        """
        with self._lock:
            if self.tree is None or not is_within(path, self.tree.path):
                return
            config = self.app_config.file_watching
            node = find_node(self.tree, path)
            try:
                if not os.path.exists(path):
                    if node is not None and config.watch_for_deleted:
                        self.remove_node(path)
                elif os.path.isdir(path):
                    if node is None and config.auto_rebuild_tree and config.watch_for_new_files:
                        self._add_directory(path)
                elif node is None:
                    if config.watch_for_new_files:
                        self.add_node(path)
                elif config.watch_for_changed:
                    self.refresh_node(path)
            except FileScopeError as e:
                logger.warning("Could not apply %s event for %s: %s", kind.value, path, e)

    def _start_watcher(self) -> None:
        tree = self._require_tree()
        self.watcher = FileWatcher(
            tree.path,
            copy.copy(self.app_config.file_watching),
            on_event=self.handle_file_event,
            ignore_filter=self.ignore_filter,
        )
        directories = [n.path for n in tree.iter_nodes() if n.is_directory and n is not tree]
        self.watcher.start(directories)

    def _stop_watcher(self) -> None:
        if self.watcher is not None:
            self.watcher.stop()
            self.watcher = None

    def _watch_ancestors(self, path: str) -> None:
        if self.watcher is None or self.tree is None:
            return
        parent = os.path.dirname(path)
        chain = []
        while parent and is_within(parent, self.tree.path) and parent != self.tree.path:
            chain.append(parent)
            parent = os.path.dirname(parent)
        for directory in reversed(chain):
            self.watcher.watch_directory(directory)
