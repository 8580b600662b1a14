"""Persistence for file trees: one JSON document per saved tree.

Document layout:
    {
      "config":   {"filename", "baseDirectory", "projectRoot", "lastUpdated"},
      "fileTree": {"path", "name", "isDirectory", "children" | "dependencies",
                   "dependents", "unresolvedDependencies", "importance",
                   "summary", "lastModified"}
    }

Writes go to a temporary file in the destination directory which is then
renamed over the target, so readers only ever see a complete document.
Loads validate the whole structure before anything is handed back.
"""

import json
import logging
import os
import tempfile
from typing import Any, Dict, List, Optional, Tuple

from .errors import NotFound, PersistenceFailure, ValidationFailure
from .models import FileNode, FileTreeConfig, utc_now

logger = logging.getLogger(__name__)

TREE_FILE_PREFIX = "FileScope-tree-"


def default_tree_filename(project_root: str) -> str:
    name = os.path.basename(project_root.rstrip("/")) or "root"
    return f"{TREE_FILE_PREFIX}{name}.json"


def tree_file_path(filename: str, directory: Optional[str] = None) -> str:
    if directory is None or os.path.isabs(filename):
        return filename
    return os.path.join(directory, filename)


def atomic_write_json(path: str, data: Any) -> None:
    """Write ``data`` as JSON to ``path`` via temp file + rename.

    Raises:
        PersistenceFailure: If any step fails; the previous file is left intact
    """
    directory = os.path.dirname(os.path.abspath(path))
    tmp_path = None
    try:
        os.makedirs(directory, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=directory,
            prefix=".tmp-", suffix=".json", delete=False,
        ) as tmp:
            tmp_path = tmp.name
            json.dump(data, tmp, indent=2)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_path, path)
    except (OSError, TypeError, ValueError) as e:
        if tmp_path and os.path.exists(tmp_path):
            try:
                os.unlink(tmp_path)
            except OSError:
                logger.warning("Could not remove temp file %s", tmp_path)
        raise PersistenceFailure(f"Failed to write {path}: {e}", path=path) from e


def save_file_tree(
    config: FileTreeConfig, tree: FileNode, directory: Optional[str] = None
) -> str:
    """Persist ``tree`` with its config. Returns the written path.

    Raises:
        PersistenceFailure: If the document could not be written
    """
    config.last_updated = utc_now()
    path = tree_file_path(config.filename, directory)
    atomic_write_json(path, {"config": config.to_dict(), "fileTree": tree.to_dict()})
    logger.debug("Saved file tree to %s", path)
    return path


def load_file_tree(
    filename: str, directory: Optional[str] = None
) -> Optional[Tuple[FileNode, FileTreeConfig]]:
    """Load and validate a saved tree.

    Returns:
        (tree, config), or None if the file does not exist.

    Raises:
        PersistenceFailure: If the file exists but is unreadable or not JSON
        ValidationFailure: If the document does not have the expected shape
    """
    path = tree_file_path(filename, directory)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
        raise PersistenceFailure(f"Failed to read {path}: {e}", path=path) from e

    validate_document(data, source=path)
    return FileNode.from_dict(data["fileTree"]), FileTreeConfig.from_dict(data["config"])


def delete_file_tree(filename: str, directory: Optional[str] = None) -> str:
    """Remove a saved tree document. Returns the removed path.

    Raises:
        NotFound: If there is no such document
        PersistenceFailure: If it could not be removed
    """
    path = tree_file_path(filename, directory)
    try:
        os.unlink(path)
    except FileNotFoundError:
        raise NotFound(f"File tree {filename} does not exist", path=path)
    except OSError as e:
        raise PersistenceFailure(f"Failed to delete {path}: {e}", path=path) from e
    return path


def list_saved_trees(directory: str) -> List[Dict[str, Any]]:
    """Summaries of the loadable tree documents in ``directory``.

    Any ``*.json`` holding both ``config`` and ``fileTree`` counts as a tree
    document. Unreadable or malformed ones are logged and left out.
    """
    if not os.path.isdir(directory):
        return []

    trees = []
    for name in sorted(os.listdir(directory)):
        if not name.endswith(".json") or name.startswith("."):
            continue
        path = os.path.join(directory, name)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict) or "fileTree" not in data:
                logger.debug("Skipping %s: not a tree document", path)
                continue
            config = data["config"]
            trees.append({
                "filename": name,
                "baseDirectory": config["baseDirectory"],
                "lastUpdated": config.get("lastUpdated"),
            })
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Skipping unreadable tree document %s: %s", path, e)
    return trees


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

_CONFIG_FIELDS = {
    "filename": str,
    "baseDirectory": str,
}
_OPTIONAL_CONFIG_FIELDS = {
    "projectRoot": str,
    "lastUpdated": str,
}


def _fail(source: str, where: str, problem: str) -> None:
    raise ValidationFailure(f"Invalid tree document {source}: {where} {problem}", path=source)


def _check_str_list(value: Any, source: str, where: str) -> None:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        _fail(source, where, "must be a list of strings")


def validate_document(data: Any, source: str = "<document>") -> None:
    """Check the document shape without trusting any of it.

    Raises:
        ValidationFailure: Naming the first offending field
    """
    if not isinstance(data, dict):
        _fail(source, "document", "must be an object")

    config = data.get("config")
    if not isinstance(config, dict):
        _fail(source, "config", "is missing or not an object")
    for key, kind in _CONFIG_FIELDS.items():
        if not isinstance(config.get(key), kind):
            _fail(source, f"config.{key}", "is missing or has the wrong type")
    for key, kind in _OPTIONAL_CONFIG_FIELDS.items():
        if key in config and config[key] is not None and not isinstance(config[key], kind):
            _fail(source, f"config.{key}", "has the wrong type")

    if "fileTree" not in data:
        _fail(source, "fileTree", "is missing")
    if isinstance(data["fileTree"], dict) and data["fileTree"].get("isDirectory") is False:
        _fail(source, "fileTree", "root must be a directory")

    stack = [(data["fileTree"], "fileTree")]
    seen_paths = set()
    while stack:
        node, where = stack.pop()
        if not isinstance(node, dict):
            _fail(source, where, "must be an object")

        path = node.get("path")
        if not isinstance(path, str) or not path:
            _fail(source, f"{where}.path", "is missing or empty")
        if path in seen_paths:
            _fail(source, f"{where}.path", f"duplicates {path}")
        seen_paths.add(path)

        if not isinstance(node.get("isDirectory"), bool):
            _fail(source, f"{where}.isDirectory", "is missing or not a boolean")

        importance = node.get("importance", 0)
        if isinstance(importance, bool) or not isinstance(importance, (int, float)):
            _fail(source, f"{where}.importance", "must be a number")
        if not 0 <= importance <= 10:
            _fail(source, f"{where}.importance", "must be within [0, 10]")

        summary = node.get("summary")
        if summary is not None and not isinstance(summary, str):
            _fail(source, f"{where}.summary", "must be a string")

        if node["isDirectory"]:
            children = node.get("children", [])
            if not isinstance(children, list):
                _fail(source, f"{where}.children", "must be a list")
            for i, child in enumerate(children):
                stack.append((child, f"{where}.children[{i}]"))
        else:
            for key in ("dependencies", "dependents", "unresolvedDependencies"):
                if key in node:
                    _check_str_list(node[key], source, f"{where}.{key}")
            modified = node.get("lastModified")
            if modified is not None and (
                isinstance(modified, bool) or not isinstance(modified, (int, float))
            ):
                _fail(source, f"{where}.lastModified", "must be a number")
