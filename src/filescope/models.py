"""Data model: file tree nodes, dependency references, and tree configuration.

The file tree is a strict ownership hierarchy (each node owns its children).
Dependency edges are an overlay keyed by normalized path, so the logical
dependency graph may contain cycles while the tree stays acyclic.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional


@dataclass
class Reference:
    """One import/include/require found in a file."""

    raw: str  # specifier as written in the source
    kind: str  # 'import', 'require', 'include', 'use', 'mod'
    line: int
    resolved: Optional[str] = None  # normalized path, None if unresolved

    @property
    def is_resolved(self) -> bool:
        return self.resolved is not None


@dataclass
class FileNode:
    """A file or directory entry in the tracked tree."""

    path: str
    name: str
    is_directory: bool = False
    children: List["FileNode"] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    unresolved_dependencies: List[str] = field(default_factory=list)
    dependents: List[str] = field(default_factory=list)
    importance: float = 0.0
    summary: Optional[str] = None
    last_modified: Optional[float] = None

    def iter_nodes(self) -> Iterator["FileNode"]:
        """Pre-order traversal, self first. Iterative so depth is unbounded."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def iter_files(self) -> Iterator["FileNode"]:
        for node in self.iter_nodes():
            if not node.is_directory:
                yield node

    def sort_children(self) -> None:
        """Directories first, then case-insensitive name order."""
        self.children.sort(key=lambda c: (not c.is_directory, c.name.lower(), c.name))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "path": self.path,
            "name": self.name,
            "isDirectory": self.is_directory,
        }
        if self.is_directory:
            data["children"] = [child.to_dict() for child in self.children]
        else:
            data["dependencies"] = list(self.dependencies)
            data["unresolvedDependencies"] = list(self.unresolved_dependencies)
            data["dependents"] = list(self.dependents)
            data["lastModified"] = self.last_modified
        data["importance"] = self.importance
        if self.summary is not None:
            data["summary"] = self.summary
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileNode":
        """Rebuild a node (recursively). Expects an already validated document."""
        return cls(
            path=data["path"],
            name=data.get("name") or data["path"].rstrip("/").rsplit("/", 1)[-1],
            is_directory=data["isDirectory"],
            children=[cls.from_dict(c) for c in data.get("children", [])],
            dependencies=list(data.get("dependencies", [])),
            unresolved_dependencies=list(data.get("unresolvedDependencies", [])),
            dependents=list(data.get("dependents", [])),
            importance=data.get("importance", 0.0),
            summary=data.get("summary"),
            last_modified=data.get("lastModified"),
        )


@dataclass
class FileWatchingConfig:
    """Options controlling the filesystem watcher."""

    enabled: bool = False
    debounce_ms: int = 300
    ignore_dot_files: bool = True
    auto_rebuild_tree: bool = True
    max_watched_directories: int = 1000
    watch_for_new_files: bool = True
    watch_for_deleted: bool = True
    watch_for_changed: bool = True

    _KEYS = {
        "enabled": "enabled",
        "debounce_ms": "debounceMs",
        "ignore_dot_files": "ignoreDotFiles",
        "auto_rebuild_tree": "autoRebuildTree",
        "max_watched_directories": "maxWatchedDirectories",
        "watch_for_new_files": "watchForNewFiles",
        "watch_for_deleted": "watchForDeleted",
        "watch_for_changed": "watchForChanged",
    }

    def to_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, attr) for attr, key in self._KEYS.items()}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FileWatchingConfig":
        config = cls()
        for attr, key in cls._KEYS.items():
            if data and key in data:
                setattr(config, attr, data[key])
        return config

    def update(self, **changes: Any) -> None:
        """Apply field changes given either as snake_case or camelCase keys."""
        reverse = {key: attr for attr, key in self._KEYS.items()}
        valid = {f.name for f in fields(self)}
        for name, value in changes.items():
            attr = reverse.get(name, name)
            if attr not in valid:
                raise ValueError(f"Unknown file watching option: {name}")
            if value is not None:
                setattr(self, attr, value)
        if self.debounce_ms < 0:
            raise ValueError("debounceMs must be >= 0")
        if self.max_watched_directories < 1:
            raise ValueError("maxWatchedDirectories must be >= 1")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class FileTreeConfig:
    """Identity of one persisted tree."""

    filename: str
    base_directory: str
    project_root: str
    last_updated: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "baseDirectory": self.base_directory,
            "projectRoot": self.project_root,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileTreeConfig":
        return cls(
            filename=data["filename"],
            base_directory=data["baseDirectory"],
            project_root=data.get("projectRoot") or data["baseDirectory"],
            last_updated=data.get("lastUpdated") or utc_now(),
        )
