"""Filesystem watching with per-path debouncing.

Debouncer keeps one cancellable timer per path. Each new event for a path
restarts its timer, so a burst of events collapses into a single callback
once the path has been quiet for ``debounce_ms``. Per path the states are
idle -> pending -> fired -> idle.

FileWatcher feeds watchdog events into a Debouncer. It watches each tracked
directory non-recursively so the number of watches can be capped at
``max_watched_directories``; directories discovered past the cap are
reported and left unwatched, existing watches are never evicted.
"""

import enum
import logging
import os
import threading
from typing import Callable, Dict, Iterable, List, Optional

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .ignore import IgnoreFilter
from .models import FileWatchingConfig
from .paths import is_within, normalize_path, relative_to

logger = logging.getLogger(__name__)


class EventKind(enum.Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


EventCallback = Callable[[str, EventKind], None]

# Placeholder in FileWatcher._watches while observer.schedule runs
_RESERVED = object()


class Debouncer:
    """Per-key timer table with reset-on-event semantics."""

    def __init__(self, debounce_ms: int, callback: EventCallback):
        self.debounce_ms = debounce_ms
        self.callback = callback
        self._timers: Dict[str, threading.Timer] = {}
        self._tokens: Dict[str, object] = {}
        self._kinds: Dict[str, EventKind] = {}
        self._lock = threading.Lock()

    def push(self, path: str, kind: EventKind) -> None:
        """Record an event; restarts the path's timer if one is pending."""
        token = object()
        timer = threading.Timer(self.debounce_ms / 1000.0, self._fire, args=(path, token))
        timer.daemon = True
        with self._lock:
            existing = self._timers.get(path)
            if existing is not None:
                existing.cancel()
            self._timers[path] = timer
            self._tokens[path] = token
            self._kinds[path] = kind
            timer.start()

    def _fire(self, path: str, token: object) -> None:
        with self._lock:
            # A reset between expiry and here replaced the timer; let the new one fire
            if self._tokens.get(path) is not token:
                return
            del self._timers[path]
            del self._tokens[path]
            kind = self._kinds.pop(path)

        try:
            self.callback(path, kind)
        except Exception:
            logger.exception("File event handler failed for %s (%s)", path, kind.value)

    def cancel(self, path: str) -> bool:
        """Drop a pending timer. Returns True if one was pending."""
        with self._lock:
            timer = self._timers.pop(path, None)
            self._kinds.pop(path, None)
            self._tokens.pop(path, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def cancel_many(self, paths: Iterable[str]) -> int:
        return sum(1 for path in paths if self.cancel(path))

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            self._kinds.clear()
            self._tokens.clear()
        for timer in timers:
            timer.cancel()

    def pending(self) -> List[str]:
        with self._lock:
            return sorted(self._timers)

    def is_pending(self, path: str) -> bool:
        with self._lock:
            return path in self._timers


class _WatchdogHandler(FileSystemEventHandler):
    """Translates watchdog events into debounced (path, kind) pairs."""

    def __init__(self, watcher: "FileWatcher"):
        super().__init__()
        self.watcher = watcher

    def on_created(self, event: FileSystemEvent):
        path = self.watcher.accept(event.src_path, is_dir=event.is_directory)
        if path is None:
            return
        if isinstance(event, DirCreatedEvent):
            self.watcher.watch_directory(path)
        self.watcher.debouncer.push(path, EventKind.CREATED)

    def on_modified(self, event: FileSystemEvent):
        if isinstance(event, DirModifiedEvent):
            return
        path = self.watcher.accept(event.src_path)
        if path is not None:
            self.watcher.debouncer.push(path, EventKind.MODIFIED)

    def on_deleted(self, event: FileSystemEvent):
        path = self.watcher.accept(event.src_path, is_dir=event.is_directory)
        if path is None:
            return
        if isinstance(event, DirDeletedEvent):
            self.watcher.unwatch_directory(path)
        self.watcher.debouncer.push(path, EventKind.DELETED)

    def on_moved(self, event: FileSystemEvent):
        src = self.watcher.accept(event.src_path, is_dir=event.is_directory)
        dest = self.watcher.accept(event.dest_path, is_dir=event.is_directory)
        if isinstance(event, DirMovedEvent):
            if src is not None:
                self.watcher.unwatch_directory(src)
            if dest is not None:
                self.watcher.watch_directory(dest)
        if src is not None:
            self.watcher.debouncer.push(src, EventKind.DELETED)
        if dest is not None:
            self.watcher.debouncer.push(dest, EventKind.CREATED)


class FileWatcher:
    """Watches a project's directories and reports debounced path events.

    Usage:
        watcher = FileWatcher(root, config, on_event=context.handle_file_event)
        watcher.start(directories)
        ...
        watcher.stop()
    """

    def __init__(
        self,
        project_root: str,
        config: FileWatchingConfig,
        on_event: EventCallback,
        ignore_filter: Optional[IgnoreFilter] = None,
    ):
        self.project_root = normalize_path(project_root)
        self.config = config
        self.ignore_filter = ignore_filter or IgnoreFilter(
            self.project_root, ignore_dot_files=config.ignore_dot_files
        )
        self.debouncer = Debouncer(config.debounce_ms, on_event)
        self.limit_reached = False
        self._watches: Dict[str, object] = {}
        self._watch_lock = threading.Lock()
        self._observer: Optional[Observer] = None
        self._handler = _WatchdogHandler(self)

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    @property
    def watched_directories(self) -> List[str]:
        with self._watch_lock:
            return sorted(self._watches)

    def accept(self, raw_path, is_dir: bool = False) -> Optional[str]:
        """Normalized path if the event should be processed, else None."""
        if isinstance(raw_path, bytes):
            raw_path = os.fsdecode(raw_path)
        path = normalize_path(raw_path)
        if path == self.project_root or not is_within(path, self.project_root):
            return None
        rel = relative_to(path, self.project_root)
        if self.config.ignore_dot_files and any(p.startswith(".") for p in rel.split("/")):
            return None
        if self.ignore_filter.should_ignore(rel, is_dir=is_dir):
            return None
        return path

    def start(self, directories: Iterable[str]) -> None:
        """Begin watching the root plus the given directories (up to the cap)."""
        if self._observer is not None:
            logger.warning("File watcher already running for %s", self.project_root)
            return

        self._observer = Observer()
        self.watch_directory(self.project_root)
        for directory in directories:
            self.watch_directory(directory)
        self._observer.start()
        logger.info("File watcher started for %s (%d directories, debounce %dms)",
                    self.project_root, len(self.watched_directories), self.config.debounce_ms)

    def watch_directory(self, directory: str) -> bool:
        """Add a non-recursive watch. Returns False if capped or already watched.

        The slot is reserved under ``_watch_lock``; the observer is only ever
        called with that lock released.
        """
        directory = normalize_path(directory)
        with self._watch_lock:
            observer = self._observer
            if observer is None or directory in self._watches:
                return False
            if len(self._watches) >= self.config.max_watched_directories:
                if not self.limit_reached:
                    logger.warning(
                        "Watched directory limit (%d) reached; %s and later "
                        "directories will not be watched",
                        self.config.max_watched_directories, directory,
                    )
                self.limit_reached = True
                return False
            self._watches[directory] = _RESERVED

        try:
            watch = observer.schedule(self._handler, directory, recursive=False)
        except OSError as e:
            with self._watch_lock:
                if self._watches.get(directory) is _RESERVED:
                    del self._watches[directory]
            logger.warning("Cannot watch %s: %s", directory, e)
            return False

        with self._watch_lock:
            if self._observer is observer and self._watches.get(directory) is _RESERVED:
                self._watches[directory] = watch
                return True
        # Unwatched or stopped while scheduling
        self._unschedule(observer, directory, watch)
        return False

    def unwatch_directory(self, directory: str) -> None:
        """Drop watches on ``directory`` and everything below it."""
        directory = normalize_path(directory)
        with self._watch_lock:
            observer = self._observer
            doomed = [(d, self._watches.pop(d)) for d in list(self._watches) if is_within(d, directory)]
        for d, watch in doomed:
            if observer is not None and watch is not _RESERVED:
                self._unschedule(observer, d, watch)

    @staticmethod
    def _unschedule(observer: Observer, directory: str, watch: object) -> None:
        try:
            observer.unschedule(watch)
        except (KeyError, OSError) as e:
            logger.debug("Unschedule of %s failed: %s", directory, e)

    def cancel_pending(self, paths: Iterable[str]) -> int:
        """Cancel debounce timers for paths removed from the tree."""
        return self.debouncer.cancel_many(paths)

    def stop(self) -> None:
        self.debouncer.cancel_all()
        observer = self._observer
        if observer is None:
            return
        with self._watch_lock:
            self._observer = None
            self._watches.clear()
        observer.stop()
        observer.join(timeout=5.0)
        logger.info("File watcher stopped for %s", self.project_root)

    def status(self) -> Dict[str, object]:
        return {
            "isActive": self.is_running,
            "watchedDirectories": len(self.watched_directories),
            "maxWatchedDirectories": self.config.max_watched_directories,
            "limitReached": self.limit_reached,
            "pendingEvents": len(self.debouncer.pending()),
        }
