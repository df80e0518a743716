"""
File system watcher for the site's input folders, built on watchdog.

Responsibility:
    This module turns watchdog notifications under ``Sources``, ``Resources`` and
    ``Content`` into updates of a shared :class:`~publish_runner.debounce.ChangeDebouncer`.
    It never rebuilds anything itself; the main loop decides when to regenerate.

Design:
    - **Event-Driven**: One watchdog ``Observer`` watches all three folders
      recursively. Events arrive on the observer thread.
    - **Coarse Filtering**: Every create, modify, remove and rename of a file or a
      directory counts as a change. Contents are never compared.
    - **All-or-Nothing Setup**: If any of the three folders is missing, starting
      the watcher fails. Watching a subset would hide missed changes.

Key Invariants:
    - The watcher never writes to the watched folders.
    - Each qualifying event updates the debouncer exactly once.
    - ``stop()`` is idempotent.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from publish_runner.debounce import ChangeDebouncer
from publish_runner.errors import WatchFolderNotFoundError
from publish_runner.output import output_status

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

WATCHED_FOLDER_NAMES = ("Sources", "Resources", "Content")


class EventKind(enum.Enum):
    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"
    RENAMED = "renamed"


class EventScope(enum.Enum):
    FILE = "file"
    DIRECTORY = "directory"


_KIND_BY_WATCHDOG_TYPE = {
    EVENT_TYPE_CREATED: EventKind.CREATED,
    EVENT_TYPE_MODIFIED: EventKind.MODIFIED,
    EVENT_TYPE_DELETED: EventKind.REMOVED,
    EVENT_TYPE_MOVED: EventKind.RENAMED,
}


@dataclass(frozen=True)
class WatchEvent:
    """A qualifying change under one of the watched folders.

    Attributes:
        path (str): Path of the changed entry. For renames, the destination.
        kind (EventKind): What happened to the entry.
        scope (EventScope): Whether the entry is a file or a directory.
    """

    path: str
    kind: EventKind
    scope: EventScope

    @classmethod
    def from_watchdog(cls, event: FileSystemEvent) -> Optional["WatchEvent"]:
        """Translate a watchdog event, or return None if it is not a change.

        Opened/closed notifications and any other non-mutating event types are
        not qualifying.
        """
        kind = _KIND_BY_WATCHDOG_TYPE.get(event.event_type)
        if kind is None:
            return None
        path = event.src_path
        if kind is EventKind.RENAMED:
            path = getattr(event, "dest_path", None) or event.src_path
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="replace")
        scope = EventScope.DIRECTORY if event.is_directory else EventScope.FILE
        return cls(path=str(path), kind=kind, scope=scope)

    @property
    def name(self) -> str:
        """Return the last path component, or ``"Unknown"`` if there is none."""
        return Path(self.path).name or "Unknown"


def resolve_watch_folders(site_root: Union[str, Path]) -> List[Path]:
    """Return the absolute paths of the folders to watch.

    Args:
        site_root (Union[str, Path]): The site's root folder.

    Returns:
        List[Path]: ``Sources``, ``Resources`` and ``Content`` under the root.

    Raises:
        WatchFolderNotFoundError: If any of the folders does not exist.
    """
    root = Path(site_root).absolute()
    folders = []
    for name in WATCHED_FOLDER_NAMES:
        folder = root / name
        if not folder.is_dir():
            raise WatchFolderNotFoundError(
                f"Could not find the '{name}' folder to watch at {folder}", folder
            )
        folders.append(folder)
    return folders


class SiteEventHandler(FileSystemEventHandler):
    """Feed watchdog events into the change debouncer.

    Attributes:
        debouncer (ChangeDebouncer): Shared pending-change state.
        events_detected (int): Number of qualifying events seen.
        events_ignored (int): Number of non-qualifying events seen.
    """

    def __init__(self, debouncer: ChangeDebouncer) -> None:
        self.debouncer = debouncer
        self._lock = threading.Lock()
        self._stopped = False
        self.events_detected: int = 0
        self.events_ignored: int = 0
        self.last_event_time: float = 0.0

    def _process_event(self, event: FileSystemEvent) -> None:
        """Record a change for a qualifying event.

        Prints a one-line notice for the first change after a quiet period.
        Runs on the observer thread.
        """
        if self._stopped:
            return

        watch_event = WatchEvent.from_watchdog(event)
        if watch_event is None:
            with self._lock:
                self.events_ignored += 1
            return

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Processing event: {watch_event.kind.value} {watch_event.scope.value} {watch_event.path}")

        is_first = self.debouncer.record_change()
        with self._lock:
            self.events_detected += 1
            self.last_event_time = time.monotonic()

        if is_first:
            output_status(f"Change detected at {watch_event.name}, scheduling regeneration")

    def on_created(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._process_event(event)

    def on_moved(self, event: FileMovedEvent) -> None:
        self._process_event(event)

    def stop(self) -> None:
        self._stopped = True

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "events_detected": self.events_detected,
                "events_ignored": self.events_ignored,
                "last_event_time": self.last_event_time,
            }

    def __repr__(self) -> str:
        return f"<SiteEventHandler events={self.events_detected}>"


class SiteWatcher:
    """Own the watchdog observer for a site's input folders.

    Attributes:
        site_root (Path): Absolute path of the site.
        handler (SiteEventHandler): The event handler scheduled on every folder.
        folders (List[Path]): The folders being watched, set by :meth:`start`.

    Example:
        >>> watcher = SiteWatcher(Path("MySite"), ChangeDebouncer())
        >>> watcher.start()
        >>> # ...
        >>> watcher.stop()
    """

    def __init__(self, site_root: Union[str, Path], debouncer: ChangeDebouncer) -> None:
        self.site_root = Path(site_root).absolute()
        self.handler = SiteEventHandler(debouncer)
        self.folders: List[Path] = []
        self._observer: Optional[Observer] = None
        self._lock = threading.Lock()
        self._started = False
        self._stopping = False

    @property
    def is_running(self) -> bool:
        return (
            self._started
            and not self._stopping
            and self._observer is not None
            and self._observer.is_alive()
        )

    def _start_observer(self) -> None:
        """Create, schedule and start the observer, retrying on OS errors.

        Raises:
            RuntimeError: If the observer could not be started.
        """
        max_retries = 3
        for attempt in range(max_retries):
            try:
                observer = Observer()
                for folder in self.folders:
                    observer.schedule(self.handler, str(folder), recursive=True)
                observer.start()
                self._observer = observer
                logger.info(f"Observer started ({type(observer).__name__})")
                if attempt > 0:
                    logger.info(f"Observer started on attempt {attempt + 1}")
                return
            except OSError as e:
                logger.error(
                    f"OS Error starting observer (attempt {attempt + 1}/{max_retries}): {e} (Check inotify limits?)"
                )
                if attempt < max_retries - 1:
                    time.sleep(0.5)
        raise RuntimeError("Failed to start watchdog observer")

    def start(self) -> None:
        """Start watching ``Sources``, ``Resources`` and ``Content``.

        Raises:
            WatchFolderNotFoundError: If any of the folders is missing.
            RuntimeError: If the observer fails to start.
        """
        with self._lock:
            if self._started:
                return
            self.folders = resolve_watch_folders(self.site_root)
            logger.info(f"Starting watcher on: {', '.join(str(f) for f in self.folders)}")
            self._start_observer()
            self._started = True
            self._stopping = False

    def stop(self) -> None:
        """Stop the observer. Safe to call more than once, or before start."""
        with self._lock:
            if self._stopping or not self._started:
                self._stopping = True
                return
            self._stopping = True
        self.handler.stop()
        observer = self._observer
        if observer is not None:
            try:
                if observer.is_alive():
                    observer.stop()
                    observer.join(timeout=5.0)
                    if observer.is_alive():
                        logger.warning("Observer thread did not terminate within timeout.")
            except Exception as e:
                logger.error(f"Error stopping observer: {e}")
        logger.info("Watcher stopped.")

    def get_statistics(self) -> Dict[str, Any]:
        return self.handler.get_statistics()

    def __repr__(self) -> str:
        return f"<SiteWatcher root={self.site_root} running={self.is_running}>"
