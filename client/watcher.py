"""hotdeploy: Change Watcher

Watches unit source trees with watchdog and emits one debounced UnitChange
per burst of qualifying file events.

watchdog delivers events on its observer thread; they are handed to the
event loop with call_soon_threadsafe, and debounce timers (one per target,
restarted on every qualifying event) live only on the loop.
"""

from __future__ import annotations
import asyncio
import inspect
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from core.errors import safe_text
from core.transfer import IGNORED_SEGMENTS
from models.models import MANIFEST_FILENAME, WatchTarget

logger = logging.getLogger("hotdeploy.watcher")

DEFAULT_DEBOUNCE_SECONDS = 0.5

WATCHED_EXTENSIONS = frozenset({
    ".py", ".pyi", ".json", ".js", ".mjs", ".cjs", ".ts", ".mts",
    ".toml", ".yaml", ".yml", ".html", ".css", ".vue",
})
# Build output is rewritten by every build.
IGNORED_DIRS = IGNORED_SEGMENTS | {"dist", "build"}


@dataclass(frozen=True)
class UnitChange:
    name: str
    root: str
    path: str


def qualifies(root: str, path: str) -> bool:
    """True if path (under root) is a source file worth reacting to."""
    try:
        rel = os.path.relpath(path, root)
    except ValueError:
        return False
    if rel.startswith(os.pardir):
        return False
    parts = rel.split(os.sep)
    for part in parts:
        if part in IGNORED_DIRS or part.startswith("."):
            return False
    _, ext = os.path.splitext(parts[-1])
    return ext.lower() in WATCHED_EXTENSIONS


class _TargetEventHandler(FileSystemEventHandler):
    def __init__(self, watcher: ChangeWatcher, target: WatchTarget):
        super().__init__()
        self._watcher = watcher
        self._target = target

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        for path in (event.src_path, getattr(event, "dest_path", "")):
            if isinstance(path, bytes):
                path = os.fsdecode(path)
            if path and qualifies(self._target.root, path):
                self._watcher.threadsafe_notify(self._target.name, path)
                return


class ChangeWatcher:
    def __init__(
        self,
        on_change: Callable[[UnitChange], Any],
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.on_change = on_change
        self.debounce = debounce
        self._loop = loop
        self._targets: Dict[str, WatchTarget] = {}
        self._observer: Optional[Observer] = None
        self._tasks = set()

    @property
    def targets(self) -> List[WatchTarget]:
        return list(self._targets.values())

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _ensure_observer(self) -> Observer:
        if self._observer is None:
            self._observer = Observer()
            self._observer.daemon = True
            self._observer.start()
        return self._observer

    # --- Targets ---

    def watch(self, path: str) -> List[WatchTarget]:
        """Watch a unit directory, or every unit directory under path.

        A directory holding a manifest is one unit. Otherwise each visible
        subdirectory is its own unit with its own debounce timer.
        """
        path = os.path.abspath(path)
        if not os.path.isdir(path):
            raise FileNotFoundError(f"not a directory: {path}")
        if os.path.isfile(os.path.join(path, MANIFEST_FILENAME)):
            return [self.add_target(os.path.basename(path), path)]
        added = []
        for entry in sorted(os.listdir(path)):
            full = os.path.join(path, entry)
            if entry.startswith(".") or entry in IGNORED_DIRS or not os.path.isdir(full):
                continue
            added.append(self.add_target(entry, full))
        return added

    def add_target(self, name: str, root: str) -> WatchTarget:
        self._get_loop()
        if name in self._targets:
            self.remove_target(name)
        target = WatchTarget(name=name, root=os.path.abspath(root))
        handler = _TargetEventHandler(self, target)
        target.watch_handle = self._ensure_observer().schedule(handler, target.root, recursive=True)
        self._targets[name] = target
        logger.info("Watching %s (%s)", name, target.root)
        return target

    def remove_target(self, name: str) -> bool:
        target = self._targets.pop(name, None)
        if target is None:
            return False
        target.cancel_timer()
        if self._observer is not None and target.watch_handle is not None:
            try:
                self._observer.unschedule(target.watch_handle)
            except (KeyError, ValueError):
                pass
        logger.info("Stopped watching %s", name)
        return True

    def stop(self) -> None:
        for name in list(self._targets):
            self.remove_target(name)
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=2.0)
            self._observer = None

    # --- Debounce ---

    def threadsafe_notify(self, name: str, path: str) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self.notify_change, name, path)

    def notify_change(self, name: str, path: str) -> None:
        """Record a qualifying change. Must run on the event loop."""
        target = self._targets.get(name)
        if target is None:
            return
        logger.debug("Change in %s: %s", name, path)
        target.cancel_timer()
        target.pending_timer = self._get_loop().call_later(self.debounce, self._fire, target, path)

    def _fire(self, target: WatchTarget, path: str) -> None:
        target.pending_timer = None
        if self._targets.get(target.name) is not target:
            return
        change = UnitChange(name=target.name, root=target.root, path=path)
        try:
            outcome = self.on_change(change)
        except Exception as e:
            logger.error("Change handler failed for %s: %s", target.name, safe_text(e), exc_info=True)
            return
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Change handler failed: %s", safe_text(exc))
