"""
Watch mode: report local changes as they happen (no network, no state writes)
"""
import os
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Set
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer
from .. import config as _cfg
from ..core.differ import diff
from ..core.models import ChangeKind, ChangeSet, Snapshot
from ..utils.logging import log, vlog
from ..utils.ignore_patterns import is_ignored
from .scanner import refresh_paths, scan


class ChangeCollector(FileSystemEventHandler):
    """
    Turns watchdog events into a set of "possibly changed" relative paths.
    Event kinds are not trusted; every path is re-examined on refresh.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._pending: Set[str] = set()
        self._last = 0.0
        self._guard = threading.Lock()

    def _rel(self, raw) -> Optional[str]:
        if isinstance(raw, bytes):
            raw = os.fsdecode(raw)
        try:
            rel = Path(raw).relative_to(self.root).as_posix()
        except ValueError:
            return None
        if rel in ("", ".") or is_ignored(rel):
            return None
        return rel

    def notify(self, rel: str):
        with self._guard:
            self._pending.add(rel)
            self._last = time.monotonic()

    def on_any_event(self, event):
        if event.event_type in ("opened", "closed", "closed_no_write"):
            return
        for raw in (event.src_path, getattr(event, "dest_path", "")):
            if not raw:
                continue
            rel = self._rel(raw)
            if rel is not None:
                self.notify(rel)

    def take(self, quiet: float, now: Optional[float] = None) -> Set[str]:
        """Pending paths, once no notification arrived for `quiet` seconds."""
        now = time.monotonic() if now is None else now
        with self._guard:
            if not self._pending or now - self._last < quiet:
                return set()
            paths, self._pending = self._pending, set()
            return paths


def print_changes(changes: ChangeSet):
    marks = {ChangeKind.ADDED: "+", ChangeKind.MODIFIED: "~", ChangeKind.DELETED: "-"}
    for c in changes:
        if c.kind == ChangeKind.RENAMED:
            log(f"  [watch] → {c.from_path} → {c.path}")
        else:
            log(f"  [watch] {marks[c.kind]} {c.path}")


class Watcher:
    """
    Keeps a current Snapshot of `root` and reports every difference to the
    previous one. Notified paths are refreshed after the debounce quiet
    period; a full rescan runs every `interval` seconds as a fallback for
    missed events.
    """

    def __init__(self, root: Path, interval: Optional[float] = None,
                 debounce: Optional[float] = None,
                 on_changes: Callable[[ChangeSet], None] = print_changes):
        self.root = Path(root).resolve()
        self.interval = _cfg.WATCH_INTERVAL if interval is None else interval
        self.debounce = _cfg.DEBOUNCE if debounce is None else debounce
        self.on_changes = on_changes
        self.collector = ChangeCollector(self.root)
        self.snapshot: Snapshot = scan(self.root)
        self._last_full = time.monotonic()
        log(f"[watch] {self.root}: {len(self.snapshot)} entries")

    def _advance(self, new: Snapshot) -> ChangeSet:
        changes = diff(self.snapshot, new)
        self.snapshot = new
        if changes:
            self.on_changes(changes)
        return changes

    def tick(self, now: Optional[float] = None) -> ChangeSet:
        """One polling step; returns the changes it reported."""
        now = time.monotonic() if now is None else now
        if self.interval > 0 and now - self._last_full >= self.interval:
            self.collector.take(0.0, now)
            self._last_full = now
            vlog("[watch] periodic full rescan")
            return self._advance(scan(self.root, prior=self.snapshot))
        paths = self.collector.take(self.debounce, now)
        if not paths:
            return ()
        vlog(f"[watch] refreshing {len(paths)} path(s)")
        return self._advance(refresh_paths(self.snapshot, paths))

    def run(self, stop: Optional[threading.Event] = None):
        """Block until interrupted (or `stop` is set)."""
        observer = Observer()
        observer.schedule(self.collector, str(self.root), recursive=True)
        observer.start()
        log("[watch] watching … (Ctrl+C to stop)")
        try:
            while stop is None or not stop.is_set():
                time.sleep(min(0.2, self.debounce or 0.2))
                self.tick()
        except KeyboardInterrupt:
            log("[watch] stopping …")
        finally:
            observer.stop()
            observer.join(timeout=10)
