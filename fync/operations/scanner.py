"""
Tree scanning: build a Snapshot, reusing prior hashes for unchanged files
"""
import os
import stat
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterable, Optional
from .. import config as _cfg
from ..core.models import EntryKind, FileEntry, ScanError, Snapshot
from ..utils.logging import vlog
from ..utils.ignore_patterns import STAGING_DIR, is_ignored, is_temporary
from ..utils.file_utils import _file_changed, hash_file, parent_of, rel_to_path


def _entry_from_stat(rel: str, full: Path, st: os.stat_result) -> Optional[FileEntry]:
    """Entry without a content hash; None for unsupported file types."""
    mode = stat.S_IMODE(st.st_mode)
    if stat.S_ISLNK(st.st_mode):
        return FileEntry(path=rel, kind=EntryKind.SYMLINK, size=st.st_size,
                         mtime_ns=st.st_mtime_ns, target=os.readlink(full), mode=mode)
    if stat.S_ISDIR(st.st_mode):
        return FileEntry(path=rel, kind=EntryKind.DIR, mode=mode)
    if stat.S_ISREG(st.st_mode):
        return FileEntry(path=rel, kind=EntryKind.FILE, size=st.st_size,
                         mtime_ns=st.st_mtime_ns, mode=mode)
    return None


def _walk(root: Path, start: str, found: dict, errors: list):
    """Depth-first walk from `start` (a relative dir, '' for the root)."""
    stack = [start]
    while stack:
        rel_dir = stack.pop()
        full_dir = rel_to_path(root, rel_dir) if rel_dir else root
        try:
            with os.scandir(full_dir) as it:
                children = sorted(it, key=lambda d: d.name)
        except OSError as exc:
            errors.append(ScanError(rel_dir, exc.strerror or str(exc)))
            continue
        for child in children:
            rel = f"{rel_dir}/{child.name}" if rel_dir else child.name
            if is_ignored(rel):
                continue
            try:
                entry = _entry_from_stat(rel, Path(child.path), child.stat(follow_symlinks=False))
            except OSError as exc:
                errors.append(ScanError(rel, exc.strerror or str(exc)))
                continue
            if entry is None:
                vlog(f"  [SKIP-SPECIAL] {rel}")
                continue
            found[rel] = entry
            if entry.kind == EntryKind.DIR:
                stack.append(rel)


def _hash_entries(root: Path, found: dict, prior: Optional[Snapshot],
                  workers: Optional[int], errors: list) -> dict:
    """Fill in content hashes, hashing only files whose size/mtime moved."""
    result = dict(found)
    pending = []
    for rel, entry in found.items():
        if entry.kind != EntryKind.FILE:
            continue
        prev = prior.get(rel) if prior is not None else None
        if (prev is not None and prev.kind == EntryKind.FILE and prev.content_hash
                and not _file_changed(entry.mtime_ns, entry.size, prev.mtime_ns, prev.size)):
            result[rel] = FileEntry(path=rel, kind=entry.kind, size=entry.size,
                                    mtime_ns=entry.mtime_ns, content_hash=prev.content_hash,
                                    mode=entry.mode)
        else:
            pending.append(entry)

    if not pending:
        return result

    vlog(f"[scan] hashing {len(pending)} file(s)")
    max_workers = workers or _cfg.WORKERS or os.cpu_count() or 4
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = [(e, pool.submit(hash_file, root / e.path)) for e in pending]
        for entry, fut in futures:
            try:
                digest = fut.result()
            except OSError as exc:
                errors.append(ScanError(entry.path, exc.strerror or str(exc)))
                del result[entry.path]
                continue
            result[entry.path] = FileEntry(path=entry.path, kind=entry.kind, size=entry.size,
                                           mtime_ns=entry.mtime_ns, content_hash=digest,
                                           mode=entry.mode)
    return result


def scan(root: Path, prior: Optional[Snapshot] = None, generation: int = 0,
         workers: Optional[int] = None) -> Snapshot:
    """
    Walk `root` and return a complete Snapshot.
    `prior` supplies hashes for files whose (size, mtime) did not change.
    Unreadable paths end up in Snapshot.errors instead of aborting the scan.
    """
    root = Path(root)
    found: dict = {}
    errors: list = []
    _walk(root, "", found, errors)
    entries = _hash_entries(root, found, prior, workers, errors)
    return Snapshot(root=str(root), generation=generation, entries=entries, errors=tuple(errors))


def refresh_paths(snapshot: Snapshot, paths: Iterable[str],
                  workers: Optional[int] = None) -> Snapshot:
    """
    Re-examine only `paths` (relative) and return an updated Snapshot.
    A path that became a directory is walked; a vanished directory drops
    its whole subtree.
    """
    root = Path(snapshot.root)
    entries = dict(snapshot.entries)
    found: dict = {}
    errors: list = []
    for rel in sorted(set(paths)):
        if not rel or is_ignored(rel):
            continue
        full = rel_to_path(root, rel)
        prefix = rel + "/"
        try:
            st = os.lstat(full)
        except FileNotFoundError:
            entries.pop(rel, None)
            for p in [p for p in entries if p.startswith(prefix)]:
                del entries[p]
            continue
        except OSError as exc:
            errors.append(ScanError(rel, exc.strerror or str(exc)))
            continue
        entry = _entry_from_stat(rel, full, st)
        if entry is None:
            entries.pop(rel, None)
            continue
        if entry.kind != EntryKind.DIR:
            for p in [p for p in entries if p.startswith(prefix)]:
                del entries[p]
        found[rel] = entry
        if entry.kind == EntryKind.DIR and rel not in entries:
            _walk(root, rel, found, errors)
        # new parents of a new path (e.g. created by `mkdir -p`)
        parent = parent_of(rel)
        while parent and parent not in entries and parent not in found:
            try:
                pe = _entry_from_stat(parent, rel_to_path(root, parent),
                                      os.lstat(rel_to_path(root, parent)))
            except OSError:
                break
            if pe is None:
                break
            found[parent] = pe
            parent = parent_of(parent)

    hashed = _hash_entries(root, found, snapshot, workers, errors)
    entries.update(hashed)
    for err in errors:
        entries.pop(err.path, None)
    return Snapshot(root=str(root), generation=snapshot.generation,
                    entries=entries, errors=tuple(errors))


def find_orphans(root: Path) -> list:
    """
    Leftover staging artefacts from an interrupted session: sibling
    *.fync-tmp files anywhere in the tree plus the staging directory.
    """
    root = Path(root)
    orphans = []
    staging = root / STAGING_DIR
    if staging.exists():
        orphans.append(staging)
    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        dirnames[:] = [
            d for d in dirnames
            if not is_ignored(d if rel_dir == "." else f"{rel_dir}/{d}")
        ]
        for name in filenames:
            if is_temporary(name):
                orphans.append(Path(dirpath) / name)
    return orphans
