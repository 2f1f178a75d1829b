"""
Diff engine: classify changes between an ancestor and a current Snapshot
"""
import os
from typing import Optional
from .models import ChangeKind, ChangeSet, EntryKind, FileChange, FileEntry, Snapshot


def _modified(old: FileEntry, new: FileEntry) -> bool:
    if old.kind != new.kind:
        return True
    if new.kind == EntryKind.FILE:
        return old.size != new.size or old.content_hash != new.content_hash
    if new.kind == EntryKind.SYMLINK:
        return old.target != new.target
    return False


def _shielded(path: str, error_paths: set) -> bool:
    """True if `path` lies at or below a path the scan could not read."""
    if "" in error_paths or path in error_paths:
        return True
    parts = path.split("/")
    return any("/".join(parts[:i]) in error_paths for i in range(1, len(parts)))


def _rename_source(added: FileEntry, candidates: list) -> Optional[FileEntry]:
    """
    Pick the deleted entry an added file was most likely renamed from.
    Heuristic: longest common path prefix, then lexicographically smallest.
    Only transfer efficiency depends on this choice, never correctness.
    """
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda d: (-len(os.path.commonprefix([added.path, d.path])), d.path),
    )


def diff(ancestor: Snapshot, current: Snapshot) -> ChangeSet:
    """
    Changes that turn `ancestor` into `current`.
    Ancestor paths first in ancestor order (a rename sits at its source),
    then new paths in lexicographic order.
    """
    error_paths = {e.path for e in current.errors}

    deleted: dict = {}
    modified: dict = {}
    for path, old in ancestor.entries.items():
        new = current.get(path)
        if new is None:
            if not _shielded(path, error_paths):
                deleted[path] = old
        elif _modified(old, new):
            modified[path] = FileChange(ChangeKind.MODIFIED, path, entry=new, old=old)

    added = [e for p, e in current.entries.items() if p not in ancestor]

    # ── rename detection ─────────────────────────────────────────────────────
    by_content: dict = {}
    for old in deleted.values():
        if old.kind == EntryKind.FILE and old.size > 0 and old.content_hash:
            by_content.setdefault((old.content_hash, old.size), []).append(old)

    renames: dict = {}      # from_path → FileChange
    renamed_to: set = set()
    for new in added:
        if new.kind != EntryKind.FILE or new.size == 0 or not new.content_hash:
            continue
        pool = by_content.get((new.content_hash, new.size))
        src = _rename_source(new, pool or [])
        if src is None:
            continue
        pool.remove(src)
        renames[src.path] = FileChange(ChangeKind.RENAMED, new.path, entry=new,
                                       old=src, from_path=src.path)
        renamed_to.add(new.path)

    # ── ordering ─────────────────────────────────────────────────────────────
    changes = []
    for path in ancestor.entries:
        if path in renames:
            changes.append(renames[path])
        elif path in deleted:
            changes.append(FileChange(ChangeKind.DELETED, path, old=deleted[path]))
        elif path in modified:
            changes.append(modified[path])
    for new in added:
        if new.path not in renamed_to:
            changes.append(FileChange(ChangeKind.ADDED, new.path, entry=new))
    return tuple(changes)
