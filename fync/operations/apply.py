"""
Apply engine: execute one side's instructions against its tree
"""
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional
from ..core.errors import SyncIOError
from ..core.models import ApplyInstruction, EntryKind, FileEntry, Op, Snapshot
from ..utils.logging import log, vlog, warn
from ..utils.file_utils import depth, fsync_dir, rel_to_path, staging_path, temp_sibling


@dataclass
class ApplyResult:
    written: Dict[str, FileEntry] = field(default_factory=dict)   # path → entry as now on disk
    failed: Dict[str, str] = field(default_factory=dict)          # path → reason


def _matches(full: Path, expected: Optional[FileEntry]) -> bool:
    """
    True if the path still holds what the scan saw.
    Files and symlinks compare (size, mtime_ns); absence must stay absence.
    """
    try:
        st = os.lstat(full)
    except FileNotFoundError:
        return expected is None
    if expected is None:
        return False
    if stat.S_ISDIR(st.st_mode):
        return expected.kind == EntryKind.DIR
    if stat.S_ISLNK(st.st_mode):
        kind = EntryKind.SYMLINK
    elif stat.S_ISREG(st.st_mode):
        kind = EntryKind.FILE
    else:
        return False
    return kind == expected.kind and st.st_size == expected.size and st.st_mtime_ns == expected.mtime_ns


class ApplyEngine:
    """
    Order:
      1. move sources out to temporary names (handles swaps and cycles)
      2. delete files and symlinks
      3. remove directories, deepest first
      4. create directories, shallowest first
      5. place moved files, promote staged writes, create symlinks
    Every destructive step re-checks the target against `current`; a path
    changed during the session is reported as failed and left alone.
    """

    def __init__(self, root: Path, current: Snapshot, staged: Dict[str, Path]):
        self.root = Path(root)
        self.current = current
        self.staged = staged
        self.result = ApplyResult()

    def _full(self, rel: str) -> Path:
        return rel_to_path(self.root, rel)

    def _fail(self, step: ApplyInstruction, detail: str):
        for p in step.touched_paths():
            self.result.failed[p] = detail
        warn(f"[apply] {step.op.value} {step.path}: {detail}")

    def _guard(self, rel: str):
        if not _matches(self._full(rel), self.current.get(rel)):
            raise SyncIOError(rel, "changed on disk during the session")

    def run(self, steps: List[ApplyInstruction]) -> ApplyResult:
        moves = [s for s in steps if s.op == Op.MOVE]
        deletes = [s for s in steps if s.op == Op.DELETE
                   or (s.previous is not None and s.previous.kind != EntryKind.DIR
                       and s.op == Op.MKDIR)]
        rmdirs = [s for s in steps if s.op == Op.RMDIR
                  or (s.previous is not None and s.previous.kind == EntryKind.DIR
                      and s.op in (Op.WRITE, Op.LINK))]
        mkdirs = [s for s in steps if s.op == Op.MKDIR]
        creates = [s for s in steps if s.op in (Op.WRITE, Op.LINK)]

        parked: Dict[str, Path] = {}
        for step in moves:
            self._step(self._park, step, parked)
        for step in deletes:
            self._step(self._delete, step)
        for step in sorted(rmdirs, key=lambda s: (-depth(s.path), s.path)):
            self._step(self._rmdir, step)
        for step in sorted(mkdirs, key=lambda s: (depth(s.path), s.path)):
            self._step(self._mkdir, step)
        for step in moves:
            if step.from_path in parked:
                self._step(self._place, step, parked)
        for step in creates:
            self._step(self._create, step)
        return self.result

    def _step(self, fn, step: ApplyInstruction, *args):
        if any(p in self.result.failed for p in step.touched_paths()):
            return
        try:
            fn(step, *args)
        except SyncIOError as exc:
            self._fail(step, exc.detail)
        except OSError as exc:
            self._fail(step, exc.strerror or str(exc))

    # ── steps ────────────────────────────────────────────────────────────────

    def _park(self, step: ApplyInstruction, parked: Dict[str, Path]):
        self._guard(step.from_path)
        if self.current.get(step.from_path) is None:
            raise SyncIOError(step.from_path, "move source is missing")
        temp = staging_path(self.root)
        os.replace(self._full(step.from_path), temp)
        parked[step.from_path] = temp
        self.result.written.pop(step.from_path, None)

    def _place(self, step: ApplyInstruction, parked: Dict[str, Path]):
        temp = parked.pop(step.from_path)
        full = self._full(step.path)
        try:
            if os.path.lexists(full):
                raise SyncIOError(step.path, "move destination appeared during the session")
            os.replace(temp, full)
        except (OSError, SyncIOError):
            # put the file back where it was
            os.replace(temp, self._full(step.from_path))
            raise
        self._record(step.path, step.entry)
        log(f"  [apply] moved {step.from_path} → {step.path}")

    def _delete(self, step: ApplyInstruction):
        full = self._full(step.path)
        self._guard(step.path)
        if os.path.lexists(full):
            os.unlink(full)
            vlog(f"  [apply] deleted {step.path}")

    def _rmdir(self, step: ApplyInstruction):
        full = self._full(step.path)
        if not os.path.lexists(full):
            return
        self._guard(step.path)
        try:
            os.rmdir(full)
        except OSError as exc:
            if os.path.isdir(full) and os.listdir(full):
                raise SyncIOError(step.path, "directory is not empty") from exc
            raise
        vlog(f"  [apply] removed directory {step.path}")

    def _mkdir(self, step: ApplyInstruction):
        full = self._full(step.path)
        if not os.path.isdir(full) or os.path.islink(full):
            os.mkdir(full)
            os.chmod(full, step.entry.mode)
            vlog(f"  [apply] created directory {step.path}")
        self._record(step.path, step.entry)

    def _create(self, step: ApplyInstruction):
        full = self._full(step.path)
        if step.previous is not None and step.previous.kind != EntryKind.DIR:
            self._guard(step.path)
        elif os.path.lexists(full):
            raise SyncIOError(step.path, "path appeared during the session")

        if step.op == Op.LINK:
            temp = temp_sibling(full)
            os.symlink(step.entry.target, temp)
        else:
            temp = self.staged.get(step.path)
            if temp is None:
                raise SyncIOError(step.path, "content never arrived")
            os.chmod(temp, step.entry.mode)
            if step.entry.mtime_ns:
                os.utime(temp, ns=(step.entry.mtime_ns, step.entry.mtime_ns))
        try:
            os.replace(temp, full)
        except OSError:
            if step.op == Op.LINK:
                os.unlink(temp)
            raise
        self.staged.pop(step.path, None)
        fsync_dir(full.parent)
        self._record(step.path, step.entry)
        vlog(f"  [apply] {'linked' if step.op == Op.LINK else 'wrote'} {step.path}")

    def _record(self, rel: str, entry: FileEntry):
        """Remember the entry with this side's own stat data."""
        if entry.kind == EntryKind.DIR:
            self.result.written[rel] = FileEntry(path=rel, kind=EntryKind.DIR, mode=entry.mode)
            return
        st = os.lstat(self._full(rel))
        self.result.written[rel] = FileEntry(path=rel, kind=entry.kind, size=st.st_size,
                                             mtime_ns=st.st_mtime_ns,
                                             content_hash=entry.content_hash,
                                             target=entry.target,
                                             mode=stat.S_IMODE(st.st_mode))


def apply_plan(root: Path, current: Snapshot, steps: List[ApplyInstruction],
               staged: Dict[str, Path]) -> ApplyResult:
    """Execute `steps` (all for this side); per-path failures are collected, not raised."""
    if not steps:
        return ApplyResult()
    result = ApplyEngine(root, current, staged).run(steps)
    done = len({p for s in steps for p in s.touched_paths()} - set(result.failed))
    log(f"[apply] {done} path(s) updated, {len(result.failed)} failed")
    return result
