"""
Conflict reporting
"""
from datetime import datetime, timezone
from typing import Optional, Sequence
from ..core.models import ConflictRecord, EntryKind, FileEntry
from ..state.state_manager import save_conflicts
from ..utils.logging import log, warn


def describe_entry(entry: Optional[FileEntry]) -> str:
    """One-line summary of one side's version of a conflicted path."""
    if entry is None:
        return "deleted"
    if entry.kind == EntryKind.DIR:
        return "directory"
    if entry.kind == EntryKind.SYMLINK:
        return f"symlink → {entry.target}"
    when = ""
    if entry.mtime_ns:
        ts = datetime.fromtimestamp(entry.mtime_ns / 1e9, tz=timezone.utc)
        when = f", modified {ts.strftime('%Y-%m-%d %H:%M:%S')}Z"
    digest = (entry.content_hash or "?")[:12]
    return f"file, {entry.size} bytes, hash {digest}…{when}"


def report_conflicts(conflicts: Sequence[ConflictRecord], alpha_name: str = "alpha",
                     beta_name: str = "beta"):
    """Log each conflict with both sides' metadata. Nothing on disk is touched."""
    if not conflicts:
        return
    warn(f"{len(conflicts)} conflict(s) left untouched on both sides:")
    for c in conflicts:
        log(f"  [conflict] {c.path}")
        log(f"    reason : {c.reason}")
        log(f"    {alpha_name:<6} : {describe_entry(c.alpha)}")
        log(f"    {beta_name:<6} : {describe_entry(c.beta)}")
    log("  Resolve by hand on one side (or make both equal), then sync again.")


def record_conflicts(root: str, peer: str, conflicts: Sequence[ConflictRecord]):
    """Persist the session's conflicts next to its state record."""
    save_conflicts(root, peer, list(conflicts))
