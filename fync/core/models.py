"""
Data model: entries, snapshots, changes, conflicts and apply instructions
"""
import hashlib
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple


class EntryKind(str, Enum):
    FILE = "file"
    DIR = "dir"
    SYMLINK = "symlink"


@dataclass(frozen=True)
class FileEntry:
    """Metadata of one path in a tree. `content_hash` is None for directories."""

    path: str
    kind: EntryKind
    size: int = 0
    mtime_ns: int = 0
    content_hash: Optional[str] = None
    target: Optional[str] = None
    mode: int = 0o644

    def same_content(self, other: Optional["FileEntry"]) -> bool:
        """Content equality across machines: mtime and mode do not count."""
        if other is None or other.kind != self.kind:
            return False
        if self.kind == EntryKind.FILE:
            return self.content_hash == other.content_hash and self.size == other.size
        if self.kind == EntryKind.SYMLINK:
            return self.target == other.target
        return True

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"kind": self.kind.value, "mode": self.mode}
        if self.kind == EntryKind.FILE:
            d.update(size=self.size, mtime_ns=self.mtime_ns, hash=self.content_hash)
        elif self.kind == EntryKind.SYMLINK:
            d.update(target=self.target, mtime_ns=self.mtime_ns)
        return d

    @classmethod
    def from_dict(cls, path: str, data: Dict[str, Any]) -> "FileEntry":
        return cls(
            path=path,
            kind=EntryKind(data["kind"]),
            size=int(data.get("size", 0)),
            mtime_ns=int(data.get("mtime_ns", 0)),
            content_hash=data.get("hash"),
            target=data.get("target"),
            mode=int(data.get("mode", 0o644)),
        )


def same_content(a: Optional[FileEntry], b: Optional[FileEntry]) -> bool:
    """None means 'absent'; two absences agree."""
    if a is None or b is None:
        return a is None and b is None
    return a.same_content(b)


@dataclass(frozen=True)
class ScanError:
    path: str
    detail: str


@dataclass(frozen=True)
class Snapshot:
    """
    Immutable point-in-time record of a tree.
    Entries are kept sorted by path so iteration order is deterministic.
    """

    root: str
    generation: int = 0
    entries: Mapping[str, FileEntry] = field(default_factory=dict)
    errors: Tuple[ScanError, ...] = ()

    def __post_init__(self):
        ordered = {p: self.entries[p] for p in sorted(self.entries)}
        object.__setattr__(self, "entries", MappingProxyType(ordered))
        object.__setattr__(self, "errors", tuple(self.errors))

    def __contains__(self, path: str) -> bool:
        return path in self.entries

    def __iter__(self) -> Iterator[str]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, path: str) -> Optional[FileEntry]:
        return self.entries.get(path)

    def with_generation(self, generation: int) -> "Snapshot":
        return replace(self, generation=generation, entries=dict(self.entries))

    def digest(self) -> str:
        """Fingerprint of the content both peers must agree on (no mtimes)."""
        h = hashlib.sha256()
        for path, e in self.entries.items():
            h.update(f"{path}\0{e.kind.value}\0{e.content_hash or ''}\0{e.target or ''}\n"
                     .encode("utf-8", "surrogateescape"))
        return h.hexdigest()


def empty_snapshot(root: str = "", generation: int = 0) -> Snapshot:
    return Snapshot(root=root, generation=generation)


# ── changes ──────────────────────────────────────────────────────────────────

class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


@dataclass(frozen=True)
class FileChange:
    """
    One change of one side relative to the ancestor.

    ADDED    entry=new,  old=None
    MODIFIED entry=new,  old=ancestor entry
    DELETED  entry=None, old=ancestor entry
    RENAMED  entry=new (at path), old=ancestor entry (at from_path)
    """

    kind: ChangeKind
    path: str
    entry: Optional[FileEntry] = None
    old: Optional[FileEntry] = None
    from_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"kind": self.kind.value, "path": self.path}
        if self.entry is not None:
            d["entry"] = self.entry.to_dict()
        if self.old is not None:
            d["old"] = self.old.to_dict()
        if self.from_path is not None:
            d["from"] = self.from_path
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileChange":
        kind = ChangeKind(data["kind"])
        path = data["path"]
        from_path = data.get("from")
        entry = FileEntry.from_dict(path, data["entry"]) if data.get("entry") else None
        old_path = from_path if kind == ChangeKind.RENAMED else path
        old = FileEntry.from_dict(old_path, data["old"]) if data.get("old") else None
        if kind in (ChangeKind.ADDED, ChangeKind.MODIFIED, ChangeKind.RENAMED) and entry is None:
            raise ValueError(f"{kind.value} change for {path!r} carries no entry")
        if kind in (ChangeKind.DELETED, ChangeKind.MODIFIED, ChangeKind.RENAMED) and old is None:
            raise ValueError(f"{kind.value} change for {path!r} carries no ancestor entry")
        if kind == ChangeKind.RENAMED and not from_path:
            raise ValueError(f"rename to {path!r} has no source path")
        return cls(kind=kind, path=path, entry=entry, old=old, from_path=from_path)

    def effects(self) -> Iterator[Tuple[str, Optional[FileEntry]]]:
        """(path, resulting entry) pairs this change produces; None = removed."""
        if self.kind == ChangeKind.RENAMED:
            yield self.from_path, None
            yield self.path, self.entry
        else:
            yield self.path, self.entry


ChangeSet = Tuple[FileChange, ...]


@dataclass(frozen=True)
class ConflictRecord:
    """A path both sides changed incompatibly. Never applied."""

    path: str
    alpha: Optional[FileEntry]
    beta: Optional[FileEntry]
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "alpha": self.alpha.to_dict() if self.alpha else None,
            "beta": self.beta.to_dict() if self.beta else None,
            "reason": self.reason,
        }


# ── apply plan ───────────────────────────────────────────────────────────────

class Side(str, Enum):
    ALPHA = "alpha"   # session initiator
    BETA = "beta"

    @property
    def other(self) -> "Side":
        return Side.BETA if self is Side.ALPHA else Side.ALPHA


class Op(str, Enum):
    WRITE = "write"     # needs content from the peer
    LINK = "link"
    MKDIR = "mkdir"
    DELETE = "delete"   # file or symlink
    RMDIR = "rmdir"
    MOVE = "move"       # local rename, no content transfer


@dataclass(frozen=True)
class ApplyInstruction:
    """
    One filesystem step for one side.
    `previous` is what the target side is expected to hold at `path` now
    (for MOVE: at `from_path`).
    """

    op: Op
    side: Side
    path: str
    entry: Optional[FileEntry] = None
    previous: Optional[FileEntry] = None
    from_path: Optional[str] = None

    def touched_paths(self) -> Tuple[str, ...]:
        if self.op == Op.MOVE:
            return (self.from_path, self.path)
        return (self.path,)
