"""
Conflict resolver: merge both sides' ChangeSets against the shared ancestor.

`reconcile()` is a pure function of its inputs. Each peer runs it on the same
(ancestor, alpha changes, beta changes) triple and therefore derives the same
plan without anybody arbitrating.
"""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple
from .models import (ApplyInstruction, ChangeKind, ChangeSet, ConflictRecord, EntryKind,
                     FileEntry, Op, Side, Snapshot, same_content)
from ..utils.file_utils import parent_of


@dataclass(frozen=True)
class Plan:
    """
    instructions  per-side filesystem steps, in path order
    conflicts     paths left untouched on both sides
    merged        the agreed post-sync content (path → entry)
    unsettled     paths whose ancestor entry must survive this session
    """

    instructions: Tuple[ApplyInstruction, ...] = ()
    conflicts: Tuple[ConflictRecord, ...] = ()
    merged: Dict[str, FileEntry] = field(default_factory=dict)
    unsettled: FrozenSet[str] = frozenset()

    def for_side(self, side: Side) -> List[ApplyInstruction]:
        return [i for i in self.instructions if i.side == side]

    def outgoing(self, side: Side) -> List[ApplyInstruction]:
        """WRITE instructions whose content `side` has to send to its peer."""
        return [i for i in self.instructions if i.side == side.other and i.op == Op.WRITE]

    def incoming(self, side: Side) -> List[ApplyInstruction]:
        return [i for i in self.instructions if i.side == side and i.op == Op.WRITE]

    @property
    def is_empty(self) -> bool:
        return not self.instructions and not self.conflicts


def _effects(changes: ChangeSet) -> Dict[str, Optional[FileEntry]]:
    """path → resulting entry (None = removed), later changes win."""
    out: Dict[str, Optional[FileEntry]] = {}
    for change in changes:
        for path, entry in change.effects():
            out[path] = entry
    return out


def _describe(anc: Optional[FileEntry], ra: Optional[FileEntry], rb: Optional[FileEntry]) -> str:
    if ra is None:
        return "deleted on alpha, changed on beta"
    if rb is None:
        return "changed on alpha, deleted on beta"
    if anc is None:
        return "added on both sides with different content"
    if ra.kind != rb.kind:
        return f"changed to {ra.kind.value} on alpha and {rb.kind.value} on beta"
    return "modified on both sides with different content"


def _transition(side: Side, path: str, have: Optional[FileEntry],
                want: Optional[FileEntry]) -> Optional[ApplyInstruction]:
    if same_content(have, want):
        return None
    if want is None:
        op = Op.RMDIR if have.kind == EntryKind.DIR else Op.DELETE
    elif want.kind == EntryKind.DIR:
        op = Op.MKDIR
    elif want.kind == EntryKind.SYMLINK:
        op = Op.LINK
    else:
        op = Op.WRITE
    return ApplyInstruction(op=op, side=side, path=path, entry=want, previous=have)


def _below(path: str, paths: Iterable[str]) -> List[str]:
    prefix = path + "/"
    return [p for p in paths if p == path or p.startswith(prefix)]


def reconcile(ancestor: Snapshot, alpha: ChangeSet, beta: ChangeSet,
              alpha_read_only: bool = False, beta_read_only: bool = False) -> Plan:
    """
    Per touched path:
      one side changed it          → replay the change on the other side
      both changed it identically  → nothing to do
      both changed it differently  → ConflictRecord, both copies untouched
    """
    eff = {Side.ALPHA: _effects(alpha), Side.BETA: _effects(beta)}
    touched = sorted(set(eff[Side.ALPHA]) | set(eff[Side.BETA]))

    def have(side: Side, path: str) -> Optional[FileEntry]:
        if path in eff[side]:
            return eff[side][path]
        return ancestor.get(path)

    result: Dict[str, Optional[FileEntry]] = {}
    reasons: Dict[str, str] = {}
    for path in touched:
        in_a, in_b = path in eff[Side.ALPHA], path in eff[Side.BETA]
        if in_a and in_b:
            ra, rb = eff[Side.ALPHA][path], eff[Side.BETA][path]
            if same_content(ra, rb):
                result[path] = ra
            else:
                reasons[path] = _describe(ancestor.get(path), ra, rb)
        else:
            result[path] = eff[Side.ALPHA if in_a else Side.BETA][path]

    # ── structural pass: every surviving entry needs a directory above it ────
    while True:
        merged: Dict[str, FileEntry] = dict(ancestor.entries)
        for path, entry in result.items():
            if path in reasons:
                continue
            if entry is None:
                merged.pop(path, None)
            else:
                merged[path] = entry

        changed = False
        for path in sorted(merged):
            parent = parent_of(path)
            if not parent:
                continue
            pe = merged.get(parent)
            if pe is not None and pe.kind == EntryKind.DIR:
                continue
            anc_parent = ancestor.get(parent)
            if (pe is None and parent not in reasons and anc_parent is not None
                    and anc_parent.kind == EntryKind.DIR):
                # deleted directory still holds entries: keep it
                result[parent] = anc_parent
                changed = True
                break
            before = len(reasons)
            for p in _below(parent, touched):
                reasons.setdefault(p, "entries below a path that is no longer a directory "
                                      "on the other side")
            if len(reasons) != before:
                changed = True
                break
        if not changed:
            break

    # ── instructions ─────────────────────────────────────────────────────────
    instructions: List[ApplyInstruction] = []
    for path in touched:
        if path in reasons:
            continue
        for side in (Side.ALPHA, Side.BETA):
            step = _transition(side, path, have(side, path), result[path])
            if step is not None:
                instructions.append(step)

    unsettled = set(reasons)
    read_only = {Side.ALPHA: alpha_read_only, Side.BETA: beta_read_only}
    kept = []
    for step in instructions:
        if read_only[step.side]:
            unsettled.update(step.touched_paths())
        else:
            kept.append(step)
    instructions = [s for s in kept if s.path not in unsettled]

    instructions = _coalesce_moves(instructions, alpha, beta)

    for path in unsettled:
        anc = ancestor.get(path)
        if anc is None:
            merged.pop(path, None)
        else:
            merged[path] = anc

    conflicts = tuple(
        ConflictRecord(path=p, alpha=have(Side.ALPHA, p), beta=have(Side.BETA, p), reason=reasons[p])
        for p in sorted(reasons)
    )
    return Plan(instructions=tuple(instructions), conflicts=conflicts,
                merged=merged, unsettled=frozenset(unsettled))


def _coalesce_moves(instructions: List[ApplyInstruction],
                    alpha: ChangeSet, beta: ChangeSet) -> List[ApplyInstruction]:
    """
    A peer's rename reaches this side as DELETE(from) + WRITE(to) with the
    same content; replace the pair by a local MOVE so no bytes cross the wire.
    """
    index = {(s.side, s.op, s.path): s for s in instructions}
    replaced = {}
    for origin, changes in ((Side.ALPHA, alpha), (Side.BETA, beta)):
        target = origin.other
        for change in changes:
            if change.kind != ChangeKind.RENAMED:
                continue
            delete = index.get((target, Op.DELETE, change.from_path))
            write = index.get((target, Op.WRITE, change.path))
            if delete is None or write is None or write.previous is not None:
                continue
            if not delete.previous.same_content(write.entry):
                continue
            move = ApplyInstruction(op=Op.MOVE, side=target, path=change.path, entry=write.entry,
                                    previous=delete.previous, from_path=change.from_path)
            replaced[id(delete)] = None
            replaced[id(write)] = move

    out = []
    for step in instructions:
        if id(step) not in replaced:
            out.append(step)
        elif replaced[id(step)] is not None:
            out.append(replaced[id(step)])
    return out
