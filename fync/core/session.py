"""
Sync session: one exchange between two peers over a Transport

  INIT → HELLO_EXCHANGED → SNAPSHOTS_EXCHANGED → CHANGES_RECONCILED
       → TRANSFERRING → COMMITTING → DONE            (FAILED from anywhere)

Both peers run the same code; the initiator plays `alpha`, the other end
`beta`. Nothing in PersistedState changes unless COMMITTING completes.
"""
import shutil
import socket
import traceback
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Set, Tuple
from .. import config as _cfg
from ..operations.apply import ApplyResult, apply_plan
from ..operations.conflict import record_conflicts, report_conflicts
from ..operations.scanner import find_orphans, scan
from ..operations.transfer import ChunkReceiver, send_file
from ..state.session_lock import RootLock
from ..state.state_manager import load_state, save_state
from ..utils.logging import log, vlog, warn
from ..utils.file_utils import clear_staging
from .differ import diff
from .errors import (EXIT_CONFLICTS, EXIT_FAILURE, EXIT_OK, FyncError, PeerError,
                     ProtocolError, SessionBusyError, TransportError)
from .messages import (Ack, ChangeSetMsg, Done, Error, FileDataChunk, Hello, SessionMessage,
                       SnapshotSummary, decode, encode)
from .models import ConflictRecord, Side, Snapshot, empty_snapshot, same_content
from .reconcile import Plan, reconcile


class SessionState(Enum):
    INIT = "init"
    HELLO_EXCHANGED = "hello-exchanged"
    SNAPSHOTS_EXCHANGED = "snapshots-exchanged"
    CHANGES_RECONCILED = "changes-reconciled"
    TRANSFERRING = "transferring"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SessionResult:
    state: SessionState
    role: Side
    conflicts: Tuple[ConflictRecord, ...] = ()
    failed: Dict[str, str] = field(default_factory=dict)
    applied: int = 0
    sent: int = 0
    received: int = 0
    generation: Optional[int] = None
    error: Optional[FyncError] = None

    @property
    def exit_code(self) -> int:
        if self.error is not None:
            return self.error.exit_code
        if self.conflicts:
            return EXIT_CONFLICTS
        if self.failed:
            return EXIT_FAILURE
        return EXIT_OK


def identity(root: Path) -> str:
    """How this tree names itself to a peer; keys the peer's state record."""
    return f"{socket.gethostname()}:{root}"


def remove_orphans(root: Path) -> int:
    """Delete temporaries left behind by an interrupted session."""
    count = 0
    for path in find_orphans(root):
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path, ignore_errors=True)
        else:
            path.unlink(missing_ok=True)
        count += 1
    if count:
        log(f"[session] removed {count} leftover temporary file(s)")
    return count


class SyncSession:
    """
    Drives one side of a session. `run()` never raises: fatal errors end
    in FAILED with `result.error` set; per-path problems are collected in
    `result.failed` and the affected paths are retried next time.
    """

    def __init__(self, root, transport, role: Side, read_only: bool = False):
        self.root = Path(root).resolve()
        self.transport = transport
        self.role = role
        self.read_only = read_only
        self.state = SessionState.INIT
        self.result = SessionResult(state=self.state, role=role)

        self.peer: Optional[Hello] = None
        self.stored: Snapshot = empty_snapshot(str(self.root))
        self.ancestor: Snapshot = self.stored
        self.current: Optional[Snapshot] = None
        self.plan: Optional[Plan] = None
        self.receiver: Optional[ChunkReceiver] = None
        self.transfer_failed: Set[str] = set()
        self.scan_failed: Set[str] = set()

    # ── messaging ────────────────────────────────────────────────────────────

    def _send(self, msg: SessionMessage):
        self.transport.send(encode(msg))

    def _receive(self) -> SessionMessage:
        msg = decode(self.transport.receive())
        if isinstance(msg, Error) and msg.kind != "io":
            raise PeerError(msg.kind, msg.detail)
        return msg

    def _expect(self, cls):
        msg = self._receive()
        if not isinstance(msg, cls):
            raise ProtocolError(f"expected {cls.__name__} in state {self.state.value}, "
                                f"got {type(msg).__name__}")
        return msg

    def _enter(self, state: SessionState):
        vlog(f"[session:{self.role.value}] {self.state.value} → {state.value}")
        self.state = state
        self.result.state = state

    # ── driver ───────────────────────────────────────────────────────────────

    def run(self) -> SessionResult:
        lock = RootLock(str(self.root))
        try:
            if not self.root.is_dir():
                raise FyncError(f"{self.root} is not a directory")
            try:
                lock.acquire()
            except SessionBusyError as exc:
                try:
                    self._send(Error(kind="busy", detail=str(exc)))
                except TransportError:
                    pass
                raise
            remove_orphans(self.root)
            self._hello()
            self._summaries()
            self._exchange_changes()
            self._transfer()
            self._commit()
            self._enter(SessionState.DONE)
        except FyncError as exc:
            self._abort(exc)
        except Exception as exc:
            vlog(traceback.format_exc())
            self._abort(FyncError(f"internal error: {exc}"))
        finally:
            if self.receiver is not None:
                self.receiver.discard()
            clear_staging(self.root)
            lock.release()
        return self.result

    def _abort(self, exc: FyncError):
        self._enter(SessionState.FAILED)
        self.result.error = exc
        warn(f"[session:{self.role.value}] failed: {exc}")
        if isinstance(exc, (TransportError, PeerError, SessionBusyError)):
            return
        if isinstance(exc, ProtocolError) and self.peer is None:
            return  # no traffic after a failed handshake
        kind = "protocol" if isinstance(exc, ProtocolError) else "internal"
        try:
            self._send(Error(kind=kind, detail=str(exc)))
        except FyncError:
            pass

    # ── phases ───────────────────────────────────────────────────────────────

    def _hello(self):
        self._send(Hello(version=_cfg.PROTOCOL_VERSION, role=self.role.value,
                         peer=identity(self.root), read_only=self.read_only))
        peer = self._expect(Hello)
        if peer.version != _cfg.PROTOCOL_VERSION:
            raise ProtocolError(f"protocol version mismatch: ours {_cfg.PROTOCOL_VERSION}, "
                                f"peer {peer.version}")
        if peer.role != self.role.other.value:
            raise ProtocolError(f"peer claims role {peer.role!r}, expected {self.role.other.value!r}")
        self.peer = peer
        self.stored = load_state(str(self.root), peer.peer)
        self._enter(SessionState.HELLO_EXCHANGED)
        vlog(f"[session:{self.role.value}] peer {peer.peer}"
             f"{' (read-only)' if peer.read_only else ''}")

    def _summaries(self):
        self._send(SnapshotSummary(generation=self.stored.generation,
                                   digest=self.stored.digest(), count=len(self.stored)))
        theirs = self._expect(SnapshotSummary)
        generation = max(self.stored.generation, theirs.generation)
        if theirs.digest == self.stored.digest():
            self.ancestor = self.stored.with_generation(generation)
        else:
            warn(f"[state] ancestor records disagree (ours: generation {self.stored.generation}, "
                 f"{len(self.stored)} entries; peer: generation {theirs.generation}, "
                 f"{theirs.count} entries), comparing both trees from scratch")
            self.ancestor = empty_snapshot(str(self.root), generation)
        self._enter(SessionState.SNAPSHOTS_EXCHANGED)

    def _exchange_changes(self):
        log(f"[scan] {self.root}")
        self.current = scan(self.root, prior=self.stored, generation=self.ancestor.generation)
        for err in self.current.errors:
            warn(f"[scan] {err.path or '.'}: {err.detail} (left untouched)")
            self.scan_failed.add(err.path)
            self.result.failed[err.path or "."] = f"could not be scanned: {err.detail}"
        mine = diff(self.ancestor, self.current)
        log(f"[scan] {len(self.current)} entries, {len(mine)} local change(s)")
        self._send(ChangeSetMsg(changes=mine))
        theirs = self._expect(ChangeSetMsg).changes

        if self.role == Side.ALPHA:
            alpha, beta = mine, theirs
            alpha_ro, beta_ro = self.read_only, self.peer.read_only
        else:
            alpha, beta = theirs, mine
            alpha_ro, beta_ro = self.peer.read_only, self.read_only
        self.plan = reconcile(self.ancestor, alpha, beta,
                              alpha_read_only=alpha_ro, beta_read_only=beta_ro)
        self._enter(SessionState.CHANGES_RECONCILED)

        log(f"[plan] {len(self.plan.outgoing(self.role))} to send, "
            f"{len(self.plan.incoming(self.role))} to receive, "
            f"{len(self.plan.for_side(self.role))} local step(s), "
            f"{len(self.plan.conflicts)} conflict(s)")
        if self.role == Side.ALPHA:
            report_conflicts(self.plan.conflicts)

    def _transfer(self):
        self._enter(SessionState.TRANSFERRING)
        self.receiver = ChunkReceiver(self.root, self.plan.incoming(self.role))
        awaiting: Set[str] = set()
        refused: Dict[str, str] = {}
        peer_done = False

        def handle(msg: SessionMessage):
            nonlocal peer_done
            if isinstance(msg, FileDataChunk):
                ack = self.receiver.on_chunk(msg)
                if ack is not None:
                    self._send(ack)
            elif isinstance(msg, Ack):
                if msg.path not in awaiting:
                    raise ProtocolError(f"unexpected Ack for {msg.path!r}")
                awaiting.discard(msg.path)
                if not msg.ok:
                    refused[msg.path] = msg.detail
            elif isinstance(msg, Error):
                self.receiver.on_error(msg)
            elif isinstance(msg, Done) and msg.phase == "transfer" and not peer_done:
                if self.receiver.pending:
                    raise ProtocolError(f"peer finished sending without "
                                        f"{sorted(self.receiver.pending)[0]!r}")
                peer_done = True
            else:
                raise ProtocolError(f"unexpected {type(msg).__name__} while transferring")

        def drain():
            while True:
                payload = self.transport.poll()
                if payload is None:
                    return
                msg = decode(payload)
                if isinstance(msg, Error) and msg.kind != "io":
                    raise PeerError(msg.kind, msg.detail)
                handle(msg)

        unreadable = set()
        for step in self.plan.outgoing(self.role):
            awaiting.add(step.path)
            if send_file(self._send, self.root, step.entry, drain):
                self.result.sent += 1
            else:
                awaiting.discard(step.path)
                unreadable.add(step.path)
        self._send(Done(phase="transfer"))

        while awaiting or not peer_done:
            handle(self._receive())

        self.result.sent -= len(refused)
        self.result.received = len(self.receiver.staged)
        self.transfer_failed = unreadable | set(refused) | set(self.receiver.failed)
        for path in sorted(unreadable | set(refused)):
            self.result.failed[path] = refused.get(path, "could not be read for sending")
        for path, detail in self.receiver.failed.items():
            self.result.failed[path] = detail

    def _commit(self):
        self._enter(SessionState.COMMITTING)
        steps = [s for s in self.plan.for_side(self.role)
                 if not any(p in self.transfer_failed for p in s.touched_paths())]
        outcome: ApplyResult = apply_plan(self.root, self.current, steps, self.receiver.staged)
        self.result.applied = len(steps) - len({id(s) for s in steps
                                                for p in s.touched_paths() if p in outcome.failed})
        self.result.failed.update(outcome.failed)

        # scan errors travel with apply failures so both sides leave those paths unsettled
        failed_here = set(outcome.failed) | self.scan_failed
        self._send(Done(phase="commit", failed=tuple(sorted(failed_here))))
        theirs = self._expect(Done)
        if theirs.phase != "commit":
            raise ProtocolError(f"expected commit Done, got phase {theirs.phase!r}")

        for path in theirs.failed:
            self.result.failed.setdefault(path or ".", "not synced on the peer")
        unsettled = self.transfer_failed | failed_here | set(theirs.failed)
        new_state = self._next_state(outcome, unsettled)
        save_state(str(self.root), self.peer.peer, new_state)
        record_conflicts(str(self.root), self.peer.peer, self.plan.conflicts)
        self.result.conflicts = self.plan.conflicts
        self.result.generation = new_state.generation

    def _next_state(self, outcome: ApplyResult, unsettled: Set[str]) -> Snapshot:
        """
        The agreed tree, recorded with this side's own stat data so the next
        scan can reuse hashes. Unsettled paths keep their ancestor entry and
        therefore show up as changes again next time.
        """
        entries = dict(self.plan.merged)
        for path in unsettled:
            anc = self.ancestor.get(path)
            if anc is None:
                entries.pop(path, None)
            else:
                entries[path] = anc
        for path, entry in list(entries.items()):
            if path in outcome.written and path not in unsettled:
                entries[path] = outcome.written[path]
                continue
            local = self.current.get(path)
            if local is not None and same_content(local, entry):
                entries[path] = local
        return Snapshot(root=str(self.root), generation=self.ancestor.generation + 1,
                        entries=entries)
