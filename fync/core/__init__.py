"""Core functionality (data model, diff, reconciliation, protocol)"""
from .errors import FyncError, ProtocolError, SessionBusyError, SyncIOError, TransportError
from .models import ChangeKind, EntryKind, FileChange, FileEntry, Snapshot
from .differ import diff
from .reconcile import Plan, reconcile

__all__ = [
    "FyncError", "ProtocolError", "SessionBusyError", "SyncIOError", "TransportError",
    "ChangeKind", "EntryKind", "FileChange", "FileEntry", "Snapshot",
    "diff", "Plan", "reconcile",
]
