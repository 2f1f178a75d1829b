"""Operations (scan, transfer, apply, conflict reporting)"""
from .scanner import scan, refresh_paths, find_orphans
from .transfer import send_file, ChunkReceiver
from .apply import apply_plan, ApplyResult
from .conflict import report_conflicts, record_conflicts

__all__ = [
    "scan", "refresh_paths", "find_orphans",
    "send_file", "ChunkReceiver",
    "apply_plan", "ApplyResult",
    "report_conflicts", "record_conflicts",
]
