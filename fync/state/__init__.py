"""State management (persisted ancestor records and root locks)"""
from .state_manager import load_state, save_state, load_conflicts, save_conflicts
from .session_lock import RootLock

__all__ = [
    "load_state", "save_state", "load_conflicts", "save_conflicts",
    "RootLock",
]
