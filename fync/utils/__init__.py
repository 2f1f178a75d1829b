"""Utilities (logging, retry, exclusions, file utilities)"""
from .logging import log, vlog, warn, set_verbose, set_stream
from .retry import retried
from .ignore_patterns import is_ignored, is_temporary
from .file_utils import hash_file, _file_changed

__all__ = [
    "log", "vlog", "warn", "set_verbose", "set_stream",
    "retried",
    "is_ignored", "is_temporary",
    "hash_file", "_file_changed"
]
