"""fync: bidirectional directory-tree synchronization"""

__version__ = "0.1.0"
