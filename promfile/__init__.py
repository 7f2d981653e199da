"""
promfile - Serve a metrics file over HTTP and reload it when it changes.
"""

from .filewatch import (
    FileWatch,
    SymlinkEdge,
    WatchError,
    trace_symlinks,
    watch,
)
from .metrics import MetricsFileError, MetricsStore, load_metrics

__version__ = "0.1.0"

__all__ = [
    "FileWatch",
    "MetricsFileError",
    "MetricsStore",
    "SymlinkEdge",
    "WatchError",
    "load_metrics",
    "trace_symlinks",
    "watch",
]
