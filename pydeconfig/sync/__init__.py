"""Push, clone, watch and continuous sync between a directory and a branch."""

from .clone import CloneEngine, CloneEntry, CloneResult, CloneStatus
from .engine import SyncEngine, SyncSession
from .ignore import (
    DEFAULT_IGNORE_PATTERNS,
    IGNORE_FILE_NAME,
    IgnoreFilter,
    IgnoreRule,
    load_ignore_filter,
)
from .push import PushEngine, PushEntry, PushResult, PushStatus
from .scanner import DirectoryScanner, LocalFile, walk_local_tree
from .state import HeadRecord, HeadStateManager
from .watch import WatchEngine, WatchState, apply_event_to_directory

__all__ = [
    "SyncEngine",
    "SyncSession",
    "PushEngine",
    "PushEntry",
    "PushResult",
    "PushStatus",
    "CloneEngine",
    "CloneEntry",
    "CloneResult",
    "CloneStatus",
    "WatchEngine",
    "WatchState",
    "apply_event_to_directory",
    "DirectoryScanner",
    "LocalFile",
    "walk_local_tree",
    "HeadRecord",
    "HeadStateManager",
    "IgnoreFilter",
    "IgnoreRule",
    "IGNORE_FILE_NAME",
    "DEFAULT_IGNORE_PATTERNS",
    "load_ignore_filter",
]
