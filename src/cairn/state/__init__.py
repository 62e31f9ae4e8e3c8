"""State management for cairn.

Persists the last-applied input and output of every resource so the next
run can decide between create and update, and so destroy can find what
exists even in a fresh process.

Example:
    store = FileSystemStateStore(".cairn")
    record = await store.get("myapp/dev/db-1")
    if record is not None and record.status is ResourceStatus.APPLIED:
        print(record.output_snapshot)
"""

from cairn.state.record import (
    ResourceIdentity,
    ResourceRecord,
    ResourceStatus,
    next_sequence,
    utc_now,
)
from cairn.state.store import MemoryStateStore, StateStore
from cairn.state.file import DEFAULT_STATE_DIR, FileSystemStateStore

__all__ = [
    "ResourceIdentity",
    "ResourceRecord",
    "ResourceStatus",
    "StateStore",
    "MemoryStateStore",
    "FileSystemStateStore",
    "DEFAULT_STATE_DIR",
    "next_sequence",
    "utc_now",
]
