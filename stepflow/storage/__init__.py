"""Snapshot storage backends."""

from stepflow.storage.snapshot_store import (
    FileSnapshotStore,
    InMemorySnapshotStore,
    SnapshotPersister,
    SnapshotStore,
)

__all__ = ["SnapshotPersister", "SnapshotStore", "InMemorySnapshotStore", "FileSnapshotStore"]
