"""
Snapshot Store - Durable run state with atomic writes.

The engine only needs ``persist_snapshot``; ``Run.resume`` additionally
reads the latest snapshot back. Two implementations:

- ``InMemorySnapshotStore``: latest snapshot plus full history per run,
  for tests and short-lived processes
- ``FileSnapshotStore``: one directory per run with the latest snapshot
  written atomically and an append-only history

Directory structure (FileSnapshotStore):
    {base_path}/
        {workflow_id}/
            {run_id}/
                snapshot.json    # Latest snapshot
                history.jsonl    # Every snapshot, one per line
"""

import asyncio
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from stepflow.errors import SNAPSHOT_PERSIST_FAILED, WorkflowError
from stepflow.schemas.snapshot import WorkflowSnapshot
from stepflow.utils.io import atomic_write

logger = logging.getLogger(__name__)


@runtime_checkable
class SnapshotPersister(Protocol):
    """What the engine needs from storage."""

    async def persist_snapshot(self, snapshot: WorkflowSnapshot) -> None: ...


@runtime_checkable
class SnapshotStore(SnapshotPersister, Protocol):
    """Persister that can also read runs back."""

    async def load_snapshot(self, workflow_id: str, run_id: str) -> WorkflowSnapshot | None: ...

    async def list_runs(self, workflow_id: str) -> list[str]: ...


class InMemorySnapshotStore:
    """Keeps snapshots in process memory."""

    def __init__(self) -> None:
        self._latest: dict[tuple[str, str], WorkflowSnapshot] = {}
        self._history: dict[tuple[str, str], list[WorkflowSnapshot]] = {}

    async def persist_snapshot(self, snapshot: WorkflowSnapshot) -> None:
        key = (snapshot.workflow_id, snapshot.run_id)
        self._latest[key] = snapshot
        self._history.setdefault(key, []).append(snapshot)
        logger.debug(f"Persisted snapshot for run {snapshot.run_id} ({snapshot.status})")

    async def load_snapshot(self, workflow_id: str, run_id: str) -> WorkflowSnapshot | None:
        return self._latest.get((workflow_id, run_id))

    async def list_runs(self, workflow_id: str) -> list[str]:
        return [run_id for wf_id, run_id in self._latest if wf_id == workflow_id]

    def history(self, workflow_id: str, run_id: str) -> list[WorkflowSnapshot]:
        """Every snapshot persisted for a run, oldest first."""
        return list(self._history.get((workflow_id, run_id), []))


class FileSnapshotStore:
    """
    Stores snapshots on disk.

    Writes go through a temp file + rename so a crash never leaves a
    half-written ``snapshot.json``. Blocking I/O runs in a worker thread.
    """

    def __init__(self, base_path: Path | str):
        """
        Initialize snapshot store.

        Args:
            base_path: Root directory (e.g., ~/.stepflow/snapshots/)
        """
        self.base_path = Path(base_path)
        self._lock = asyncio.Lock()

    def _run_dir(self, workflow_id: str, run_id: str) -> Path:
        return self.base_path / workflow_id / run_id

    async def persist_snapshot(self, snapshot: WorkflowSnapshot) -> None:
        """
        Atomically write the latest snapshot and append it to the history.

        Raises:
            WorkflowError: STORAGE_PERSIST_SNAPSHOT_FAILED if the write fails
        """

        def _write() -> None:
            run_dir = self._run_dir(snapshot.workflow_id, snapshot.run_id)
            run_dir.mkdir(parents=True, exist_ok=True)

            data = snapshot.model_dump_json()
            with atomic_write(run_dir / "snapshot.json") as f:
                f.write(data)
            with open(run_dir / "history.jsonl", "a", encoding="utf-8") as f:
                f.write(data + "\n")

            logger.debug(f"Saved snapshot for run {snapshot.run_id} ({snapshot.status})")

        async with self._lock:
            try:
                await asyncio.to_thread(_write)
            except OSError as e:
                raise WorkflowError(
                    SNAPSHOT_PERSIST_FAILED,
                    message=f"Failed to persist snapshot for run {snapshot.run_id}: {e}",
                    details={"workflow_id": snapshot.workflow_id, "run_id": snapshot.run_id},
                    cause=e,
                ) from e

    async def load_snapshot(self, workflow_id: str, run_id: str) -> WorkflowSnapshot | None:
        """
        Load the latest snapshot of a run.

        Returns:
            WorkflowSnapshot, or None if the run has none or it is unreadable
        """

        def _read() -> WorkflowSnapshot | None:
            path = self._run_dir(workflow_id, run_id) / "snapshot.json"
            if not path.exists():
                return None
            try:
                return WorkflowSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
            except Exception as e:
                logger.error(f"Failed to load snapshot {path}: {e}")
                return None

        return await asyncio.to_thread(_read)

    async def list_runs(self, workflow_id: str) -> list[str]:
        """Ids of runs with a snapshot, sorted."""

        def _list() -> list[str]:
            wf_dir = self.base_path / workflow_id
            if not wf_dir.exists():
                return []
            return sorted(
                d.name for d in wf_dir.iterdir() if d.is_dir() and (d / "snapshot.json").exists()
            )

        return await asyncio.to_thread(_list)

    async def load_history(self, workflow_id: str, run_id: str) -> list[WorkflowSnapshot]:
        """Every snapshot written for a run, oldest first."""

        def _read() -> list[WorkflowSnapshot]:
            path = self._run_dir(workflow_id, run_id) / "history.jsonl"
            if not path.exists():
                return []
            snapshots = []
            for line in path.read_text(encoding="utf-8").splitlines():
                if line.strip():
                    snapshots.append(WorkflowSnapshot.model_validate_json(line))
            return snapshots

        return await asyncio.to_thread(_read)
