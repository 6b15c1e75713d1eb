"""
Workflow record persistence with audited, atomic commits.

This module provides the WorkflowStore class which persists
:class:`~testflow.models.workflow.WorkflowRecord` aggregates to disk. It
ensures data integrity through:

- Atomic file writes using temporary files and rename operations
- Per-workflow locking to prevent concurrent modification
- Commits that record the state and its audit entry together
- An in-memory catalog (creation times, runs by code hash) so listing
  queries only read the records they return

State File Structure:
    Each workflow gets its own file named ``{workflow_id}.json`` holding the
    JSON form of the record (status, trigger, stage sub-records, rewards).

Commit Semantics:
    ``commit()`` stages the new state in a temporary file, appends the audit
    entry, then renames the temporary file over the state file. If the audit
    append fails the temporary file is discarded, so observers never see a
    state change without its audit entry::

        record.complete_stage(StageName.PLANNING, unit_tests=5)
        await store.commit(record, AuditEventType.WORKFLOW_STATE_CHANGE)

Example:
    >>> store = WorkflowStore(".testflow/state", audit_log)
    >>> await store.create(record)
    >>> record = await store.load("wf-1a2b3c")
"""

from __future__ import annotations

import asyncio
import weakref
from datetime import datetime
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from testflow.engine.audit_log import AuditLogEntry, AuditLogStore
from testflow.enums import AuditEventType
from testflow.exceptions import WorkflowError, WorkflowNotFoundError
from testflow.models.workflow import RunSnapshot, WorkflowRecord

log = structlog.get_logger(__name__)


class WorkflowStore:
    """Persist workflow records as JSON files.

    Attributes:
        state_dir: Directory where record files are stored.
        audit_log: Audit log receiving one entry per committed transition.
    """

    def __init__(self, state_dir: str | Path, audit_log: AuditLogStore) -> None:
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.audit_log = audit_log
        # Per-workflow locks; an entry disappears once no coroutine holds its lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._locks_lock = asyncio.Lock()
        # Catalog of known records: creation time per id, run snapshots per code hash
        self._created: dict[str, datetime] = {}
        self._runs_by_hash: dict[str, dict[str, list[RunSnapshot]]] = {}
        self._catalog_lock = asyncio.Lock()

    async def _get_lock(self, workflow_id: str) -> asyncio.Lock:
        async with self._locks_lock:
            lock = self._locks.get(workflow_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[workflow_id] = lock
            return lock

    def _get_state_path(self, workflow_id: str) -> Path:
        return self.state_dir / f"{workflow_id}.json"

    async def exists(self, workflow_id: str) -> bool:
        return self._get_state_path(workflow_id).exists()

    async def create(self, record: WorkflowRecord) -> None:
        """Persist a new record together with its creation audit entry.

        Raises:
            WorkflowError: If a record with the same id already exists
        """
        lock = await self._get_lock(record.workflow_id)
        async with lock:
            if self._get_state_path(record.workflow_id).exists():
                raise WorkflowError(f"Workflow already exists: {record.workflow_id}", workflow_id=record.workflow_id)
            await self._commit_internal(
                record, AuditEventType.WORKFLOW_STATE_CHANGE, {"status": {"before": None, "after": "pending"}}
            )
        log.info("workflow_created", workflow_id=record.workflow_id)

    async def load(self, workflow_id: str) -> WorkflowRecord:
        """Load a record.

        Raises:
            WorkflowNotFoundError: If no record exists for the id
        """
        lock = await self._get_lock(workflow_id)
        async with lock:
            return await self._read(workflow_id)

    async def commit(
        self,
        record: WorkflowRecord,
        event_type: AuditEventType,
        changes: dict[str, Any] | None = None,
        actor: str = "system",
    ) -> str:
        """Persist a transition and its audit entry as one unit.

        Args:
            record: Record after the transition was applied in memory.
            event_type: Audit event type for the transition.
            changes: Before/after diff of the affected sub-record.
            actor: Who caused the transition.

        Returns:
            The id of the audit entry written for this transition.

        Raises:
            AuditLogError: If the audit entry could not be appended; the
                state file is left untouched in that case.
        """
        lock = await self._get_lock(record.workflow_id)
        async with lock:
            return await self._commit_internal(record, event_type, changes, actor)

    async def _commit_internal(
        self,
        record: WorkflowRecord,
        event_type: AuditEventType,
        changes: dict[str, Any] | None,
        actor: str = "system",
    ) -> str:
        snapshot = record.snapshot()
        path = self._get_state_path(record.workflow_id)
        tmp_path = path.with_suffix(".tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(record.model_dump_json(indent=2))

        entry = AuditLogEntry.create(record.workflow_id, event_type, snapshot, changes=changes, actor=actor)
        try:
            entry_id = await self.audit_log.append(entry)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            log.error("workflow_commit_failed", workflow_id=record.workflow_id, event_type=event_type.value)
            raise

        # Atomic rename - safe on POSIX when same filesystem
        tmp_path.replace(path)
        self._index(record)
        return entry_id

    async def _read(self, workflow_id: str) -> WorkflowRecord:
        path = self._get_state_path(workflow_id)
        if not path.exists():
            raise WorkflowNotFoundError(workflow_id)
        async with aiofiles.open(path) as f:
            content = await f.read()
        return WorkflowRecord.model_validate_json(content)

    def _index(self, record: WorkflowRecord) -> None:
        self._created[record.workflow_id] = record.created_at
        by_hash: dict[str, list[RunSnapshot]] = {}
        for run in record.test_execution.run_history:
            by_hash.setdefault(run.code_hash, []).append(run)
        for code_hash, runs in by_hash.items():
            self._runs_by_hash.setdefault(code_hash, {})[record.workflow_id] = runs

    async def _refresh_catalog(self) -> None:
        """Index records written to the state directory since the last refresh.

        Only files whose id is not yet known are read, so repeated queries
        cost a directory listing rather than a full load.
        """
        async with self._catalog_lock:
            for path in self.state_dir.glob("*.json"):
                if path.stem in self._created:
                    continue
                try:
                    record = await self.load(path.stem)
                except WorkflowNotFoundError:
                    continue
                self._index(record)

    async def list_recent(self, limit: int = 50) -> list[WorkflowRecord]:
        """Most recently created records first."""
        await self._refresh_catalog()
        newest = sorted(self._created, key=lambda wid: (self._created[wid], wid), reverse=True)[:limit]
        return [await self.load(workflow_id) for workflow_id in newest]

    async def find_runs_by_code_hash(self, code_hash: str, exclude_workflow_id: str | None = None) -> list[RunSnapshot]:
        """Previous test runs of the same generated code, newest first."""
        await self._refresh_catalog()
        runs = [
            run
            for workflow_id, workflow_runs in self._runs_by_hash.get(code_hash, {}).items()
            if workflow_id != exclude_workflow_id
            for run in workflow_runs
        ]
        runs.sort(key=lambda r: r.timestamp, reverse=True)
        return runs
