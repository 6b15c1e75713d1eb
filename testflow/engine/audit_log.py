"""
Append-only, tamper-evident audit log.

Every state-affecting event of a workflow is recorded as an
:class:`AuditLogEntry` whose ``integrity_hash`` covers the workflow id,
timestamp, event type and snapshot. Immutability is part of the storage
interface itself: :class:`AuditBackend` only offers ``insert``, ``get`` and
``list``, and every backend refuses to insert over an existing entry id. The
:class:`AuditLogStore` facade exposes ``update`` and ``delete`` only to reject
them with :class:`~testflow.exceptions.ImmutableRecordError`, whoever calls.

Storage Layout (file backend)::

    <audit_dir>/
        <workflow_id>/
            <entry_id>.json   (read-only once written)

Example:
    >>> store = AuditLogStore(FileAuditBackend(".testflow/audit"))
    >>> entry_id = await store.record("wf-1", AuditEventType.WORKFLOW_STATE_CHANGE, {"status": "running"})
    >>> store.verify_integrity(await store.get(entry_id))
    True
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import uuid
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles
import structlog
from pydantic import BaseModel, ConfigDict, Field

from testflow.enums import AuditEventType
from testflow.exceptions import AuditLogError, ImmutableRecordError, IntegrityViolationError

log = structlog.get_logger(__name__)


def compute_integrity_hash(
    workflow_id: str, timestamp: datetime, event_type: AuditEventType | str, snapshot: dict[str, Any]
) -> str:
    """SHA-256 over the canonical JSON form of the hashed fields."""
    payload = {
        "workflowId": workflow_id,
        "timestamp": timestamp.isoformat(),
        "eventType": str(event_type),
        "snapshot": snapshot,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AuditLogEntry(BaseModel):
    """Immutable record of one state-affecting event."""

    model_config = ConfigDict(frozen=True)

    entry_id: str
    workflow_id: str
    timestamp: datetime
    event_type: AuditEventType
    actor: str = "system"
    snapshot: dict[str, Any] = Field(default_factory=dict)
    changes: dict[str, Any] | None = None
    integrity_hash: str

    @classmethod
    def create(
        cls,
        workflow_id: str,
        event_type: AuditEventType,
        snapshot: dict[str, Any],
        changes: dict[str, Any] | None = None,
        actor: str = "system",
    ) -> AuditLogEntry:
        """Build an entry with a fresh id, timestamp and integrity hash."""
        timestamp = datetime.now(UTC)
        return cls(
            entry_id=uuid.uuid4().hex,
            workflow_id=workflow_id,
            timestamp=timestamp,
            event_type=event_type,
            actor=actor,
            snapshot=snapshot,
            changes=changes,
            integrity_hash=compute_integrity_hash(workflow_id, timestamp, event_type, snapshot),
        )

    def expected_hash(self) -> str:
        return compute_integrity_hash(self.workflow_id, self.timestamp, self.event_type, self.snapshot)


class IntegrityReport(BaseModel):
    """Result of verifying every entry of one workflow."""

    workflow_id: str
    total: int
    verified: int
    failed: int
    failed_entries: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0


class AuditBackend(ABC):
    """Storage for audit entries.

    The interface is append-only: there is deliberately no update or delete
    operation, and ``insert`` must reject an entry id that already exists.
    """

    @abstractmethod
    async def insert(self, entry: AuditLogEntry) -> None:
        """Store a new entry.

        Raises:
            ImmutableRecordError: If an entry with the same id exists
        """
        pass

    @abstractmethod
    async def get(self, entry_id: str) -> AuditLogEntry | None:
        pass

    @abstractmethod
    async def list(self, workflow_id: str) -> list[AuditLogEntry]:
        """Entries of one workflow in insertion order."""
        pass


class MemoryAuditBackend(AuditBackend):
    """In-process backend, used for tests and ephemeral servers."""

    def __init__(self) -> None:
        self._entries: dict[str, AuditLogEntry] = {}

    async def insert(self, entry: AuditLogEntry) -> None:
        if entry.entry_id in self._entries:
            raise ImmutableRecordError(entry.entry_id, "overwrite")
        self._entries[entry.entry_id] = entry

    async def get(self, entry_id: str) -> AuditLogEntry | None:
        return self._entries.get(entry_id)

    async def list(self, workflow_id: str) -> list[AuditLogEntry]:
        return [e for e in self._entries.values() if e.workflow_id == workflow_id]


class FileAuditBackend(AuditBackend):
    """One read-only JSON file per entry.

    Entries are written to a temporary file and hard-linked into place, which
    fails if the target exists, so an existing entry can never be replaced
    through this backend.
    """

    def __init__(self, audit_dir: str | Path) -> None:
        self.audit_dir = Path(audit_dir)
        self.audit_dir.mkdir(parents=True, exist_ok=True)

    def _entry_path(self, workflow_id: str, entry_id: str) -> Path:
        return self.audit_dir / workflow_id / f"{entry_id}.json"

    async def insert(self, entry: AuditLogEntry) -> None:
        path = self._entry_path(entry.workflow_id, entry.entry_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(f".{uuid.uuid4().hex}.tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(entry.model_dump_json(indent=2))

        try:
            os.link(tmp_path, path)
        except FileExistsError as e:
            raise ImmutableRecordError(entry.entry_id, "overwrite") from e
        finally:
            tmp_path.unlink(missing_ok=True)

        path.chmod(0o444)

    async def get(self, entry_id: str) -> AuditLogEntry | None:
        matches = list(self.audit_dir.glob(f"*/{entry_id}.json"))
        if not matches:
            return None
        return await self._read(matches[0])

    async def list(self, workflow_id: str) -> list[AuditLogEntry]:
        workflow_dir = self.audit_dir / workflow_id
        if not workflow_dir.is_dir():
            return []
        return [await self._read(path) for path in workflow_dir.glob("*.json")]

    async def _read(self, path: Path) -> AuditLogEntry:
        async with aiofiles.open(path) as f:
            content = await f.read()
        try:
            return AuditLogEntry.model_validate_json(content)
        except ValueError as e:
            raise AuditLogError(f"Unreadable audit entry {path.name}: {e}") from e


class AuditLogStore:
    """Append-only facade over an :class:`AuditBackend`.

    Args:
        backend: Storage backend; defaults to an in-memory backend.
    """

    def __init__(self, backend: AuditBackend | None = None) -> None:
        self.backend = backend or MemoryAuditBackend()
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> str:
        """Store an entry and return its id.

        Identical content appended twice yields two distinct entries.
        """
        async with self._lock:
            await self.backend.insert(entry)
        log.debug(
            "audit_entry_appended",
            workflow_id=entry.workflow_id,
            entry_id=entry.entry_id,
            event_type=entry.event_type.value,
        )
        return entry.entry_id

    async def record(
        self,
        workflow_id: str,
        event_type: AuditEventType,
        snapshot: dict[str, Any],
        changes: dict[str, Any] | None = None,
        actor: str = "system",
    ) -> str:
        """Build and append an entry in one call."""
        entry = AuditLogEntry.create(workflow_id, event_type, snapshot, changes=changes, actor=actor)
        return await self.append(entry)

    async def update(self, entry_id: str, **changes: Any) -> None:
        """Always fails: audit entries cannot be modified."""
        log.warning("audit_update_rejected", entry_id=entry_id, fields=sorted(changes))
        raise ImmutableRecordError(entry_id, "update")

    async def delete(self, entry_id: str) -> None:
        """Always fails: audit entries cannot be removed."""
        log.warning("audit_delete_rejected", entry_id=entry_id)
        raise ImmutableRecordError(entry_id, "delete")

    async def get(self, entry_id: str) -> AuditLogEntry | None:
        return await self.backend.get(entry_id)

    async def list(self, workflow_id: str) -> list[AuditLogEntry]:
        """Audit trail of a workflow, oldest first."""
        entries = await self.backend.list(workflow_id)
        return sorted(entries, key=lambda e: e.timestamp)

    def verify_integrity(self, entry: AuditLogEntry) -> bool:
        """Recompute the entry hash and compare it with the stored one.

        Raises:
            IntegrityViolationError: If the hashes differ
        """
        actual = entry.expected_hash()
        if actual != entry.integrity_hash:
            log.error("audit_integrity_violation", workflow_id=entry.workflow_id, entry_id=entry.entry_id)
            raise IntegrityViolationError(entry.entry_id, expected=entry.integrity_hash, actual=actual)
        return True

    async def verify_workflow(self, workflow_id: str) -> IntegrityReport:
        """Verify every entry of a workflow and summarise the outcome."""
        entries = await self.list(workflow_id)
        failed: list[str] = []
        for entry in entries:
            try:
                self.verify_integrity(entry)
            except IntegrityViolationError as e:
                failed.append(e.entry_id)
        return IntegrityReport(
            workflow_id=workflow_id,
            total=len(entries),
            verified=len(entries) - len(failed),
            failed=len(failed),
            failed_entries=failed,
        )
