"""Tests for testflow/engine/workflow_store.py."""

import gc
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from testflow.engine.audit_log import AuditLogStore
from testflow.engine.workflow_store import WorkflowStore
from testflow.enums import AuditEventType, StageName, WorkflowStatus
from testflow.exceptions import AuditLogError, WorkflowError, WorkflowNotFoundError
from testflow.models.workflow import RunSnapshot, WorkflowRecord


def _record(workflow_id: str = "wf-1") -> WorkflowRecord:
    return WorkflowRecord.create({"pr_url": "https://github.com/acme/shop/pull/17"}, workflow_id=workflow_id)


class TestWorkflowStoreInit:
    def test_initialization_creates_directory(self, tmp_path: Path, audit_log: AuditLogStore):
        state_dir = tmp_path / "nested" / "state"
        store = WorkflowStore(state_dir, audit_log)
        assert state_dir.exists()
        assert store.state_dir == state_dir


class TestCreateAndLoad:
    @pytest.mark.asyncio
    async def test_create_persists_and_audits(self, store: WorkflowStore, audit_log: AuditLogStore):
        await store.create(_record())

        loaded = await store.load("wf-1")
        assert loaded.status == WorkflowStatus.PENDING
        entries = await audit_log.list("wf-1")
        assert len(entries) == 1
        assert entries[0].event_type == AuditEventType.WORKFLOW_STATE_CHANGE
        assert entries[0].changes == {"status": {"before": None, "after": "pending"}}

    @pytest.mark.asyncio
    async def test_create_twice_rejected(self, store: WorkflowStore):
        await store.create(_record())
        with pytest.raises(WorkflowError, match="already exists"):
            await store.create(_record())

    @pytest.mark.asyncio
    async def test_load_unknown(self, store: WorkflowStore):
        with pytest.raises(WorkflowNotFoundError):
            await store.load("wf-missing")
        assert await store.exists("wf-missing") is False


class TestCommit:
    @pytest.mark.asyncio
    async def test_commit_writes_state_and_audit_entry(self, store: WorkflowStore, audit_log: AuditLogStore):
        record = _record()
        await store.create(record)
        record.mark_running()

        entry_id = await store.commit(record, AuditEventType.WORKFLOW_STATE_CHANGE, {"status": "running"})

        assert (await store.load("wf-1")).status == WorkflowStatus.RUNNING
        entry = await audit_log.get(entry_id)
        assert entry.snapshot["status"] == "running"
        assert not list(store.state_dir.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_failed_audit_append_leaves_state_untouched(self, temp_state_dir: Path):
        audit_log = AuditLogStore()
        store = WorkflowStore(temp_state_dir, audit_log)
        record = _record()
        await store.create(record)

        audit_log.append = AsyncMock(side_effect=AuditLogError("disk full"))
        record.mark_running()
        with pytest.raises(AuditLogError):
            await store.commit(record, AuditEventType.WORKFLOW_STATE_CHANGE)

        assert (await store.load("wf-1")).status == WorkflowStatus.PENDING
        assert not list(temp_state_dir.glob("*.tmp"))


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_recent_newest_first(self, store: WorkflowStore):
        for n in range(3):
            await store.create(_record(f"wf-{n}"))

        recent = await store.list_recent(limit=2)
        assert [r.workflow_id for r in recent] == ["wf-2", "wf-1"]

    @pytest.mark.asyncio
    async def test_find_runs_by_code_hash(self, store: WorkflowStore):
        for workflow_id, code_hash in (("wf-a", "h1"), ("wf-b", "h2"), ("wf-c", "h1")):
            record = _record(workflow_id)
            await store.create(record)
            record.mark_running()
            for name in (StageName.SOURCE_FETCH, StageName.PLANNING, StageName.GENERATION):
                record.begin_stage(name)
                record.complete_stage(name)
            record.append_run(
                RunSnapshot(
                    workflow_id=workflow_id,
                    code_hash=code_hash,
                    passed=1,
                    failed=0,
                    total=1,
                    coverage=80,
                    pass_rate=1.0,
                )
            )
            await store.commit(record, AuditEventType.TEST_EXECUTION)

        runs = await store.find_runs_by_code_hash("h1")
        assert [r.workflow_id for r in runs] == ["wf-c", "wf-a"]

        excluding = await store.find_runs_by_code_hash("h1", exclude_workflow_id="wf-c")
        assert [r.workflow_id for r in excluding] == ["wf-a"]

    @pytest.mark.asyncio
    async def test_list_recent_reads_only_returned_records(self, store: WorkflowStore, temp_state_dir: Path):
        for n in range(5):
            await store.create(_record(f"wf-{n}"))

        # A second store over the same directory starts with an empty catalog
        reader = WorkflowStore(temp_state_dir, store.audit_log)
        assert [r.workflow_id for r in await reader.list_recent(limit=5)][0] == "wf-4"

        reader._read = AsyncMock(wraps=reader._read)
        recent = await reader.list_recent(limit=2)
        assert [r.workflow_id for r in recent] == ["wf-4", "wf-3"]
        assert reader._read.await_count == 2

        await reader.find_runs_by_code_hash("h1")
        assert reader._read.await_count == 2

    @pytest.mark.asyncio
    async def test_catalog_picks_up_records_from_other_writers(self, store: WorkflowStore, temp_state_dir: Path):
        reader = WorkflowStore(temp_state_dir, store.audit_log)
        assert await reader.list_recent() == []

        await store.create(_record("wf-late"))
        assert [r.workflow_id for r in await reader.list_recent()] == ["wf-late"]


class TestLocks:
    @pytest.mark.asyncio
    async def test_locks_released_after_use(self, store: WorkflowStore):
        record = _record("wf-lock")
        await store.create(record)
        await store.load("wf-lock")
        await store.commit(record, AuditEventType.WORKFLOW_STATE_CHANGE)
        gc.collect()

        assert "wf-lock" not in store._locks
