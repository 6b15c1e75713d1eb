"""Tests for testflow/models/workflow.py."""

import pytest

from testflow.enums import QualityTier, StageName, StageStatus, WorkflowStatus
from testflow.exceptions import InvalidTransitionError
from testflow.models.workflow import (
    STAGE_ORDER,
    RewardSnapshot,
    RunSnapshot,
    WorkflowRecord,
    classify_tier,
)

WEIGHTS = {"code_quality": 0.5, "test_execution": 0.4, "reasoning": 0.1}


def _running_record() -> WorkflowRecord:
    record = WorkflowRecord.create({"pr_url": "https://github.com/acme/shop/pull/17"})
    record.mark_running()
    return record


def _finish_stages(record: WorkflowRecord, upto: StageName) -> None:
    for name in STAGE_ORDER:
        record.begin_stage(name)
        record.complete_stage(name)
        if name == upto:
            return


class TestWorkflowCreation:
    """Tests for record creation."""

    def test_create_generates_id(self):
        record = WorkflowRecord.create({})
        assert record.workflow_id.startswith("wf-")
        assert len(record.workflow_id) == 15

    def test_create_uses_given_id_and_ticket(self):
        record = WorkflowRecord.create({"ticket_key": "SHOP-42", "project_key": "SHOP"}, workflow_id="wf-fixed")
        assert record.workflow_id == "wf-fixed"
        assert record.ticket_key == "SHOP-42"
        assert record.ticket_project_key == "SHOP"

    def test_new_record_is_pending_with_pending_stages(self):
        record = WorkflowRecord.create({})
        assert record.status == WorkflowStatus.PENDING
        assert all(record.stage(name).status == StageStatus.PENDING for name in STAGE_ORDER)
        assert record.current_stage == StageName.SOURCE_FETCH

    def test_snapshot_round_trips_through_json(self):
        record = _running_record()
        _finish_stages(record, StageName.PLANNING)
        restored = WorkflowRecord.model_validate(record.snapshot())
        assert restored.planning.status == StageStatus.COMPLETE
        assert restored.status == WorkflowStatus.RUNNING


class TestWorkflowStatusTransitions:
    """Overall status only moves forward."""

    def test_mark_running_from_pending(self):
        record = _running_record()
        assert record.status == WorkflowStatus.RUNNING
        assert record.started_at is not None

    def test_mark_running_twice_rejected(self):
        record = _running_record()
        with pytest.raises(InvalidTransitionError):
            record.mark_running()

    def test_complete_requires_all_stages_terminal(self):
        record = _running_record()
        _finish_stages(record, StageName.CODE_REVIEW)
        with pytest.raises(InvalidTransitionError, match="ticket_push"):
            record.mark_completed()

    def test_complete_after_all_stages(self):
        record = _running_record()
        _finish_stages(record, StageName.TICKET_PUSH)
        record.mark_completed()
        assert record.status == WorkflowStatus.COMPLETED
        assert record.completed_at is not None

    def test_failed_records_error(self):
        record = _running_record()
        record.mark_failed("GitHub unreachable", error_kind="api_error")
        assert record.status == WorkflowStatus.FAILED
        assert record.error == "GitHub unreachable"
        assert record.error_kind == "api_error"

    @pytest.mark.parametrize("terminal", ["completed", "failed"])
    def test_no_transition_out_of_terminal(self, terminal: str):
        record = _running_record()
        if terminal == "completed":
            _finish_stages(record, StageName.TICKET_PUSH)
            record.mark_completed()
        else:
            record.mark_failed("boom")

        with pytest.raises(InvalidTransitionError):
            record.mark_failed("again")
        with pytest.raises(InvalidTransitionError):
            record.mark_running()

    def test_pending_record_can_fail(self):
        record = WorkflowRecord.create({})
        record.mark_failed("could not start")
        assert record.status == WorkflowStatus.FAILED


class TestStageTransitions:
    """Stage sub-records move pending -> active -> terminal, in order."""

    def test_stage_cannot_change_unless_running(self):
        record = WorkflowRecord.create({})
        with pytest.raises(InvalidTransitionError):
            record.begin_stage(StageName.SOURCE_FETCH)

    def test_begin_sets_active_status(self):
        record = _running_record()
        record.begin_stage(StageName.SOURCE_FETCH)
        assert record.source_fetch.status == StageStatus.FETCHING
        assert record.source_fetch.started_at is not None

    def test_stage_cannot_start_before_predecessor_finishes(self):
        record = _running_record()
        with pytest.raises(InvalidTransitionError, match="source_fetch"):
            record.begin_stage(StageName.PLANNING)

    def test_complete_stores_fields(self):
        record = _running_record()
        record.begin_stage(StageName.SOURCE_FETCH)
        record.complete_stage(StageName.SOURCE_FETCH, title="Add cart", files_changed=3)
        assert record.source_fetch.status == StageStatus.COMPLETE
        assert record.source_fetch.title == "Add cart"
        assert record.source_fetch.files_changed == 3

    def test_complete_rejects_unknown_field(self):
        record = _running_record()
        record.begin_stage(StageName.SOURCE_FETCH)
        with pytest.raises(ValueError, match="bogus"):
            record.complete_stage(StageName.SOURCE_FETCH, bogus=1)

    def test_complete_rejects_base_fields(self):
        record = _running_record()
        record.begin_stage(StageName.SOURCE_FETCH)
        with pytest.raises(ValueError):
            record.complete_stage(StageName.SOURCE_FETCH, started_at=None)

    def test_stage_cannot_go_backwards(self):
        record = _running_record()
        _finish_stages(record, StageName.SOURCE_FETCH)
        with pytest.raises(InvalidTransitionError):
            record.begin_stage(StageName.SOURCE_FETCH)
        with pytest.raises(InvalidTransitionError):
            record.complete_stage(StageName.SOURCE_FETCH)

    def test_no_pr_available_only_for_review(self):
        record = _running_record()
        _finish_stages(record, StageName.TEST_EXECUTION)
        record.begin_stage(StageName.CODE_REVIEW)
        record.complete_stage(StageName.CODE_REVIEW, StageStatus.NO_PR_AVAILABLE)
        assert record.code_review.is_terminal

        other = _running_record()
        other.begin_stage(StageName.SOURCE_FETCH)
        with pytest.raises(InvalidTransitionError):
            other.complete_stage(StageName.SOURCE_FETCH, StageStatus.NO_PR_AVAILABLE)

    def test_complete_with_failed_status_rejected(self):
        record = _running_record()
        record.begin_stage(StageName.SOURCE_FETCH)
        with pytest.raises(InvalidTransitionError):
            record.complete_stage(StageName.SOURCE_FETCH, StageStatus.FAILED)

    def test_fail_stage(self):
        record = _running_record()
        record.begin_stage(StageName.SOURCE_FETCH)
        record.fail_stage(StageName.SOURCE_FETCH, "404")
        assert record.source_fetch.status == StageStatus.FAILED
        assert record.source_fetch.error == "404"
        with pytest.raises(InvalidTransitionError):
            record.fail_stage(StageName.SOURCE_FETCH, "again")

    def test_run_history_is_append_only(self):
        record = _running_record()
        for passed in (1, 2):
            record.append_run(
                RunSnapshot(
                    workflow_id=record.workflow_id,
                    passed=passed,
                    failed=2 - passed,
                    total=2,
                    coverage=50,
                    pass_rate=passed / 2,
                )
            )
        assert [r.pass_rate for r in record.test_execution.run_history] == [0.5, 1.0]

    def test_run_history_cannot_be_replaced_through_complete(self):
        record = _running_record()
        _finish_stages(record, StageName.GENERATION)
        record.begin_stage(StageName.TEST_EXECUTION)
        with pytest.raises(ValueError):
            record.complete_stage(StageName.TEST_EXECUTION, run_history=[])


class TestRewardSnapshot:
    """Derived reward fields."""

    def test_combined_reward_is_weighted_sum(self):
        snapshot = RewardSnapshot(
            code_quality_reward=0.8, test_execution_reward=0.0, reasoning_reward=0.6, weights=WEIGHTS
        )
        assert snapshot.combined_reward == pytest.approx(0.46)
        assert snapshot.high_quality is False
        assert snapshot.tier == QualityTier.LOW

    def test_high_quality_strictly_above_threshold(self):
        at_threshold = RewardSnapshot(
            code_quality_reward=0.75, test_execution_reward=0.75, reasoning_reward=0.75, weights=WEIGHTS
        )
        assert at_threshold.combined_reward == pytest.approx(0.75)
        assert at_threshold.high_quality is False
        assert at_threshold.tier == QualityTier.MEDIUM

    def test_signals_outside_range_rejected(self):
        with pytest.raises(ValueError):
            RewardSnapshot(code_quality_reward=1.5, test_execution_reward=0, reasoning_reward=0, weights=WEIGHTS)

    def test_derived_fields_serialised(self):
        snapshot = RewardSnapshot(code_quality_reward=1, test_execution_reward=1, reasoning_reward=1, weights=WEIGHTS)
        dumped = snapshot.model_dump(mode="json")
        assert dumped["combined_reward"] == 1.0
        assert dumped["high_quality"] is True

    def test_append_reward_only_while_running(self):
        record = WorkflowRecord.create({})
        snapshot = RewardSnapshot(code_quality_reward=1, test_execution_reward=1, reasoning_reward=1, weights=WEIGHTS)
        with pytest.raises(InvalidTransitionError):
            record.append_reward(snapshot)

        record.mark_running()
        record.append_reward(snapshot)
        record.append_reward(
            RewardSnapshot(code_quality_reward=0.5, test_execution_reward=0.5, reasoning_reward=0.5, weights=WEIGHTS)
        )
        assert record.rl_training.average_reward == pytest.approx(0.75)
        assert record.rl_training.high_quality is False
        assert record.rl_training.latest.combined_reward == pytest.approx(0.5)


@pytest.mark.parametrize(
    ("reward", "tier"),
    [
        (0.9, QualityTier.HIGH),
        (0.76, QualityTier.HIGH),
        (0.75, QualityTier.MEDIUM),
        (0.5, QualityTier.MEDIUM),
        (0.49, QualityTier.LOW),
        (0.0, QualityTier.LOW),
    ],
)
def test_classify_tier(reward: float, tier: QualityTier):
    assert classify_tier(reward) == tier
