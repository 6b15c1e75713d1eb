"""Tests for testflow/engine/metrics.py."""

import pytest

from testflow.config.settings import RewardConfig
from testflow.engine.metrics import cohort_metrics, compute_reward_metrics
from testflow.models.workflow import RewardSnapshot, WorkflowRecord

WEIGHTS = {"code_quality": 0.5, "test_execution": 0.4, "reasoning": 0.1}


def _scored(workflow_id: str, reward: float, passed: int = 0, total: int = 0) -> WorkflowRecord:
    record = WorkflowRecord.create({}, workflow_id=workflow_id)
    record.mark_running()
    record.append_reward(
        RewardSnapshot(
            code_quality_reward=reward, test_execution_reward=reward, reasoning_reward=reward, weights=WEIGHTS
        )
    )
    record.test_execution.passed = passed
    record.test_execution.total = total
    return record


class TestCohortMetrics:
    def test_empty_cohort(self):
        metrics = cohort_metrics([], "v1.0")
        assert metrics.workflow_count == 0
        assert metrics.avg_reward == 0.0

    def test_pass_rate_only_counts_workflows_with_tests(self):
        records = [_scored("wf-1", 0.8, passed=3, total=4), _scored("wf-2", 0.4)]
        metrics = cohort_metrics(records, "v1.1")
        assert metrics.test_pass_rate == pytest.approx(75.0)
        assert metrics.avg_reward == pytest.approx(0.6)
        assert metrics.code_quality == pytest.approx(60.0)

    def test_zero_rewards_excluded_from_average(self):
        records = [_scored("wf-1", 0.8), WorkflowRecord.create({}, workflow_id="wf-2")]
        assert cohort_metrics(records, "v1.0").avg_reward == pytest.approx(0.8)


class TestComputeRewardMetrics:
    def test_no_workflows(self):
        metrics = compute_reward_metrics([])
        assert metrics.total_workflows == 0
        assert metrics.improvement == 0.0
        assert metrics.pipeline_status.training_data_ready is False

    def test_positional_cohorts_and_mixture(self):
        records = [_scored(f"wf-{n}", r) for n, r in enumerate((0.9, 0.8, 0.6, 0.3))]
        metrics = compute_reward_metrics(records)

        assert metrics.baseline.version == "v1.0"
        assert metrics.baseline.avg_reward == pytest.approx(0.85)
        assert metrics.improved.avg_reward == pytest.approx(0.45)
        assert metrics.improvement == pytest.approx((0.45 - 0.85) / 0.85 * 100)

        mixture = metrics.pipeline_status.training_mixture
        assert (mixture.high, mixture.medium, mixture.low) == (2, 1, 1)
        assert mixture.high + mixture.medium + mixture.low == metrics.total_workflows
        assert metrics.high_quality_examples == 2
        assert [w.workflow_id for w in metrics.workflows] == ["wf-0", "wf-1", "wf-2", "wf-3"]

    def test_readiness_thresholds(self):
        records = [_scored(f"wf-{n}", 0.9) for n in range(3)]
        metrics = compute_reward_metrics(records)
        assert metrics.pipeline_status.training_data_ready is True
        assert metrics.pipeline_status.fine_tuning_ready is False

        relaxed = RewardConfig(fine_tuning_ready_min=3)
        assert compute_reward_metrics(records, relaxed).pipeline_status.fine_tuning_ready is True
