"""
Aggregate reward metrics across recent workflows.

Recent workflows are split positionally into two comparison cohorts, the
first half labelled ``baseline`` and the second ``improved``. The split is a
placeholder strategy, not a model-version partition. The training mixture
counts every workflow into exactly one reward tier.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from testflow.config.settings import RewardConfig
from testflow.engine.reward import MIXTURE_STRATEGY, latest_reward, tier_counts
from testflow.enums import QualityTier
from testflow.models.workflow import WorkflowRecord


class CohortMetrics(BaseModel):
    version: str
    avg_reward: float = 0.0
    test_pass_rate: float = 0.0
    code_quality: float = 0.0
    avg_test_count: int = 0
    workflow_count: int = 0


class TrainingMixture(BaseModel):
    high: int
    medium: int
    low: int
    strategy: str = MIXTURE_STRATEGY


class PipelineStatus(BaseModel):
    data_collection: bool = True
    reward_computation: bool = True
    training_data_ready: bool
    fine_tuning_ready: bool
    training_mixture: TrainingMixture


class WorkflowRewardSummary(BaseModel):
    workflow_id: str
    reward: float
    high_quality: bool
    created_at: str


class RewardMetrics(BaseModel):
    baseline: CohortMetrics
    improved: CohortMetrics
    improvement: float
    high_quality_examples: int
    total_workflows: int
    pipeline_status: PipelineStatus
    workflows: list[WorkflowRewardSummary] = Field(default_factory=list)


def cohort_metrics(records: list[WorkflowRecord], version: str) -> CohortMetrics:
    """Averages for one cohort.

    Only positive rewards enter the reward average and only workflows that
    ran tests enter the pass rate. Percentages are 0-100.
    """
    if not records:
        return CohortMetrics(version=version)

    rewards = [r.rl_training.average_reward for r in records if r.rl_training.average_reward > 0]
    pass_rates = [r.test_execution.passed / r.test_execution.total for r in records if r.test_execution.total > 0]
    quality = [r.rl_training.latest.code_quality_reward for r in records if r.rl_training.latest is not None]
    test_count = sum(r.generation.test_count for r in records) / len(records)

    return CohortMetrics(
        version=version,
        avg_reward=sum(rewards) / len(rewards) if rewards else 0.0,
        test_pass_rate=sum(pass_rates) / len(pass_rates) * 100 if pass_rates else 0.0,
        code_quality=sum(quality) / len(quality) * 100 if quality else 0.0,
        avg_test_count=int(test_count),
        workflow_count=len(records),
    )


def compute_reward_metrics(records: list[WorkflowRecord], config: RewardConfig | None = None) -> RewardMetrics:
    """Summarise reward trends over ``records`` (most recent first)."""
    config = config or RewardConfig()
    midpoint = len(records) // 2
    baseline = cohort_metrics(records[:midpoint], "v1.0")
    improved = cohort_metrics(records[midpoint:], "v1.1")

    improvement = 0.0
    if baseline.avg_reward > 0:
        improvement = (improved.avg_reward - baseline.avg_reward) / baseline.avg_reward * 100

    counts = tier_counts(records)
    high_count = counts[QualityTier.HIGH]

    return RewardMetrics(
        baseline=baseline,
        improved=improved,
        improvement=improvement,
        high_quality_examples=high_count,
        total_workflows=len(records),
        pipeline_status=PipelineStatus(
            training_data_ready=high_count >= config.training_ready_min,
            fine_tuning_ready=high_count >= config.fine_tuning_ready_min,
            training_mixture=TrainingMixture(
                high=high_count,
                medium=counts[QualityTier.MEDIUM],
                low=counts[QualityTier.LOW],
            ),
        ),
        workflows=[
            WorkflowRewardSummary(
                workflow_id=r.workflow_id,
                reward=latest_reward(r),
                high_quality=r.rl_training.high_quality,
                created_at=r.created_at.isoformat(),
            )
            for r in records
        ],
    )
