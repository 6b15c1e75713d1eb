"""
Reward scoring for training-signal aggregation.

The :class:`RewardComputer` turns the outcome of a workflow into a scalar
reward in ``[0, 1]`` built from three component signals:

- code quality, from the review bot findings;
- test execution, from pass rate, coverage and flakiness;
- reasoning quality, from the planner's reasoning trace.

The combination is a fixed weighted sum (0.5 / 0.4 / 0.1 by default). A
missing signal counts as ``0`` so that partial runs still get a usable,
conservative score. Rewards are bucketed into high (> 0.75), medium
(0.5 - 0.75) and low (< 0.5) tiers, which drive a 70/20/10 training mixture
when selecting examples for downstream fine-tuning.

Example:
    >>> computer = RewardComputer()
    >>> computer.compute_reward(0.8, None, 0.6).combined_reward
    0.46
"""

from __future__ import annotations

import math
import re
from typing import Any

import structlog

from testflow.config.settings import RewardConfig
from testflow.enums import QualityTier, StageStatus
from testflow.models.workflow import (
    CodeReviewRecord,
    RewardSnapshot,
    TestExecutionRecord,
    WorkflowRecord,
    classify_tier,
)

log = structlog.get_logger(__name__)

NEUTRAL_SIGNAL = 0.5
EDGE_CASE_KEYWORDS = ("edge", "boundary", "corner", "exception", "error", "invalid", "null", "empty")
FINDING_KEYWORDS = ("coderabbit", "review", "finding")
MIXTURE_RATIOS: dict[QualityTier, float] = {
    QualityTier.HIGH: 0.7,
    QualityTier.MEDIUM: 0.2,
    QualityTier.LOW: 0.1,
}
MIXTURE_STRATEGY = "70% high, 20% medium, 10% low"


def _clamp(value: float | None) -> float:
    if value is None or math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


def code_quality_signal(review: CodeReviewRecord | None) -> float:
    """Score review findings.

    A review that did not complete (missing, failed, bot still pending or no
    pull request to review) is neutral. A clean review scores 1.0. Otherwise
    resolved issues and minor fixes add points, warnings and critical issues
    subtract them, and the clipped total is mapped onto ``[0, 1]``.
    """
    if review is None or review.status != StageStatus.COMPLETE or review.bot_status != "complete":
        return NEUTRAL_SIGNAL

    if not (review.resolved or review.warnings or review.critical_issues or review.minor_fixes):
        return 1.0

    points = 1.0 * review.resolved + 0.2 * review.minor_fixes - 0.5 * review.warnings - 2.0 * review.critical_issues
    points = max(-10.0, min(10.0, points))
    return _clamp((points + 10.0) / 20.0)


def execution_signal(execution: TestExecutionRecord | None, flakiness: float | None = None) -> float:
    """Score a test run.

    ``0.7 * pass_rate + 0.3 * coverage``, discounted by flakiness. Without a
    flakiness measurement, a low pass rate paired with high coverage is
    treated as a hint of flaky tests.
    """
    if execution is None or execution.total == 0:
        return 0.0

    pass_rate = execution.passed / execution.total
    coverage = execution.coverage / 100.0
    base = pass_rate * 0.7 + coverage * 0.3

    if flakiness is not None:
        penalty = max(0.0, (flakiness - 0.05) * 2)
    elif pass_rate < 0.8 and coverage > 0.7:
        penalty = (0.8 - pass_rate) * 0.5
    else:
        penalty = 0.0

    return _clamp(base * (1 - penalty))


def reasoning_signal(
    steps: list[dict[str, Any]] | None,
    reasoning_text: str = "",
    has_review_findings: bool = False,
) -> float:
    """Score the planner's reasoning trace.

    Half structural (refers to review findings, covers edge cases, stays
    concise), half traditional (number of steps, share of high-impact steps).
    No reasoning steps is neutral.
    """
    if not steps:
        return NEUTRAL_SIGNAL

    text = reasoning_text.lower()
    references_findings = 1.0 if has_review_findings and any(k in text for k in FINDING_KEYWORDS) else 0.0

    edge_mentions = sum(1 for keyword in EDGE_CASE_KEYWORDS if keyword in text)
    edge_case_score = min(1.0, edge_mentions / 3)

    word_count = len(re.split(r"\s+", reasoning_text.strip())) if reasoning_text.strip() else 0
    conciseness_penalty = min(0.3, (word_count - 500) / 1000) if word_count > 500 else 0.0

    step_count = len(steps)
    high_impact = sum(1 for step in steps if step.get("impact") == "high")
    thoroughness = min(1.0, step_count / 5)
    impact_score = high_impact / step_count

    structural = 0.5 * references_findings + 0.3 * edge_case_score + 0.2 * (1 - conciseness_penalty)
    traditional = thoroughness * 0.6 + impact_score * 0.4
    return _clamp(structural * 0.5 + traditional * 0.5)


class RewardComputer:
    """Combine component signals into reward snapshots.

    Args:
        config: Weights and readiness thresholds.
        model_version: Version tag recorded on every snapshot.
    """

    def __init__(self, config: RewardConfig | None = None, model_version: str = "v1.0") -> None:
        self.config = config or RewardConfig()
        self.model_version = model_version

    @property
    def weights(self) -> dict[str, float]:
        return {
            "code_quality": self.config.code_quality_weight,
            "test_execution": self.config.test_execution_weight,
            "reasoning": self.config.reasoning_weight,
        }

    def compute_reward(
        self,
        code_quality: float | None,
        test_execution: float | None,
        reasoning: float | None,
        components: dict[str, Any] | None = None,
    ) -> RewardSnapshot:
        """Weighted combination of the three signals.

        Missing or NaN signals count as 0 and every signal is clamped to
        ``[0, 1]``. The result only depends on its inputs.

        Args:
            code_quality: Code quality signal.
            test_execution: Test execution signal.
            reasoning: Reasoning quality signal.
            components: Diagnostic details stored with the snapshot.

        Returns:
            RewardSnapshot whose ``combined_reward`` and ``high_quality`` are
            derived from the signals and weights.
        """
        return RewardSnapshot(
            code_quality_reward=_clamp(code_quality),
            test_execution_reward=_clamp(test_execution),
            reasoning_reward=_clamp(reasoning),
            weights=self.weights,
            model_version=self.model_version,
            components=components or {},
        )

    def score_workflow(self, record: WorkflowRecord) -> RewardSnapshot:
        """Score whatever a workflow produced, including partial runs.

        Stages that never completed contribute a missing signal.
        """
        review = (
            record.code_review
            if record.code_review.status in (StageStatus.COMPLETE, StageStatus.NO_PR_AVAILABLE)
            else None
        )
        execution = record.test_execution if record.test_execution.status == StageStatus.COMPLETE else None
        planning_done = record.planning.status == StageStatus.COMPLETE

        code_quality = code_quality_signal(review) if review is not None else None
        test_execution = execution_signal(execution, execution.flakiness) if execution is not None else None
        reasoning = (
            reasoning_signal(
                record.planning.reasoning_steps,
                record.planning.reasoning,
                has_review_findings=review is not None and review.status == StageStatus.COMPLETE,
            )
            if planning_done
            else None
        )

        snapshot = self.compute_reward(
            code_quality,
            test_execution,
            reasoning,
            components={
                "code_quality": code_quality,
                "test_execution": test_execution,
                "reasoning": reasoning,
            },
        )
        log.info(
            "reward_computed",
            workflow_id=record.workflow_id,
            combined_reward=snapshot.combined_reward,
            tier=snapshot.tier.value,
        )
        return snapshot


def latest_reward(record: WorkflowRecord) -> float:
    latest = record.rl_training.latest
    return latest.combined_reward if latest else 0.0


def tier_counts(records: list[WorkflowRecord]) -> dict[QualityTier, int]:
    """Number of workflows per tier, by latest reward; sums to ``len(records)``."""
    counts = {tier: 0 for tier in QualityTier}
    for record in records:
        counts[classify_tier(latest_reward(record))] += 1
    return counts


def format_training_example(record: WorkflowRecord) -> dict[str, Any]:
    """Shape a workflow as an input/output/reward training example."""
    review = record.code_review
    return {
        "input": {
            "code": record.source_fetch.diff,
            "ticket_context": record.ticket_key or "",
            "review_findings": (
                {
                    "status": review.status.value,
                    "critical_issues": review.critical_issues,
                    "warnings": review.warnings,
                    "suggestions": review.suggestions,
                    "resolved": review.resolved,
                }
                if review.is_terminal
                else None
            ),
        },
        "output": {
            "test_plan": {
                "unit_tests": record.planning.unit_tests,
                "integration_tests": record.planning.integration_tests,
                "edge_cases": record.planning.edge_cases,
            },
            "generated_code": record.generation.code,
            "reasoning": record.planning.reasoning,
        },
        "reward": latest_reward(record),
        "metadata": {
            "language": record.generation.language or "javascript",
            "framework": record.generation.framework or "jest",
            "timestamp": record.created_at.isoformat(),
            "workflow_id": record.workflow_id,
        },
    }


def select_training_examples(records: list[WorkflowRecord], limit: int) -> list[dict[str, Any]]:
    """Pick up to ``limit`` examples following the 70/20/10 tier mixture.

    Only scored workflows are eligible. Within a tier the best rewards go
    first. When a tier cannot fill its quota the remaining slots go to the
    best leftover examples of any tier.
    """
    if limit <= 0:
        return []

    scored = [r for r in records if r.rl_training.latest is not None]
    ranked = sorted(scored, key=latest_reward, reverse=True)
    by_tier: dict[QualityTier, list[WorkflowRecord]] = {tier: [] for tier in QualityTier}
    for record in ranked:
        by_tier[classify_tier(latest_reward(record))].append(record)

    quotas = {tier: int(limit * ratio) for tier, ratio in MIXTURE_RATIOS.items()}
    quotas[QualityTier.HIGH] += limit - sum(quotas.values())

    selected: list[WorkflowRecord] = []
    for tier in QualityTier:
        selected.extend(by_tier[tier][: quotas[tier]])

    if len(selected) < limit:
        chosen = {r.workflow_id for r in selected}
        selected.extend(r for r in ranked if r.workflow_id not in chosen)
        selected = selected[:limit]

    return [format_training_example(record) for record in selected]
