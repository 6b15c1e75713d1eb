"""
Workflow record aggregate.

A :class:`WorkflowRecord` describes one pipeline run: the trigger that
started it, its overall status, one sub-record per stage and the reward
snapshots computed for it. The record enforces its own transition rules so
that no caller can move it backwards:

- overall status only moves ``pending -> running -> completed|failed`` and
  never leaves a terminal status;
- stage sub-records only move ``pending -> <active> -> <terminal>`` and only
  while the workflow is ``running``;
- a stage cannot reach a terminal status before its predecessor has;
- ``test_execution.run_history`` and ``rl_training.rewards`` are append-only,
  and the reward aggregates are derived from the appended snapshots.

Example:
    >>> record = WorkflowRecord.create(trigger)
    >>> record.mark_running()
    >>> record.begin_stage(StageName.SOURCE_FETCH)
    >>> record.complete_stage(StageName.SOURCE_FETCH, title="Add cart", files_changed=3)
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, computed_field

from testflow.enums import QualityTier, StageName, StageStatus, WorkflowStatus
from testflow.exceptions import InvalidTransitionError

HIGH_QUALITY_THRESHOLD = 0.75
MEDIUM_QUALITY_THRESHOLD = 0.5

STAGE_ORDER: tuple[StageName, ...] = (
    StageName.SOURCE_FETCH,
    StageName.PLANNING,
    StageName.GENERATION,
    StageName.TEST_EXECUTION,
    StageName.CODE_REVIEW,
    StageName.TICKET_PUSH,
)

ACTIVE_STATUS: dict[StageName, StageStatus] = {
    StageName.SOURCE_FETCH: StageStatus.FETCHING,
    StageName.PLANNING: StageStatus.PLANNING,
    StageName.GENERATION: StageStatus.GENERATING,
    StageName.TEST_EXECUTION: StageStatus.RUNNING,
    StageName.CODE_REVIEW: StageStatus.REVIEWING,
    StageName.TICKET_PUSH: StageStatus.PUSHING,
}


def utcnow() -> datetime:
    return datetime.now(UTC)


def classify_tier(reward: float) -> QualityTier:
    """Bucket a combined reward into the training-mixture tiers."""
    if reward > HIGH_QUALITY_THRESHOLD:
        return QualityTier.HIGH
    if reward >= MEDIUM_QUALITY_THRESHOLD:
        return QualityTier.MEDIUM
    return QualityTier.LOW


class StageRecord(BaseModel):
    """Common fields of every stage sub-record."""

    status: StageStatus = StageStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    terminal_statuses: ClassVar[frozenset[StageStatus]] = frozenset({StageStatus.COMPLETE, StageStatus.FAILED})

    @property
    def is_terminal(self) -> bool:
        return self.status in self.terminal_statuses


class SourceFetchRecord(StageRecord):
    title: str | None = None
    pr_url: str | None = None
    repository: str | None = None
    branch: str | None = None
    files_changed: int = 0
    diff: str = ""
    diff_size: int = 0
    language: str | None = None


class PlanningRecord(StageRecord):
    unit_tests: int = 0
    integration_tests: int = 0
    edge_cases: int = 0
    reasoning: str = ""
    reasoning_steps: list[dict[str, Any]] = Field(default_factory=list)


class GenerationRecord(StageRecord):
    language: str | None = None
    framework: str | None = None
    test_count: int = 0
    code: str = ""
    code_hash: str | None = None
    reasoning: str = ""


class RunSnapshot(BaseModel):
    """One test run, kept for flakiness analysis."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)
    workflow_id: str
    code_hash: str | None = None
    passed: int
    failed: int
    total: int
    coverage: float
    pass_rate: float


class TestExecutionRecord(StageRecord):
    __test__ = False

    passed: int = 0
    failed: int = 0
    total: int = 0
    coverage: float = 0.0
    pass_rate: float = 0.0
    simulated: bool = False
    flakiness: float = 0.0
    stability: float = 1.0
    run_history: list[RunSnapshot] = Field(default_factory=list)


class CodeReviewRecord(StageRecord):
    terminal_statuses: ClassVar[frozenset[StageStatus]] = frozenset(
        {StageStatus.COMPLETE, StageStatus.FAILED, StageStatus.NO_PR_AVAILABLE}
    )

    pr_url: str | None = None
    bot_status: str = "complete"
    critical_issues: int = 0
    warnings: int = 0
    suggestions: int = 0
    resolved: int = 0
    minor_fixes: int = 0
    insights: list[str] = Field(default_factory=list)


class TicketPushRecord(StageRecord):
    ticket_key: str | None = None
    ticket_url: str | None = None
    parent_key: str | None = None
    project_key: str | None = None
    synthetic: bool = False


class RewardSnapshot(BaseModel):
    """Reward computed for one run.

    ``combined_reward`` and ``high_quality`` are derived from the component
    signals and weights; they cannot be supplied by callers.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)
    code_quality_reward: float = Field(ge=0.0, le=1.0)
    test_execution_reward: float = Field(ge=0.0, le=1.0)
    reasoning_reward: float = Field(ge=0.0, le=1.0)
    weights: dict[str, float]
    model_version: str = "v1.0"
    components: dict[str, Any] = Field(default_factory=dict)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def combined_reward(self) -> float:
        total = (
            self.weights["code_quality"] * self.code_quality_reward
            + self.weights["test_execution"] * self.test_execution_reward
            + self.weights["reasoning"] * self.reasoning_reward
        )
        return round(min(1.0, max(0.0, total)), 6)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def high_quality(self) -> bool:
        return self.combined_reward > HIGH_QUALITY_THRESHOLD

    @property
    def tier(self) -> QualityTier:
        return classify_tier(self.combined_reward)


class RLTrainingRecord(BaseModel):
    """Reward history of a workflow."""

    rewards: list[RewardSnapshot] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def average_reward(self) -> float:
        if not self.rewards:
            return 0.0
        return round(sum(r.combined_reward for r in self.rewards) / len(self.rewards), 6)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def high_quality(self) -> bool:
        return self.average_reward > HIGH_QUALITY_THRESHOLD

    @property
    def latest(self) -> RewardSnapshot | None:
        return self.rewards[-1] if self.rewards else None


class WorkflowRecord(BaseModel):
    """Persisted aggregate describing one pipeline run."""

    workflow_id: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    ticket_key: str | None = None
    ticket_project_key: str | None = None
    trigger: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    error_kind: str | None = None

    source_fetch: SourceFetchRecord = Field(default_factory=SourceFetchRecord)
    planning: PlanningRecord = Field(default_factory=PlanningRecord)
    generation: GenerationRecord = Field(default_factory=GenerationRecord)
    test_execution: TestExecutionRecord = Field(default_factory=TestExecutionRecord)
    code_review: CodeReviewRecord = Field(default_factory=CodeReviewRecord)
    ticket_push: TicketPushRecord = Field(default_factory=TicketPushRecord)
    rl_training: RLTrainingRecord = Field(default_factory=RLTrainingRecord)

    @classmethod
    def create(cls, trigger: dict[str, Any], workflow_id: str | None = None) -> WorkflowRecord:
        return cls(
            workflow_id=workflow_id or f"wf-{uuid.uuid4().hex[:12]}",
            ticket_key=trigger.get("ticket_key"),
            ticket_project_key=trigger.get("project_key"),
            trigger=trigger,
        )

    def stage(self, name: StageName) -> StageRecord:
        record: StageRecord = getattr(self, name.value)
        return record

    @property
    def current_stage(self) -> StageName | None:
        """First stage that has not reached a terminal status."""
        for name in STAGE_ORDER:
            if not self.stage(name).is_terminal:
                return name
        return None

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    # ------------------------------------------------------------------
    # Workflow status transitions
    # ------------------------------------------------------------------

    def mark_running(self) -> None:
        if self.status != WorkflowStatus.PENDING:
            raise InvalidTransitionError(
                f"Cannot start workflow in status {self.status.value}", workflow_id=self.workflow_id
            )
        self.status = WorkflowStatus.RUNNING
        self.started_at = utcnow()
        self._touch()

    def mark_completed(self) -> None:
        if self.status != WorkflowStatus.RUNNING:
            raise InvalidTransitionError(
                f"Cannot complete workflow in status {self.status.value}", workflow_id=self.workflow_id
            )
        unfinished = [name.value for name in STAGE_ORDER if not self.stage(name).is_terminal]
        if unfinished:
            raise InvalidTransitionError(
                f"Cannot complete workflow with unfinished stages: {', '.join(unfinished)}",
                workflow_id=self.workflow_id,
            )
        self.status = WorkflowStatus.COMPLETED
        self.completed_at = utcnow()
        self._touch()

    def mark_failed(self, error: str, error_kind: str | None = None) -> None:
        if self.status.is_terminal:
            raise InvalidTransitionError(
                f"Cannot fail workflow in status {self.status.value}", workflow_id=self.workflow_id
            )
        self.status = WorkflowStatus.FAILED
        self.error = error
        self.error_kind = error_kind
        self.completed_at = utcnow()
        self._touch()

    # ------------------------------------------------------------------
    # Stage transitions
    # ------------------------------------------------------------------

    def begin_stage(self, name: StageName) -> None:
        stage = self._mutable_stage(name)
        self._require_predecessor_terminal(name)
        if stage.status != StageStatus.PENDING:
            raise InvalidTransitionError(
                f"Stage {name.value} cannot begin from {stage.status.value}", workflow_id=self.workflow_id
            )
        stage.status = ACTIVE_STATUS[name]
        stage.started_at = utcnow()
        self._touch()

    def complete_stage(self, name: StageName, status: StageStatus = StageStatus.COMPLETE, **data: Any) -> None:
        """Move a stage to a terminal status and store its results.

        Raises:
            InvalidTransitionError: If the workflow is not running, the stage
                is already terminal, ``status`` is not terminal for this stage,
                or the predecessor has not finished.
        """
        stage = self._mutable_stage(name)
        self._require_predecessor_terminal(name)
        if status not in stage.terminal_statuses or status == StageStatus.FAILED:
            raise InvalidTransitionError(
                f"{status.value} is not a completion status for {name.value}", workflow_id=self.workflow_id
            )
        if stage.is_terminal:
            raise InvalidTransitionError(
                f"Stage {name.value} already finished as {stage.status.value}", workflow_id=self.workflow_id
            )
        for key, value in data.items():
            if key not in type(stage).model_fields or key in StageRecord.model_fields or key == "run_history":
                raise ValueError(f"Unknown field for {name.value}: {key}")
            setattr(stage, key, value)
        stage.status = status
        stage.completed_at = utcnow()
        self._touch()

    def fail_stage(self, name: StageName, error: str) -> None:
        stage = self._mutable_stage(name)
        if stage.is_terminal:
            raise InvalidTransitionError(
                f"Stage {name.value} already finished as {stage.status.value}", workflow_id=self.workflow_id
            )
        stage.status = StageStatus.FAILED
        stage.error = error
        stage.completed_at = utcnow()
        self._touch()

    def append_run(self, run: RunSnapshot) -> None:
        self._mutable_stage(StageName.TEST_EXECUTION)
        self.test_execution.run_history.append(run)
        self._touch()

    def append_reward(self, reward: RewardSnapshot) -> None:
        if self.status != WorkflowStatus.RUNNING:
            raise InvalidTransitionError(
                f"Cannot record reward for workflow in status {self.status.value}", workflow_id=self.workflow_id
            )
        self.rl_training.rewards.append(reward)
        self._touch()

    def _mutable_stage(self, name: StageName) -> StageRecord:
        if self.status != WorkflowStatus.RUNNING:
            raise InvalidTransitionError(
                f"Stage {name.value} cannot change while workflow is {self.status.value}",
                workflow_id=self.workflow_id,
            )
        return self.stage(name)

    def _require_predecessor_terminal(self, name: StageName) -> None:
        index = STAGE_ORDER.index(name)
        if index == 0:
            return
        previous = STAGE_ORDER[index - 1]
        if not self.stage(previous).is_terminal:
            raise InvalidTransitionError(
                f"Stage {name.value} cannot run before {previous.value} finishes", workflow_id=self.workflow_id
            )

    def _touch(self) -> None:
        self.updated_at = utcnow()
