"""Core models for the testflow engine.

Key Models:
    - WorkflowRecord: Persisted aggregate for one pipeline run
    - RewardSnapshot: Reward computed for a run
    - TriggerInput: Request to start a workflow
    - CodeContext, TestPlan, GeneratedTests, TestRunResult, ReviewResult:
      values exchanged with collaborators
    - TicketPayload, TicketResult, TrackerResult: issue tracker values

Example:
    >>> from testflow.models import TriggerInput, WorkflowRecord
    >>> record = WorkflowRecord.create(TriggerInput(pr_url=url).to_dict())
"""

from testflow.models.domain import (
    ChangedFile,
    CodeContext,
    GeneratedTests,
    ReasoningStep,
    ReviewResult,
    TestPlan,
    TestRunResult,
    TicketPayload,
    TicketResult,
    TrackerCredentials,
    TrackerResult,
    TriggerInput,
)
from testflow.models.workflow import RewardSnapshot, RunSnapshot, WorkflowRecord

__all__ = [
    "ChangedFile",
    "CodeContext",
    "GeneratedTests",
    "ReasoningStep",
    "ReviewResult",
    "RewardSnapshot",
    "RunSnapshot",
    "TestPlan",
    "TestRunResult",
    "TicketPayload",
    "TicketResult",
    "TrackerCredentials",
    "TrackerResult",
    "TriggerInput",
    "WorkflowRecord",
]
