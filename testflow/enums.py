"""Enumerations shared across the testflow engine."""

from enum import Enum


class ErrorKind(str, Enum):
    """Classification attached to every engine error.

    The ticket resilience chain and the orchestrator branch on these values
    rather than on exception types, so the classification survives being
    carried through structured results.
    """

    NO_CREDENTIALS = "no_credentials"
    NOT_FOUND = "not_found"
    NO_PERMISSION = "no_permission"
    UNAUTHORIZED = "unauthorized"
    PROJECT_NOT_FOUND = "project_not_found"
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    API_ERROR = "api_error"
    INTEGRITY_VIOLATION = "integrity_violation"

    def __str__(self) -> str:
        return self.value


class WorkflowStatus(str, Enum):
    """Overall status of a workflow record."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED)


class StageStatus(str, Enum):
    """Status of one stage sub-record.

    Each stage uses the shared ``pending``, ``complete`` and ``failed`` values
    plus its own active value. ``no_pr_available`` is only valid for the
    code review stage.
    """

    PENDING = "pending"
    FETCHING = "fetching"
    PLANNING = "planning"
    GENERATING = "generating"
    RUNNING = "running"
    REVIEWING = "reviewing"
    PUSHING = "pushing"
    COMPLETE = "complete"
    FAILED = "failed"
    NO_PR_AVAILABLE = "no_pr_available"

    def __str__(self) -> str:
        return self.value


class StageName(str, Enum):
    """Pipeline stages in execution order."""

    SOURCE_FETCH = "source_fetch"
    PLANNING = "planning"
    GENERATION = "generation"
    TEST_EXECUTION = "test_execution"
    CODE_REVIEW = "code_review"
    TICKET_PUSH = "ticket_push"

    def __str__(self) -> str:
        return self.value


class AuditEventType(str, Enum):
    """Event types accepted by the audit log."""

    REVIEW_STATUS = "review-status"
    TEST_EXECUTION = "test-execution"
    REWARD_COMPUTATION = "reward-computation"
    WORKFLOW_STATE_CHANGE = "workflow-state-change"
    METRIC_UPDATE = "metric-update"

    def __str__(self) -> str:
        return self.value


class BroadcastEventKind(str, Enum):
    """Kinds of live events published on a workflow channel."""

    NODE_CREATED = "node-created"
    NODE_UPDATED = "node-updated"
    EDGE_CREATED = "edge-created"
    WORKFLOW_STATUS = "workflow-status"

    def __str__(self) -> str:
        return self.value


class QualityTier(str, Enum):
    """Reward tiers used to build the training mixture."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    def __str__(self) -> str:
        return self.value
