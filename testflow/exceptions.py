"""Custom exception hierarchy for the testflow engine.

Every error carries an :class:`~testflow.enums.ErrorKind` so callers can
classify failures (a stage timeout versus an explicit upstream error, a
missing tracker item versus an authentication failure) without
inspecting exception types.

Exception Hierarchy:
    TestflowError (base)
    ├── ConfigurationError
    ├── ValidationError
    ├── WorkflowError
    │   ├── WorkflowNotFoundError
    │   ├── WorkflowAlreadyRunningError
    │   ├── InvalidTransitionError
    │   └── StageTimeoutError
    ├── ExternalServiceError
    ├── TicketError
    └── AuditLogError
        ├── ImmutableRecordError
        └── IntegrityViolationError

Example Usage:
    >>> from testflow.exceptions import ConfigurationError
    >>> try:
    ...     load_config(path)
    ... except FileNotFoundError as e:
    ...     raise ConfigurationError(f"Config file not found: {path}") from e
"""

from testflow.enums import ErrorKind


class TestflowError(Exception):
    """Base exception for all testflow errors.

    Attributes:
        message: Human-readable error description
        kind: Error classification
    """

    __test__ = False

    kind: ErrorKind = ErrorKind.API_ERROR

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(TestflowError):
    """Configuration-related errors.

    Examples:
        - Configuration file not found
        - Invalid YAML syntax
        - Missing environment variable referenced from the config
    """

    kind = ErrorKind.VALIDATION


class ValidationError(TestflowError):
    """Malformed trigger input or a failed stage pre-condition."""

    kind = ErrorKind.VALIDATION


# =============================================================================
# Workflow Errors
# =============================================================================


class WorkflowError(TestflowError):
    """Orchestration failures.

    Attributes:
        workflow_id: Workflow the error belongs to, when known
    """

    def __init__(self, message: str, workflow_id: str | None = None) -> None:
        self.workflow_id = workflow_id
        super().__init__(message)


class WorkflowNotFoundError(WorkflowError):
    """No workflow record exists for the requested id."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}", workflow_id=workflow_id)


class WorkflowAlreadyRunningError(WorkflowError):
    """A second run was requested for a workflow that is already running."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow already running: {workflow_id}", workflow_id=workflow_id)


class InvalidTransitionError(WorkflowError):
    """A stage or workflow status would move backwards or out of order."""


class StageTimeoutError(WorkflowError):
    """A stage collaborator did not answer within the stage timeout.

    Attributes:
        stage: Stage that timed out
        timeout_seconds: Timeout that was exceeded
    """

    kind = ErrorKind.TIMEOUT

    def __init__(self, stage: str, timeout_seconds: float, workflow_id: str | None = None) -> None:
        self.stage = stage
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Stage {stage} timed out after {timeout_seconds}s", workflow_id=workflow_id)


# =============================================================================
# Collaborator Errors
# =============================================================================


class ExternalServiceError(TestflowError):
    """External service communication errors.

    Raised when a collaborator (source host, AI provider, review bot, test
    runner) fails or answers with an unusable response.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        kind: ErrorKind = ErrorKind.API_ERROR,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
            kind: Error classification
        """
        self.status_code = status_code
        self.kind = kind

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)


class TicketError(TestflowError):
    """Issue tracker failure.

    Attributes:
        kind: One of no_credentials, not_found, no_permission, unauthorized,
            project_not_found or api_error
        key: Issue or project key the failing call targeted
    """

    def __init__(self, message: str, kind: ErrorKind, key: str | None = None) -> None:
        self.kind = kind
        self.key = key
        super().__init__(message)


# =============================================================================
# Audit Log Errors
# =============================================================================


class AuditLogError(TestflowError):
    """Audit log storage errors."""


class ImmutableRecordError(AuditLogError):
    """An existing audit entry was targeted for update, delete or overwrite."""

    def __init__(self, entry_id: str, operation: str) -> None:
        self.entry_id = entry_id
        self.operation = operation
        super().__init__(f"Audit log entries are immutable: {operation} rejected for {entry_id}")


class IntegrityViolationError(AuditLogError):
    """Stored integrity hash does not match the entry contents."""

    kind = ErrorKind.INTEGRITY_VIOLATION

    def __init__(self, entry_id: str, expected: str, actual: str) -> None:
        self.entry_id = entry_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Integrity violation for audit entry {entry_id}")
