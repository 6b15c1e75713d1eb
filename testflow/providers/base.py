"""
Abstract base classes for workflow collaborators.

The orchestrator only talks to external services through these contracts:
a source host for the code change, an AI planner and generator, a test
runner whose results are accepted as reported, a code-review bot and an
issue tracker. Implementations live beside this module; tests substitute
``AsyncMock(spec=...)`` doubles.
"""

from abc import ABC, abstractmethod

from testflow.models.domain import (
    CodeContext,
    GeneratedTests,
    ReviewResult,
    TestPlan,
    TestRunResult,
    TicketPayload,
    TrackerCredentials,
    TrackerResult,
    TriggerInput,
)


class SourceProvider(ABC):
    """Fetch the code change a workflow generates tests for."""

    @abstractmethod
    async def fetch_context(self, trigger: TriggerInput) -> CodeContext:
        """Fetch diff and metadata for the trigger's code reference.

        Raises:
            ExternalServiceError: If the source host cannot be reached or the
                referenced change does not exist.
        """
        pass


class TestPlanner(ABC):
    """Decide which tests to write."""

    __test__ = False

    @abstractmethod
    async def plan_tests(self, context: CodeContext) -> TestPlan:
        pass


class TestGenerator(ABC):
    """Write test code following a plan."""

    __test__ = False

    @abstractmethod
    async def generate_tests(self, context: CodeContext, plan: TestPlan) -> GeneratedTests:
        pass


class TestRunner(ABC):
    """Report the outcome of running generated tests."""

    __test__ = False

    @abstractmethod
    async def run_tests(self, tests: GeneratedTests, context: CodeContext) -> TestRunResult:
        pass


class CodeReviewer(ABC):
    """Read code-review bot findings for a change."""

    @abstractmethod
    async def review(self, context: CodeContext) -> ReviewResult:
        """Collect findings.

        Returns a result with status ``no_pr_available`` when the change has
        no pull request to review.
        """
        pass


class IssueTracker(ABC):
    """Issue tracker operations.

    Every call takes explicit credentials and answers with a
    :class:`TrackerResult`. Expected failures (not found, no permission,
    unauthorized, missing credentials) are reported in the result, never
    raised.
    """

    @abstractmethod
    async def get_project(self, credentials: TrackerCredentials, project_key: str) -> TrackerResult:
        """Check a project exists and is reachable.

        404 is reported as ``project_not_found``, 403 as ``no_permission``.
        """
        pass

    @abstractmethod
    async def get_issue(self, credentials: TrackerCredentials, issue_key: str) -> TrackerResult:
        pass

    @abstractmethod
    async def create_issue(
        self,
        credentials: TrackerCredentials,
        project_key: str,
        payload: TicketPayload,
        issue_type: str = "Task",
    ) -> TrackerResult:
        pass

    @abstractmethod
    async def create_subtask(
        self,
        credentials: TrackerCredentials,
        parent_key: str,
        project_key: str,
        payload: TicketPayload,
    ) -> TrackerResult:
        pass

    @abstractmethod
    async def create_project(
        self,
        credentials: TrackerCredentials,
        key: str,
        name: str,
        lead_account_id: str | None = None,
    ) -> TrackerResult:
        pass

    @abstractmethod
    async def list_projects(self, credentials: TrackerCredentials) -> TrackerResult:
        pass

    @abstractmethod
    async def list_project_issues(
        self, credentials: TrackerCredentials, project_key: str, max_results: int = 50
    ) -> TrackerResult:
        pass

    @abstractmethod
    async def transition_issue(self, credentials: TrackerCredentials, issue_key: str, status_name: str) -> TrackerResult:
        """Move an issue to the transition whose target status is ``status_name``."""
        pass
