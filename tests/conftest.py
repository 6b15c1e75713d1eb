"""Pytest configuration and shared fixtures."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from testflow.config.settings import TestflowSettings
from testflow.engine.audit_log import AuditLogStore, MemoryAuditBackend
from testflow.engine.broadcaster import EventBroadcaster
from testflow.engine.orchestrator import Collaborators, WorkflowOrchestrator
from testflow.engine.reward import RewardComputer
from testflow.engine.ticket_resilience import TicketResilienceLayer
from testflow.engine.workflow_store import WorkflowStore
from testflow.models.domain import (
    ChangedFile,
    CodeContext,
    GeneratedTests,
    ReasoningStep,
    ReviewResult,
    TestPlan,
    TestRunResult,
    TrackerCredentials,
    TrackerResult,
    TriggerInput,
)
from testflow.providers.base import (
    CodeReviewer,
    IssueTracker,
    SourceProvider,
    TestGenerator,
    TestPlanner,
    TestRunner,
)

PR_URL = "https://github.com/acme/shop/pull/17"

SAMPLE_DIFF = """diff --git a/src/cart.js b/src/cart.js
@@ -1,3 +1,8 @@
+export function addItem(cart, item) {
+  if (!item) throw new Error("item required");
+  return [...cart, item];
+}
"""

SAMPLE_CODE = """describe("addItem", () => {
  test("adds an item", () => {
    expect(addItem([], 1)).toEqual([1]);
  });
  it("rejects empty items", () => {
    expect(() => addItem([], null)).toThrow();
  });
});
"""


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def audit_log() -> AuditLogStore:
    """In-memory audit log."""
    return AuditLogStore(MemoryAuditBackend())


@pytest.fixture
def store(temp_state_dir: Path, audit_log: AuditLogStore) -> WorkflowStore:
    """WorkflowStore over a temp directory."""
    return WorkflowStore(temp_state_dir, audit_log)


@pytest.fixture
def credentials() -> TrackerCredentials:
    return TrackerCredentials(base_url="https://acme.atlassian.net", email="qa@acme.test", api_token="token-123")


@pytest.fixture
def settings(tmp_path: Path) -> TestflowSettings:
    """Settings pointing state and audit directories at tmp_path."""
    return TestflowSettings(
        workflow={
            "state_directory": str(tmp_path / "state"),
            "audit_directory": str(tmp_path / "audit"),
            "stage_timeout": 5,
        },
        tracker={
            "base_url": "https://acme.atlassian.net",
            "email": "qa@acme.test",
            "api_token": "token-123",
        },
    )


@pytest.fixture
def sample_trigger() -> TriggerInput:
    return TriggerInput(pr_url=PR_URL)


@pytest.fixture
def sample_context() -> CodeContext:
    return CodeContext(
        title="Add cart helpers",
        diff=SAMPLE_DIFF,
        files=[ChangedFile(filename="src/cart.js", additions=5)],
        pr_url=PR_URL,
        pr_number=17,
        repository="acme/shop",
        branch="feature/cart",
    )


@pytest.fixture
def sample_plan() -> TestPlan:
    return TestPlan(
        unit_tests=2,
        integration_tests=1,
        edge_cases=1,
        reasoning="Cover the happy path, then invalid and empty items as edge cases.",
        reasoning_steps=[
            ReasoningStep("Analyzed code structure", "high"),
            ReasoningStep("Identified error paths", "high"),
            ReasoningStep("Prioritized coverage", "medium"),
        ],
    )


@pytest.fixture
def sample_tests() -> GeneratedTests:
    return GeneratedTests(code=SAMPLE_CODE, language="javascript", framework="jest", test_count=2)


@pytest.fixture
def mock_collaborators(
    sample_context: CodeContext,
    sample_plan: TestPlan,
    sample_tests: GeneratedTests,
) -> Collaborators:
    """Collaborators that succeed with the sample values."""
    source = AsyncMock(spec=SourceProvider)
    source.fetch_context = AsyncMock(return_value=sample_context)
    planner = AsyncMock(spec=TestPlanner)
    planner.plan_tests = AsyncMock(return_value=sample_plan)
    generator = AsyncMock(spec=TestGenerator)
    generator.generate_tests = AsyncMock(return_value=sample_tests)
    runner = AsyncMock(spec=TestRunner)
    runner.run_tests = AsyncMock(return_value=TestRunResult(passed=2, failed=0, coverage=80.0, simulated=True))
    reviewer = AsyncMock(spec=CodeReviewer)
    reviewer.review = AsyncMock(return_value=ReviewResult(status="complete", resolved=2, minor_fixes=1))
    return Collaborators(source=source, planner=planner, generator=generator, runner=runner, reviewer=reviewer)


@pytest.fixture
def mock_tracker() -> AsyncMock:
    """Issue tracker where every call succeeds."""
    tracker = AsyncMock(spec=IssueTracker)
    tracker.get_project = AsyncMock(return_value=TrackerResult.success({"key": "TEST"}))
    tracker.get_issue = AsyncMock(
        return_value=TrackerResult.success({"key": "SHOP-42", "fields": {"project": {"key": "SHOP"}}})
    )
    tracker.create_issue = AsyncMock(
        return_value=TrackerResult.success({"key": "TEST-7", "url": "https://acme.atlassian.net/browse/TEST-7"})
    )
    tracker.create_subtask = AsyncMock(
        return_value=TrackerResult.success({"key": "SHOP-43", "url": "https://acme.atlassian.net/browse/SHOP-43"})
    )
    return tracker


@pytest.fixture
def tickets(mock_tracker: AsyncMock, credentials: TrackerCredentials) -> TicketResilienceLayer:
    return TicketResilienceLayer(mock_tracker, credentials, default_project_key="TEST")


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def orchestrator(
    store: WorkflowStore,
    broadcaster: EventBroadcaster,
    mock_collaborators: Collaborators,
    tickets: TicketResilienceLayer,
) -> WorkflowOrchestrator:
    """Orchestrator with mocked collaborators and real stores."""
    return WorkflowOrchestrator(
        store=store,
        broadcaster=broadcaster,
        rewards=RewardComputer(),
        collaborators=mock_collaborators,
        tickets=tickets,
        stage_timeout=2.0,
    )
