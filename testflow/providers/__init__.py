"""Collaborator implementations for the source host, AI, review bot and issue tracker.

Key Components:
    - SourceProvider, TestPlanner, TestGenerator, TestRunner, CodeReviewer,
      IssueTracker: Abstract contracts the orchestrator depends on
    - GitHubSourceProvider: Pull request and branch diffs via PyGithub
    - ReviewBotReviewer: Review bot findings from pull request comments
    - OpenAICompatibleProvider: Test planning and generation over chat completions
    - SimulatedTestRunner: Reports results without executing tests
    - JiraRestTracker: Jira Cloud REST client returning structured results

Tracker Results:
    Every tracker call answers with a TrackerResult. Not found, no permission,
    unauthorized and missing credentials are reported through ``error_kind``
    and never raised, so the ticket resilience layer can pick a fallback.

Example:
    >>> from testflow.providers.factory import create_orchestrator
    >>> orchestrator = create_orchestrator(settings)
"""

from testflow.providers.base import (
    CodeReviewer,
    IssueTracker,
    SourceProvider,
    TestGenerator,
    TestPlanner,
    TestRunner,
)

__all__ = [
    "CodeReviewer",
    "IssueTracker",
    "SourceProvider",
    "TestGenerator",
    "TestPlanner",
    "TestRunner",
]
