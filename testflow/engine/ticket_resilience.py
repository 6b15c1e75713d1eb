"""
Ticket creation with a deterministic fallback chain.

:class:`TicketResilienceLayer` pushes workflow output to the issue tracker.
The chain, each step tried only after a recoverable failure of the previous:

1. With a parent key, fetch the parent, validate its project and create a
   subtask beneath it.
2. If the parent is not found or not visible (no permission), validate the
   default project and create a standalone item there.
3. If that also fails and synthetic fallback is enabled, return a placeholder
   reference tagged ``synthetic=True``.
4. Otherwise raise :class:`~testflow.exceptions.TicketError`.

Authentication failures (``unauthorized``, ``no_credentials``) end the chain
at once and never reach the synthetic fallback. A destination project that is
missing or not permitted cannot fall back to standalone creation, since there
is no other project to target; it only recovers into synthetic mode.

Example:
    >>> layer = TicketResilienceLayer(tracker, credentials, default_project_key="QA")
    >>> result = await layer.push_result("SHOP-42", payload)
    >>> result.parent_key
    'SHOP-42'
"""

from __future__ import annotations

import uuid

import structlog

from testflow.engine.event_classifier import find_pr_url
from testflow.enums import ErrorKind
from testflow.exceptions import TicketError
from testflow.models.domain import TicketPayload, TicketResult, TrackerCredentials
from testflow.models.workflow import WorkflowRecord
from testflow.providers.base import IssueTracker

log = structlog.get_logger(__name__)

PARENT_FALLBACK_KINDS = frozenset({ErrorKind.NOT_FOUND, ErrorKind.NO_PERMISSION})
AUTH_FAILURE_KINDS = frozenset({ErrorKind.UNAUTHORIZED, ErrorKind.NO_CREDENTIALS})
MAX_CODE_CHARS = 10_000


class TicketResilienceLayer:
    """Push results to the issue tracker, falling back as configured.

    Args:
        tracker: Issue tracker client.
        credentials: Credentials passed with every tracker call.
        default_project_key: Project for standalone items.
        synthetic_fallback: Whether a synthetic placeholder may replace a
            real ticket when every real path failed.
    """

    def __init__(
        self,
        tracker: IssueTracker,
        credentials: TrackerCredentials,
        default_project_key: str = "TEST",
        synthetic_fallback: bool = False,
    ) -> None:
        self.tracker = tracker
        self.credentials = credentials
        self.default_project_key = default_project_key
        self.synthetic_fallback = synthetic_fallback

    async def push_result(
        self,
        parent_key: str | None,
        payload: TicketPayload,
        project_key: str | None = None,
    ) -> TicketResult:
        """Create the ticket holding a workflow's output.

        Args:
            parent_key: Existing ticket to attach a subtask to, if any.
            payload: Ticket content.
            project_key: Project for a standalone item; the default project
                is used when omitted.

        Returns:
            TicketResult. ``parent_key`` is ``None`` for standalone items.

        Raises:
            TicketError: When every path failed and synthetic fallback is off,
                or immediately on an authentication failure.
        """
        try:
            if not self.credentials.complete:
                raise TicketError("Issue tracker credentials not configured", ErrorKind.NO_CREDENTIALS)

            if parent_key:
                parent = await self.tracker.get_issue(self.credentials, parent_key)
                if parent.ok:
                    parent_project = parent.data.get("fields", {}).get("project", {}).get("key")
                    return await self._create_subtask(parent_key, parent_project or project_key, payload)
                if parent.error_kind not in PARENT_FALLBACK_KINDS:
                    parent.raise_for_error(parent_key)
                log.warning(
                    "ticket_parent_unavailable",
                    parent_key=parent_key,
                    reason=str(parent.error_kind),
                    fallback_project=project_key or self.default_project_key,
                )

            return await self._create_standalone(project_key or self.default_project_key, payload)

        except TicketError as e:
            if e.kind in AUTH_FAILURE_KINDS or not self.synthetic_fallback:
                log.error("ticket_push_failed", parent_key=parent_key, kind=str(e.kind), error=e.message)
                raise
            return self._synthetic(payload, e)

    async def find_pull_request(self, issue_key: str) -> str | None:
        """Pull request URL linked from a ticket's description or comments.

        Raises:
            TicketError: If the ticket cannot be read.
        """
        if not self.credentials.complete:
            raise TicketError("Issue tracker credentials not configured", ErrorKind.NO_CREDENTIALS, issue_key)
        result = await self.tracker.get_issue(self.credentials, issue_key)
        result.raise_for_error(issue_key)
        pr_url = find_pr_url(result.data)
        log.info("ticket_pull_request_lookup", issue_key=issue_key, found=pr_url is not None)
        return pr_url

    async def _validate_project(self, project_key: str) -> None:
        result = await self.tracker.get_project(self.credentials, project_key)
        if not result.ok:
            kind = result.error_kind or ErrorKind.API_ERROR
            raise TicketError(result.message or f"Project {project_key} unavailable", kind, project_key)

    async def _create_subtask(self, parent_key: str, project_key: str | None, payload: TicketPayload) -> TicketResult:
        if not project_key:
            raise TicketError(f"Cannot determine project of {parent_key}", ErrorKind.PROJECT_NOT_FOUND, parent_key)
        await self._validate_project(project_key)
        result = await self.tracker.create_subtask(self.credentials, parent_key, project_key, payload)
        result.raise_for_error(parent_key)
        log.info("ticket_subtask_created", ticket_key=result.data["key"], parent_key=parent_key)
        return TicketResult(
            ticket_key=result.data["key"],
            ticket_url=result.data.get("url", ""),
            parent_key=parent_key,
            project_key=project_key,
        )

    async def _create_standalone(self, project_key: str, payload: TicketPayload) -> TicketResult:
        await self._validate_project(project_key)
        result = await self.tracker.create_issue(self.credentials, project_key, payload)
        result.raise_for_error(project_key)
        log.info("ticket_standalone_created", ticket_key=result.data["key"], project_key=project_key)
        return TicketResult(
            ticket_key=result.data["key"],
            ticket_url=result.data.get("url", ""),
            parent_key=None,
            project_key=project_key,
        )

    def _synthetic(self, payload: TicketPayload, cause: TicketError) -> TicketResult:
        key = f"SYNTHETIC-{uuid.uuid4().hex[:8].upper()}"
        log.warning("ticket_synthetic_fallback", ticket_key=key, cause=str(cause.kind), error=cause.message)
        return TicketResult(
            ticket_key=key,
            ticket_url=f"synthetic://tickets/{key}",
            parent_key=None,
            project_key=None,
            synthetic=True,
        )


def build_ticket_payload(record: WorkflowRecord, assignee: str | None = None) -> TicketPayload:
    """Ticket content summarising a workflow's generated tests."""
    planned = record.planning.unit_tests + record.planning.integration_tests + record.planning.edge_cases
    test_count = record.generation.test_count
    coverage = min(100, round(test_count / planned * 100)) if planned else 0

    review = record.code_review
    if review.status.value == "no_pr_available":
        review_status = "No pull request available for review"
        insights = ""
    elif review.bot_status != "complete":
        review_status = f"Review bot {review.bot_status}; no findings recorded"
        insights = ""
    else:
        review_status = (
            f"{review.critical_issues} critical, {review.warnings} warnings, "
            f"{review.suggestions} suggestions, {review.resolved} resolved"
        )
        insights = "\n".join(review.insights)

    sections = [
        "Automated Test Scripts Generated",
        f"Test Coverage: {coverage}%\nTest Count: {test_count}\nLanguage: {record.generation.language or 'unknown'}",
        f"AI Reasoning:\n{record.planning.reasoning or record.generation.reasoning}",
        f"Generated Test Code:\n{record.generation.code[:MAX_CODE_CHARS]}",
        f"Code Review Status: {review_status}",
    ]
    if insights:
        sections.append(insights)
    execution = record.test_execution
    if execution.total:
        sections.append(
            f"Test Results: {execution.passed}/{execution.total} passed, {execution.coverage:.0f}% line coverage"
            + (" (simulated)" if execution.simulated else "")
        )

    return TicketPayload(
        summary=f"Automated Test Scripts - {test_count} tests ({coverage}% coverage)",
        description="\n\n".join(sections),
        assignee=assignee,
    )
