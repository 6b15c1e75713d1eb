"""
Classification of inbound issue tracker webhook events.

Only an ``issue updated`` event whose changelog moves the status to the
configured "ready" value starts a workflow. Everything else is acknowledged
without action. The pull request is taken from the issue when the payload
links one (description or comments); otherwise the workflow carries only the
ticket key and the pull request is looked up on the ticket once the run
fetches its source.

Payloads come from outside, so every nested value is type-checked before use:
a malformed shape is ignored rather than raising.
"""

from dataclasses import dataclass
from typing import Any

import structlog

from testflow.models.domain import TriggerInput, extract_pr_url

log = structlog.get_logger(__name__)

ISSUE_UPDATED = "jira:issue_updated"


@dataclass
class ClassifiedEvent:
    """Result of event classification."""

    should_process: bool
    issue_key: str | None = None
    trigger: TriggerInput | None = None
    skip_reason: str | None = None


def _mapping(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _sequence(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _flatten_text(value: Any) -> str:
    """Plain text of a string or an Atlassian Document Format node."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return " ".join(_flatten_text(v) for v in value)
    if isinstance(value, dict):
        parts = [_text(value.get("text")) or "", _text(_mapping(value.get("attrs")).get("href")) or ""]
        for mark in _sequence(value.get("marks")):
            parts.append(_text(_mapping(_mapping(mark).get("attrs")).get("href")) or "")
        parts.append(_flatten_text(value.get("content")))
        return " ".join(p for p in parts if p)
    return str(value)


def find_pr_url(issue: Any) -> str | None:
    """First pull request URL in an issue's description or comments."""
    fields = _mapping(_mapping(issue).get("fields"))
    url = extract_pr_url(_flatten_text(fields.get("description")))
    if url:
        return url
    for comment in _sequence(_mapping(fields.get("comment")).get("comments")):
        url = extract_pr_url(_flatten_text(_mapping(comment).get("body")))
        if url:
            return url
    return None


def is_ready_transition(payload: dict[str, Any], ready_status: str) -> bool:
    items = _sequence(_mapping(payload.get("changelog")).get("items"))
    return any(
        _mapping(item).get("field") == "status" and _mapping(item).get("toString") == ready_status for item in items
    )


class EventClassifier:
    """Decide whether a webhook event starts a workflow.

    Args:
        ready_status: Status name that marks an issue ready for testing.
    """

    def __init__(self, ready_status: str = "Ready for Testing") -> None:
        self.ready_status = ready_status

    def classify(self, payload: dict[str, Any]) -> ClassifiedEvent:
        event_type = payload.get("webhookEvent")
        issue = _mapping(payload.get("issue"))
        issue_key = _text(issue.get("key"))
        log.info("classifying_event", event_type=event_type, issue_key=issue_key)

        if event_type != ISSUE_UPDATED:
            return ClassifiedEvent(False, issue_key, skip_reason="Not an issue update event")

        if not is_ready_transition(payload, self.ready_status):
            return ClassifiedEvent(False, issue_key, skip_reason=f'Status not changed to "{self.ready_status}"')

        if issue_key is None:
            return ClassifiedEvent(False, None, skip_reason="Event carries no issue key")

        pr_url = find_pr_url(issue)
        if pr_url is None:
            log.info("webhook_pr_deferred_to_ticket", issue_key=issue_key)

        fields = _mapping(issue.get("fields"))
        trigger = TriggerInput(
            pr_url=pr_url,
            ticket_key=issue_key,
            project_key=_text(_mapping(fields.get("project")).get("key")),
            assignee=_text(_mapping(fields.get("assignee")).get("accountId")),
            summary=_text(fields.get("summary")),
            source="webhook",
        )
        return ClassifiedEvent(True, issue_key, trigger=trigger)
