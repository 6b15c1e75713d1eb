"""Tests for testflow/providers/jira_rest.py."""

import json

import httpx
import pytest

from testflow.enums import ErrorKind
from testflow.models.domain import TicketPayload, TrackerCredentials
from testflow.providers.jira_rest import JiraRestTracker, _adf_document

BASE = "https://acme.atlassian.net/rest/api/3"


def _tracker(handler) -> JiraRestTracker:
    return JiraRestTracker(transport=httpx.MockTransport(handler))


class TestRequests:
    @pytest.mark.asyncio
    async def test_missing_credentials_short_circuit(self):
        calls = []
        tracker = _tracker(lambda request: calls.append(request) or httpx.Response(200, json={}))

        result = await tracker.get_issue(TrackerCredentials("https://acme.atlassian.net", None, None), "SHOP-1")

        assert not result.ok
        assert result.error_kind == ErrorKind.NO_CREDENTIALS
        assert calls == []
        await tracker.aclose()

    @pytest.mark.asyncio
    async def test_get_issue_success_uses_basic_auth(self, credentials: TrackerCredentials):
        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == f"{BASE}/issue/SHOP-42"
            assert request.headers["authorization"].startswith("Basic ")
            return httpx.Response(200, json={"key": "SHOP-42", "fields": {"project": {"key": "SHOP"}}})

        async with _tracker(handler) as tracker:
            result = await tracker.get_issue(credentials, "SHOP-42")

        assert result.ok
        assert result.data["fields"]["project"]["key"] == "SHOP"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "kind"),
        [
            (404, ErrorKind.NOT_FOUND),
            (403, ErrorKind.NO_PERMISSION),
            (401, ErrorKind.UNAUTHORIZED),
            (500, ErrorKind.API_ERROR),
        ],
    )
    async def test_issue_errors_classified(self, credentials: TrackerCredentials, status: int, kind: ErrorKind):
        async with _tracker(lambda request: httpx.Response(status, json={"errorMessages": ["nope"]})) as tracker:
            result = await tracker.get_issue(credentials, "SHOP-42")

        assert result.error_kind == kind
        assert result.status_code == status

    @pytest.mark.asyncio
    async def test_missing_project_is_project_not_found(self, credentials: TrackerCredentials):
        async with _tracker(lambda request: httpx.Response(404)) as tracker:
            result = await tracker.get_project(credentials, "NOPE")
        assert result.error_kind == ErrorKind.PROJECT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_network_failure_reported(self, credentials: TrackerCredentials):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _tracker(handler) as tracker:
            result = await tracker.list_projects(credentials)
        assert result.error_kind == ErrorKind.API_ERROR
        assert "connection refused" in result.message


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_subtask_body(self, credentials: TrackerCredentials):
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content))
            return httpx.Response(201, json={"id": "10001", "key": "SHOP-43"})

        payload = TicketPayload(summary="Tests", description="First\n\nSecond", assignee="acct-1")
        async with _tracker(handler) as tracker:
            result = await tracker.create_subtask(credentials, "SHOP-42", "SHOP", payload)

        assert result.data["url"] == "https://acme.atlassian.net/browse/SHOP-43"
        fields = seen["fields"]
        assert fields["parent"] == {"key": "SHOP-42"}
        assert fields["issuetype"] == {"name": "Sub-task"}
        assert fields["assignee"] == {"id": "acct-1"}
        assert fields["labels"] == ["automated-tests"]
        assert len(fields["description"]["content"]) == 2

    @pytest.mark.asyncio
    async def test_create_project_looks_up_lead(self, credentials: TrackerCredentials):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/myself"):
                return httpx.Response(200, json={"accountId": "acct-9"})
            body = json.loads(request.content)
            assert body["leadAccountId"] == "acct-9"
            return httpx.Response(201, json={"key": body["key"], "id": 1})

        async with _tracker(handler) as tracker:
            result = await tracker.create_project(credentials, "QA", "Quality")
        assert result.ok
        assert result.data["key"] == "QA"


class TestQueries:
    @pytest.mark.asyncio
    async def test_list_project_issues(self, credentials: TrackerCredentials):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body["jql"] == "project = SHOP ORDER BY updated DESC"
            assert body["maxResults"] == 10
            return httpx.Response(200, json={"issues": [{"key": "SHOP-1"}]})

        async with _tracker(handler) as tracker:
            result = await tracker.list_project_issues(credentials, "SHOP", max_results=10)
        assert result.data == {"issues": [{"key": "SHOP-1"}]}

    @pytest.mark.asyncio
    async def test_transition_by_target_status(self, credentials: TrackerCredentials):
        posted = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(
                    200, json={"transitions": [{"id": "31", "name": "Done", "to": {"name": "Ready for Testing"}}]}
                )
            posted.append(json.loads(request.content))
            return httpx.Response(204)

        async with _tracker(handler) as tracker:
            result = await tracker.transition_issue(credentials, "SHOP-42", "ready for testing")
        assert result.ok
        assert posted == [{"transition": {"id": "31"}}]

    @pytest.mark.asyncio
    async def test_transition_unknown_status(self, credentials: TrackerCredentials):
        async with _tracker(lambda request: httpx.Response(200, json={"transitions": []})) as tracker:
            result = await tracker.transition_issue(credentials, "SHOP-42", "Shipped")
        assert result.error_kind == ErrorKind.VALIDATION


def test_adf_document_skips_blank_paragraphs():
    document = _adf_document("One\n\n\n\nTwo\n\n ")
    assert [p["content"][0]["text"] for p in document["content"]] == ["One", "Two"]
