"""Jira Cloud issue tracker implementation using direct REST API calls."""

from typing import Any

import httpx
import structlog

from testflow.enums import ErrorKind
from testflow.models.domain import TicketPayload, TrackerCredentials, TrackerResult
from testflow.providers.base import IssueTracker

log = structlog.get_logger(__name__)

ISSUE_FIELDS = ["summary", "status", "issuetype", "created", "updated", "assignee"]


def _adf_document(text: str) -> dict[str, Any]:
    """Wrap plain text in an Atlassian Document Format document.

    Blank lines separate paragraphs.
    """
    paragraphs = [block for block in text.split("\n\n") if block.strip()]
    return {
        "type": "doc",
        "version": 1,
        "content": [{"type": "paragraph", "content": [{"type": "text", "text": block}]} for block in paragraphs],
    }


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        messages = list(body.get("errorMessages") or [])
        messages.extend(f"{k}: {v}" for k, v in (body.get("errors") or {}).items())
        if messages:
            return ", ".join(messages)
    return response.reason_phrase


class JiraRestTracker(IssueTracker):
    """Jira implementation of :class:`IssueTracker`.

    Credentials are supplied with each call; the client itself holds only
    the HTTP connection pool.

    Args:
        timeout: Request timeout in seconds.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "JiraRestTracker":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def _request(
        self,
        credentials: TrackerCredentials,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response | TrackerResult:
        """Send a request, or report why it could not be sent."""
        if not credentials.complete:
            return TrackerResult.failure(ErrorKind.NO_CREDENTIALS, "Issue tracker credentials not configured")

        url = f"{credentials.base_url.rstrip('/')}/rest/api/3{path}"  # type: ignore[union-attr]
        try:
            return await self._client.request(
                method,
                url,
                json=json,
                params=params,
                auth=(credentials.email, credentials.api_token),  # type: ignore[arg-type]
            )
        except httpx.TimeoutException as e:
            log.warning("jira_request_timeout", method=method, path=path)
            return TrackerResult.failure(ErrorKind.TIMEOUT, f"Issue tracker timed out: {e}")
        except httpx.HTTPError as e:
            log.warning("jira_request_failed", method=method, path=path, error=str(e))
            return TrackerResult.failure(ErrorKind.API_ERROR, f"Issue tracker request failed: {e}")

    @staticmethod
    def _classify(response: httpx.Response, subject: str, not_found: ErrorKind = ErrorKind.NOT_FOUND) -> TrackerResult:
        status = response.status_code
        if status == 404:
            return TrackerResult.failure(not_found, f"{subject} not found", status)
        if status == 403:
            return TrackerResult.failure(ErrorKind.NO_PERMISSION, f"No permission to access {subject}", status)
        if status == 401:
            return TrackerResult.failure(ErrorKind.UNAUTHORIZED, "Invalid issue tracker credentials", status)
        return TrackerResult.failure(ErrorKind.API_ERROR, _error_message(response), status)

    def _browse_url(self, credentials: TrackerCredentials, key: str) -> str:
        return f"{credentials.base_url.rstrip('/')}/browse/{key}"  # type: ignore[union-attr]

    async def get_project(self, credentials: TrackerCredentials, project_key: str) -> TrackerResult:
        response = await self._request(credentials, "GET", f"/project/{project_key}")
        if isinstance(response, TrackerResult):
            return response
        if response.is_success:
            return TrackerResult.success(response.json(), response.status_code)
        return self._classify(response, f"Project {project_key}", not_found=ErrorKind.PROJECT_NOT_FOUND)

    async def get_issue(self, credentials: TrackerCredentials, issue_key: str) -> TrackerResult:
        log.info("get_issue", issue_key=issue_key)
        response = await self._request(credentials, "GET", f"/issue/{issue_key}")
        if isinstance(response, TrackerResult):
            return response
        if response.is_success:
            return TrackerResult.success(response.json(), response.status_code)
        return self._classify(response, f"Issue {issue_key}")

    async def _create(
        self, credentials: TrackerCredentials, fields: dict[str, Any], subject: str
    ) -> TrackerResult:
        response = await self._request(credentials, "POST", "/issue", json={"fields": fields})
        if isinstance(response, TrackerResult):
            return response
        if response.is_success:
            data = response.json()
            data["url"] = self._browse_url(credentials, data["key"])
            log.info("jira_issue_created", issue_key=data["key"])
            return TrackerResult.success(data, response.status_code)
        return self._classify(response, subject)

    def _fields(self, project_key: str, payload: TicketPayload, issue_type: str) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "project": {"key": project_key},
            "summary": payload.summary,
            "description": _adf_document(payload.description),
            "issuetype": {"name": issue_type},
        }
        if payload.labels:
            fields["labels"] = payload.labels
        if payload.assignee:
            fields["assignee"] = {"id": payload.assignee}
        return fields

    async def create_issue(
        self,
        credentials: TrackerCredentials,
        project_key: str,
        payload: TicketPayload,
        issue_type: str = "Task",
    ) -> TrackerResult:
        log.info("create_issue", project_key=project_key, issue_type=issue_type)
        return await self._create(credentials, self._fields(project_key, payload, issue_type), f"Project {project_key}")

    async def create_subtask(
        self,
        credentials: TrackerCredentials,
        parent_key: str,
        project_key: str,
        payload: TicketPayload,
    ) -> TrackerResult:
        log.info("create_subtask", parent_key=parent_key, project_key=project_key)
        fields = self._fields(project_key, payload, "Sub-task")
        fields["parent"] = {"key": parent_key}
        return await self._create(credentials, fields, f"Issue {parent_key}")

    async def create_project(
        self,
        credentials: TrackerCredentials,
        key: str,
        name: str,
        lead_account_id: str | None = None,
    ) -> TrackerResult:
        log.info("create_project", project_key=key)
        if lead_account_id is None:
            myself = await self._request(credentials, "GET", "/myself")
            if isinstance(myself, TrackerResult):
                return myself
            if myself.is_success:
                lead_account_id = myself.json().get("accountId")
            else:
                log.warning("jira_account_lookup_failed", status=myself.status_code)

        body: dict[str, Any] = {"key": key, "name": name, "projectTypeKey": "software"}
        if lead_account_id:
            body["leadAccountId"] = lead_account_id

        response = await self._request(credentials, "POST", "/project", json=body)
        if isinstance(response, TrackerResult):
            return response
        if response.is_success:
            return TrackerResult.success(response.json(), response.status_code)
        return self._classify(response, f"Project {key}")

    async def list_projects(self, credentials: TrackerCredentials) -> TrackerResult:
        response = await self._request(credentials, "GET", "/project")
        if isinstance(response, TrackerResult):
            return response
        if response.is_success:
            return TrackerResult.success({"projects": response.json() or []}, response.status_code)
        return self._classify(response, "Projects")

    async def list_project_issues(
        self, credentials: TrackerCredentials, project_key: str, max_results: int = 50
    ) -> TrackerResult:
        body = {
            "jql": f"project = {project_key} ORDER BY updated DESC",
            "maxResults": max_results,
            "fields": ISSUE_FIELDS,
        }
        response = await self._request(credentials, "POST", "/search/jql", json=body)
        if isinstance(response, TrackerResult):
            return response
        if response.is_success:
            return TrackerResult.success({"issues": response.json().get("issues", [])}, response.status_code)
        return self._classify(response, f"Project {project_key}", not_found=ErrorKind.PROJECT_NOT_FOUND)

    async def transition_issue(self, credentials: TrackerCredentials, issue_key: str, status_name: str) -> TrackerResult:
        log.info("transition_issue", issue_key=issue_key, status=status_name)
        response = await self._request(credentials, "GET", f"/issue/{issue_key}/transitions")
        if isinstance(response, TrackerResult):
            return response
        if not response.is_success:
            return self._classify(response, f"Issue {issue_key}")

        transitions = response.json().get("transitions", [])
        wanted = status_name.lower()
        match = next(
            (
                t
                for t in transitions
                if t.get("name", "").lower() == wanted or t.get("to", {}).get("name", "").lower() == wanted
            ),
            None,
        )
        if match is None:
            available = ", ".join(t.get("name", "") for t in transitions)
            return TrackerResult.failure(
                ErrorKind.VALIDATION, f"No transition to '{status_name}' for {issue_key}. Available: {available}"
            )

        response = await self._request(
            credentials, "POST", f"/issue/{issue_key}/transitions", json={"transition": {"id": match["id"]}}
        )
        if isinstance(response, TrackerResult):
            return response
        if response.is_success:
            return TrackerResult.success({"key": issue_key, "status": status_name}, response.status_code)
        return self._classify(response, f"Issue {issue_key}")
