"""HTTP server for workflow triggers, tracker webhooks, queries and live events."""

import asyncio
import hashlib
import hmac
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from testflow.config.settings import TestflowSettings
from testflow.engine.event_classifier import EventClassifier
from testflow.engine.orchestrator import WorkflowOrchestrator
from testflow.enums import ErrorKind
from testflow.exceptions import (
    TestflowError,
    ValidationError,
    WorkflowAlreadyRunningError,
    WorkflowNotFoundError,
)
from testflow.models.domain import TicketPayload, TrackerCredentials, TrackerResult, TriggerInput
from testflow.providers.base import IssueTracker

log = structlog.get_logger(__name__)

TRACKER_STATUS_CODES = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.PROJECT_NOT_FOUND: 404,
    ErrorKind.NO_PERMISSION: 403,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.NO_CREDENTIALS: 400,
    ErrorKind.VALIDATION: 400,
    ErrorKind.TIMEOUT: 504,
}


class TriggerRequest(BaseModel):
    """Manual trigger body."""

    pr_url: str | None = None
    repository: str | None = None
    branch: str | None = None
    ticket_key: str | None = None
    project_key: str | None = None
    assignee: str | None = None
    summary: str | None = None


class CreateProjectRequest(BaseModel):
    """Tracker project to create."""

    key: str = Field(pattern=r"^[A-Z][A-Z0-9]{1,9}$")
    name: str = Field(min_length=1)
    lead_account_id: str | None = None


class CreateIssueRequest(BaseModel):
    """Tracker issue to create in a project."""

    summary: str = Field(min_length=1)
    description: str = ""
    issue_type: str = "Task"
    assignee: str | None = None


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Check a ``sha256=<hex>`` HMAC-SHA256 signature of the raw request body."""
    if not signature:
        return False
    expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature, expected)


def status_for_error(error: TestflowError) -> int:
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, WorkflowNotFoundError):
        return 404
    if isinstance(error, WorkflowAlreadyRunningError):
        return 409
    return 422


def _tracker_response(result: TrackerResult) -> dict[str, Any]:
    if result.ok:
        return result.data
    status = TRACKER_STATUS_CODES.get(result.error_kind, 502) if result.error_kind else 502
    raise HTTPException(status_code=status, detail={"error": result.message, "kind": str(result.error_kind)})


def _workflow_summary(record: Any) -> dict[str, Any]:
    latest = record.rl_training.latest
    return {
        "workflow_id": record.workflow_id,
        "status": record.status.value,
        "ticket_key": record.ticket_key,
        "current_stage": record.current_stage.value if record.current_stage else None,
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat(),
        "error": record.error,
        "reward": latest.combined_reward if latest else None,
    }


def create_app(
    settings: TestflowSettings,
    orchestrator: WorkflowOrchestrator,
    tracker: IssueTracker,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Loaded settings; the webhook secret, ready status and
            tracker credentials are read from here.
        orchestrator: Orchestrator receiving triggers and answering queries.
        tracker: Issue tracker client used by the tracker routes.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info("webhook_server_started", ready_status=settings.workflow.ready_status)
        yield
        aclose = getattr(tracker, "aclose", None)
        if aclose is not None:
            await aclose()
        log.info("webhook_server_stopped")

    app = FastAPI(title="Testflow Workflow Server", lifespan=lifespan)
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.tracker = tracker

    classifier = EventClassifier(settings.workflow.ready_status)
    credentials = TrackerCredentials.from_config(settings.tracker)
    secret = settings.webhook.secret.get_secret_value() if settings.webhook.secret else None

    @app.exception_handler(TestflowError)
    async def testflow_error_handler(request: Request, exc: TestflowError) -> JSONResponse:
        status_code = status_for_error(exc)
        log.warning("request_failed", path=request.url.path, status_code=status_code, error=exc.message)
        return JSONResponse(status_code=status_code, content={"error": exc.message, "kind": str(exc.kind)})

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy", "service": "testflow"}

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    @app.post("/api/workflows/trigger", status_code=202)
    async def trigger_workflow(body: TriggerRequest) -> dict[str, Any]:
        trigger = TriggerInput(**body.model_dump(), source="manual")
        workflow_id = await orchestrator.start_workflow(trigger)
        return {"workflow_id": workflow_id, "status": "pending"}

    @app.get("/api/workflows")
    async def list_workflows(limit: int = Query(default=50, ge=1, le=500)) -> dict[str, Any]:
        records = await orchestrator.list_workflows(limit)
        return {"workflows": [_workflow_summary(r) for r in records], "count": len(records)}

    # Declared before /{workflow_id} so the literal paths win.
    @app.get("/api/workflows/rl-metrics")
    async def reward_metrics() -> dict[str, Any]:
        metrics = await orchestrator.reward_metrics()
        return metrics.model_dump(mode="json")

    @app.get("/api/workflows/training-examples")
    async def training_examples(limit: int = Query(default=50, ge=1, le=500)) -> dict[str, Any]:
        examples = await orchestrator.training_examples(limit)
        return {"examples": examples, "count": len(examples)}

    @app.get("/api/workflows/{workflow_id}")
    async def get_workflow(workflow_id: str) -> dict[str, Any]:
        record = await orchestrator.get_workflow(workflow_id)
        return record.snapshot()

    @app.get("/api/workflows/{workflow_id}/audit")
    async def audit_trail(workflow_id: str, verify: bool = False) -> dict[str, Any]:
        entries = await orchestrator.audit_trail(workflow_id)
        response: dict[str, Any] = {
            "workflow_id": workflow_id,
            "entries": [e.model_dump(mode="json") for e in entries],
        }
        if verify:
            report = await orchestrator.verify_audit(workflow_id)
            response["integrity"] = report.model_dump(mode="json")
        return response

    # ------------------------------------------------------------------
    # Tracker webhook
    # ------------------------------------------------------------------

    @app.post("/api/webhooks/jira")
    async def jira_webhook(request: Request) -> JSONResponse:
        body = await request.body()

        if secret is not None:
            signature = request.headers.get(settings.webhook.signature_header)
            if not verify_signature(body, signature, secret):
                log.warning("webhook_signature_invalid", header=settings.webhook.signature_header)
                raise HTTPException(status_code=401, detail="Invalid webhook signature")

        try:
            payload = json.loads(body or b"{}")
        except json.JSONDecodeError as e:
            raise HTTPException(status_code=400, detail="Webhook body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

        event = classifier.classify(payload)
        if not event.should_process or event.trigger is None:
            log.info("webhook_ignored", issue_key=event.issue_key, reason=event.skip_reason)
            return JSONResponse({"status": "ignored", "reason": event.skip_reason})

        workflow_id = await orchestrator.start_workflow(event.trigger)
        log.info("webhook_workflow_started", issue_key=event.issue_key, workflow_id=workflow_id)
        return JSONResponse(
            status_code=202,
            content={"status": "accepted", "workflow_id": workflow_id, "issue_key": event.issue_key},
        )

    # ------------------------------------------------------------------
    # Tracker
    # ------------------------------------------------------------------

    @app.get("/api/tracker/projects")
    async def tracker_projects() -> dict[str, Any]:
        return _tracker_response(await tracker.list_projects(credentials))

    @app.get("/api/tracker/projects/{project_key}/issues")
    async def tracker_project_issues(
        project_key: str, max_results: int = Query(default=50, ge=1, le=100)
    ) -> dict[str, Any]:
        return _tracker_response(await tracker.list_project_issues(credentials, project_key, max_results))

    @app.post("/api/tracker/projects", status_code=201)
    async def create_tracker_project(body: CreateProjectRequest) -> dict[str, Any]:
        result = await tracker.create_project(credentials, body.key, body.name, body.lead_account_id)
        log.info("tracker_project_create_requested", project_key=body.key, ok=result.ok)
        return _tracker_response(result)

    @app.post("/api/tracker/projects/{project_key}/issues", status_code=201)
    async def create_tracker_issue(project_key: str, body: CreateIssueRequest) -> dict[str, Any]:
        payload = TicketPayload(
            summary=body.summary, description=body.description, assignee=body.assignee, labels=[]
        )
        result = await tracker.create_issue(credentials, project_key, payload, body.issue_type)
        log.info("tracker_issue_create_requested", project_key=project_key, ok=result.ok)
        return _tracker_response(result)

    @app.get("/api/tracker/issues/{issue_key}/validate")
    async def validate_issue(issue_key: str) -> dict[str, Any]:
        result = await tracker.get_issue(credentials, issue_key)
        if result.ok:
            fields = result.data.get("fields", {})
            return {
                "valid": True,
                "issue_key": issue_key,
                "summary": fields.get("summary"),
                "project_key": (fields.get("project") or {}).get("key"),
            }
        return {
            "valid": False,
            "issue_key": issue_key,
            "error_kind": str(result.error_kind),
            "message": result.message,
        }

    # ------------------------------------------------------------------
    # Live events
    # ------------------------------------------------------------------

    @app.websocket("/ws/workflows/{workflow_id}")
    async def workflow_events(websocket: WebSocket, workflow_id: str) -> None:
        await websocket.accept()
        subscription = orchestrator.broadcaster.subscribe(workflow_id)

        async def forward() -> None:
            async for event in subscription:
                await websocket.send_json(event.to_message())

        async def listen() -> None:
            while True:
                if await websocket.receive_text() == "ping":
                    await websocket.send_text("pong")

        tasks = [asyncio.create_task(forward()), asyncio.create_task(listen())]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                error = task.exception()
                if error is not None and not isinstance(error, WebSocketDisconnect):
                    log.warning("websocket_closed_with_error", workflow_id=workflow_id, error=str(error))
        finally:
            for task in tasks:
                task.cancel()
            orchestrator.broadcaster.unsubscribe(subscription)

    return app
