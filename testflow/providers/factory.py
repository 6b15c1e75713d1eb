"""Factory for building workflow collaborators from configuration."""

import structlog

from testflow.config.settings import TestflowSettings
from testflow.engine.audit_log import AuditLogStore, FileAuditBackend
from testflow.engine.broadcaster import EventBroadcaster
from testflow.engine.orchestrator import Collaborators, WorkflowOrchestrator
from testflow.engine.reward import RewardComputer
from testflow.engine.ticket_resilience import TicketResilienceLayer
from testflow.engine.workflow_store import WorkflowStore
from testflow.models.domain import TrackerCredentials
from testflow.providers.github_rest import GitHubSourceProvider
from testflow.providers.jira_rest import JiraRestTracker
from testflow.providers.openai_compatible import OpenAICompatibleProvider
from testflow.providers.reported_runner import SimulatedTestRunner
from testflow.providers.review_bot import ReviewBotReviewer

log = structlog.get_logger(__name__)


def create_collaborators(settings: TestflowSettings) -> Collaborators:
    """Build the stage collaborators.

    Example:
        >>> settings = TestflowSettings.from_yaml("testflow.yaml")
        >>> collaborators = create_collaborators(settings)
    """
    github_token = settings.github.token.get_secret_value() if settings.github.token else None
    ai_key = settings.ai.api_key.get_secret_value() if settings.ai.api_key else None

    log.info("creating_collaborators", github=settings.github.base_url, ai=settings.ai.base_url, model=settings.ai.model)
    ai = OpenAICompatibleProvider(
        base_url=settings.ai.base_url,
        model=settings.ai.model,
        api_key=ai_key,
        timeout=settings.ai.timeout,
    )
    return Collaborators(
        source=GitHubSourceProvider(token=github_token, base_url=settings.github.base_url),
        planner=ai,
        generator=ai,
        runner=SimulatedTestRunner(),
        reviewer=ReviewBotReviewer(
            token=github_token,
            base_url=settings.github.base_url,
            bot_login=settings.github.review_bot,
        ),
    )


def create_tracker(settings: TestflowSettings) -> JiraRestTracker:
    return JiraRestTracker(timeout=settings.tracker.request_timeout)


def create_orchestrator(
    settings: TestflowSettings,
    tracker: JiraRestTracker | None = None,
    broadcaster: EventBroadcaster | None = None,
) -> WorkflowOrchestrator:
    """Wire stores, tracker, collaborators and reward scoring into an orchestrator."""
    if not settings.tracker.has_credentials:
        log.warning("tracker_credentials_missing", synthetic_fallback=settings.tracker.synthetic_fallback)

    audit_log = AuditLogStore(FileAuditBackend(settings.audit_dir))
    store = WorkflowStore(settings.state_dir, audit_log)
    tickets = TicketResilienceLayer(
        tracker or create_tracker(settings),
        TrackerCredentials.from_config(settings.tracker),
        default_project_key=settings.tracker.default_project_key,
        synthetic_fallback=settings.tracker.synthetic_fallback,
    )
    return WorkflowOrchestrator(
        store=store,
        broadcaster=broadcaster or EventBroadcaster(),
        rewards=RewardComputer(settings.reward, model_version=settings.ai.model_version),
        collaborators=create_collaborators(settings),
        tickets=tickets,
        stage_timeout=settings.workflow.stage_timeout,
        recent_limit=settings.workflow.recent_limit,
    )
