"""Command-line entry point for testflow."""

import asyncio
import json
import sys
from pathlib import Path

import click
import structlog

from testflow.config.settings import TestflowSettings
from testflow.engine.audit_log import AuditLogStore, FileAuditBackend
from testflow.engine.reward import select_training_examples
from testflow.engine.workflow_store import WorkflowStore
from testflow.exceptions import ConfigurationError, TestflowError, WorkflowNotFoundError
from testflow.models.domain import TriggerInput
from testflow.models.workflow import STAGE_ORDER, WorkflowRecord
from testflow.providers.factory import create_orchestrator, create_tracker
from testflow.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

STATUS_MARKS = {
    "complete": "✅",
    "no_pr_available": "➖",
    "failed": "❌",
    "pending": "⏳",
}


@click.group()
@click.option("--config", default="testflow.yaml", help="Path to configuration file")
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--console-logs", is_flag=True, help="Render logs for a terminal instead of JSON")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str, console_logs: bool) -> None:
    """testflow: automated test generation workflows."""
    configure_logging(log_level, json_output=not console_logs)

    config_path = Path(config)
    try:
        if config_path.exists():
            settings = TestflowSettings.from_yaml(str(config_path))
        else:
            log.info("config_file_missing_using_environment", path=config)
            settings = TestflowSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


@cli.command()
@click.option("--host", default="127.0.0.1", help="Interface to bind")
@click.option("--port", default=8000, type=int, help="Port to listen on")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Run the HTTP server."""
    import uvicorn

    from testflow.webhook_server import create_app

    settings: TestflowSettings = ctx.obj["settings"]
    tracker = create_tracker(settings)
    app = create_app(settings, create_orchestrator(settings, tracker=tracker), tracker)
    uvicorn.run(app, host=host, port=port)


@cli.command()
@click.option("--pr-url", help="Pull request to generate tests for")
@click.option("--repository", help="owner/name, used with --branch")
@click.option("--branch", help="Branch to compare with the default branch")
@click.option(
    "--ticket",
    "ticket_key",
    help="Existing ticket to attach the results to; its linked pull request is used when no code reference is given",
)
@click.option("--project", "project_key", help="Project for a new ticket")
@click.pass_context
def trigger(
    ctx: click.Context,
    pr_url: str | None,
    repository: str | None,
    branch: str | None,
    ticket_key: str | None,
    project_key: str | None,
) -> None:
    """Run one workflow to completion."""
    trigger_input = TriggerInput(
        pr_url=pr_url,
        repository=repository,
        branch=branch,
        ticket_key=ticket_key,
        project_key=project_key,
    )
    try:
        record = asyncio.run(_run_workflow(ctx.obj["settings"], trigger_input))
    except TestflowError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    _print_record(record)
    if record.status.value != "completed":
        sys.exit(1)


@cli.command()
@click.argument("workflow_id")
@click.option("--json", "as_json", is_flag=True, help="Print the full record as JSON")
@click.pass_context
def show(ctx: click.Context, workflow_id: str, as_json: bool) -> None:
    """Show a stored workflow."""
    try:
        record = asyncio.run(_open_store(ctx.obj["settings"]).load(workflow_id))
    except WorkflowNotFoundError as e:
        click.echo(e.message, err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(record.snapshot(), indent=2))
    else:
        _print_record(record)


@cli.command()
@click.pass_context
def metrics(ctx: click.Context) -> None:
    """Print reward metrics over recent workflows."""
    from testflow.engine.metrics import compute_reward_metrics

    settings: TestflowSettings = ctx.obj["settings"]
    records = asyncio.run(_open_store(settings).list_recent(settings.workflow.recent_limit))
    result = compute_reward_metrics(records, settings.reward)
    click.echo(json.dumps(result.model_dump(mode="json"), indent=2))


@cli.command("export-training")
@click.option("--limit", default=50, type=click.IntRange(min=1), help="Maximum number of examples")
@click.option("--output", type=click.Path(dir_okay=False), help="Write JSON lines here instead of stdout")
@click.pass_context
def export_training(ctx: click.Context, limit: int, output: str | None) -> None:
    """Export scored workflows as training examples (70/20/10 tier mixture)."""
    settings: TestflowSettings = ctx.obj["settings"]
    records = asyncio.run(_open_store(settings).list_recent(max(limit, settings.workflow.recent_limit)))
    examples = select_training_examples(records, limit)
    lines = [json.dumps(example) for example in examples]

    if output:
        Path(output).write_text("".join(f"{line}\n" for line in lines))
        click.echo(f"Wrote {len(lines)} training examples to {output}", err=True)
    else:
        for line in lines:
            click.echo(line)
    log.info("training_examples_exported", count=len(lines), limit=limit)


@cli.command("verify-audit")
@click.argument("workflow_id")
@click.pass_context
def verify_audit(ctx: click.Context, workflow_id: str) -> None:
    """Check every audit entry of a workflow against its integrity hash."""
    store = _open_store(ctx.obj["settings"])
    report = asyncio.run(store.audit_log.verify_workflow(workflow_id))

    click.echo(f"Workflow {workflow_id}: {report.verified}/{report.total} entries verified")
    for entry_id in report.failed_entries:
        click.echo(f"  ❌ {entry_id}", err=True)
    if not report.ok:
        sys.exit(1)


def _open_store(settings: TestflowSettings) -> WorkflowStore:
    return WorkflowStore(settings.state_dir, AuditLogStore(FileAuditBackend(settings.audit_dir)))


async def _run_workflow(settings: TestflowSettings, trigger_input: TriggerInput) -> WorkflowRecord:
    tracker = create_tracker(settings)
    try:
        orchestrator = create_orchestrator(settings, tracker=tracker)
        workflow_id = await orchestrator.start_workflow(trigger_input)
        click.echo(f"Started workflow {workflow_id}")
        return await orchestrator.wait_for_completion(workflow_id)
    finally:
        await tracker.aclose()


def _print_record(record: WorkflowRecord) -> None:
    click.echo(f"\nWorkflow {record.workflow_id}: {record.status.value}")
    if record.ticket_key:
        click.echo(f"Ticket: {record.ticket_key}")
    click.echo(f"Created: {record.created_at.isoformat()}")
    if record.error:
        click.echo(f"Error: {record.error}")

    click.echo("\nStages:")
    for name in STAGE_ORDER:
        stage = record.stage(name)
        mark = STATUS_MARKS.get(stage.status.value, "🔄")
        click.echo(f"  {mark} {name.value}: {stage.status.value}")

    latest = record.rl_training.latest
    if latest is not None:
        click.echo(f"\nReward: {latest.combined_reward:.3f} ({latest.tier.value})")


if __name__ == "__main__":
    cli()
