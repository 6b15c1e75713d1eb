"""
Workflow orchestrator driving the test generation pipeline.

This module provides the WorkflowOrchestrator class, the single writer of
:class:`~testflow.models.workflow.WorkflowRecord` aggregates. It manages:

- Trigger intake, returning a workflow id without waiting for the run
- Strictly sequential stage execution per workflow
- One active run per workflow id
- Audited persistence of every transition and best-effort live broadcasts
- Reward scoring once a run completes or fails

Stage Lifecycle:
    pending -> fetching source -> planning tests -> generating code
    -> executing tests -> reviewing -> pushing ticket -> completed

    For each stage the orchestrator (1) checks the stage pre-condition,
    (2) calls the collaborator under the stage timeout, (3) updates the stage
    sub-record, (4) commits the record together with an audit entry and
    (5) broadcasts the change. A broadcast failure is logged and never undoes
    the persisted state.

Failure Handling:
    Any stage failure fails the whole workflow: the in-flight stage is marked
    failed, later stages are not attempted, results of earlier stages are
    kept, the error message is stored verbatim and a ``workflow-status``
    event with ``status: failed`` is broadcast. Collaborator timeouts surface
    as :class:`~testflow.exceptions.StageTimeoutError`, distinct from explicit
    errors. Failures are not retried.

Example:
    >>> orchestrator = WorkflowOrchestrator(store, broadcaster, rewards, collaborators, tickets)
    >>> workflow_id = await orchestrator.start_workflow(TriggerInput(pr_url=url))
    >>> record = await orchestrator.wait_for_completion(workflow_id)
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, TypeVar

import structlog

from testflow.engine.audit_log import AuditLogEntry, IntegrityReport
from testflow.engine.broadcaster import EventBroadcaster
from testflow.engine.flakiness import compute_flakiness
from testflow.engine.metrics import RewardMetrics, compute_reward_metrics
from testflow.engine.reward import RewardComputer, select_training_examples
from testflow.engine.ticket_resilience import TicketResilienceLayer, build_ticket_payload
from testflow.engine.workflow_store import WorkflowStore
from testflow.enums import AuditEventType, BroadcastEventKind, ErrorKind, StageName, StageStatus, WorkflowStatus
from testflow.exceptions import (
    StageTimeoutError,
    TestflowError,
    ValidationError,
    WorkflowAlreadyRunningError,
    WorkflowError,
)
from testflow.models.domain import CodeContext, GeneratedTests, TestPlan, TriggerInput
from testflow.models.workflow import ACTIVE_STATUS, STAGE_ORDER, RunSnapshot, WorkflowRecord
from testflow.providers.base import CodeReviewer, SourceProvider, TestGenerator, TestPlanner, TestRunner

log = structlog.get_logger(__name__)

T = TypeVar("T")

STAGE_EVENT_TYPES: dict[StageName, AuditEventType] = {
    StageName.TEST_EXECUTION: AuditEventType.TEST_EXECUTION,
    StageName.CODE_REVIEW: AuditEventType.REVIEW_STATUS,
}


@dataclass
class Collaborators:
    """External services the pipeline calls, one per stage."""

    source: SourceProvider
    planner: TestPlanner
    generator: TestGenerator
    runner: TestRunner
    reviewer: CodeReviewer


@dataclass
class StageOutcome:
    """What a stage produced: sub-record fields plus the value later stages need."""

    fields: dict[str, Any]
    value: Any = None
    status: StageStatus = StageStatus.COMPLETE


class WorkflowOrchestrator:
    """Drive workflow records through the pipeline.

    Attributes:
        store: Persistence for records and their audit entries.
        broadcaster: Live event channel for observers.
        rewards: Reward computer used at the end of every run.
        collaborators: Stage collaborators.
        tickets: Ticket resilience layer used by the push stage.
        stage_timeout: Seconds a collaborator call may take.
    """

    def __init__(
        self,
        store: WorkflowStore,
        broadcaster: EventBroadcaster,
        rewards: RewardComputer,
        collaborators: Collaborators,
        tickets: TicketResilienceLayer,
        stage_timeout: float = 120.0,
        recent_limit: int = 50,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.rewards = rewards
        self.collaborators = collaborators
        self.tickets = tickets
        self.stage_timeout = stage_timeout
        self.recent_limit = recent_limit
        self._running: dict[str, asyncio.Task[WorkflowRecord]] = {}
        self._start_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start_workflow(self, trigger: TriggerInput, workflow_id: str | None = None) -> str:
        """Create a workflow record and schedule its run.

        Returns as soon as the record is persisted; the pipeline runs on its
        own task.

        Args:
            trigger: Code reference and optional ticket details.
            workflow_id: Id to use instead of a generated one. An existing
                ``pending`` record with this id is run; a running one is
                rejected.

        Returns:
            The workflow id.

        Raises:
            ValidationError: If the trigger has no usable code reference.
            WorkflowAlreadyRunningError: If a run for the id is active.
            WorkflowError: If the id belongs to a finished workflow.
        """
        trigger.validate()

        async with self._start_lock:
            if workflow_id is not None and workflow_id in self._running:
                raise WorkflowAlreadyRunningError(workflow_id)

            if workflow_id is not None and await self.store.exists(workflow_id):
                record = await self.store.load(workflow_id)
                if record.status == WorkflowStatus.RUNNING:
                    raise WorkflowAlreadyRunningError(workflow_id)
                if record.status.is_terminal:
                    raise WorkflowError(
                        f"Workflow {workflow_id} already finished as {record.status.value}", workflow_id=workflow_id
                    )
            else:
                record = WorkflowRecord.create(trigger.to_dict(), workflow_id=workflow_id)
                await self.store.create(record)

            task = asyncio.create_task(self._run(record), name=f"workflow-{record.workflow_id}")
            self._running[record.workflow_id] = task
            task.add_done_callback(lambda _: self._running.pop(record.workflow_id, None))

        log.info("workflow_started", workflow_id=record.workflow_id, source=trigger.source)
        return record.workflow_id

    async def wait_for_completion(self, workflow_id: str) -> WorkflowRecord:
        """Wait for an active run to finish and return the stored record."""
        task = self._running.get(workflow_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.store.load(workflow_id)

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord:
        return await self.store.load(workflow_id)

    async def list_workflows(self, limit: int | None = None) -> list[WorkflowRecord]:
        return await self.store.list_recent(limit or self.recent_limit)

    async def reward_metrics(self) -> RewardMetrics:
        records = await self.store.list_recent(self.recent_limit)
        return compute_reward_metrics(records, self.rewards.config)

    async def training_examples(self, limit: int = 50) -> list[dict[str, Any]]:
        """Training examples from recent scored workflows, in the 70/20/10 tier mixture."""
        records = await self.store.list_recent(max(limit, self.recent_limit))
        return select_training_examples(records, limit)

    async def audit_trail(self, workflow_id: str) -> list[AuditLogEntry]:
        await self.store.load(workflow_id)
        return await self.store.audit_log.list(workflow_id)

    async def verify_audit(self, workflow_id: str) -> IntegrityReport:
        await self.store.load(workflow_id)
        return await self.store.audit_log.verify_workflow(workflow_id)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(self, record: WorkflowRecord) -> WorkflowRecord:
        workflow_id = record.workflow_id
        with structlog.contextvars.bound_contextvars(workflow_id=workflow_id):
            failure: BaseException | None = None
            try:
                await self._begin(record)
                await self._pipeline(record)
            except TestflowError as e:
                failure = e
                log.error("workflow_failed", error=e.message, kind=str(e.kind))
            except Exception as e:
                failure = e
                log.error("workflow_failed_unexpected", error=str(e), exc_info=True)

            return await self._finalize(record, failure)

    async def _begin(self, record: WorkflowRecord) -> None:
        record.mark_running()
        await self.store.commit(
            record,
            AuditEventType.WORKFLOW_STATE_CHANGE,
            {"status": {"before": WorkflowStatus.PENDING.value, "after": WorkflowStatus.RUNNING.value}},
        )
        self._publish(record.workflow_id, BroadcastEventKind.WORKFLOW_STATUS, {"status": "running", "error": None})

    async def _pipeline(self, record: WorkflowRecord) -> None:
        trigger = TriggerInput(**record.trigger)

        context: CodeContext = await self._execute_stage(
            record, StageName.SOURCE_FETCH, lambda: self._fetch_source(trigger)
        )
        plan: TestPlan = await self._execute_stage(record, StageName.PLANNING, lambda: self._plan(context))
        generated: GeneratedTests = await self._execute_stage(
            record, StageName.GENERATION, lambda: self._generate(context, plan)
        )
        await self._execute_stage(
            record, StageName.TEST_EXECUTION, lambda: self._execute_tests(record, context, generated)
        )
        await self._execute_stage(record, StageName.CODE_REVIEW, lambda: self._review(context))
        await self._execute_stage(record, StageName.TICKET_PUSH, lambda: self._push_ticket(record, trigger))

    async def _execute_stage(
        self,
        record: WorkflowRecord,
        stage: StageName,
        action: Callable[[], Awaitable[StageOutcome]],
    ) -> Any:
        """Run one stage and persist its result.

        The stage is marked active and committed, the action runs under the
        stage timeout, and the stage result is committed with its audit entry
        before anything is broadcast.
        """
        before = record.stage(stage).model_dump(mode="json")
        record.begin_stage(stage)
        await self.store.commit(
            record,
            AuditEventType.WORKFLOW_STATE_CHANGE,
            {stage.value: {"before": before, "after": record.stage(stage).model_dump(mode="json")}},
        )
        self._publish_node_created(record.workflow_id, stage)
        log.info("stage_started", stage=stage.value)

        outcome = await self._with_timeout(stage, record.workflow_id, action)

        active = record.stage(stage).model_dump(mode="json")
        record.complete_stage(stage, outcome.status, **outcome.fields)
        after = record.stage(stage).model_dump(mode="json")
        await self.store.commit(
            record,
            STAGE_EVENT_TYPES.get(stage, AuditEventType.WORKFLOW_STATE_CHANGE),
            {stage.value: {"before": active, "after": after}},
        )
        self._publish(
            record.workflow_id,
            BroadcastEventKind.NODE_UPDATED,
            {"id": stage.value, "data": {"status": outcome.status.value, **self._summary(outcome.fields)}},
        )
        log.info("stage_completed", stage=stage.value, status=outcome.status.value)
        return outcome.value

    async def _with_timeout(self, stage: StageName, workflow_id: str, action: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(action(), timeout=self.stage_timeout)
        except TimeoutError as e:
            raise StageTimeoutError(stage.value, self.stage_timeout, workflow_id=workflow_id) from e

    # ------------------------------------------------------------------
    # Stage actions
    # ------------------------------------------------------------------

    async def _fetch_source(self, trigger: TriggerInput) -> StageOutcome:
        if not trigger.has_code_reference:
            trigger = await self._resolve_pull_request(trigger)
        context = await self.collaborators.source.fetch_context(trigger)
        return StageOutcome(
            fields={
                "title": context.title,
                "pr_url": context.pr_url,
                "repository": context.repository,
                "branch": context.branch,
                "files_changed": len(context.files),
                "diff": context.diff,
                "diff_size": len(context.diff),
                "language": context.language,
            },
            value=context,
        )

    async def _resolve_pull_request(self, trigger: TriggerInput) -> TriggerInput:
        """Fill in the pull request linked from the trigger's ticket."""
        issue_key = trigger.ticket_key or ""
        pr_url = await self.tickets.find_pull_request(issue_key)
        if pr_url is None:
            raise ValidationError(
                f"No GitHub pull request found for {issue_key}; link one in the ticket description or a comment"
            )
        log.info("pull_request_resolved_from_ticket", issue_key=issue_key, pr_url=pr_url)
        return replace(trigger, pr_url=pr_url)

    async def _plan(self, context: CodeContext) -> StageOutcome:
        if not context.diff.strip():
            raise ValidationError("Code change has an empty diff; nothing to plan tests for")
        plan = await self.collaborators.planner.plan_tests(context)
        return StageOutcome(
            fields={
                "unit_tests": plan.unit_tests,
                "integration_tests": plan.integration_tests,
                "edge_cases": plan.edge_cases,
                "reasoning": plan.reasoning,
                "reasoning_steps": [{"description": s.description, "impact": s.impact} for s in plan.reasoning_steps],
            },
            value=plan,
        )

    async def _generate(self, context: CodeContext, plan: TestPlan) -> StageOutcome:
        if plan.total_tests <= 0:
            raise ValidationError("Test plan contains no tests to generate")
        generated = await self.collaborators.generator.generate_tests(context, plan)
        return StageOutcome(
            fields={
                "language": generated.language,
                "framework": generated.framework,
                "test_count": generated.test_count,
                "code": generated.code,
                "code_hash": generated.code_hash,
                "reasoning": generated.reasoning,
            },
            value=generated,
        )

    async def _execute_tests(
        self, record: WorkflowRecord, context: CodeContext, generated: GeneratedTests
    ) -> StageOutcome:
        if not generated.code.strip():
            raise ValidationError("Generator returned no test code")
        result = await self.collaborators.runner.run_tests(generated, context)

        previous = await self.store.find_runs_by_code_hash(generated.code_hash, exclude_workflow_id=record.workflow_id)
        flakiness = compute_flakiness(result.pass_rate, previous)
        record.append_run(
            RunSnapshot(
                workflow_id=record.workflow_id,
                code_hash=generated.code_hash,
                passed=result.passed,
                failed=result.failed,
                total=result.total,
                coverage=result.coverage,
                pass_rate=result.pass_rate,
            )
        )
        return StageOutcome(
            fields={
                "passed": result.passed,
                "failed": result.failed,
                "total": result.total,
                "coverage": result.coverage,
                "pass_rate": result.pass_rate,
                "simulated": result.simulated,
                "flakiness": flakiness.flakiness,
                "stability": flakiness.stability,
            },
            value=result,
        )

    async def _review(self, context: CodeContext) -> StageOutcome:
        review = await self.collaborators.reviewer.review(context)
        status = StageStatus.NO_PR_AVAILABLE if review.status == "no_pr_available" else StageStatus.COMPLETE
        return StageOutcome(
            fields={
                "pr_url": context.pr_url,
                "bot_status": review.status,
                "critical_issues": review.critical_issues,
                "warnings": review.warnings,
                "suggestions": review.suggestions,
                "resolved": review.resolved,
                "minor_fixes": review.minor_fixes,
                "insights": review.insights,
            },
            value=review,
            status=status,
        )

    async def _push_ticket(self, record: WorkflowRecord, trigger: TriggerInput) -> StageOutcome:
        """Create the result ticket.

        Without a ticket key this creates a standalone item. With one, the
        resilience layer first checks the ticket is still accessible and
        attaches the result beneath it.
        """
        payload = build_ticket_payload(record, assignee=trigger.assignee)
        if trigger.summary:
            payload.description = f"{trigger.summary}\n\n{payload.description}"
        result = await self.tickets.push_result(record.ticket_key, payload, project_key=record.ticket_project_key)

        # A standalone fallback replaces an unreachable parent as the workflow's ticket.
        if record.ticket_key is None or (result.parent_key is None and not result.synthetic):
            record.ticket_key = result.ticket_key
            record.ticket_project_key = result.project_key or record.ticket_project_key
        elif record.ticket_project_key is None:
            record.ticket_project_key = result.project_key

        return StageOutcome(fields=result.to_dict(), value=result)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def _finalize(self, record: WorkflowRecord, failure: BaseException | None) -> WorkflowRecord:
        """Score the run, record the terminal status and notify observers.

        On failure the record is reloaded so that nothing which was not
        persisted leaks into the final state.
        """
        if failure is not None:
            try:
                record = await self.store.load(record.workflow_id)
            except TestflowError as e:
                log.error("workflow_reload_failed", error=e.message)
            await self._fail_active_stage(record, failure)

        if record.status == WorkflowStatus.RUNNING:
            try:
                reward = self.rewards.score_workflow(record)
                record.append_reward(reward)
                await self.store.commit(
                    record,
                    AuditEventType.REWARD_COMPUTATION,
                    {"reward": reward.model_dump(mode="json")},
                )
            except Exception as e:
                log.error("reward_recording_failed", error=str(e), exc_info=True)

        error_message = self._error_message(failure) if failure is not None else None
        try:
            if failure is None:
                record.mark_completed()
            else:
                kind = failure.kind.value if isinstance(failure, TestflowError) else ErrorKind.API_ERROR.value
                record.mark_failed(error_message or "", error_kind=kind)
            await self.store.commit(
                record,
                AuditEventType.WORKFLOW_STATE_CHANGE,
                {"status": {"before": WorkflowStatus.RUNNING.value, "after": record.status.value}},
            )
        except Exception as e:
            log.error("workflow_finalize_failed", error=str(e), exc_info=True)
            return record

        self._publish(
            record.workflow_id,
            BroadcastEventKind.WORKFLOW_STATUS,
            {"status": record.status.value, "error": record.error},
        )
        log.info("workflow_finished", status=record.status.value, error=record.error)
        return record

    async def _fail_active_stage(self, record: WorkflowRecord, failure: BaseException) -> None:
        if record.status != WorkflowStatus.RUNNING:
            return
        for stage in STAGE_ORDER:
            sub = record.stage(stage)
            if sub.status != ACTIVE_STATUS[stage]:
                continue
            before = sub.model_dump(mode="json")
            record.fail_stage(stage, self._error_message(failure))
            try:
                await self.store.commit(
                    record,
                    AuditEventType.WORKFLOW_STATE_CHANGE,
                    {stage.value: {"before": before, "after": sub.model_dump(mode="json")}},
                )
            except Exception as e:
                log.error("stage_failure_not_recorded", stage=stage.value, error=str(e))
            self._publish(
                record.workflow_id,
                BroadcastEventKind.NODE_UPDATED,
                {"id": stage.value, "data": {"status": StageStatus.FAILED.value, "error": sub.error}},
            )

    @staticmethod
    def _error_message(failure: BaseException) -> str:
        return str(failure) or type(failure).__name__

    # ------------------------------------------------------------------
    # Broadcasting
    # ------------------------------------------------------------------

    def _publish(self, workflow_id: str, kind: BroadcastEventKind, payload: dict[str, Any]) -> None:
        try:
            self.broadcaster.publish(workflow_id, kind, payload)
        except Exception as e:
            log.warning("broadcast_failed", event=kind.value, error=str(e))

    def _publish_node_created(self, workflow_id: str, stage: StageName) -> None:
        index = STAGE_ORDER.index(stage)
        self._publish(
            workflow_id,
            BroadcastEventKind.NODE_CREATED,
            {
                "id": stage.value,
                "type": stage.value,
                "data": {"status": ACTIVE_STATUS[stage].value},
                "position": {"x": index * 250, "y": 100},
            },
        )
        if index > 0:
            source = STAGE_ORDER[index - 1].value
            self._publish(
                workflow_id,
                BroadcastEventKind.EDGE_CREATED,
                {"id": f"edge-{source}-{stage.value}", "source": source, "target": stage.value},
            )

    @staticmethod
    def _summary(fields: dict[str, Any]) -> dict[str, Any]:
        """Broadcast-friendly view of stage fields without bulky text."""
        return {k: v for k, v in fields.items() if k not in ("code", "diff", "reasoning", "reasoning_steps")}
