"""Workflow orchestration engine.

This package drives a code change through test generation: it sequences the
stages, persists every transition with an audit entry, pushes results to the
issue tracker with fallbacks, scores each run for training selection and
streams progress to live observers.

Key Components:
    - WorkflowOrchestrator: Stage-sequenced state machine, one run per workflow id
    - WorkflowStore: Atomic JSON persistence with audited commits
    - AuditLogStore: Append-only, hash-verified audit trail
    - TicketResilienceLayer: Subtask, standalone, synthetic fallback chain
    - RewardComputer: Weighted reward scoring and quality tiers
    - EventBroadcaster: Per-workflow live event channels

Workflow Stages:
    - source_fetch: Fetch the diff and metadata of the code change
    - planning: Decide how many unit, integration and edge-case tests to write
    - generation: Write the test code
    - test_execution: Record reported results and flakiness
    - code_review: Read review bot findings
    - ticket_push: Attach the output to the issue tracker

Example:
    >>> from testflow.engine import WorkflowOrchestrator
    >>> workflow_id = await orchestrator.start_workflow(trigger)
    >>> record = await orchestrator.wait_for_completion(workflow_id)
"""

from testflow.engine.audit_log import AuditLogEntry, AuditLogStore, IntegrityReport
from testflow.engine.broadcaster import BroadcastEvent, EventBroadcaster
from testflow.engine.orchestrator import Collaborators, WorkflowOrchestrator
from testflow.engine.reward import RewardComputer
from testflow.engine.ticket_resilience import TicketResilienceLayer
from testflow.engine.workflow_store import WorkflowStore

__all__ = [
    "AuditLogEntry",
    "AuditLogStore",
    "BroadcastEvent",
    "Collaborators",
    "EventBroadcaster",
    "IntegrityReport",
    "RewardComputer",
    "TicketResilienceLayer",
    "WorkflowOrchestrator",
    "WorkflowStore",
]
