"""
Live event broadcasting for workflow observers.

Observers join a per-workflow channel and receive events published after
they joined. Publishing is fire-and-forget: there is no delivery guarantee,
nothing is queued for observers that have not joined yet, and an observer
whose queue is full simply misses the event.

Example:
    >>> broadcaster = EventBroadcaster()
    >>> subscription = broadcaster.subscribe("wf-1")
    >>> broadcaster.publish("wf-1", BroadcastEventKind.WORKFLOW_STATUS, {"status": "running"})
    >>> event = await subscription.get()
    >>> broadcaster.unsubscribe(subscription)
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from testflow.enums import BroadcastEventKind

log = structlog.get_logger(__name__)


def channel_name(workflow_id: str) -> str:
    return f"workflow:{workflow_id}"


@dataclass(frozen=True)
class BroadcastEvent:
    workflow_id: str
    kind: BroadcastEventKind
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_message(self) -> dict[str, Any]:
        return {
            "event": self.kind.value,
            "channel": channel_name(self.workflow_id),
            "workflow_id": self.workflow_id,
            "data": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class Subscription:
    """One observer's membership of a workflow channel."""

    def __init__(self, workflow_id: str, max_queue: int) -> None:
        self.workflow_id = workflow_id
        self.queue: asyncio.Queue[BroadcastEvent] = asyncio.Queue(maxsize=max_queue)

    async def get(self) -> BroadcastEvent:
        return await self.queue.get()

    async def __aiter__(self) -> AsyncIterator[BroadcastEvent]:
        while True:
            yield await self.queue.get()


class EventBroadcaster:
    """Publish workflow events to the observers of each workflow.

    The only state held is the set of active subscriptions.

    Args:
        max_queue: Events buffered per observer before new ones are dropped.
    """

    def __init__(self, max_queue: int = 100) -> None:
        self.max_queue = max_queue
        self._subscriptions: dict[str, set[Subscription]] = {}

    def subscribe(self, workflow_id: str) -> Subscription:
        subscription = Subscription(workflow_id, self.max_queue)
        self._subscriptions.setdefault(workflow_id, set()).add(subscription)
        log.debug("observer_joined", channel=channel_name(workflow_id))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        members = self._subscriptions.get(subscription.workflow_id)
        if members is None:
            return
        members.discard(subscription)
        if not members:
            del self._subscriptions[subscription.workflow_id]
        log.debug("observer_left", channel=channel_name(subscription.workflow_id))

    def subscriber_count(self, workflow_id: str) -> int:
        return len(self._subscriptions.get(workflow_id, ()))

    def publish(self, workflow_id: str, kind: BroadcastEventKind, payload: dict[str, Any]) -> int:
        """Deliver an event to current observers of a workflow.

        Returns:
            Number of observers the event was queued for.
        """
        event = BroadcastEvent(workflow_id=workflow_id, kind=kind, payload=payload)
        delivered = 0
        for subscription in list(self._subscriptions.get(workflow_id, ())):
            try:
                subscription.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                log.warning("broadcast_dropped", channel=channel_name(workflow_id), event=kind.value)
        return delivered
