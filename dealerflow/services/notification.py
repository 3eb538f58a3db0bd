"""
Notification Emitter — fire-and-forget delivery of workflow events.

Pieces:
    - NotificationEvent: one triggering event with its recipient list
    - InAppChannel: persists one Notification per recipient
    - WebhookChannel: POSTs the event to an external URL (requests, timeout)
    - NotificationDispatcher: per-workflow ordered lanes on a thread pool,
      bounded retry with exponential backoff per channel
    - NotificationEmitter: builds events from engine state changes
    - NotificationInbox: recipient-facing queries and the read flag

Guarantees:
    - A delivery failure never reaches the engine caller.
    - Events of one workflow are delivered in the order they were emitted;
      different workflows are delivered in parallel with no mutual order.
    - After NOTIFICATION_MAX_ATTEMPTS the event is logged at ERROR with its
      full content and dropped.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import requests

from dealerflow.core.exceptions import NotificationDeliveryError
from dealerflow.domain import (
    Blocker,
    Notification,
    NotificationType,
    WorkflowInstance,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class NotificationEvent:
    event_type: NotificationType
    workflow_id: str | None
    recipients: list[str]
    title: str
    occurred_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=new_id)
    # channel name -> recipients already delivered, so a retry does not duplicate
    progress: dict[str, set] = field(default_factory=dict, repr=False, compare=False)

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "workflow_id": self.workflow_id,
            "recipients": list(self.recipients),
            "title": self.title,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Channels
# ═════════════════════════════════════════════════════════════════════════════

class InAppChannel:
    name = "in_app"

    def __init__(self, repository) -> None:
        self.repository = repository

    def send(self, event: NotificationEvent) -> None:
        done = event.progress.setdefault(self.name, set())
        for recipient in event.recipients:
            if recipient in done:
                continue
            self.repository.add_notification(Notification(
                notification_id=new_id(),
                type=event.event_type,
                recipient=recipient,
                workflow_id=event.workflow_id,
                title=event.title,
                payload=dict(event.payload),
                created_at=event.occurred_at,
            ))
            done.add(recipient)


class WebhookChannel:
    """POST each event as JSON. Pass a custom ``session`` in tests."""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 5.0, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def send(self, event: NotificationEvent) -> None:
        try:
            resp = self.session.post(self.url, json=event.to_dict(), timeout=self.timeout)
        except requests.Timeout as exc:
            raise NotificationDeliveryError(self.name, f"timeout after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise NotificationDeliveryError(self.name, str(exc)) from exc
        if resp.status_code >= 400:
            raise NotificationDeliveryError(self.name, f"HTTP {resp.status_code} from {self.url}")


# ═════════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═════════════════════════════════════════════════════════════════════════════

class NotificationDispatcher:
    """Deliver events to every channel, off the caller's critical path.

    Args:
        channels: objects with ``name`` and ``send(event)``.
        run_async: False delivers inline (tests); failures are still isolated.
        context_factory: returns a context manager entered around each
            delivery on a worker thread (the Flask app context).
        sleep: injectable for tests.
    """

    def __init__(
        self,
        channels: Iterable,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        backoff_max_seconds: float = 8.0,
        workers: int = 4,
        run_async: bool = True,
        context_factory: Callable[[], Any] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.channels = list(channels)
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.run_async = run_async
        self.context_factory = context_factory
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify") if run_async else None
        self._lanes: dict[str, deque[NotificationEvent]] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self.dropped = 0

    def submit(self, event: NotificationEvent) -> None:
        if not self.run_async:
            self._deliver(event)
            return

        key = event.workflow_id or event.event_id
        with self._lock:
            lane = self._lanes.get(key)
            if lane is not None:
                lane.append(event)
                return
            self._lanes[key] = deque([event])
        self._executor.submit(self._drain, key)

    def _drain(self, key: str) -> None:
        while True:
            with self._lock:
                lane = self._lanes[key]
                if not lane:
                    del self._lanes[key]
                    self._idle.notify_all()
                    return
                event = lane[0]
            try:
                self._deliver(event)
            except Exception:
                logger.exception("Notification worker failed: %s", event.to_dict(),
                                 extra={"workflow_id": event.workflow_id})
            with self._lock:
                lane.popleft()

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)

    def _deliver(self, event: NotificationEvent) -> None:
        ctx = self.context_factory() if self.context_factory else nullcontext()
        with ctx:
            for channel in self.channels:
                self._deliver_to(channel, event)

    def _deliver_to(self, channel, event: NotificationEvent) -> bool:
        extra = {"workflow_id": event.workflow_id, "event_type": event.event_type.value,
                 "channel": channel.name}
        for attempt in range(1, self.max_attempts + 1):
            try:
                channel.send(event)
                return True
            except Exception as exc:
                logger.warning("Notification delivery failed (attempt %d/%d): %s",
                               attempt, self.max_attempts, exc, extra={**extra, "attempt": attempt})
                if attempt < self.max_attempts:
                    delay = self._backoff(attempt)
                    if delay > 0:
                        self._sleep(delay)
        with self._lock:
            self.dropped += 1
        logger.error("Notification dropped after %d attempts: %s",
                     self.max_attempts, event.to_dict(), extra=extra)
        return False

    def flush(self, timeout: float | None = None) -> bool:
        """Block until every lane is drained. Returns False on timeout."""
        if not self.run_async:
            return True
        with self._idle:
            return self._idle.wait_for(lambda: not self._lanes, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


# ═════════════════════════════════════════════════════════════════════════════
# Emitter
# ═════════════════════════════════════════════════════════════════════════════

def _recipients(*groups) -> list[str]:
    seen: list[str] = []
    for group in groups:
        if group is None:
            continue
        items = [group] if isinstance(group, str) else group
        for user in items:
            if user and user not in seen:
                seen.append(user)
    return seen


class NotificationEmitter:
    """Translate engine state changes into dispatched events."""

    def __init__(self, dispatcher: NotificationDispatcher, clock: Callable[[], datetime] = utcnow) -> None:
        self.dispatcher = dispatcher
        self.clock = clock

    def _emit(self, event_type: NotificationType, instance: WorkflowInstance,
              recipients: list[str], title: str, payload: dict) -> NotificationEvent | None:
        extra = {"workflow_id": instance.workflow_id, "event_type": event_type.value}
        if not recipients:
            logger.debug("No recipients for %s", event_type.value, extra=extra)
            return None
        event = NotificationEvent(
            event_type=event_type,
            workflow_id=instance.workflow_id,
            recipients=recipients,
            title=title,
            occurred_at=self.clock(),
            payload={
                "record_id": instance.record_id,
                "process_type": instance.process_type,
                **payload,
            },
        )
        try:
            self.dispatcher.submit(event)
        except Exception:
            # Dispatch must never fail the originating transition
            logger.exception("Notification dispatch failed: %s", event.to_dict(), extra=extra)
        return event

    def stage_transition(self, instance: WorkflowInstance, from_stage: str,
                         previous_owner: str | None = None):
        return self._emit(
            NotificationType.STAGE_TRANSITION, instance,
            _recipients(instance.assigned_to, instance.watchers, previous_owner),
            f"{instance.record_id}: {from_stage} → {instance.current_stage}",
            {"from_stage": from_stage, "to_stage": instance.current_stage,
             "assigned_to": instance.assigned_to, "status": instance.status.value},
        )

    def blocker_created(self, instance: WorkflowInstance, blocker: Blocker):
        return self._emit(
            NotificationType.BLOCKER_CREATED, instance,
            _recipients(instance.assigned_to, instance.watchers),
            f"Blocker on {instance.record_id}: {blocker.description}",
            {"blocker": blocker.to_dict(), "stage": instance.current_stage},
        )

    def blocker_resolved(self, instance: WorkflowInstance, blocker: Blocker):
        return self._emit(
            NotificationType.BLOCKER_RESOLVED, instance,
            _recipients(instance.assigned_to, instance.watchers),
            f"Blocker resolved on {instance.record_id}: {blocker.description}",
            {"blocker": blocker.to_dict(), "stage": instance.current_stage},
        )

    def deadline_approaching(self, instance: WorkflowInstance, days_remaining: int,
                             estimated_completion: datetime):
        return self._emit(
            NotificationType.DEADLINE_APPROACHING, instance,
            _recipients(instance.assigned_to),
            f"{instance.record_id} due in {days_remaining} day(s)",
            {"stage": instance.current_stage, "days_remaining": days_remaining,
             "estimated_completion": estimated_completion.isoformat()},
        )

    def workflow_cancelled(self, instance: WorkflowInstance):
        return self._emit(
            NotificationType.WORKFLOW_CANCELLED, instance,
            _recipients(instance.assigned_to, instance.watchers),
            f"{instance.process_type} for {instance.record_id} cancelled",
            {"stage": instance.current_stage, "reason": instance.cancel_reason},
        )


# ═════════════════════════════════════════════════════════════════════════════
# Inbox
# ═════════════════════════════════════════════════════════════════════════════

class NotificationInbox:
    def __init__(self, repository, clock: Callable[[], datetime] = utcnow) -> None:
        self.repository = repository
        self.clock = clock

    def list_for(self, recipient: str, unread_only: bool = False, limit: int | None = 50) -> list[Notification]:
        return self.repository.list_notifications(recipient, unread_only=unread_only, limit=limit)

    def unread_count(self, recipient: str) -> int:
        return self.repository.count_unread(recipient)

    def mark_read(self, notification_id: str) -> Notification | None:
        return self.repository.mark_notification_read(notification_id, self.clock())

    def mark_all_read(self, recipient: str) -> int:
        return self.repository.mark_all_read(recipient, self.clock())
