"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from dealerflow.core.exceptions import ConcurrentUpdate, ConflictError, DuplicateWorkflow
from dealerflow.domain import (
    Notification,
    RoleInfo,
    UserInfo,
    WorkflowInstance,
    WorkflowStatus,
)
from dealerflow.persistence.repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store engine state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every read and write copies, so
    callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._workflows: dict[str, WorkflowInstance] = {}
        self._facts: dict[str, dict[str, Any]] = {}
        self._notifications: list[Notification] = []
        self._roles: dict[str, RoleInfo] = {}
        self._users: dict[str, UserInfo] = {}

    # ------------------------------------------------------------------
    @contextmanager
    def unit_of_work(self):
        yield self

    def add_workflow(self, instance: WorkflowInstance) -> WorkflowInstance:
        with self._lock:
            existing = self._find_active(instance.record_id, instance.process_type)
            if existing is not None:
                raise DuplicateWorkflow(instance.record_id, instance.process_type, existing.workflow_id)
            self._workflows[instance.workflow_id] = copy.deepcopy(instance)
            return copy.deepcopy(instance)

    def get_workflow(self, workflow_id: str, for_update: bool = False) -> WorkflowInstance | None:
        with self._lock:
            wf = self._workflows.get(workflow_id)
            return copy.deepcopy(wf) if wf else None

    def save_workflow(self, instance: WorkflowInstance) -> WorkflowInstance:
        with self._lock:
            stored = self._workflows.get(instance.workflow_id)
            if stored is None or stored.version != instance.version:
                raise ConcurrentUpdate(instance.workflow_id)
            saved = copy.deepcopy(instance)
            saved.version += 1
            self._workflows[instance.workflow_id] = saved
            return copy.deepcopy(saved)

    def _find_active(self, record_id: str, process_type: str) -> WorkflowInstance | None:
        for wf in self._workflows.values():
            if (wf.record_id == record_id and wf.process_type == process_type
                    and wf.status == WorkflowStatus.ACTIVE):
                return wf
        return None

    def find_active(self, record_id: str, process_type: str) -> WorkflowInstance | None:
        with self._lock:
            wf = self._find_active(record_id, process_type)
            return copy.deepcopy(wf) if wf else None

    def list_workflows(self, process_type=None, status=None, assigned_to=None,
                       record_id=None) -> list[WorkflowInstance]:
        with self._lock:
            items = [
                wf for wf in self._workflows.values()
                if (process_type is None or wf.process_type == process_type)
                and (record_id is None or wf.record_id == record_id)
                and (status is None or wf.status == status)
                and (assigned_to is None or wf.assigned_to == assigned_to)
            ]
            items.sort(key=lambda wf: wf.created_at)
            return copy.deepcopy(items)

    # ------------------------------------------------------------------
    def get_record_facts(self, record_id: str) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._facts.get(record_id, {}))

    def set_record_facts(self, record_id: str, facts: dict[str, Any], merge: bool = True) -> dict[str, Any]:
        with self._lock:
            current = dict(self._facts.get(record_id, {})) if merge else {}
            current.update(copy.deepcopy(facts))
            self._facts[record_id] = current
            return copy.deepcopy(current)

    # ------------------------------------------------------------------
    def add_notification(self, notification: Notification) -> Notification:
        with self._lock:
            self._notifications.append(copy.deepcopy(notification))
            return notification

    def list_notifications(self, recipient: str, unread_only: bool = False,
                           limit: int | None = None) -> list[Notification]:
        with self._lock:
            items = [
                n for n in reversed(self._notifications)
                if n.recipient == recipient and (not unread_only or not n.read)
            ]
            if limit is not None:
                items = items[:limit]
            return copy.deepcopy(items)

    def count_unread(self, recipient: str) -> int:
        with self._lock:
            return sum(1 for n in self._notifications if n.recipient == recipient and not n.read)

    def mark_notification_read(self, notification_id: str, read_at: datetime) -> Notification | None:
        with self._lock:
            for n in self._notifications:
                if n.notification_id == notification_id:
                    if not n.read:
                        n.read = True
                        n.read_at = read_at
                    return copy.deepcopy(n)
            return None

    def mark_all_read(self, recipient: str, read_at: datetime) -> int:
        with self._lock:
            count = 0
            for n in self._notifications:
                if n.recipient == recipient and not n.read:
                    n.read = True
                    n.read_at = read_at
                    count += 1
            return count

    # ------------------------------------------------------------------
    def add_role(self, role: RoleInfo) -> RoleInfo:
        with self._lock:
            if role.name in self._roles:
                raise ConflictError("Role", "name", role.name)
            self._roles[role.name] = copy.deepcopy(role)
            return role

    def get_role(self, name: str) -> RoleInfo | None:
        with self._lock:
            role = self._roles.get(name)
            return copy.deepcopy(role) if role else None

    def list_roles(self) -> list[RoleInfo]:
        with self._lock:
            return [copy.deepcopy(self._roles[name]) for name in sorted(self._roles)]

    def add_user(self, user: UserInfo) -> UserInfo:
        with self._lock:
            if user.user_id in self._users:
                raise ConflictError("User", "user_id", user.user_id)
            self._users[user.user_id] = copy.deepcopy(user)
            return user

    def get_user(self, user_id: str) -> UserInfo | None:
        with self._lock:
            user = self._users.get(user_id)
            return copy.deepcopy(user) if user else None

    def list_users(self, role: str | None = None, active_only: bool = False) -> list[UserInfo]:
        with self._lock:
            return [
                copy.deepcopy(self._users[uid]) for uid in sorted(self._users)
                if (role is None or self._users[uid].role == role)
                and (not active_only or self._users[uid].is_active)
            ]

    def touch_assignment(self, user_id: str, assigned_at: datetime) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if user is not None:
                user.last_assigned_at = assigned_at
