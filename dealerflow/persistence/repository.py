"""Repository abstraction for workflow engine state."""

from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Protocol

from dealerflow.domain import (
    Notification,
    RoleInfo,
    UserInfo,
    WorkflowInstance,
    WorkflowStatus,
)


class WorkflowRepository(Protocol):
    """Protocol for workflow engine persistence backends.

    Implementations return detached copies: mutating a returned instance has
    no effect until it is passed back to ``save_workflow``.
    """

    # ── Workflows ────────────────────────────────────────────────────────

    def unit_of_work(self) -> AbstractContextManager:
        """Scope a read-modify-write; rolled back when the block raises.

        Row locks taken inside the block are released on exit even when the
        block leaves without saving.
        """

    def add_workflow(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Persist a new instance. DuplicateWorkflow if an active one exists for the pair."""

    def get_workflow(self, workflow_id: str, for_update: bool = False) -> WorkflowInstance | None:
        """Load an instance; ``for_update`` takes a row lock where supported."""

    def save_workflow(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Persist changes. ConcurrentUpdate if ``instance.version`` is stale."""

    def find_active(self, record_id: str, process_type: str) -> WorkflowInstance | None:
        """Active instance for a record + process pair, if any."""

    def list_workflows(
        self,
        process_type: str | None = None,
        status: WorkflowStatus | None = None,
        assigned_to: str | None = None,
        record_id: str | None = None,
    ) -> list[WorkflowInstance]:
        """Instances matching every given filter, oldest first."""

    # ── Record facts ─────────────────────────────────────────────────────

    def get_record_facts(self, record_id: str) -> dict[str, Any]:
        """Key/value snapshot for a business record (empty when unknown)."""

    def set_record_facts(self, record_id: str, facts: dict[str, Any], merge: bool = True) -> dict[str, Any]:
        """Store facts; ``merge`` keeps existing keys not in ``facts``."""

    # ── Notifications ────────────────────────────────────────────────────

    def add_notification(self, notification: Notification) -> Notification:
        """Append a notification."""

    def list_notifications(
        self, recipient: str, unread_only: bool = False, limit: int | None = None,
    ) -> list[Notification]:
        """Notifications for a recipient, newest first."""

    def count_unread(self, recipient: str) -> int:
        """Unread notification count for a recipient."""

    def mark_notification_read(self, notification_id: str, read_at: datetime) -> Notification | None:
        """Set the read flag; None when the notification does not exist."""

    def mark_all_read(self, recipient: str, read_at: datetime) -> int:
        """Mark every unread notification of a recipient; returns the count."""

    # ── Directory ────────────────────────────────────────────────────────

    def add_role(self, role: RoleInfo) -> RoleInfo:
        """ConflictError if the role name exists."""

    def get_role(self, name: str) -> RoleInfo | None:
        """Role by name."""

    def list_roles(self) -> list[RoleInfo]:
        """All roles by name."""

    def add_user(self, user: UserInfo) -> UserInfo:
        """ConflictError if the user id exists."""

    def get_user(self, user_id: str) -> UserInfo | None:
        """User by id."""

    def list_users(self, role: str | None = None, active_only: bool = False) -> list[UserInfo]:
        """Users by id, optionally filtered."""

    def touch_assignment(self, user_id: str, assigned_at: datetime) -> None:
        """Record the time a user last received a workflow."""
