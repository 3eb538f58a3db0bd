"""Flask-SQLAlchemy implementation of the workflow repository.

Rows live in ``dealerflow.models``; this module maps them to and from the
domain dataclasses. Writers load with ``SELECT ... FOR UPDATE`` inside a unit
of work and the instance row carries an optimistic ``version`` column, so a
writer in another process that lost the race gets ``ConcurrentUpdate``.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from dealerflow.core.exceptions import ConcurrentUpdate, ConflictError, DuplicateWorkflow
from dealerflow.domain import (
    Blocker,
    BlockerSeverity,
    Milestone,
    Notification,
    NotificationType,
    RoleInfo,
    StageCompletion,
    UserInfo,
    WorkflowInstance,
    WorkflowStatus,
)
from dealerflow.models import db
from dealerflow.models.directory import DirectoryUserRow, RoleRow
from dealerflow.models.notification import NotificationRow
from dealerflow.models.workflow import (
    BlockerRow,
    MilestoneRow,
    RecordFactsRow,
    StageCompletionRow,
    WorkflowInstanceRow,
)
from dealerflow.persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)


def _aware(dt: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on the way back; every stored time is UTC."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ─── Row ↔ domain mapping ─────────────────────────────────────────────────────


def _to_instance(row: WorkflowInstanceRow) -> WorkflowInstance:
    return WorkflowInstance(
        workflow_id=row.id,
        record_id=row.record_id,
        process_type=row.process_type,
        current_stage=row.current_stage,
        status=WorkflowStatus(row.status),
        assigned_to=row.assigned_to,
        created_by=row.created_by,
        watchers=list(row.watchers or []),
        stage_entered_at=_aware(row.stage_entered_at),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        closed_at=_aware(row.closed_at),
        cancel_reason=row.cancel_reason,
        deadline_alerted_stage=row.deadline_alerted_stage,
        version=row.version,
        completed_stages=[
            StageCompletion(c.stage_id, _aware(c.completed_at), c.completed_by)
            for c in row.completions
        ],
        milestones=[
            Milestone(m.stage_id, m.title, _aware(m.achieved_at)) for m in row.milestones
        ],
        blockers=[
            Blocker(
                blocker_id=b.id,
                description=b.description,
                severity=BlockerSeverity(b.severity),
                created_at=_aware(b.created_at),
                created_by=b.created_by,
                resolved=b.resolved,
                resolved_at=_aware(b.resolved_at),
                resolution=b.resolution,
            )
            for b in row.blockers
        ],
    )


def _apply_instance(row: WorkflowInstanceRow, instance: WorkflowInstance) -> None:
    """Copy mutable state onto a row. Children are append-only except blocker resolution."""
    row.current_stage = instance.current_stage
    row.status = instance.status.value
    row.assigned_to = instance.assigned_to
    row.watchers = list(instance.watchers)
    row.stage_entered_at = instance.stage_entered_at
    row.updated_at = instance.updated_at
    row.closed_at = instance.closed_at
    row.cancel_reason = instance.cancel_reason
    row.deadline_alerted_stage = instance.deadline_alerted_stage

    for position, completion in enumerate(instance.completed_stages[len(row.completions):],
                                          start=len(row.completions)):
        row.completions.append(StageCompletionRow(
            position=position,
            stage_id=completion.stage_id,
            completed_at=completion.completed_at,
            completed_by=completion.completed_by,
        ))

    for position, milestone in enumerate(instance.milestones[len(row.milestones):],
                                         start=len(row.milestones)):
        row.milestones.append(MilestoneRow(
            position=position,
            stage_id=milestone.stage_id,
            title=milestone.title,
            achieved_at=milestone.achieved_at,
        ))

    existing = {b.id: b for b in row.blockers}
    for blocker in instance.blockers:
        blocker_row = existing.get(blocker.blocker_id)
        if blocker_row is None:
            row.blockers.append(BlockerRow(
                id=blocker.blocker_id,
                description=blocker.description,
                severity=blocker.severity.value,
                created_at=blocker.created_at,
                created_by=blocker.created_by,
                resolved=blocker.resolved,
                resolved_at=blocker.resolved_at,
                resolution=blocker.resolution,
            ))
        elif blocker.resolved and not blocker_row.resolved:
            blocker_row.resolved = True
            blocker_row.resolved_at = blocker.resolved_at
            blocker_row.resolution = blocker.resolution


def _to_notification(row: NotificationRow) -> Notification:
    return Notification(
        notification_id=row.id,
        type=NotificationType(row.type),
        recipient=row.recipient,
        workflow_id=row.workflow_id,
        title=row.title,
        payload=dict(row.payload or {}),
        created_at=_aware(row.created_at),
        read=row.is_read,
        read_at=_aware(row.read_at),
    )


def _to_user(row: DirectoryUserRow) -> UserInfo:
    return UserInfo(
        user_id=row.user_id,
        display_name=row.display_name,
        role=row.role,
        is_active=row.is_active,
        last_assigned_at=_aware(row.last_assigned_at),
    )


def _to_role(row: RoleRow) -> RoleInfo:
    return RoleInfo(name=row.name, department=row.department or "",
                    permissions=tuple(row.permissions or ()))


# ─── Repository ───────────────────────────────────────────────────────────────


class SqlWorkflowRepository(WorkflowRepository):
    """Persist engine state through ``db.session``. Requires an app context."""

    def __init__(self, session=None) -> None:
        self._session = session

    @property
    def session(self):
        return self._session if self._session is not None else db.session

    def _commit(self) -> None:
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    @contextmanager
    def unit_of_work(self):
        try:
            yield self
        except Exception:
            self.session.rollback()
            raise
        else:
            # Leaving without a save still holds the FOR UPDATE row lock; saves have already committed
            self.session.rollback()

    # ── Workflows ────────────────────────────────────────────────────────

    def add_workflow(self, instance: WorkflowInstance) -> WorkflowInstance:
        existing = self.find_active(instance.record_id, instance.process_type)
        if existing is not None:
            raise DuplicateWorkflow(instance.record_id, instance.process_type, existing.workflow_id)

        row = WorkflowInstanceRow(
            id=instance.workflow_id,
            record_id=instance.record_id,
            process_type=instance.process_type,
            created_by=instance.created_by,
            created_at=instance.created_at,
        )
        _apply_instance(row, instance)
        self.session.add(row)
        try:
            self._commit()
        except IntegrityError as exc:
            # Partial unique index: a concurrent creator won the race
            logger.info("Duplicate active workflow rejected by index: %s", exc.orig,
                        extra={"record_id": instance.record_id, "process_type": instance.process_type})
            raise DuplicateWorkflow(instance.record_id, instance.process_type) from exc
        return _to_instance(row)

    def get_workflow(self, workflow_id: str, for_update: bool = False) -> WorkflowInstance | None:
        stmt = select(WorkflowInstanceRow).where(WorkflowInstanceRow.id == workflow_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        row = self.session.execute(stmt).scalar_one_or_none()
        return _to_instance(row) if row else None

    def save_workflow(self, instance: WorkflowInstance) -> WorkflowInstance:
        row = self.session.get(WorkflowInstanceRow, instance.workflow_id)
        if row is None or row.version != instance.version:
            self.session.rollback()
            raise ConcurrentUpdate(instance.workflow_id)
        _apply_instance(row, instance)
        try:
            self._commit()
        except StaleDataError as exc:
            raise ConcurrentUpdate(instance.workflow_id) from exc
        return _to_instance(row)

    def find_active(self, record_id: str, process_type: str) -> WorkflowInstance | None:
        row = self.session.execute(
            select(WorkflowInstanceRow).where(
                WorkflowInstanceRow.record_id == record_id,
                WorkflowInstanceRow.process_type == process_type,
                WorkflowInstanceRow.status == WorkflowStatus.ACTIVE.value,
            )
        ).scalar_one_or_none()
        return _to_instance(row) if row else None

    def list_workflows(self, process_type=None, status=None, assigned_to=None,
                       record_id=None) -> list[WorkflowInstance]:
        stmt = select(WorkflowInstanceRow).order_by(WorkflowInstanceRow.created_at)
        if record_id is not None:
            stmt = stmt.where(WorkflowInstanceRow.record_id == record_id)
        if process_type is not None:
            stmt = stmt.where(WorkflowInstanceRow.process_type == process_type)
        if status is not None:
            stmt = stmt.where(WorkflowInstanceRow.status == WorkflowStatus(status).value)
        if assigned_to is not None:
            stmt = stmt.where(WorkflowInstanceRow.assigned_to == assigned_to)
        return [_to_instance(row) for row in self.session.execute(stmt).scalars()]

    # ── Record facts ─────────────────────────────────────────────────────

    def get_record_facts(self, record_id: str) -> dict[str, Any]:
        row = self.session.get(RecordFactsRow, record_id)
        return dict(row.facts or {}) if row else {}

    def set_record_facts(self, record_id: str, facts: dict[str, Any], merge: bool = True) -> dict[str, Any]:
        row = self.session.get(RecordFactsRow, record_id)
        if row is None:
            row = RecordFactsRow(record_id=record_id, facts={})
            self.session.add(row)
        current = dict(row.facts or {}) if merge else {}
        current.update(facts)
        # Reassign so the JSON column registers the change
        row.facts = current
        self._commit()
        return dict(current)

    # ── Notifications ────────────────────────────────────────────────────

    def add_notification(self, notification: Notification) -> Notification:
        self.session.add(NotificationRow(
            id=notification.notification_id,
            type=notification.type.value,
            recipient=notification.recipient,
            workflow_id=notification.workflow_id,
            title=notification.title,
            payload=notification.payload,
            is_read=notification.read,
            read_at=notification.read_at,
            created_at=notification.created_at,
        ))
        self._commit()
        return notification

    def list_notifications(self, recipient: str, unread_only: bool = False,
                           limit: int | None = None) -> list[Notification]:
        stmt = (
            select(NotificationRow)
            .where(NotificationRow.recipient == recipient)
            .order_by(NotificationRow.created_at.desc(), NotificationRow.id.desc())
        )
        if unread_only:
            stmt = stmt.where(NotificationRow.is_read.is_(False))
        if limit is not None:
            stmt = stmt.limit(limit)
        return [_to_notification(row) for row in self.session.execute(stmt).scalars()]

    def count_unread(self, recipient: str) -> int:
        return self.session.execute(
            select(db.func.count(NotificationRow.id)).where(
                NotificationRow.recipient == recipient,
                NotificationRow.is_read.is_(False),
            )
        ).scalar_one()

    def mark_notification_read(self, notification_id: str, read_at: datetime) -> Notification | None:
        row = self.session.get(NotificationRow, notification_id)
        if row is None:
            return None
        if not row.is_read:
            row.is_read = True
            row.read_at = read_at
            self._commit()
        return _to_notification(row)

    def mark_all_read(self, recipient: str, read_at: datetime) -> int:
        rows = self.session.execute(
            select(NotificationRow).where(
                NotificationRow.recipient == recipient,
                NotificationRow.is_read.is_(False),
            )
        ).scalars().all()
        for row in rows:
            row.is_read = True
            row.read_at = read_at
        if rows:
            self._commit()
        return len(rows)

    # ── Directory ────────────────────────────────────────────────────────

    def add_role(self, role: RoleInfo) -> RoleInfo:
        if self.session.get(RoleRow, role.name) is not None:
            raise ConflictError("Role", "name", role.name)
        self.session.add(RoleRow(name=role.name, department=role.department,
                                 permissions=list(role.permissions)))
        self._commit()
        return role

    def get_role(self, name: str) -> RoleInfo | None:
        row = self.session.get(RoleRow, name)
        return _to_role(row) if row else None

    def list_roles(self) -> list[RoleInfo]:
        rows = self.session.execute(select(RoleRow).order_by(RoleRow.name)).scalars()
        return [_to_role(row) for row in rows]

    def add_user(self, user: UserInfo) -> UserInfo:
        if self.session.get(DirectoryUserRow, user.user_id) is not None:
            raise ConflictError("User", "user_id", user.user_id)
        self.session.add(DirectoryUserRow(
            user_id=user.user_id,
            display_name=user.display_name,
            role=user.role,
            is_active=user.is_active,
            last_assigned_at=user.last_assigned_at,
        ))
        self._commit()
        return user

    def get_user(self, user_id: str) -> UserInfo | None:
        row = self.session.get(DirectoryUserRow, user_id)
        return _to_user(row) if row else None

    def list_users(self, role: str | None = None, active_only: bool = False) -> list[UserInfo]:
        stmt = select(DirectoryUserRow).order_by(DirectoryUserRow.user_id)
        if role is not None:
            stmt = stmt.where(DirectoryUserRow.role == role)
        if active_only:
            stmt = stmt.where(DirectoryUserRow.is_active.is_(True))
        return [_to_user(row) for row in self.session.execute(stmt).scalars()]

    def touch_assignment(self, user_id: str, assigned_at: datetime) -> None:
        row = self.session.get(DirectoryUserRow, user_id)
        if row is not None:
            row.last_assigned_at = assigned_at
            self._commit()
