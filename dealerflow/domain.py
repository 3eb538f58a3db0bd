"""
DealerFlow domain entities.

Plain dataclasses shared by the stage catalog, the workflow engine and both
repository implementations. Persistence rows (``dealerflow.models``) are mapped
onto these so the engine never touches ORM objects directly.

Entities:
    - StageDefinition / ProcessDefinition: immutable catalog data
    - WorkflowInstance: per-record progress through one process
    - StageCompletion, Milestone, Blocker: owned by a WorkflowInstance
    - Notification: append-only event for one recipient
    - RoleInfo / UserInfo: directory reference data for assignment
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from dealerflow.services.requirements import Requirement


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


# ═════════════════════════════════════════════════════════════════════════════
# Enums
# ═════════════════════════════════════════════════════════════════════════════

class WorkflowStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BlockerSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class NotificationType(str, Enum):
    STAGE_TRANSITION = "stage_transition"
    BLOCKER_CREATED = "blocker_created"
    BLOCKER_RESOLVED = "blocker_resolved"
    DEADLINE_APPROACHING = "deadline_approaching"
    WORKFLOW_CANCELLED = "workflow_cancelled"


# ═════════════════════════════════════════════════════════════════════════════
# Catalog
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StageDefinition:
    """One step of a process, with its Definition of Done."""
    stage_id: str
    order: int
    name: str
    assigned_role: str
    requirements: tuple[Requirement, ...] = ()
    estimated_duration: timedelta = timedelta(0)
    description: str = ""
    blockers_gate_advancement: bool = False

    def to_dict(self) -> dict:
        return {
            "stage_id": self.stage_id,
            "order": self.order,
            "name": self.name,
            "assigned_role": self.assigned_role,
            "description": self.description,
            "estimated_duration_hours": self.estimated_duration.total_seconds() / 3600,
            "blockers_gate_advancement": self.blockers_gate_advancement,
            "requirements": [r.to_dict() for r in self.requirements],
        }


@dataclass(frozen=True)
class ProcessDefinition:
    """Ordered stages of one process type. First is initial, last is terminal."""
    process_type: str
    title: str
    stages: tuple[StageDefinition, ...]
    description: str = ""

    def to_dict(self, include_stages: bool = True) -> dict:
        d = {
            "process_type": self.process_type,
            "title": self.title,
            "description": self.description,
            "stage_count": len(self.stages),
        }
        if include_stages:
            d["stages"] = [s.to_dict() for s in self.stages]
        return d


# ═════════════════════════════════════════════════════════════════════════════
# Workflow instance & children
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class StageCompletion:
    stage_id: str
    completed_at: datetime
    completed_by: str | None = None

    def to_dict(self) -> dict:
        return {
            "stage_id": self.stage_id,
            "completed_at": _iso(self.completed_at),
            "completed_by": self.completed_by,
        }


@dataclass
class Milestone:
    stage_id: str
    title: str
    achieved_at: datetime

    def to_dict(self) -> dict:
        return {
            "stage_id": self.stage_id,
            "title": self.title,
            "achieved_at": _iso(self.achieved_at),
        }


@dataclass
class Blocker:
    blocker_id: str
    description: str
    severity: BlockerSeverity
    created_at: datetime
    created_by: str | None = None
    resolved: bool = False
    resolved_at: datetime | None = None
    resolution: str | None = None

    def to_dict(self) -> dict:
        return {
            "blocker_id": self.blocker_id,
            "description": self.description,
            "severity": self.severity.value,
            "created_at": _iso(self.created_at),
            "created_by": self.created_by,
            "resolved": self.resolved,
            "resolved_at": _iso(self.resolved_at),
            "resolution": self.resolution,
        }


@dataclass
class WorkflowInstance:
    """Progress of one business record through one process type.

    Mutated only by ``WorkflowEngine``; ``completed_stages`` is always a
    prefix of the catalog order for ``process_type``.
    """
    workflow_id: str
    record_id: str
    process_type: str
    current_stage: str
    created_at: datetime
    updated_at: datetime
    stage_entered_at: datetime
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    completed_stages: list[StageCompletion] = field(default_factory=list)
    blockers: list[Blocker] = field(default_factory=list)
    milestones: list[Milestone] = field(default_factory=list)
    assigned_to: str | None = None
    created_by: str | None = None
    watchers: list[str] = field(default_factory=list)
    closed_at: datetime | None = None
    cancel_reason: str | None = None
    deadline_alerted_stage: str | None = None
    version: int = 1

    @property
    def is_active(self) -> bool:
        return self.status == WorkflowStatus.ACTIVE

    @property
    def open_blockers(self) -> list[Blocker]:
        return [b for b in self.blockers if not b.resolved]

    @property
    def completed_stage_ids(self) -> list[str]:
        return [c.stage_id for c in self.completed_stages]

    def find_blocker(self, blocker_id: str) -> Blocker | None:
        for blocker in self.blockers:
            if blocker.blocker_id == blocker_id:
                return blocker
        return None

    def to_dict(self) -> dict:
        return {
            "workflow_id": self.workflow_id,
            "record_id": self.record_id,
            "process_type": self.process_type,
            "current_stage": self.current_stage,
            "status": self.status.value,
            "completed_stages": [c.to_dict() for c in self.completed_stages],
            "blockers": [b.to_dict() for b in self.blockers],
            "open_blocker_count": len(self.open_blockers),
            "milestones": [m.to_dict() for m in self.milestones],
            "assigned_to": self.assigned_to,
            "created_by": self.created_by,
            "watchers": list(self.watchers),
            "stage_entered_at": _iso(self.stage_entered_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "closed_at": _iso(self.closed_at),
            "cancel_reason": self.cancel_reason,
            "version": self.version,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Notifications & directory
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class Notification:
    """In-app notification. Append-only except for the read flag."""
    notification_id: str
    type: NotificationType
    recipient: str
    workflow_id: str | None
    title: str
    created_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)
    read: bool = False
    read_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "notification_id": self.notification_id,
            "type": self.type.value,
            "recipient": self.recipient,
            "workflow_id": self.workflow_id,
            "title": self.title,
            "payload": self.payload,
            "created_at": _iso(self.created_at),
            "read": self.read,
            "read_at": _iso(self.read_at),
        }


@dataclass
class RoleInfo:
    name: str
    department: str = ""
    permissions: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "department": self.department,
            "permissions": list(self.permissions),
        }


@dataclass
class UserInfo:
    user_id: str
    display_name: str
    role: str
    is_active: bool = True
    last_assigned_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "display_name": self.display_name,
            "role": self.role,
            "is_active": self.is_active,
            "last_assigned_at": _iso(self.last_assigned_at),
        }
