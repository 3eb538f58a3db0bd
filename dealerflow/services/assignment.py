"""
Task Assignment Resolver.

Ownership always tracks the *current* stage's responsible role. The default
policy picks the least-loaded active user holding the role; ties go to the
user assigned longest ago (never-assigned users first), then to the lowest
user id, which degrades to round-robin when loads are even.

Load counts race benignly: two concurrent advances may both see the same
user as least loaded. No invariant depends on perfect balance.
"""

from __future__ import annotations

import logging
from datetime import datetime

from dealerflow.domain import StageDefinition, UserInfo, WorkflowInstance, WorkflowStatus
from dealerflow.services.deadlines import DeadlineAnalyzer

logger = logging.getLogger(__name__)


class AssignmentResolver:
    def __init__(self, repository, analyzer: DeadlineAnalyzer) -> None:
        self.repository = repository
        self.analyzer = analyzer

    def candidates(self, role: str) -> list[UserInfo]:
        return self.repository.list_users(role=role, active_only=True)

    def _load(self, user_id: str, exclude_workflow: str | None) -> int:
        return sum(
            1 for wf in self.repository.list_workflows(status=WorkflowStatus.ACTIVE, assigned_to=user_id)
            if wf.workflow_id != exclude_workflow
        )

    def resolve_owner(self, stage: StageDefinition, instance: WorkflowInstance | None = None) -> str | None:
        """Pick the owner for ``stage``; None when nobody holds the role."""
        users = self.candidates(stage.assigned_role)
        if not users:
            logger.warning(
                "No active user holds role '%s' — stage '%s' left unassigned",
                stage.assigned_role, stage.stage_id,
                extra={"workflow_id": instance.workflow_id if instance else None,
                       "stage_id": stage.stage_id},
            )
            return None

        exclude = instance.workflow_id if instance else None

        def sort_key(user: UserInfo):
            last = user.last_assigned_at
            return (
                self._load(user.user_id, exclude),
                last is not None,
                last or datetime.min,
                user.user_id,
            )

        return min(users, key=sort_key).user_id

    # ── Workload ─────────────────────────────────────────────────────────

    def _summarise(self, workflows: list[WorkflowInstance]) -> dict:
        now = self.analyzer.clock()
        return {
            "total": len(workflows),
            "overdue": sum(1 for wf in workflows if self.analyzer.is_overdue(wf, now)),
            "urgent": sum(1 for wf in workflows if self.analyzer.is_urgent(wf, now)),
            "blocked": sum(1 for wf in workflows if wf.open_blockers),
        }

    def workload_for(self, user_id: str) -> dict:
        """Counts over the user's active workflows."""
        workflows = self.repository.list_workflows(status=WorkflowStatus.ACTIVE, assigned_to=user_id)
        return self._summarise(workflows)

    def workload_for_role(self, role: str) -> dict:
        users = self.repository.list_users(role=role)
        per_user = []
        combined: list[WorkflowInstance] = []
        for user in users:
            workflows = self.repository.list_workflows(
                status=WorkflowStatus.ACTIVE, assigned_to=user.user_id,
            )
            combined.extend(workflows)
            per_user.append({"user_id": user.user_id, **self._summarise(workflows)})
        result = {"role": role, "users": per_user}
        result.update(self._summarise(combined))
        return result
