"""
Dashboard Aggregator — read-only composition of engine state.

Aggregates:
  - Organization view: totals, stage distribution, role workload, blocked
    workflows, upcoming deadlines, average completion time, bottlenecks
  - Personal view: workload, assigned workflows with next actions,
    notifications

Never mutates the store and tolerates partial data (empty store, unknown
user, workflows without blockers or owners).
"""

import logging
from collections import defaultdict

from dealerflow.domain import WorkflowStatus

logger = logging.getLogger(__name__)


class DashboardAggregator:
    def __init__(self, engine):
        self.engine = engine

    @property
    def analyzer(self):
        return self.engine.analyzer

    def organization_view(self) -> dict:
        engine = self.engine
        workflows = engine.repository.list_workflows()
        now = engine.clock()
        active = [wf for wf in workflows if wf.status == WorkflowStatus.ACTIVE]
        completed = [wf for wf in workflows if wf.status == WorkflowStatus.COMPLETED]
        cancelled = [wf for wf in workflows if wf.status == WorkflowStatus.CANCELLED]

        by_process = defaultdict(list)
        for wf in active:
            by_process[wf.process_type].append(wf)

        stage_distribution = {}
        bottlenecks = {}
        for process_type in engine.catalog.process_types():
            instances = by_process.get(process_type, [])
            stage_distribution[process_type] = self.analyzer.stage_distribution(process_type, instances)
            flagged = self.analyzer.bottlenecks(process_type, instances)
            if flagged:
                bottlenecks[process_type] = flagged

        role_workload = {role.name: 0 for role in engine.repository.list_roles()}
        for wf in active:
            role = engine.catalog.get_stage(wf.process_type, wf.current_stage).assigned_role
            role_workload[role] = role_workload.get(role, 0) + 1

        blocked = [
            {
                "workflow_id": wf.workflow_id,
                "record_id": wf.record_id,
                "process_type": wf.process_type,
                "current_stage": wf.current_stage,
                "assigned_to": wf.assigned_to,
                "open_blockers": [b.to_dict() for b in wf.open_blockers],
            }
            for wf in active if wf.open_blockers
        ]

        upcoming = []
        for wf in active:
            days = self.analyzer.days_remaining(wf, now)
            if days <= self.analyzer.alert_days:
                upcoming.append({
                    "workflow_id": wf.workflow_id,
                    "record_id": wf.record_id,
                    "process_type": wf.process_type,
                    "current_stage": wf.current_stage,
                    "assigned_to": wf.assigned_to,
                    "days_remaining": days,
                    "overdue": days < 0,
                    "estimated_completion": self.analyzer.estimated_completion(wf).isoformat(),
                })
        upcoming.sort(key=lambda item: (item["days_remaining"], item["estimated_completion"]))

        return {
            "total_workflows": len(workflows),
            "active_workflows": len(active),
            "completed_workflows": len(completed),
            "cancelled_workflows": len(cancelled),
            "stage_distribution": stage_distribution,
            "role_workload": role_workload,
            "blocked_workflows": blocked,
            "upcoming_deadlines": upcoming,
            "average_completion_time": self._average_completion_days(completed),
            "bottlenecks": bottlenecks,
        }

    @staticmethod
    def _average_completion_days(completed):
        durations = [
            (wf.closed_at - wf.created_at).total_seconds() / 86400
            for wf in completed if wf.closed_at and wf.created_at
        ]
        if not durations:
            return None
        return round(sum(durations) / len(durations), 2)

    def user_view(self, user_id: str) -> dict:
        engine = self.engine
        user = engine.repository.get_user(user_id)
        workflows = engine.repository.list_workflows(status=WorkflowStatus.ACTIVE, assigned_to=user_id)
        items = []
        for wf in workflows:
            deadline = self.analyzer.deadline_info(wf)
            items.append({
                "workflow_id": wf.workflow_id,
                "record_id": wf.record_id,
                "process_type": wf.process_type,
                "current_stage": wf.current_stage,
                "open_blockers": len(wf.open_blockers),
                **deadline,
                "next_actions": engine.next_actions(wf),
            })
        items.sort(key=lambda item: item["days_remaining"])

        return {
            "user": user.to_dict() if user else {"user_id": user_id},
            "workload": engine.resolver.workload_for(user_id),
            "workflows": items,
            "notifications": [n.to_dict() for n in engine.inbox.list_for(user_id, limit=20)],
            "unread_notifications": engine.inbox.unread_count(user_id),
        }
