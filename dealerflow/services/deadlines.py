"""
Deadline & Bottleneck Analyzer.

Pure aggregation over the current store contents; nothing here writes.

Estimates:
    estimated_completion = stage_entered_at
                           + duration(current stage)
                           + duration(every later non-terminal stage)
    Arriving in the terminal stage completes a workflow, so the terminal
    stage's own duration never counts.

    days_remaining = floor((estimated_completion - now) / 1 day)
    overdue  → days_remaining < 0
    urgent   → 0 <= days_remaining <= WORKFLOW_DEADLINE_ALERT_DAYS

Bottlenecks:
    A stage is congested when its active population reaches
    WORKFLOW_BOTTLENECK_MIN_COUNT and exceeds WORKFLOW_BOTTLENECK_MULTIPLIER
    times its baseline. The baseline is the average population of the other
    non-terminal stages owned by the same role; when the role owns no other
    stage it falls back to every other non-terminal stage of the process.
    With WORKFLOW_BOTTLENECK_TOP_N > 0 the N most populated stages are flagged
    as well.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from dealerflow.domain import WorkflowInstance, WorkflowStatus, utcnow
from dealerflow.services.stage_catalog import StageCatalog

logger = logging.getLogger(__name__)

_DAY_SECONDS = 86400


class DeadlineAnalyzer:
    def __init__(
        self,
        catalog: StageCatalog,
        repository,
        clock: Callable[[], datetime] = utcnow,
        alert_days: int = 3,
        bottleneck_multiplier: float = 2.0,
        bottleneck_min_count: int = 3,
        bottleneck_top_n: int = 0,
    ) -> None:
        self.catalog = catalog
        self.repository = repository
        self.clock = clock
        self.alert_days = alert_days
        self.bottleneck_multiplier = bottleneck_multiplier
        self.bottleneck_min_count = bottleneck_min_count
        self.bottleneck_top_n = bottleneck_top_n

    # ── Per-instance deadlines ───────────────────────────────────────────

    def remaining_after(self, process_type: str, stage_id: str | None) -> timedelta:
        """Estimated time from entering ``stage_id`` (or the first stage) to completion."""
        if stage_id is None:
            stages = self.catalog.stages_for(process_type)
        else:
            stages = self.catalog.remaining_stages(process_type, stage_id)
        total = timedelta(0)
        for stage in stages:
            if not self.catalog.is_terminal(process_type, stage.stage_id):
                total += stage.estimated_duration
        return total

    def remaining_duration(self, instance: WorkflowInstance) -> timedelta:
        return self.remaining_after(instance.process_type, instance.current_stage)

    def estimated_completion(self, instance: WorkflowInstance) -> datetime:
        if not instance.is_active:
            return instance.closed_at or instance.updated_at
        return instance.stage_entered_at + self.remaining_duration(instance)

    def days_remaining(self, instance: WorkflowInstance, now: datetime | None = None) -> int:
        """Whole days until the estimate; negative when overdue, 0 once closed."""
        if not instance.is_active:
            return 0
        now = now or self.clock()
        delta = self.estimated_completion(instance) - now
        return math.floor(delta.total_seconds() / _DAY_SECONDS)

    def is_overdue(self, instance: WorkflowInstance, now: datetime | None = None) -> bool:
        return instance.is_active and self.days_remaining(instance, now) < 0

    def is_urgent(self, instance: WorkflowInstance, now: datetime | None = None) -> bool:
        if not instance.is_active:
            return False
        return 0 <= self.days_remaining(instance, now) <= self.alert_days

    def deadline_info(self, instance: WorkflowInstance, now: datetime | None = None) -> dict:
        now = now or self.clock()
        return {
            "estimated_completion": self.estimated_completion(instance).isoformat(),
            "days_remaining": self.days_remaining(instance, now),
            "overdue": self.is_overdue(instance, now),
            "urgent": self.is_urgent(instance, now),
        }

    # ── Stage-level aggregation ──────────────────────────────────────────

    def stage_distribution(self, process_type: str,
                           instances: Iterable[WorkflowInstance] | None = None) -> dict[str, int]:
        """Active population per stage, in catalog order (zeros included)."""
        stages = self.catalog.stages_for(process_type)
        if instances is None:
            instances = self.repository.list_workflows(
                process_type=process_type, status=WorkflowStatus.ACTIVE,
            )
        counts = {s.stage_id: 0 for s in stages}
        for wf in instances:
            if wf.process_type == process_type and wf.is_active and wf.current_stage in counts:
                counts[wf.current_stage] += 1
        return counts

    def bottlenecks(self, process_type: str,
                    instances: Iterable[WorkflowInstance] | None = None) -> list[dict]:
        stages = self.catalog.stages_for(process_type)
        counts = self.stage_distribution(process_type, instances)
        working = [s for s in stages if not self.catalog.is_terminal(process_type, s.stage_id)]

        top_ids: set[str] = set()
        if self.bottleneck_top_n > 0:
            ranked = sorted((s for s in working if counts[s.stage_id] > 0),
                            key=lambda s: (-counts[s.stage_id], s.order))
            top_ids = {s.stage_id for s in ranked[:self.bottleneck_top_n]}

        items = []
        for stage in working:
            count = counts[stage.stage_id]
            if count == 0:
                continue
            peers = [s for s in working
                     if s.stage_id != stage.stage_id and s.assigned_role == stage.assigned_role]
            if not peers:
                peers = [s for s in working if s.stage_id != stage.stage_id]
            baseline = (sum(counts[s.stage_id] for s in peers) / len(peers)) if peers else 0.0

            congested = (
                count >= self.bottleneck_min_count
                and count > self.bottleneck_multiplier * baseline
            )
            if not congested and stage.stage_id not in top_ids:
                continue
            items.append({
                "stage": stage.stage_id,
                "stage_name": stage.name,
                "count": count,
                "assigned_role": stage.assigned_role,
                "baseline": round(baseline, 2),
                "ratio": round(count / baseline, 2) if baseline else None,
            })

        items.sort(key=lambda item: -item["count"])
        if items:
            logger.debug("Bottlenecks in %s: %s", process_type,
                         [i["stage"] for i in items], extra={"process_type": process_type})
        return items
