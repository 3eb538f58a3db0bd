"""
Workflow Engine — the advancement protocol.

Every mutation of a WorkflowInstance goes through this class. Mutations on
one workflow id are linearised by an in-process keyed mutex plus the
repository's row lock / version check; different workflows never contend.

Advance sequence (all-or-nothing, synchronous):
    1. load with row lock, reject closed workflows
    2. target must be the immediate next stage         → InvalidTransition
    3. current stage's Definition of Done must hold    → GateNotSatisfied
    4. record completion + milestone, move stage, reassign owner, save
    5. emit the transition event (delivery is asynchronous)

Arriving in the terminal stage closes the workflow: ownership stays with the
last working owner. Blockers can still be raised on a completed workflow
(post-sale disputes, delivery damage); only cancelled workflows refuse them.

Usage:
    engine = WorkflowEngine(catalog, InMemoryWorkflowRepository())
    wf = engine.create("lead-42", "lead-to-quote")
    engine.advance(wf.workflow_id, "assessment", actor="u-7")
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any

from flask import current_app

from dealerflow.core.exceptions import (
    BlockerNotFound,
    ConcurrentUpdate,
    GateNotSatisfied,
    InvalidTransition,
    ValidationError,
    WorkflowCancelled,
    WorkflowComplete,
    WorkflowNotFound,
)
from dealerflow.core.locks import KeyedLocks
from dealerflow.domain import (
    Blocker,
    BlockerSeverity,
    Milestone,
    StageCompletion,
    WorkflowInstance,
    WorkflowStatus,
    new_id,
    utcnow,
)
from dealerflow.services.assignment import AssignmentResolver
from dealerflow.services.deadlines import DeadlineAnalyzer
from dealerflow.services.gate_validator import validate_stage
from dealerflow.services.notification import (
    InAppChannel,
    NotificationDispatcher,
    NotificationEmitter,
    NotificationInbox,
    WebhookChannel,
)
from dealerflow.services.stage_catalog import StageCatalog

logger = logging.getLogger(__name__)

ORDER_WORKFLOW_VALIDATION = "order-workflow"
DEFAULT_ORDER_PIPELINE = ("lead-to-quote", "quote-to-proposal", "proposal-to-contract", "order-fulfillment")


def _required_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required", details={"field": field_name})
    return value.strip()


class WorkflowEngine:
    def __init__(
        self,
        catalog: StageCatalog,
        repository,
        *,
        clock: Callable[[], datetime] = utcnow,
        analyzer: DeadlineAnalyzer | None = None,
        resolver: AssignmentResolver | None = None,
        emitter: NotificationEmitter | None = None,
        order_pipeline: Iterable[str] = DEFAULT_ORDER_PIPELINE,
    ) -> None:
        self.catalog = catalog
        self.repository = repository
        self.clock = clock
        self.order_pipeline = tuple(catalog.get_process(p).process_type for p in order_pipeline)
        self.analyzer = analyzer or DeadlineAnalyzer(catalog, repository, clock=clock)
        self.resolver = resolver or AssignmentResolver(repository, self.analyzer)
        if emitter is None:
            dispatcher = NotificationDispatcher([InAppChannel(repository)], run_async=False)
            emitter = NotificationEmitter(dispatcher, clock=clock)
        self.emitter = emitter
        self.inbox = NotificationInbox(repository, clock=clock)
        self._locks = KeyedLocks()

    # ── Reads ────────────────────────────────────────────────────────────

    def get(self, workflow_id: str) -> WorkflowInstance:
        wf = self.repository.get_workflow(workflow_id)
        if wf is None:
            raise WorkflowNotFound(workflow_id)
        return wf

    def list_workflows(self, process_type: str | None = None, status: str | None = None,
                       assigned_to: str | None = None, record_id: str | None = None) -> list[WorkflowInstance]:
        if process_type is not None:
            self.catalog.get_process(process_type)
        if status is not None:
            try:
                status = WorkflowStatus(status)
            except ValueError as exc:
                raise ValidationError(
                    f"status must be one of {[s.value for s in WorkflowStatus]}",
                    details={"field": "status"},
                ) from exc
        return self.repository.list_workflows(
            process_type=process_type, status=status, assigned_to=assigned_to, record_id=record_id,
        )

    def next_actions(self, instance: WorkflowInstance, snapshot: Mapping[str, Any] | None = None) -> list[dict]:
        """The single next stage, annotated with its requirements.

        ``pending_requirements`` lists what still blocks leaving the current
        stage. Closed workflows have no next actions.
        """
        if not instance.is_active:
            return []
        nxt = self.catalog.next_stage(instance.process_type, instance.current_stage)
        if nxt is None:
            return []
        current = self.catalog.get_stage(instance.process_type, instance.current_stage)
        facts = snapshot if snapshot is not None else self.repository.get_record_facts(instance.record_id)
        gate = validate_stage(current, facts, instance.open_blockers)
        return [{
            "stage": nxt.stage_id,
            "stage_name": nxt.name,
            "assigned_role": nxt.assigned_role,
            "requirements": [r.label for r in nxt.requirements],
            "pending_requirements": list(gate.failed_requirements),
        }]

    def progress(self, instance: WorkflowInstance) -> dict:
        """Stages passed out of the whole process; reaching the terminal stage counts as the last."""
        total = len(self.catalog.stages_for(instance.process_type))
        completed = len(instance.completed_stages)
        if instance.status == WorkflowStatus.COMPLETED:
            completed += 1
        return {
            "completed_stages": completed,
            "total_stages": total,
            "progress_percentage": round(100 * completed / total, 1),
        }

    def describe(self, instance: WorkflowInstance) -> dict:
        """Instance plus derived deadline fields, progress and next actions."""
        data = instance.to_dict()
        data.update(self.analyzer.deadline_info(instance))
        data["progress"] = self.progress(instance)
        data["next_actions"] = self.next_actions(instance)
        return data

    # ── Record facts ─────────────────────────────────────────────────────

    def get_record_facts(self, record_id: str) -> dict[str, Any]:
        return self.repository.get_record_facts(record_id)

    def set_record_facts(self, record_id: str, facts: Mapping[str, Any], merge: bool = True) -> dict[str, Any]:
        record_id = _required_text(record_id, "record_id")
        if not isinstance(facts, Mapping):
            raise ValidationError("facts must be an object", details={"field": "facts"})
        return self.repository.set_record_facts(record_id, dict(facts), merge=merge)

    # ── Creation ─────────────────────────────────────────────────────────

    def create(self, record_id: str, process_type: str, created_by: str | None = None,
               watchers: Iterable[str] = ()) -> WorkflowInstance:
        record_id = _required_text(record_id, "record_id")
        process_type = _required_text(process_type, "process_type")
        first = self.catalog.first_stage(process_type)
        extra = {"record_id": record_id, "process_type": process_type}

        with self._locks.hold(("create", record_id, process_type)):
            now = self.clock()
            wf = WorkflowInstance(
                workflow_id=new_id(),
                record_id=record_id,
                process_type=process_type,
                current_stage=first.stage_id,
                created_at=now,
                updated_at=now,
                stage_entered_at=now,
                created_by=created_by,
                watchers=[w for w in dict.fromkeys(watchers) if w],
            )
            wf.assigned_to = self.resolver.resolve_owner(first, wf)
            saved = self.repository.add_workflow(wf)
            if saved.assigned_to:
                self.repository.touch_assignment(saved.assigned_to, now)

        logger.info("Workflow created at '%s' (owner=%s)", first.stage_id, saved.assigned_to,
                    extra={**extra, "workflow_id": saved.workflow_id})
        return saved

    # ── Advancement ──────────────────────────────────────────────────────

    def _load_for_update(self, workflow_id: str) -> WorkflowInstance:
        wf = self.repository.get_workflow(workflow_id, for_update=True)
        if wf is None:
            raise WorkflowNotFound(workflow_id)
        return wf

    @staticmethod
    def _ensure_open(wf: WorkflowInstance) -> None:
        if wf.status == WorkflowStatus.CANCELLED:
            raise WorkflowCancelled(wf.workflow_id)
        if wf.status == WorkflowStatus.COMPLETED:
            raise WorkflowComplete(wf.workflow_id, wf.current_stage)

    def advance(self, workflow_id: str, target_stage: str, actor: str | None = None,
                snapshot: Mapping[str, Any] | None = None) -> WorkflowInstance:
        target_stage = _required_text(target_stage, "target_stage")
        extra = {"workflow_id": workflow_id}

        with self._locks.hold(workflow_id):
            with self.repository.unit_of_work():
                wf = self._load_for_update(workflow_id)
                self._ensure_open(wf)
                pt = wf.process_type
                current = self.catalog.get_stage(pt, wf.current_stage)
                nxt = self.catalog.next_stage(pt, wf.current_stage)
                if nxt is None:
                    raise WorkflowComplete(workflow_id, wf.current_stage)
                if target_stage != nxt.stage_id:
                    raise InvalidTransition(workflow_id, wf.current_stage, target_stage, nxt.stage_id)

                facts = snapshot if snapshot is not None else self.repository.get_record_facts(wf.record_id)
                result = validate_stage(current, facts, wf.open_blockers)
                if not result.valid:
                    logger.info("Gate '%s' rejected: %s", current.stage_id,
                                list(result.failed_requirements), extra=extra)
                    raise GateNotSatisfied(current.stage_id, list(result.failed_requirements))

                now = self.clock()
                previous_owner = wf.assigned_to
                wf.completed_stages.append(StageCompletion(current.stage_id, now, actor))
                wf.milestones.append(Milestone(current.stage_id, f"{current.name} completed", now))
                wf.current_stage = nxt.stage_id
                wf.stage_entered_at = now
                wf.updated_at = now
                if self.catalog.is_terminal(pt, nxt.stage_id):
                    wf.status = WorkflowStatus.COMPLETED
                    wf.closed_at = now
                else:
                    wf.assigned_to = self.resolver.resolve_owner(nxt, wf)
                saved = self.repository.save_workflow(wf)

            # Completion keeps the last owner and is not a new assignment
            if saved.is_active and saved.assigned_to:
                self.repository.touch_assignment(saved.assigned_to, now)
            # Emitted under the workflow lock so per-workflow event order matches transition order
            self.emitter.stage_transition(
                saved, current.stage_id,
                previous_owner if previous_owner != saved.assigned_to else None,
            )

        logger.info("Workflow advanced %s → %s (owner=%s)", current.stage_id, nxt.stage_id,
                    saved.assigned_to, extra={**extra, "stage_id": nxt.stage_id})
        return saved

    def preflight(self, validation_type: str, record_id: str,
                  snapshot: Mapping[str, Any] | None = None) -> dict:
        """DoD check for the record's active workflow, without any write.

        Without an active workflow the first stage of the process is checked.
        """
        process_type = self.catalog.resolve_process_type(validation_type)
        wf = self.repository.find_active(record_id, process_type)
        facts = snapshot if snapshot is not None else self.repository.get_record_facts(record_id)
        if wf is not None:
            stage = self.catalog.get_stage(process_type, wf.current_stage)
            blockers = wf.open_blockers
        else:
            stage = self.catalog.first_stage(process_type)
            blockers = []
        result = validate_stage(stage, facts, blockers)
        nxt = self.catalog.next_stage(process_type, stage.stage_id)
        return {
            "valid": result.valid,
            "errors": list(result.failed_requirements),
            "process_type": process_type,
            "record_id": record_id,
            "workflow_id": wf.workflow_id if wf else None,
            "stage": stage.stage_id,
            "next_stage": nxt.stage_id if nxt else None,
        }

    def order_summary(self, record_id: str, snapshot: Mapping[str, Any] | None = None) -> dict:
        """Compose a record's workflows along the order pipeline, one step per process type.

        Each step reports whether it can move on and what blocks it. A step
        that has not started waits on the previous step's completion. The
        focus is the first unfinished step; it drives ``overall_status`` and
        ``next_action``. Read-only.
        """
        record_id = _required_text(record_id, "record_id")
        facts = snapshot if snapshot is not None else self.repository.get_record_facts(record_id)
        workflows = self.repository.list_workflows(record_id=record_id)
        now = self.clock()

        steps = []
        remaining = timedelta(0)
        previous = None
        for process_type in self.order_pipeline:
            process = self.catalog.get_process(process_type)
            candidates = [wf for wf in workflows if wf.process_type == process_type]
            wf = next((c for c in candidates if c.is_active), candidates[-1] if candidates else None)
            step = {
                "process_type": process_type,
                "title": process.title,
                "workflow_id": wf.workflow_id if wf else None,
                "current_stage": wf.current_stage if wf else None,
                "open_blockers": [b.description for b in wf.open_blockers] if wf else [],
            }
            if wf is None:
                waiting = previous is not None and previous["status"] != "completed"
                step.update(
                    status="not_started",
                    can_proceed=not waiting,
                    blockers=[f"{previous['title']} must be completed first"] if waiting else [],
                    next_stage=self.catalog.first_stage(process_type).stage_id,
                )
                remaining += self.analyzer.remaining_after(process_type, None)
            elif wf.status == WorkflowStatus.COMPLETED:
                step.update(status="completed", can_proceed=True, blockers=[], next_stage=None)
            elif wf.status == WorkflowStatus.CANCELLED:
                reason = f": {wf.cancel_reason}" if wf.cancel_reason else ""
                step.update(status="cancelled", can_proceed=False,
                            blockers=[f"{process.title} was cancelled{reason}"], next_stage=None)
            else:
                current = self.catalog.get_stage(process_type, wf.current_stage)
                gate = validate_stage(current, facts, wf.open_blockers)
                nxt = self.catalog.next_stage(process_type, wf.current_stage)
                step.update(
                    status="in_progress",
                    can_proceed=gate.valid,
                    blockers=list(gate.failed_requirements),
                    next_stage=nxt.stage_id if nxt else None,
                )
                remaining += max(self.analyzer.estimated_completion(wf) - now, timedelta(0))
            steps.append(step)
            previous = step

        focus = next((s for s in steps if s["status"] != "completed"), None)
        if focus is None:
            overall, next_action = "completed", None
        elif not focus["can_proceed"]:
            overall, next_action = "blocked", focus["blockers"][0]
        elif focus["status"] == "not_started":
            overall = "in_progress" if workflows else "not_started"
            next_action = f"Start {focus['title']}"
        else:
            stage = self.catalog.get_stage(focus["process_type"], focus["next_stage"])
            overall, next_action = "in_progress", f"Advance to {stage.name}"

        return {
            "record_id": record_id,
            "validation_type": ORDER_WORKFLOW_VALIDATION,
            "steps": steps,
            "overall_status": overall,
            "next_action": next_action,
            "estimated_completion_days": math.ceil(remaining.total_seconds() / 86400),
        }

    # ── Blockers ─────────────────────────────────────────────────────────

    def add_blocker(self, workflow_id: str, description: str, severity: str = "medium",
                    created_by: str | None = None) -> Blocker:
        description = _required_text(description, "description")
        try:
            level = BlockerSeverity(severity)
        except ValueError as exc:
            raise ValidationError(
                f"severity must be one of {[s.value for s in BlockerSeverity]}",
                details={"field": "severity"},
            ) from exc

        with self._locks.hold(workflow_id):
            with self.repository.unit_of_work():
                wf = self._load_for_update(workflow_id)
                if wf.status == WorkflowStatus.CANCELLED:
                    raise WorkflowCancelled(wf.workflow_id)
                now = self.clock()
                blocker = Blocker(
                    blocker_id=new_id(),
                    description=description,
                    severity=level,
                    created_at=now,
                    created_by=created_by,
                )
                wf.blockers.append(blocker)
                wf.updated_at = now
                saved = self.repository.save_workflow(wf)
            self.emitter.blocker_created(saved, blocker)

        logger.info("Blocker added (%s): %s", level.value, description,
                    extra={"workflow_id": workflow_id})
        return blocker

    def resolve_blocker(self, workflow_id: str, blocker_id: str, resolution: str | None = None) -> Blocker:
        if resolution is not None and not isinstance(resolution, str):
            raise ValidationError("resolution must be a string", details={"field": "resolution"})
        with self._locks.hold(workflow_id):
            with self.repository.unit_of_work():
                wf = self._load_for_update(workflow_id)
                blocker = wf.find_blocker(blocker_id)
                if blocker is None or blocker.resolved:
                    raise BlockerNotFound(workflow_id, blocker_id)
                now = self.clock()
                blocker.resolved = True
                blocker.resolved_at = now
                blocker.resolution = (resolution or "").strip() or None
                wf.updated_at = now
                saved = self.repository.save_workflow(wf)
            self.emitter.blocker_resolved(saved, blocker)

        logger.info("Blocker resolved: %s", blocker.description, extra={"workflow_id": workflow_id})
        return blocker

    # ── Cancellation ─────────────────────────────────────────────────────

    def cancel(self, workflow_id: str, reason: str | None = None, actor: str | None = None) -> WorkflowInstance:
        with self._locks.hold(workflow_id):
            with self.repository.unit_of_work():
                wf = self._load_for_update(workflow_id)
                self._ensure_open(wf)
                now = self.clock()
                wf.status = WorkflowStatus.CANCELLED
                wf.closed_at = now
                wf.updated_at = now
                wf.cancel_reason = (reason or "").strip() or None
                saved = self.repository.save_workflow(wf)
            self.emitter.workflow_cancelled(saved)

        logger.info("Workflow cancelled at '%s' by %s: %s", saved.current_stage, actor,
                    saved.cancel_reason, extra={"workflow_id": workflow_id})
        return saved

    # ── Deadlines ────────────────────────────────────────────────────────

    def scan_deadlines(self) -> list[str]:
        """Emit one deadline notification per workflow + stage inside the alert window."""
        alerted = []
        now = self.clock()
        for candidate in self.repository.list_workflows(status=WorkflowStatus.ACTIVE):
            if candidate.deadline_alerted_stage == candidate.current_stage:
                continue
            if self.analyzer.days_remaining(candidate, now) > self.analyzer.alert_days:
                continue
            try:
                with self._locks.hold(candidate.workflow_id):
                    with self.repository.unit_of_work():
                        wf = self._load_for_update(candidate.workflow_id)
                        if not wf.is_active or wf.deadline_alerted_stage == wf.current_stage:
                            continue
                        days = self.analyzer.days_remaining(wf, now)
                        if days > self.analyzer.alert_days:
                            continue
                        wf.deadline_alerted_stage = wf.current_stage
                        saved = self.repository.save_workflow(wf)
                    self.emitter.deadline_approaching(saved, days, self.analyzer.estimated_completion(saved))
            except ConcurrentUpdate:
                logger.info("Deadline scan skipped a concurrently updated workflow",
                            extra={"workflow_id": candidate.workflow_id})
                continue
            alerted.append(saved.workflow_id)

        if alerted:
            logger.info("Deadline scan: %d workflow(s) alerted", len(alerted))
        return alerted


# ═════════════════════════════════════════════════════════════════════════════
# Flask wiring
# ═════════════════════════════════════════════════════════════════════════════

def init_workflow_engine(app, repository=None) -> WorkflowEngine:
    """Build the engine from app config and store it on ``app.extensions``."""
    from dealerflow.persistence.sql import SqlWorkflowRepository

    cfg = app.config
    repository = repository or SqlWorkflowRepository()
    catalog = StageCatalog.from_directory(cfg["WORKFLOW_CATALOG_DIR"])
    analyzer = DeadlineAnalyzer(
        catalog, repository,
        alert_days=cfg["WORKFLOW_DEADLINE_ALERT_DAYS"],
        bottleneck_multiplier=cfg["WORKFLOW_BOTTLENECK_MULTIPLIER"],
        bottleneck_min_count=cfg["WORKFLOW_BOTTLENECK_MIN_COUNT"],
        bottleneck_top_n=cfg["WORKFLOW_BOTTLENECK_TOP_N"],
    )

    channels = [InAppChannel(repository)]
    if cfg.get("NOTIFICATION_WEBHOOK_URL"):
        channels.append(WebhookChannel(cfg["NOTIFICATION_WEBHOOK_URL"],
                                       timeout=cfg["NOTIFICATION_TIMEOUT_SECONDS"]))
    dispatcher = NotificationDispatcher(
        channels,
        max_attempts=cfg["NOTIFICATION_MAX_ATTEMPTS"],
        backoff_seconds=cfg["NOTIFICATION_BACKOFF_SECONDS"],
        backoff_max_seconds=cfg["NOTIFICATION_BACKOFF_MAX_SECONDS"],
        workers=cfg["NOTIFICATION_WORKERS"],
        run_async=cfg["NOTIFICATION_ASYNC"],
        context_factory=app.app_context if cfg["NOTIFICATION_ASYNC"] else None,
    )

    engine = WorkflowEngine(
        catalog, repository,
        analyzer=analyzer,
        emitter=NotificationEmitter(dispatcher),
        order_pipeline=cfg["WORKFLOW_ORDER_PIPELINE"],
    )
    app.extensions["workflow_engine"] = engine
    return engine


def get_engine() -> WorkflowEngine:
    return current_app.extensions["workflow_engine"]
