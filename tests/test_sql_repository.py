"""
SQLAlchemy-backed repository — persistence round trips, the partial unique
index on active workflows and optimistic version checks.

Uses the session-scoped `app` and autouse `session` from conftest.py.
"""

import pytest

from dealerflow.core.exceptions import ConcurrentUpdate, ConflictError, DuplicateWorkflow
from dealerflow.domain import (
    Notification,
    NotificationType,
    RoleInfo,
    WorkflowInstance,
    WorkflowStatus,
    new_id,
)
from dealerflow.models import db
from dealerflow.models.workflow import WorkflowInstanceRow
from dealerflow.persistence.sql import SqlWorkflowRepository
from dealerflow.services.directory import seed_directory
from dealerflow.services.workflow_service import WorkflowEngine
from factories import LEAD_QUALIFIED_FACTS, T0


@pytest.fixture()
def sql_repo():
    repository = SqlWorkflowRepository()
    seed_directory(repository)
    return repository


@pytest.fixture()
def sql_engine(catalog, sql_repo, clock):
    return WorkflowEngine(catalog, sql_repo, clock=clock)


class TestWorkflowPersistence:
    def test_create_and_reload(self, sql_engine, sql_repo):
        wf = sql_engine.create("lead-1", "lead-to-quote", created_by="sales.manager", watchers=["w-1"])
        db.session.expunge_all()

        loaded = sql_repo.get_workflow(wf.workflow_id)
        assert loaded.record_id == "lead-1"
        assert loaded.current_stage == "qualification"
        assert loaded.status == WorkflowStatus.ACTIVE
        assert loaded.assigned_to == "sales.rep.1"
        assert loaded.watchers == ["w-1"]
        assert loaded.created_at == T0
        assert loaded.created_at.tzinfo is not None

    def test_advance_persists_children(self, sql_engine, sql_repo, clock):
        sql_engine.set_record_facts("lead-1", LEAD_QUALIFIED_FACTS)
        wf = sql_engine.create("lead-1", "lead-to-quote")
        clock.advance(hours=4)
        sql_engine.advance(wf.workflow_id, "assessment", actor="sales.rep.1")
        blocker = sql_engine.add_blocker(wf.workflow_id, "Credit hold", severity="high")
        db.session.expunge_all()

        loaded = sql_repo.get_workflow(wf.workflow_id)
        assert loaded.current_stage == "assessment"
        assert loaded.completed_stage_ids == ["qualification"]
        assert loaded.completed_stages[0].completed_by == "sales.rep.1"
        assert loaded.completed_stages[0].completed_at == clock.now
        assert [m.title for m in loaded.milestones] == ["Lead Qualification completed"]
        assert loaded.blockers[0].blocker_id == blocker.blocker_id
        assert loaded.open_blockers[0].description == "Credit hold"

    def test_resolve_blocker_persists(self, sql_engine, sql_repo):
        wf = sql_engine.create("lead-1", "lead-to-quote")
        blocker = sql_engine.add_blocker(wf.workflow_id, "Credit hold")
        sql_engine.resolve_blocker(wf.workflow_id, blocker.blocker_id, resolution="Deposit received")
        db.session.expunge_all()

        loaded = sql_repo.get_workflow(wf.workflow_id)
        assert loaded.blockers[0].resolved
        assert loaded.blockers[0].resolution == "Deposit received"
        assert loaded.open_blockers == []

    def test_full_walk_to_completion(self, sql_engine):
        sql_engine.set_record_facts("svc-1", {
            "technician_id": "service.tech.1",
            "scheduled_visit": "2026-03-03",
            "resolution_notes": "Cleaned rollers",
            "work_performed": "Roller clean",
            "time_spent_minutes": 30,
            "meter_reading_start": 5,
            "meter_reading_end": 9,
            "customer_signature": "J. Doe",
            "parts_reconciled": True,
        })
        wf = sql_engine.create("svc-1", "service-completion")
        for target in ("on-site-service", "completion-review", "closed"):
            wf = sql_engine.advance(wf.workflow_id, target)
        assert wf.status == WorkflowStatus.COMPLETED
        assert wf.completed_stage_ids == ["dispatch", "on-site-service", "completion-review"]
        assert wf.assigned_to == "service.manager"

    def test_list_filters(self, sql_engine, sql_repo, clock):
        sql_engine.create("lead-1", "lead-to-quote")
        clock.advance(minutes=1)
        sql_engine.create("svc-1", "service-completion")

        assert [w.record_id for w in sql_repo.list_workflows()] == ["lead-1", "svc-1"]
        assert [w.record_id for w in sql_repo.list_workflows(process_type="service-completion")] == ["svc-1"]
        assert [w.record_id for w in sql_repo.list_workflows(assigned_to="sales.rep.1")] == ["lead-1"]
        assert sql_repo.list_workflows(status=WorkflowStatus.CANCELLED) == []
        assert [w.record_id for w in sql_repo.list_workflows(record_id="svc-1")] == ["svc-1"]


class TestUniquenessAndVersions:
    def test_duplicate_active_rejected(self, sql_engine):
        wf = sql_engine.create("lead-1", "lead-to-quote")
        with pytest.raises(DuplicateWorkflow) as exc:
            sql_engine.create("lead-1", "lead-to-quote")
        assert exc.value.existing_id == wf.workflow_id

    def test_index_allows_new_workflow_after_cancel(self, sql_engine, sql_repo):
        wf = sql_engine.create("lead-1", "lead-to-quote")
        sql_engine.cancel(wf.workflow_id)
        again = sql_engine.create("lead-1", "lead-to-quote")
        assert sql_repo.find_active("lead-1", "lead-to-quote").workflow_id == again.workflow_id
        assert db.session.query(WorkflowInstanceRow).count() == 2

    def test_index_rejects_second_active_row(self, sql_repo):
        def instance():
            return WorkflowInstance(
                workflow_id=new_id(), record_id="lead-1", process_type="lead-to-quote",
                current_stage="qualification", created_at=T0, updated_at=T0, stage_entered_at=T0,
            )

        sql_repo.add_workflow(instance())
        # Bypass the pre-check to hit the partial unique index directly
        sql_repo.find_active = lambda record_id, process_type: None
        with pytest.raises(DuplicateWorkflow):
            sql_repo.add_workflow(instance())

    def test_stale_version_rejected(self, sql_engine, sql_repo):
        wf = sql_engine.create("lead-1", "lead-to-quote")
        first = sql_repo.get_workflow(wf.workflow_id)
        second = sql_repo.get_workflow(wf.workflow_id)

        first.assigned_to = "sales.rep.2"
        saved = sql_repo.save_workflow(first)
        assert saved.version == first.version + 1

        second.cancel_reason = "late writer"
        with pytest.raises(ConcurrentUpdate):
            sql_repo.save_workflow(second)
        assert sql_repo.get_workflow(wf.workflow_id).assigned_to == "sales.rep.2"


class TestUnitOfWork:
    def test_exit_without_save_releases_row_lock(self, sql_engine, sql_repo):
        wf = sql_engine.create("lead-1", "lead-to-quote")
        with sql_repo.unit_of_work():
            sql_repo.get_workflow(wf.workflow_id, for_update=True)
            assert db.session().in_transaction()
        assert not db.session().in_transaction()

    def test_error_rolls_back(self, sql_engine, sql_repo):
        wf = sql_engine.create("lead-1", "lead-to-quote")
        with pytest.raises(RuntimeError):
            with sql_repo.unit_of_work():
                sql_repo.get_workflow(wf.workflow_id, for_update=True)
                raise RuntimeError("boom")
        assert not db.session().in_transaction()

    def test_deadline_scan_skip_releases_row_lock(self, sql_engine, sql_repo, monkeypatch):
        # 8h + 24h + 24h of service work puts a new ticket inside the alert window
        wf = sql_engine.create("svc-1", "service-completion")
        assert sql_engine.scan_deadlines() == [wf.workflow_id]

        # A candidate list read before the alert was recorded
        stale = sql_repo.list_workflows(status=WorkflowStatus.ACTIVE)
        for item in stale:
            item.deadline_alerted_stage = None
        monkeypatch.setattr(sql_repo, "list_workflows", lambda **kwargs: stale)

        assert sql_engine.scan_deadlines() == []
        assert not db.session().in_transaction()
        assert len(sql_repo.list_notifications("service.manager")) == 1


class TestFactsNotificationsDirectory:
    def test_record_facts(self, sql_repo):
        assert sql_repo.get_record_facts("lead-1") == {}
        sql_repo.set_record_facts("lead-1", {"a": 1})
        sql_repo.set_record_facts("lead-1", {"b": [1, 2]})
        db.session.expunge_all()
        assert sql_repo.get_record_facts("lead-1") == {"a": 1, "b": [1, 2]}
        assert sql_repo.set_record_facts("lead-1", {"c": True}, merge=False) == {"c": True}

    def test_notifications(self, sql_repo, clock):
        for i in range(3):
            sql_repo.add_notification(Notification(
                notification_id=new_id(), type=NotificationType.STAGE_TRANSITION,
                recipient="u-1", workflow_id=None, title=f"n{i}",
                created_at=clock.advance(minutes=1),
            ))
        items = sql_repo.list_notifications("u-1")
        assert [n.title for n in items] == ["n2", "n1", "n0"]
        assert sql_repo.count_unread("u-1") == 3

        marked = sql_repo.mark_notification_read(items[0].notification_id, clock.now)
        assert marked.read
        assert sql_repo.count_unread("u-1") == 2
        assert [n.title for n in sql_repo.list_notifications("u-1", unread_only=True, limit=1)] == ["n1"]
        assert sql_repo.mark_all_read("u-1", clock.now) == 2
        assert sql_repo.mark_notification_read("missing", clock.now) is None

    def test_directory(self, sql_repo, clock):
        assert len(sql_repo.list_roles()) == 12
        assert [u.user_id for u in sql_repo.list_users(role="service_tech")] == ["service.tech.1", "service.tech.2"]
        with pytest.raises(ConflictError):
            sql_repo.add_role(RoleInfo("sales_rep"))

        sql_repo.touch_assignment("sales.rep.2", clock.now)
        assert sql_repo.get_user("sales.rep.2").last_assigned_at == clock.now

    def test_seed_is_idempotent(self, sql_repo):
        assert seed_directory(sql_repo) == {"roles": 0, "users": 0}
