"""
DealerFlow Workflow Engine
Workflow instance persistence model.

Models:
    - WorkflowInstanceRow: one row per workflow instance (versioned)
    - StageCompletionRow: completed stages in order
    - MilestoneRow: milestones in order
    - BlockerRow: open and resolved blockers
    - RecordFactsRow: per-record key/value snapshot for the gate validator

At most one *active* workflow per (record_id, process_type) is enforced by a
partial unique index; closed workflows do not count.
"""

from datetime import datetime, timezone

from dealerflow.models import db


def _utcnow():
    return datetime.now(timezone.utc)


_ACTIVE_ONLY = "status = 'active'"


class WorkflowInstanceRow(db.Model):
    __tablename__ = "workflow_instances"

    id = db.Column(db.String(32), primary_key=True)
    record_id = db.Column(db.String(120), nullable=False, index=True)
    process_type = db.Column(db.String(80), nullable=False, index=True)
    current_stage = db.Column(db.String(80), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="active", index=True)
    assigned_to = db.Column(db.String(120), nullable=True, index=True)
    created_by = db.Column(db.String(120), nullable=True)
    watchers = db.Column(db.JSON, default=list)
    stage_entered_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.Text, nullable=True)
    deadline_alerted_stage = db.Column(db.String(80), nullable=True)
    version = db.Column(db.Integer, nullable=False)

    completions = db.relationship(
        "StageCompletionRow", order_by="StageCompletionRow.position",
        cascade="all, delete-orphan", lazy="selectin",
    )
    milestones = db.relationship(
        "MilestoneRow", order_by="MilestoneRow.position",
        cascade="all, delete-orphan", lazy="selectin",
    )
    blockers = db.relationship(
        "BlockerRow", order_by="BlockerRow.created_at",
        cascade="all, delete-orphan", lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        db.Index(
            "uq_workflow_active_record", "record_id", "process_type",
            unique=True,
            sqlite_where=db.text(_ACTIVE_ONLY),
            postgresql_where=db.text(_ACTIVE_ONLY),
        ),
    )

    def __repr__(self):
        return f"<WorkflowInstanceRow {self.id}: {self.process_type}@{self.current_stage}>"


class StageCompletionRow(db.Model):
    __tablename__ = "workflow_stage_completions"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.String(32), db.ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    position = db.Column(db.Integer, nullable=False)
    stage_id = db.Column(db.String(80), nullable=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=False)
    completed_by = db.Column(db.String(120), nullable=True)

    __table_args__ = (
        db.UniqueConstraint("workflow_id", "stage_id", name="uq_completion_stage"),
    )


class MilestoneRow(db.Model):
    __tablename__ = "workflow_milestones"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.String(32), db.ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    position = db.Column(db.Integer, nullable=False)
    stage_id = db.Column(db.String(80), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    achieved_at = db.Column(db.DateTime(timezone=True), nullable=False)


class BlockerRow(db.Model):
    __tablename__ = "workflow_blockers"

    id = db.Column(db.String(32), primary_key=True)
    workflow_id = db.Column(
        db.String(32), db.ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    description = db.Column(db.Text, nullable=False)
    severity = db.Column(db.String(10), nullable=False, default="medium")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    created_by = db.Column(db.String(120), nullable=True)
    resolved = db.Column(db.Boolean, nullable=False, default=False)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution = db.Column(db.Text, nullable=True, comment="How the blocker was cleared")


class RecordFactsRow(db.Model):
    __tablename__ = "record_facts"

    record_id = db.Column(db.String(120), primary_key=True)
    facts = db.Column(db.JSON, nullable=False, default=dict)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
