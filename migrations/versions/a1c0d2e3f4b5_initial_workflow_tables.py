"""initial_workflow_tables

Create workflow instance, stage history, blocker, record facts,
notification and directory tables.

Revision ID: a1c0d2e3f4b5
Revises:
Create Date: 2026-03-02 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1c0d2e3f4b5"
down_revision = None
branch_labels = None
depends_on = None


def _child_fk():
    return sa.ForeignKeyConstraint(["workflow_id"], ["workflow_instances.id"], ondelete="CASCADE")


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "workflow_instances" not in existing_tables:
        op.create_table(
            "workflow_instances",
            sa.Column("id", sa.String(length=32), nullable=False),
            sa.Column("record_id", sa.String(length=120), nullable=False),
            sa.Column("process_type", sa.String(length=80), nullable=False),
            sa.Column("current_stage", sa.String(length=80), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
            sa.Column("assigned_to", sa.String(length=120), nullable=True),
            sa.Column("created_by", sa.String(length=120), nullable=True),
            sa.Column("watchers", sa.JSON(), nullable=True),
            sa.Column("stage_entered_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("cancel_reason", sa.Text(), nullable=True),
            sa.Column("deadline_alerted_stage", sa.String(length=80), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_instances_record_id", "workflow_instances", ["record_id"])
        op.create_index("ix_workflow_instances_process_type", "workflow_instances", ["process_type"])
        op.create_index("ix_workflow_instances_status", "workflow_instances", ["status"])
        op.create_index("ix_workflow_instances_assigned_to", "workflow_instances", ["assigned_to"])
        op.create_index(
            "uq_workflow_active_record",
            "workflow_instances",
            ["record_id", "process_type"],
            unique=True,
            postgresql_where=sa.text("status = 'active'"),
            sqlite_where=sa.text("status = 'active'"),
        )

    if "workflow_stage_completions" not in existing_tables:
        op.create_table(
            "workflow_stage_completions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_id", sa.String(length=32), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False),
            sa.Column("stage_id", sa.String(length=80), nullable=False),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("completed_by", sa.String(length=120), nullable=True),
            _child_fk(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("workflow_id", "stage_id", name="uq_completion_stage"),
        )
        op.create_index("ix_workflow_stage_completions_workflow_id", "workflow_stage_completions", ["workflow_id"])

    if "workflow_milestones" not in existing_tables:
        op.create_table(
            "workflow_milestones",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_id", sa.String(length=32), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False),
            sa.Column("stage_id", sa.String(length=80), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("achieved_at", sa.DateTime(timezone=True), nullable=False),
            _child_fk(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_milestones_workflow_id", "workflow_milestones", ["workflow_id"])

    if "workflow_blockers" not in existing_tables:
        op.create_table(
            "workflow_blockers",
            sa.Column("id", sa.String(length=32), nullable=False),
            sa.Column("workflow_id", sa.String(length=32), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("severity", sa.String(length=10), nullable=False, server_default="medium"),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("created_by", sa.String(length=120), nullable=True),
            sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
            _child_fk(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_blockers_workflow_id", "workflow_blockers", ["workflow_id"])

    if "record_facts" not in existing_tables:
        op.create_table(
            "record_facts",
            sa.Column("record_id", sa.String(length=120), nullable=False),
            sa.Column("facts", sa.JSON(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("record_id"),
        )

    if "notifications" not in existing_tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.String(length=32), nullable=False),
            sa.Column("type", sa.String(length=40), nullable=False),
            sa.Column("recipient", sa.String(length=120), nullable=False),
            sa.Column("workflow_id", sa.String(length=32), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient", "notifications", ["recipient"])
        op.create_index("ix_notifications_workflow_id", "notifications", ["workflow_id"])

    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("name", sa.String(length=80), nullable=False),
            sa.Column("department", sa.String(length=120), nullable=True),
            sa.Column("permissions", sa.JSON(), nullable=True),
            sa.PrimaryKeyConstraint("name"),
        )

    if "directory_users" not in existing_tables:
        op.create_table(
            "directory_users",
            sa.Column("user_id", sa.String(length=120), nullable=False),
            sa.Column("display_name", sa.String(length=200), nullable=False),
            sa.Column("role", sa.String(length=80), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("last_assigned_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("user_id"),
        )
        op.create_index("ix_directory_users_role", "directory_users", ["role"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "directory_users" in existing_tables:
        op.drop_index("ix_directory_users_role", table_name="directory_users")
        op.drop_table("directory_users")
    if "roles" in existing_tables:
        op.drop_table("roles")
    if "notifications" in existing_tables:
        op.drop_index("ix_notifications_workflow_id", table_name="notifications")
        op.drop_index("ix_notifications_recipient", table_name="notifications")
        op.drop_table("notifications")
    if "record_facts" in existing_tables:
        op.drop_table("record_facts")
    for child in ("workflow_blockers", "workflow_milestones", "workflow_stage_completions"):
        if child in existing_tables:
            op.drop_index(f"ix_{child}_workflow_id", table_name=child)
            op.drop_table(child)
    if "workflow_instances" in existing_tables:
        op.drop_index("uq_workflow_active_record", table_name="workflow_instances")
        op.drop_index("ix_workflow_instances_assigned_to", table_name="workflow_instances")
        op.drop_index("ix_workflow_instances_status", table_name="workflow_instances")
        op.drop_index("ix_workflow_instances_process_type", table_name="workflow_instances")
        op.drop_index("ix_workflow_instances_record_id", table_name="workflow_instances")
        op.drop_table("workflow_instances")
