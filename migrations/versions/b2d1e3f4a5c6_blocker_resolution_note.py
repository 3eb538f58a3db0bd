"""blocker_resolution_note

Add the free-text resolution note recorded when a blocker is resolved.

Revision ID: b2d1e3f4a5c6
Revises: a1c0d2e3f4b5
Create Date: 2026-04-14 10:30:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "b2d1e3f4a5c6"
down_revision = "a1c0d2e3f4b5"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("workflow_blockers", schema=None) as batch_op:
        batch_op.add_column(sa.Column("resolution", sa.Text(), nullable=True,
                                      comment="How the blocker was cleared"))


def downgrade():
    with op.batch_alter_table("workflow_blockers", schema=None) as batch_op:
        batch_op.drop_column("resolution")
