"""
DealerFlow Workflow Engine
Notification persistence model.

Models:
    - NotificationRow: in-app notification record with read tracking
"""

from datetime import datetime, timezone

from dealerflow.models import db


class NotificationRow(db.Model):
    """
    In-app notification entity.

    One record per recipient per event. Append-only except the read flag.
    """

    __tablename__ = "notifications"

    id = db.Column(db.String(32), primary_key=True)
    type = db.Column(db.String(40), nullable=False)
    recipient = db.Column(db.String(120), nullable=False, index=True)
    workflow_id = db.Column(db.String(32), nullable=True, index=True)
    title = db.Column(db.String(300), nullable=False)
    payload = db.Column(db.JSON, default=dict)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False, nullable=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f"<NotificationRow {self.id}: {self.title[:40]}>"
