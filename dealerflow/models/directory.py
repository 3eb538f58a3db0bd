"""
DealerFlow Workflow Engine
Directory reference data used for task assignment.

Models:
    - RoleRow: named role with department and permissions
    - DirectoryUserRow: user holding one role
"""

from dealerflow.models import db


class RoleRow(db.Model):
    __tablename__ = "roles"

    name = db.Column(db.String(80), primary_key=True)
    department = db.Column(db.String(120), default="")
    permissions = db.Column(db.JSON, default=list)


class DirectoryUserRow(db.Model):
    __tablename__ = "directory_users"

    user_id = db.Column(db.String(120), primary_key=True)
    display_name = db.Column(db.String(200), nullable=False)
    role = db.Column(db.String(80), nullable=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_assigned_at = db.Column(db.DateTime(timezone=True), nullable=True)
