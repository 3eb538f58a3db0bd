"""
DealerFlow Workflow Engine
SQLAlchemy database instance.

All model modules import ``db`` from here:
    from dealerflow.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
