"""Persistence layer for the workflow engine."""

from dealerflow.persistence.inmemory import InMemoryWorkflowRepository
from dealerflow.persistence.repository import WorkflowRepository

__all__ = [
    "InMemoryWorkflowRepository",
    "WorkflowRepository",
]
