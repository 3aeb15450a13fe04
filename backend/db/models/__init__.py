"""Database models for the workflow scheduler.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.organization import Organization
from db.models.workflow import Workflow
from db.models.schedule import Schedule
from db.models.execution import Execution

__all__ = [
    "Organization",
    "Workflow",
    "Schedule",
    "Execution",
]
