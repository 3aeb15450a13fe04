"""Workflow model for the workflow scheduler.

Workflows are owned by the execution engine; the scheduler only needs
enough of the row to check existence, ownership and the enabled flag.
"""

from sqlalchemy import ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import BaseModel


class Workflow(BaseModel):
    """Workflow referenced by schedules.

    Attributes:
        id: Unique identifier (UUID string)
        organization_id: Foreign key to Organization
        name: Workflow name
        is_enabled: Whether workflow can be executed
    """

    __tablename__ = "workflows"

    organization_id: Mapped[str] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(nullable=False, index=True)
    is_enabled: Mapped[bool] = mapped_column(default=True, index=True)

    schedules: Mapped[list["Schedule"]] = relationship(
        "Schedule",
        back_populates="workflow",
        cascade="all, delete-orphan",
        lazy="noload",
    )
