"""Organization model for the workflow scheduler."""

from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class Organization(BaseModel):
    """Tenant that owns workflows and schedules.

    Attributes:
        id: Unique identifier (UUID string)
        name: Organization name
        slug: URL-friendly identifier
        is_active: Whether organization is active
    """

    __tablename__ = "organizations"

    name: Mapped[str] = mapped_column(nullable=False, index=True)
    slug: Mapped[str] = mapped_column(nullable=False, unique=True, index=True)
    is_active: Mapped[bool] = mapped_column(default=True, index=True)
