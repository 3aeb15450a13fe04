"""Common schemas used across the API."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class MessageResponse(BaseModel):
    """Simple success/message response."""

    success: bool = True
    message: str


class PaginationInfo(BaseModel):
    """Offset pagination block of list responses."""

    total: int = Field(description="Total number of matching records")
    limit: int
    offset: int
    has_more: bool = Field(description="Whether records exist past this page")

    @classmethod
    def build(cls, total: int, limit: int, offset: int) -> "PaginationInfo":
        return cls(total=total, limit=limit, offset=offset, has_more=offset + limit < total)


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    """Render a stored naive-UTC timestamp as ISO 8601 with a ``Z`` suffix."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.replace(tzinfo=None) - value.utcoffset()
    return value.isoformat() + "Z"
