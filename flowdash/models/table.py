"""Data table row model.

Minimal storage behind the table_read / table_write nodes. Rows are
grouped by an opaque table_id and scoped to their owner.
"""

import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlmodel import Column, Field, SQLModel, Text


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class TableRow(SQLModel, table=True):
    """One row of a user data table."""

    __tablename__ = "table_row"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
    )
    table_id: str = Field(max_length=100, index=True)
    user_id: str = Field(foreign_key="user.id", index=True)
    data: str = Field(
        sa_column=Column(Text, nullable=False),
        description="JSON object holding the row's columns",
    )
    created_at: datetime = Field(default_factory=utc_now)

    def get_data(self) -> dict[str, Any]:
        return json.loads(self.data)
