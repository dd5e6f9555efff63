"""Zone ORM model.

Classes:
    Zone: A monitored scope (client + topic) that posts and opinion sessions belong to.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Column, Text
from sqlmodel import Field, SQLModel

from opinion_map.utils.timeutils import utcnow


class Zone(SQLModel, table=True):
    __tablename__ = "zones"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str
    language: str = Field(default="en")
    operational_context: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(default_factory=utcnow)
