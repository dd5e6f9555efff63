"""Collected post ORM model.

Posts are written by the ingestion system and are immutable once collected; the
opinion pipeline only reads them.

Classes:
    Post: Short social post with author, hashtags, engagement, and timestamp.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Index, Text
from sqlmodel import Field, SQLModel

from opinion_map.utils.timeutils import utcnow


class Post(SQLModel, table=True):
    __tablename__ = "posts"
    __table_args__ = (Index("ix_posts_zone_posted_at", "zone_id", "posted_at"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    zone_id: UUID = Field(foreign_key="zones.id", index=True)
    external_id: str = Field(index=True)
    text: str = Field(sa_column=Column(Text, nullable=False))
    author_name: Optional[str] = None
    author_username: Optional[str] = None
    hashtags: Optional[list] = Field(default=None, sa_column=Column(JSON))
    engagement: int = Field(default=0)
    posted_at: datetime
    collected_at: datetime = Field(default_factory=utcnow)
