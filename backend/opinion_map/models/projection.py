"""Post projection ORM model.

Classes:
    PostProjection: 3D display coordinates and cluster assignment of one sampled post in one session.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from opinion_map.utils.timeutils import utcnow

OUTLIER_CLUSTER_ID = -1


class PostProjection(SQLModel, table=True):
    __tablename__ = "post_projections"
    __table_args__ = (
        UniqueConstraint("session_id", "post_id", name="uq_post_projections_session_post"),
        Index("ix_post_projections_session_cluster", "session_id", "cluster_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: UUID = Field(foreign_key="opinion_sessions.id", index=True)
    post_id: UUID = Field(foreign_key="posts.id")
    x: float
    y: float
    z: float
    cluster_id: int
    cluster_confidence: float
    is_outlier: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)
