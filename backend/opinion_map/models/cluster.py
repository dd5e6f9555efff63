"""Opinion cluster ORM model definition.

Classes:
    OpinionCluster: Geometry and semantic summary of one cluster within a session.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import JSON, Column, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from opinion_map.utils.timeutils import utcnow


class OpinionCluster(SQLModel, table=True):
    __tablename__ = "opinion_clusters"
    __table_args__ = (
        UniqueConstraint("session_id", "cluster_id", name="uq_opinion_clusters_session_cluster"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: UUID = Field(foreign_key="opinion_sessions.id", index=True)
    cluster_id: int
    label: str
    keywords: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    reasoning: Optional[str] = Field(default=None, sa_column=Column(Text))
    label_source: str = Field(default="placeholder")
    post_count: int = Field(default=0)
    centroid_x: float
    centroid_y: float
    centroid_z: float
    avg_sentiment: Optional[float] = None
    coherence_score: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)
