"""Opinion session ORM model.

Classes:
    SessionStatus: Lifecycle states of one pipeline run.
    OpinionSession: Durable record of one pipeline run for a zone and period.

Functions:
    set_updated_at(_, __, target): SQLAlchemy event hook that maintains the `updated_at` timestamp.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Index, Text, event, text
from sqlmodel import Field, SQLModel

from opinion_map.utils.timeutils import utcnow


class SessionStatus(str):
    PENDING = "pending"
    VECTORIZING = "vectorizing"
    REDUCING = "reducing"
    CLUSTERING = "clustering"
    LABELING = "labeling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES: tuple[str, ...] = (
    SessionStatus.PENDING,
    SessionStatus.VECTORIZING,
    SessionStatus.REDUCING,
    SessionStatus.CLUSTERING,
    SessionStatus.LABELING,
)
TERMINAL_STATUSES: tuple[str, ...] = (
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.CANCELLED,
)

_ACTIVE_SQL = "status IN ({})".format(", ".join(f"'{status}'" for status in ACTIVE_STATUSES))


class OpinionSession(SQLModel, table=True):
    __tablename__ = "opinion_sessions"
    __table_args__ = (
        Index(
            "ux_opinion_sessions_active_zone",
            "zone_id",
            unique=True,
            sqlite_where=text(_ACTIVE_SQL),
            postgresql_where=text(_ACTIVE_SQL),
        ),
        Index("ix_opinion_sessions_zone_created", "zone_id", "created_at"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    zone_id: UUID = Field(foreign_key="zones.id", index=True)
    status: str = Field(default=SessionStatus.PENDING, index=True)
    progress: int = Field(default=0)
    current_phase: Optional[str] = None
    phase_message: Optional[str] = Field(default=None, sa_column=Column(Text))
    config_version: int = Field(default=1)
    config_json: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    total_posts: Optional[int] = None
    vectorized_posts: int = Field(default=0)
    cluster_count: Optional[int] = None
    outlier_count: Optional[int] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    execution_time_ms: Optional[int] = None
    timings_json: Optional[str] = Field(default=None, sa_column=Column(Text))
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text))
    error_trace: Optional[str] = Field(default=None, sa_column=Column(Text))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@event.listens_for(OpinionSession, "before_update", propagate=True)
def set_updated_at(_, __, target):
    target.updated_at = utcnow()
