"""Pydantic schemas for the opinion map lifecycle and read payloads.

Classes:
    SessionConfig: Immutable, versioned configuration captured when a session is created.
    GenerateRequest, GenerateResponse: Start (or reuse) a pipeline run for a zone.
    CancelRequest, CancelResponse: Cooperative cancellation of a run.
    WorkerRequest, WorkerResponse: Scheduler callback payloads.
    SessionResource, ClusterResource, ProjectionPoint, SessionResultsResponse: Read models.
    TimelineResponse: Cluster evolution series for charts.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from opinion_map.utils.timeutils import as_naive_utc

SESSION_CONFIG_VERSION = 1


class SessionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: Literal[1] = SESSION_CONFIG_VERSION
    start_date: datetime
    end_date: datetime
    requested_sample_size: int
    sampled_post_ids: tuple[UUID, ...]
    actual_sample_size: int
    total_available: int
    sampling_strategy: str
    bucket_count: int

    @model_validator(mode="after")
    def check_sample_size(self) -> "SessionConfig":
        if self.actual_sample_size != len(self.sampled_post_ids):
            raise ValueError("actual_sample_size must match the number of sampled posts")
        return self


class GenerateRequest(BaseModel):
    zone_id: UUID
    start_date: datetime
    end_date: datetime
    sample_size: int = Field(ge=1)

    @field_validator("start_date", "end_date")
    @classmethod
    def normalise_dates(cls, value: datetime) -> datetime:
        return as_naive_utc(value)

    @model_validator(mode="after")
    def check_range(self) -> "GenerateRequest":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class GenerateResponse(BaseModel):
    success: bool = True
    session_id: UUID
    status: str
    sampled_posts: int
    total_available: int
    cache_hit_rate: float
    estimated_time_seconds: int
    reused_active_session: bool


class CancelRequest(BaseModel):
    session_id: UUID


class CancelResponse(BaseModel):
    success: bool
    session_id: UUID
    status: str
    message: str


class WorkerRequest(BaseModel):
    session_id: UUID


class WorkerResponse(BaseModel):
    success: bool
    session_id: UUID
    status: Optional[str] = None
    skipped: bool = False
    reason: Optional[str] = None
    total_posts: Optional[int] = None
    total_clusters: Optional[int] = None
    outlier_count: Optional[int] = None
    error: Optional[str] = None


class StageTiming(BaseModel):
    name: str
    duration_ms: float
    offset_ms: Optional[float] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class SessionResource(BaseModel):
    id: UUID
    zone_id: UUID
    status: str
    progress: int
    current_phase: Optional[str] = None
    phase_message: Optional[str] = None
    config: SessionConfig
    total_posts: Optional[int] = None
    vectorized_posts: int = 0
    cluster_count: Optional[int] = None
    outlier_count: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    execution_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    error_trace: Optional[str] = None
    stage_timings: list[StageTiming] = Field(default_factory=list)


class ClusterResource(BaseModel):
    cluster_id: int
    label: str
    keywords: list[str]
    reasoning: Optional[str] = None
    label_source: str
    post_count: int
    centroid: tuple[float, float, float]
    avg_sentiment: Optional[float] = None
    coherence_score: Optional[float] = None


class ProjectionPoint(BaseModel):
    post_id: UUID
    external_id: str
    text: str
    author_username: Optional[str] = None
    engagement: int = 0
    posted_at: datetime
    coords_3d: tuple[float, float, float]
    cluster_id: int
    cluster_confidence: float
    is_outlier: bool


class SessionResultsResponse(BaseModel):
    success: bool = True
    session: Optional[SessionResource] = None
    projections: Optional[list[ProjectionPoint]] = None
    clusters: Optional[list[ClusterResource]] = None


class TimelineResponse(BaseModel):
    session_id: UUID
    granularity: str
    clusters: list[int]
    points: list[dict[str, Any]]
