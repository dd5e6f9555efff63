"""Convenience exports for API schemas.

Re-exports the pydantic models used across the backend so consumers can import from one module.
"""

from .opinion_map import (
    SESSION_CONFIG_VERSION,
    CancelRequest,
    CancelResponse,
    ClusterResource,
    GenerateRequest,
    GenerateResponse,
    ProjectionPoint,
    SessionConfig,
    SessionResource,
    SessionResultsResponse,
    StageTiming,
    TimelineResponse,
    WorkerRequest,
    WorkerResponse,
)

__all__ = [
    "SESSION_CONFIG_VERSION",
    "SessionConfig",
    "GenerateRequest",
    "GenerateResponse",
    "CancelRequest",
    "CancelResponse",
    "WorkerRequest",
    "WorkerResponse",
    "StageTiming",
    "SessionResource",
    "ClusterResource",
    "ProjectionPoint",
    "SessionResultsResponse",
    "TimelineResponse",
]
