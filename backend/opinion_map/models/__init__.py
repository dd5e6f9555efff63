"""Convenience exports for ORM models.

Surface frequently used SQLModel classes so calling code can import them from a single module.
"""

from .zone import Zone
from .post import Post
from .embedding_cache import PostEmbedding
from .opinion_session import ACTIVE_STATUSES, TERMINAL_STATUSES, OpinionSession, SessionStatus
from .projection import OUTLIER_CLUSTER_ID, PostProjection
from .cluster import OpinionCluster

__all__ = [
    "Zone",
    "Post",
    "PostEmbedding",
    "OpinionSession",
    "SessionStatus",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
    "PostProjection",
    "OUTLIER_CLUSTER_ID",
    "OpinionCluster",
]
