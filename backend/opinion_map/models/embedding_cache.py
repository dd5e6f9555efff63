"""Embedding cache model shared across opinion sessions.

Posts never change after collection, so vectors are keyed by post identity and
model rather than by a content hash.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import Column, LargeBinary, UniqueConstraint
from sqlmodel import Field, SQLModel

from opinion_map.utils.timeutils import utcnow


class PostEmbedding(SQLModel, table=True):
    __tablename__ = "post_embeddings"
    __table_args__ = (
        UniqueConstraint("post_id", "model_id", name="uq_post_embeddings_post_model"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    post_id: UUID = Field(foreign_key="posts.id", index=True)
    model_id: str = Field(index=True)
    provider: str | None = Field(default=None)
    model_revision: str | None = Field(default=None)
    vector: bytes = Field(sa_column=Column(LargeBinary))
    vector_dtype: str = Field(default="float16")
    vector_norm: float | None = Field(default=None)
    dim: int
    created_at: datetime = Field(default_factory=utcnow)
