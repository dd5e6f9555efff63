import hashlib
import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["OPENAI_API_KEY"] = ""
os.environ["WORKER_API_KEY"] = "test-worker-key"
os.environ["SCHEDULER_BACKEND"] = "local"

import numpy as np
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from opinion_map.api.routes.worker import get_pipeline
from opinion_map.core.errors import ExternalServiceError, SchedulingError
from opinion_map.db.session import get_session
from opinion_map.main import app
from opinion_map.models import Post, Zone
from opinion_map.services.labeling import KeywordLabeler
from opinion_map.services.openai_client import EmbeddingBatch
from opinion_map.services.pipeline import OpinionPipeline
from opinion_map.services.scheduler import get_scheduler

TOPICS = [
    ("transit", "New tram line downtown will cut commute times for workers"),
    ("housing", "Rent increases are pushing families out of the old harbour district"),
    ("festival", "Summer music festival tickets sold out in minutes this weekend"),
    ("flooding", "River flooding closed roads again and residents demand new dikes"),
]
EMBED_DIM = 32
FALLBACK_MODEL = "text-embedding-fallback"


class FakeOpenAIService:
    """Deterministic embeddings: posts about the same topic land near the same direction."""

    def __init__(
        self,
        *,
        fail_batches: Optional[set[int]] = None,
        fallback_batches: Optional[set[int]] = None,
        fail_all: bool = False,
    ) -> None:
        self.embed_calls: int = 0
        self.embed_payloads: list[list[str]] = []
        self.fail_batches = fail_batches or set()
        self.fallback_batches = fallback_batches or set()
        self.fail_all = fail_all

    @property
    def is_configured(self) -> bool:
        return True

    async def embed_texts(self, texts, *, model: Optional[str] = None, **_: object) -> EmbeddingBatch:
        call_index = self.embed_calls
        self.embed_calls += 1
        docs = list(texts)
        self.embed_payloads.append(docs)
        if self.fail_all or call_index in self.fail_batches:
            raise ExternalServiceError("embedding provider unavailable")
        served = FALLBACK_MODEL if call_index in self.fallback_batches else model or "text-embedding-3-small"
        return EmbeddingBatch(vectors=[fake_vector(doc) for doc in docs], model=served, dim=EMBED_DIM)

    async def complete_json(self, **_: object) -> str:
        return '{"label": "Fake label", "sentiment": 0.1, "description": "Fake"}'


def fake_vector(text: str) -> list[float]:
    seed = int(hashlib.sha256(text.encode("utf-8")).hexdigest()[:8], 16)
    rng = np.random.default_rng(seed)
    base = np.zeros(EMBED_DIM, dtype=np.float64)
    for idx, (name, _) in enumerate(TOPICS):
        if name in text:
            base[idx * 4 : idx * 4 + 4] = 3.0
    return (base + rng.normal(0.0, 0.3, EMBED_DIM)).tolist()


class RecordingScheduler:
    def __init__(self, *, fail: bool = False) -> None:
        self.enqueued: list[UUID] = []
        self.fail = fail

    async def enqueue(self, session_id: UUID) -> Optional[str]:
        if self.fail:
            raise SchedulingError("queue unavailable", session_id=str(session_id))
        self.enqueued.append(session_id)
        return f"msg-{len(self.enqueued)}"


@pytest_asyncio.fixture()
async def session() -> AsyncGenerator[AsyncSession, None]:
    engine: AsyncEngine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    async_session = AsyncSession(engine, expire_on_commit=False)
    try:
        yield async_session
    finally:
        await async_session.close()
        await engine.dispose()


@pytest.fixture()
def fake_openai() -> FakeOpenAIService:
    return FakeOpenAIService()


@pytest.fixture()
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest_asyncio.fixture()
async def client(
    session: AsyncSession,
    scheduler: RecordingScheduler,
    fake_openai: FakeOpenAIService,
) -> AsyncGenerator[AsyncClient, None]:
    async def _override_session():
        yield session

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_scheduler] = lambda: scheduler
    app.dependency_overrides[get_pipeline] = lambda: OpinionPipeline(fake_openai, labeler=KeywordLabeler())
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def zone(session: AsyncSession) -> Zone:
    record = Zone(name="Harbour City", language="en", operational_context="Municipal monitoring")
    session.add(record)
    await session.commit()
    await session.refresh(record)
    return record


@pytest.fixture()
def seed_posts(session: AsyncSession):
    """Create ``count`` posts spread evenly over ``days`` starting at ``start``."""

    async def _seed(
        zone: Zone,
        *,
        count: int,
        start: datetime,
        days: float = 7,
        retweets: int = 0,
    ) -> list[Post]:
        step = timedelta(days=days) / max(count, 1)
        posts: list[Post] = []
        for idx in range(count):
            name, sentence = TOPICS[idx % len(TOPICS)]
            post = Post(
                zone_id=zone.id,
                external_id=f"tw-{idx}",
                text=f"{sentence} #{name} update {idx}",
                author_name=f"Resident {idx % 13}",
                author_username=f"resident{idx % 13}",
                hashtags=[name],
                engagement=(idx * 37) % 101,
                posted_at=start + step * idx,
            )
            posts.append(post)
            session.add(post)
        for idx in range(retweets):
            session.add(
                Post(
                    zone_id=zone.id,
                    external_id=f"rt-{idx}",
                    text=f"RT @someone: {TOPICS[0][1]}",
                    engagement=1000,
                    posted_at=start + step * idx,
                )
            )
        await session.commit()
        return posts

    return _seed
