"""Worker-side execution of one opinion session.

Phases run strictly in order: vectorize, reduce, cluster, label. Progress is
written after each step and cancellation is honoured between phases only.

Classes:
    OpinionPipeline: Runs a claimed session end to end and persists its results.

Functions:
    run_session_in_background(session_id): Entry point for the in-process scheduler.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Optional, Sequence
from uuid import UUID

import numpy as np
from sqlalchemy import select

from opinion_map.core.config import get_settings
from opinion_map.core.errors import OpinionMapError, PipelineError, SessionCancelled
from opinion_map.models import (
    OUTLIER_CLUSTER_ID,
    OpinionCluster,
    OpinionSession,
    Post,
    PostProjection,
    SessionStatus,
    TERMINAL_STATUSES,
    Zone,
)
from opinion_map.schemas import WorkerResponse
from opinion_map.services.clustering import ClusteringResult, cluster_points
from opinion_map.services.embeddings import EmbeddingService
from opinion_map.services.labeling import (
    ClusterDocument,
    ClusterLabel,
    ClusterLabeler,
    LabelingContext,
    default_labeler,
    extract_cluster_keywords,
    label_clusters,
    select_representatives,
)
from opinion_map.services.openai_client import OpenAIService
from opinion_map.services.reduction import ReductionResult, reduce_embeddings
from opinion_map.services.sessions import (
    CancellationToken,
    SessionService,
    StageTimer,
    load_session_config,
)

_LOGGER = logging.getLogger(__name__)

PROGRESS_VECTORIZE_END = 20
PROGRESS_REDUCE_START = 25
PROGRESS_REDUCE_END = 60
PROGRESS_CLUSTER_START = 65
PROGRESS_CLUSTER_DONE = 70
PROGRESS_PROJECTIONS_SAVED = 75
PROGRESS_LABEL_START = 80
PROGRESS_LABEL_END = 95


class OpinionPipeline:
    def __init__(
        self,
        openai_service: OpenAIService | None = None,
        *,
        embedding_service: EmbeddingService | None = None,
        labeler: ClusterLabeler | None = None,
        session_service: SessionService | None = None,
    ) -> None:
        self._openai = openai_service or OpenAIService()
        self._embeddings = embedding_service or EmbeddingService(self._openai)
        self._labeler = labeler or default_labeler(self._openai)
        self._sessions = session_service or SessionService()
        self._settings = get_settings()

    async def run(self, db, session_id: UUID) -> WorkerResponse:
        """Execute the session once. Safe to call repeatedly for the same id."""

        record = await db.get(OpinionSession, session_id)
        if record is None:
            _LOGGER.warning("Worker called for unknown session %s", session_id)
            return WorkerResponse(success=False, session_id=session_id, reason="not_found", error="Session not found")

        stale_after = self._settings.session_stale_after_seconds
        if not await self._sessions.claim(db, session_id, stale_after=stale_after):
            current = await self._sessions.get(db, session_id)
            reason = "already_finished" if current.status in TERMINAL_STATUSES else "already_running"
            _LOGGER.info("Skipping worker run for session %s: %s (%s)", session_id, reason, current.status)
            return WorkerResponse(
                success=True,
                session_id=session_id,
                status=current.status,
                skipped=True,
                reason=reason,
            )

        timer = StageTimer()
        token = CancellationToken(db, session_id)
        try:
            return await self._execute(db, session_id, timer, token)
        except SessionCancelled:
            _LOGGER.info("Session %s stopped after cancellation", session_id)
            return WorkerResponse(
                success=True,
                session_id=session_id,
                status=SessionStatus.CANCELLED,
                reason="cancelled",
            )
        except Exception as exc:
            trace = traceback.format_exc()
            message = exc.message if isinstance(exc, OpinionMapError) else f"{type(exc).__name__}: {exc}"
            _LOGGER.error("Pipeline failed for session %s: %s", session_id, message, exc_info=True)
            await db.rollback()
            await self._sessions.mark_failed(db, session_id, message, trace, timings=timer.snapshot())
            return WorkerResponse(
                success=False,
                session_id=session_id,
                status=SessionStatus.FAILED,
                error=message,
            )

    async def _advance(self, db, session_id: UUID, target: str, progress: int, message: str) -> None:
        if not await self._sessions.transition(db, session_id, target, progress=progress, message=message):
            raise SessionCancelled(str(session_id))

    async def _execute(
        self,
        db,
        session_id: UUID,
        timer: StageTimer,
        token: CancellationToken,
    ) -> WorkerResponse:
        record = await self._sessions.get(db, session_id)
        config = load_session_config(record)
        zone = await db.get(Zone, record.zone_id)

        async with timer.track("vectorize"):
            async def _on_batch(done: int, total: int) -> None:
                percent = int(PROGRESS_VECTORIZE_END * done / max(total, 1))
                await self._sessions.update_progress(
                    db, session_id, percent, f"Vectorized batch {done}/{total}"
                )

            vectorized = await self._embeddings.ensure_embeddings(
                db, list(config.sampled_post_ids), on_batch=_on_batch
            )
            await self._sessions.update_progress(
                db,
                session_id,
                PROGRESS_VECTORIZE_END,
                f"{vectorized.vectorized} posts vectorized ({vectorized.cached} from cache)",
                vectorized_posts=vectorized.vectorized,
            )
        await token.raise_if_cancelled()

        if vectorized.vectorized < 2:
            raise PipelineError("Not enough vectorized posts to build a map", vectorized=vectorized.vectorized)

        await self._advance(db, session_id, SessionStatus.REDUCING, PROGRESS_REDUCE_START, "Reducing dimensions")
        async with timer.track("reduce"):
            reduction: ReductionResult = await asyncio.to_thread(reduce_embeddings, vectorized.vectors)
            await self._sessions.update_progress(
                db, session_id, PROGRESS_REDUCE_END, f"Projected {len(vectorized.post_ids)} posts to 3D"
            )
        await token.raise_if_cancelled()

        await self._advance(db, session_id, SessionStatus.CLUSTERING, PROGRESS_CLUSTER_START, "Clustering posts")
        async with timer.track("cluster"):
            clustering: ClusteringResult = await asyncio.to_thread(
                cluster_points, reduction.compact, reduction.coords_3d
            )
            await self._sessions.update_progress(
                db,
                session_id,
                PROGRESS_CLUSTER_DONE,
                f"Found {clustering.cluster_count} clusters",
                cluster_count=clustering.cluster_count,
                outlier_count=clustering.outlier_count,
            )

        posts = await self._load_posts(db, vectorized.post_ids)
        async with timer.track("persist"):
            await self._sessions.clear_results(db, session_id)
            keywords = extract_cluster_keywords(
                {
                    cluster.cluster_id: [posts[idx].text for idx in cluster.member_indices]
                    for cluster in clustering.clusters
                }
            )
            await self._persist_geometry(db, session_id, vectorized.post_ids, reduction, clustering, keywords)
            await self._sessions.update_progress(
                db, session_id, PROGRESS_PROJECTIONS_SAVED, "Saved projections"
            )
        await token.raise_if_cancelled()

        await self._advance(db, session_id, SessionStatus.LABELING, PROGRESS_LABEL_START, "Labeling clusters")
        async with timer.track("label"):
            documents = self._cluster_documents(posts, reduction.compact, clustering)
            context = LabelingContext(
                language=(zone.language if zone and zone.language else self._settings.default_label_language),
                operational_context=zone.operational_context if zone else None,
            )
            labels = await label_clusters(documents, labeler=self._labeler, context=context, keywords=keywords)
            await self._persist_labels(db, session_id, labels)
            await self._sessions.update_progress(
                db, session_id, PROGRESS_LABEL_END, f"Labeled {len(labels)} clusters"
            )
        await token.raise_if_cancelled()

        if not await self._sessions.complete(
            db,
            session_id,
            cluster_count=clustering.cluster_count,
            outlier_count=clustering.outlier_count,
            timings=timer.snapshot(),
        ):
            raise SessionCancelled(str(session_id))

        _LOGGER.info(
            "Session %s completed: %d posts, %d clusters, %d outliers",
            session_id,
            len(vectorized.post_ids),
            clustering.cluster_count,
            clustering.outlier_count,
        )
        return WorkerResponse(
            success=True,
            session_id=session_id,
            status=SessionStatus.COMPLETED,
            total_posts=len(vectorized.post_ids),
            total_clusters=clustering.cluster_count,
            outlier_count=clustering.outlier_count,
        )

    async def _load_posts(self, db, post_ids: Sequence[UUID]) -> list[Post]:
        by_id: dict[UUID, Post] = {}
        for start in range(0, len(post_ids), 500):
            chunk = list(post_ids[start : start + 500])
            result = await db.exec(select(Post).where(Post.id.in_(chunk)))
            by_id.update({post.id: post for post in result.scalars().all()})
        missing = [post_id for post_id in post_ids if post_id not in by_id]
        if missing:
            raise PipelineError("Sampled posts disappeared from the store", missing=len(missing))
        return [by_id[post_id] for post_id in post_ids]

    async def _persist_geometry(
        self,
        db,
        session_id: UUID,
        post_ids: Sequence[UUID],
        reduction: ReductionResult,
        clustering: ClusteringResult,
        keywords: dict[int, list[str]],
    ) -> None:
        coords = reduction.coords_3d
        for idx, post_id in enumerate(post_ids):
            cluster_id = int(clustering.labels[idx])
            db.add(
                PostProjection(
                    session_id=session_id,
                    post_id=post_id,
                    x=float(coords[idx, 0]),
                    y=float(coords[idx, 1]),
                    z=float(coords[idx, 2]),
                    cluster_id=cluster_id,
                    cluster_confidence=float(clustering.confidence[idx]),
                    is_outlier=cluster_id == OUTLIER_CLUSTER_ID,
                )
            )
        for cluster in clustering.clusters:
            db.add(
                OpinionCluster(
                    session_id=session_id,
                    cluster_id=cluster.cluster_id,
                    label=f"Cluster {cluster.cluster_id}",
                    keywords=keywords.get(cluster.cluster_id, []),
                    post_count=cluster.size,
                    centroid_x=cluster.centroid_3d[0],
                    centroid_y=cluster.centroid_3d[1],
                    centroid_z=cluster.centroid_3d[2],
                    coherence_score=cluster.coherence,
                )
            )
        await db.commit()

    def _cluster_documents(
        self,
        posts: Sequence[Post],
        compact: np.ndarray,
        clustering: ClusteringResult,
    ) -> list[ClusterDocument]:
        engagement = [int(post.engagement or 0) for post in posts]
        documents: list[ClusterDocument] = []
        for cluster in clustering.clusters:
            members = np.asarray(cluster.member_indices)
            center = compact[members].mean(axis=0)
            distances = np.full(len(posts), np.inf)
            distances[members] = np.linalg.norm(compact[members] - center, axis=1)
            picked = select_representatives(
                cluster.member_indices,
                centroid_distances=distances.tolist(),
                engagement=engagement,
                limit=self._settings.labeling_max_posts,
            )
            documents.append(
                ClusterDocument(
                    cluster_id=cluster.cluster_id,
                    texts=[posts[idx].text for idx in picked],
                    size=cluster.size,
                )
            )
        return documents

    async def _persist_labels(self, db, session_id: UUID, labels: Sequence[ClusterLabel]) -> None:
        result = await db.exec(select(OpinionCluster).where(OpinionCluster.session_id == session_id))
        rows = {row.cluster_id: row for row in result.scalars().all()}
        for label in labels:
            row = rows.get(label.cluster_id)
            if row is None:
                continue
            row.label = label.label
            row.keywords = list(label.keywords)
            row.reasoning = label.reasoning
            row.label_source = label.source
            row.avg_sentiment = label.sentiment
            db.add(row)
        await db.commit()


async def run_session_in_background(session_id: UUID, pipeline: Optional[OpinionPipeline] = None) -> None:
    from opinion_map.db.session import SessionLocal

    async with SessionLocal() as db:
        try:
            await (pipeline or OpinionPipeline()).run(db, session_id)
        except Exception:
            _LOGGER.exception("In-process worker crashed for session %s", session_id)
