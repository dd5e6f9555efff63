"""Opinion map endpoints.

Endpoints:
    generate(payload, ...): Start a pipeline run for a zone, or reuse the zone's active run.
    cancel(payload, ...): Cooperatively cancel a run.
    get_status(session_id, ...): Session progress, plus projections and clusters once completed.
    get_latest(zone_id, ...): Most recent session for a zone.
    get_timeline(session_id, ...): Cluster evolution series for a completed session.
    delete_session(session_id, ...): Remove a finished session and its results.

Helpers:
    _to_session_resource(record): Convert an OpinionSession row into its response schema.
    _build_results(db, record): Stitch projections and clusters onto a completed session.
"""

from __future__ import annotations

import json
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy import select
from sqlmodel.ext.asyncio.session import AsyncSession

from opinion_map.core.errors import NotFoundError, OpinionMapError, SchedulingError, ValidationError
from opinion_map.core.security import ZoneAccessPolicy, get_access_policy, get_current_user
from opinion_map.db.session import get_session
from opinion_map.models import OpinionCluster, OpinionSession, Post, PostProjection, SessionStatus, Zone
from opinion_map.schemas import (
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
)
from opinion_map.services.embeddings import EmbeddingService
from opinion_map.services.sampling import PostSampler
from opinion_map.services.scheduler import WorkerScheduler, get_scheduler
from opinion_map.services.sessions import SessionService, estimate_processing_time, load_session_config
from opinion_map.services.timeline import load_cluster_timeline


router = APIRouter(prefix="/opinion-map", tags=["opinion-map"])


def get_embedding_service() -> EmbeddingService:
    return EmbeddingService()


def get_sampler() -> PostSampler:
    return PostSampler()


def _http_error(exc: OpinionMapError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


def _to_session_resource(record: OpinionSession) -> SessionResource:
    stages: list[StageTiming] = []
    if record.timings_json:
        try:
            parsed = json.loads(record.timings_json)
        except json.JSONDecodeError:
            parsed = {}
        for stage in parsed.get("stages", []):
            try:
                stages.append(StageTiming.model_validate(stage))
            except ValueError:
                continue

    return SessionResource(
        id=record.id,
        zone_id=record.zone_id,
        status=record.status,
        progress=record.progress,
        current_phase=record.current_phase,
        phase_message=record.phase_message,
        config=load_session_config(record),
        total_posts=record.total_posts,
        vectorized_posts=record.vectorized_posts,
        cluster_count=record.cluster_count,
        outlier_count=record.outlier_count,
        created_at=record.created_at,
        updated_at=record.updated_at,
        started_at=record.started_at,
        completed_at=record.completed_at,
        execution_time_ms=record.execution_time_ms,
        error_message=record.error_message,
        error_trace=record.error_trace,
        stage_timings=stages,
    )


async def _build_results(db: AsyncSession, record: OpinionSession) -> SessionResultsResponse:
    resource = _to_session_resource(record)
    if record.status != SessionStatus.COMPLETED:
        return SessionResultsResponse(session=resource)

    projection_rows = await db.exec(
        select(PostProjection, Post)
        .join(Post, Post.id == PostProjection.post_id)
        .where(PostProjection.session_id == record.id)
        .order_by(PostProjection.cluster_id, Post.posted_at)
    )
    projections = [
        ProjectionPoint(
            post_id=post.id,
            external_id=post.external_id,
            text=post.text,
            author_username=post.author_username,
            engagement=post.engagement or 0,
            posted_at=post.posted_at,
            coords_3d=(projection.x, projection.y, projection.z),
            cluster_id=projection.cluster_id,
            cluster_confidence=projection.cluster_confidence,
            is_outlier=projection.is_outlier,
        )
        for projection, post in projection_rows.all()
    ]

    cluster_rows = await db.exec(
        select(OpinionCluster)
        .where(OpinionCluster.session_id == record.id)
        .order_by(OpinionCluster.cluster_id)
    )
    clusters = [
        ClusterResource(
            cluster_id=cluster.cluster_id,
            label=cluster.label,
            keywords=list(cluster.keywords or []),
            reasoning=cluster.reasoning,
            label_source=cluster.label_source,
            post_count=cluster.post_count,
            centroid=(cluster.centroid_x, cluster.centroid_y, cluster.centroid_z),
            avg_sentiment=cluster.avg_sentiment,
            coherence_score=cluster.coherence_score,
        )
        for cluster in cluster_rows.scalars().all()
    ]
    return SessionResultsResponse(session=resource, projections=projections, clusters=clusters)


async def _load_authorised_session(
    db: AsyncSession,
    session_id: UUID,
    policy: ZoneAccessPolicy,
    user_id: Optional[str],
) -> OpinionSession:
    try:
        record = await SessionService().get(db, session_id)
        policy.ensure_access(user_id, record.zone_id)
    except OpinionMapError as exc:
        raise _http_error(exc) from exc
    return record


@router.post("/generate", response_model=GenerateResponse)
async def generate(
    payload: GenerateRequest,
    db: AsyncSession = Depends(get_session),
    policy: ZoneAccessPolicy = Depends(get_access_policy),
    user_id: Optional[str] = Depends(get_current_user),
    scheduler: WorkerScheduler = Depends(get_scheduler),
    embeddings: EmbeddingService = Depends(get_embedding_service),
    sampler: PostSampler = Depends(get_sampler),
) -> GenerateResponse:
    sessions = SessionService()
    try:
        policy.ensure_access(user_id, payload.zone_id)
        if await db.get(Zone, payload.zone_id) is None:
            raise NotFoundError("Zone not found", zone_id=str(payload.zone_id))

        active = await sessions.get_active_for_zone(db, payload.zone_id)
        if active is not None:
            return await _reused_response(db, active, embeddings)

        sample = await sampler.sample(
            db,
            zone_id=payload.zone_id,
            start=payload.start_date,
            end=payload.end_date,
            sample_size=payload.sample_size,
        )
        stats = await embeddings.get_stats(db, sample.post_ids)
        config = SessionConfig(
            start_date=payload.start_date,
            end_date=payload.end_date,
            requested_sample_size=payload.sample_size,
            sampled_post_ids=tuple(sample.post_ids),
            actual_sample_size=sample.actual_size,
            total_available=sample.total_available,
            sampling_strategy=sample.strategy,
            bucket_count=sample.bucket_count,
        )
        outcome = await sessions.create_or_reuse(
            db, zone_id=payload.zone_id, config=config, created_by=user_id
        )
        if outcome.reused:
            return await _reused_response(db, outcome.session, embeddings)

        record = outcome.session
        try:
            await scheduler.enqueue(record.id)
        except SchedulingError:
            await sessions.discard_unscheduled(db, record.id)
            raise
    except OpinionMapError as exc:
        raise _http_error(exc) from exc

    return GenerateResponse(
        session_id=record.id,
        status=record.status,
        sampled_posts=sample.actual_size,
        total_available=sample.total_available,
        cache_hit_rate=round(stats.cache_hit_rate, 4),
        estimated_time_seconds=estimate_processing_time(sample.actual_size, stats.needs_embedding),
        reused_active_session=False,
    )


async def _reused_response(
    db: AsyncSession,
    record: OpinionSession,
    embeddings: EmbeddingService,
) -> GenerateResponse:
    config = load_session_config(record)
    stats = await embeddings.get_stats(db, config.sampled_post_ids)
    return GenerateResponse(
        session_id=record.id,
        status=record.status,
        sampled_posts=config.actual_sample_size,
        total_available=config.total_available,
        cache_hit_rate=round(stats.cache_hit_rate, 4),
        estimated_time_seconds=estimate_processing_time(
            config.actual_sample_size, stats.needs_embedding, progress=record.progress
        ),
        reused_active_session=True,
    )


@router.post("/cancel", response_model=CancelResponse)
async def cancel(
    payload: CancelRequest,
    db: AsyncSession = Depends(get_session),
    policy: ZoneAccessPolicy = Depends(get_access_policy),
    user_id: Optional[str] = Depends(get_current_user),
) -> CancelResponse:
    await _load_authorised_session(db, payload.session_id, policy, user_id)
    try:
        record, changed = await SessionService().cancel(db, payload.session_id)
    except OpinionMapError as exc:
        raise _http_error(exc) from exc

    message = "Cancellation requested" if changed else f"Session already {record.status}"
    return CancelResponse(success=changed, session_id=record.id, status=record.status, message=message)


@router.get("/status", response_model=SessionResultsResponse)
async def get_status(
    session_id: UUID = Query(...),
    db: AsyncSession = Depends(get_session),
    policy: ZoneAccessPolicy = Depends(get_access_policy),
    user_id: Optional[str] = Depends(get_current_user),
) -> SessionResultsResponse:
    record = await _load_authorised_session(db, session_id, policy, user_id)
    return await _build_results(db, record)


@router.get("/latest", response_model=SessionResultsResponse)
async def get_latest(
    zone_id: UUID = Query(...),
    completed_only: bool = Query(False),
    db: AsyncSession = Depends(get_session),
    policy: ZoneAccessPolicy = Depends(get_access_policy),
    user_id: Optional[str] = Depends(get_current_user),
) -> SessionResultsResponse:
    try:
        policy.ensure_access(user_id, zone_id)
    except OpinionMapError as exc:
        raise _http_error(exc) from exc

    record = await SessionService().latest_for_zone(
        db, zone_id, statuses=[SessionStatus.COMPLETED] if completed_only else None
    )
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No session found for zone")
    return await _build_results(db, record)


@router.get("/sessions/{session_id}/timeline", response_model=TimelineResponse)
async def get_timeline(
    session_id: UUID,
    db: AsyncSession = Depends(get_session),
    policy: ZoneAccessPolicy = Depends(get_access_policy),
    user_id: Optional[str] = Depends(get_current_user),
) -> TimelineResponse:
    record = await _load_authorised_session(db, session_id, policy, user_id)
    if record.status != SessionStatus.COMPLETED:
        raise _http_error(
            ValidationError("Session has not completed", session_id=str(session_id), status=record.status)
        )
    return await load_cluster_timeline(db, record)


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(
    session_id: UUID,
    db: AsyncSession = Depends(get_session),
    policy: ZoneAccessPolicy = Depends(get_access_policy),
    user_id: Optional[str] = Depends(get_current_user),
) -> Response:
    await _load_authorised_session(db, session_id, policy, user_id)
    try:
        await SessionService().delete_session(db, session_id)
    except OpinionMapError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
