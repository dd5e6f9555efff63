"""Worker scheduling backends.

Classes:
    WorkerScheduler: Protocol for anything that can enqueue a worker run.
    QStashScheduler: Publishes the worker callback through the QStash HTTP API.
    LocalScheduler: Runs the worker as an in-process asyncio task.

Functions:
    get_scheduler(): FastAPI dependency returning the configured backend.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol
from uuid import UUID

import httpx

from opinion_map.core.config import get_settings
from opinion_map.core.errors import SchedulingError

_LOGGER = logging.getLogger(__name__)

WorkerRunner = Callable[[UUID], Awaitable[object]]


class WorkerScheduler(Protocol):
    async def enqueue(self, session_id: UUID) -> Optional[str]: ...


class QStashScheduler:
    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        worker_url: str,
        retries: int = 3,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._worker_url = worker_url
        self._retries = retries
        self._timeout = timeout
        self._client = client

    async def _post(self, client: httpx.AsyncClient, session_id: UUID) -> httpx.Response:
        return await client.post(
            f"{self._base_url}/v2/publish/{self._worker_url}",
            headers={
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
                "Upstash-Retries": str(self._retries),
            },
            json={"session_id": str(session_id)},
        )

    async def enqueue(self, session_id: UUID) -> Optional[str]:
        try:
            if self._client is not None:
                response = await self._post(self._client, session_id)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await self._post(client, session_id)
        except httpx.HTTPError as exc:
            raise SchedulingError(
                "Failed to reach the job scheduler",
                session_id=str(session_id),
                reason=str(exc),
            ) from exc

        if response.status_code >= 300:
            raise SchedulingError(
                "Job scheduler rejected the worker request",
                session_id=str(session_id),
                status=response.status_code,
                body=response.text[:200],
            )

        message_id = None
        try:
            message_id = response.json().get("messageId")
        except ValueError:
            _LOGGER.debug("Scheduler answered without a JSON body")
        _LOGGER.info("Enqueued worker for session %s (message %s)", session_id, message_id)
        return message_id


class LocalScheduler:
    """Development backend: the worker runs in this process right after the request."""

    def __init__(self, runner: Optional[WorkerRunner] = None) -> None:
        self._runner = runner
        self._tasks: set[asyncio.Task] = set()

    async def enqueue(self, session_id: UUID) -> Optional[str]:
        runner = self._runner
        if runner is None:
            from opinion_map.services.pipeline import run_session_in_background

            runner = run_session_in_background
        task = asyncio.create_task(runner(session_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        _LOGGER.info("Started in-process worker for session %s", session_id)
        return f"local-{session_id}"


_LOCAL_SCHEDULER: Optional[LocalScheduler] = None


def get_scheduler() -> WorkerScheduler:
    global _LOCAL_SCHEDULER
    settings = get_settings()
    if settings.scheduler_backend == "qstash":
        if settings.qstash_token is None:
            raise SchedulingError("QSTASH_TOKEN is not configured")
        return QStashScheduler(
            base_url=settings.qstash_url,
            token=settings.qstash_token.get_secret_value(),
            worker_url=settings.worker_url,
            retries=settings.qstash_retries,
        )
    if _LOCAL_SCHEDULER is None:
        _LOCAL_SCHEDULER = LocalScheduler()
    return _LOCAL_SCHEDULER
