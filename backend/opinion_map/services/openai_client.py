"""Async OpenAI client wrapper and related value objects.

Classes:
    EmbeddingBatch: Collected embedding vectors plus metadata returned from the embeddings API.
    OpenAIService: Handles embeddings and JSON chat completions with retry semantics.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional

from openai import AsyncOpenAI, OpenAIError
from tenacity import RetryError, retry, stop_after_attempt, wait_exponential

from opinion_map.core.config import get_settings
from opinion_map.core.errors import ExternalServiceError

_EMBED_BATCH_MAX = 256


@dataclass(slots=True)
class EmbeddingBatch:
    vectors: list[list[float]]
    model: str
    dim: int
    model_revision: str | None = None
    provider: str = "openai"


class OpenAIService:
    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        *,
        fallback_model: Optional[str] = None,
    ) -> None:
        settings = get_settings()
        api_key = settings.openai_api_key.get_secret_value() if settings.openai_api_key else None
        if client is not None:
            self._client = client
        elif api_key:
            self._client = AsyncOpenAI(api_key=api_key, timeout=settings.openai_timeout_seconds)
        else:
            self._client = None
        self._settings = settings
        self._fallback_model = fallback_model or settings.openai_embedding_fallback_model

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    async def embed_texts(
        self,
        texts: Iterable[str],
        *,
        model: Optional[str] = None,
    ) -> EmbeddingBatch:
        docs = list(texts)
        if self._client is None:
            raise ExternalServiceError("OpenAI client not configured. Set OPENAI_API_KEY.")

        chosen_model = model or self._settings.openai_embedding_model
        if not docs:
            return EmbeddingBatch(vectors=[], model=chosen_model, dim=0)

        vectors: list[list[float]] = []
        dim = 0
        model_revision: str | None = None
        served_model: str | None = None

        for start in range(0, len(docs), _EMBED_BATCH_MAX):
            chunk = docs[start : start + _EMBED_BATCH_MAX]
            payload = dict(model=chosen_model, input=chunk)
            try:
                response, chunk_model = await _retry_embeddings(self._client, payload, self._fallback_model)
            except (RetryError, OpenAIError) as exc:
                raise ExternalServiceError(
                    "Embedding provider request failed",
                    provider="openai",
                    model=chosen_model,
                    reason=_describe(exc),
                ) from exc

            chunk_vectors = [item.embedding for item in response.data]
            if len(chunk_vectors) != len(chunk):
                raise ExternalServiceError(
                    "Embedding provider returned a partial batch",
                    expected=len(chunk),
                    received=len(chunk_vectors),
                )
            if served_model is not None and chunk_model != served_model:
                raise ExternalServiceError(
                    "Embedding provider mixed models within one request",
                    models=[served_model, chunk_model],
                )
            served_model = chunk_model
            vectors.extend(chunk_vectors)
            if not dim and chunk_vectors:
                dim = len(chunk_vectors[0])
            response_model = getattr(response, "model", None)
            if response_model:
                model_revision = response_model

        return EmbeddingBatch(
            vectors=vectors,
            model=served_model or chosen_model,
            dim=dim,
            model_revision=model_revision,
            provider="openai",
        )

    async def complete_json(
        self,
        *,
        system_prompt: str,
        prompt: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Return the raw text of a single chat completion that was asked to answer in JSON."""

        if self._client is None:
            raise ExternalServiceError("OpenAI client not configured. Set OPENAI_API_KEY.")

        payload: dict[str, Any] = dict(
            model=model or self._settings.openai_labeling_model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            temperature=temperature if temperature is not None else self._settings.labeling_temperature,
            response_format={"type": "json_object"},
            n=1,
        )
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        try:
            response = await _retry_chat(self._client, payload)
        except (RetryError, OpenAIError) as exc:
            raise ExternalServiceError(
                "Labeling provider request failed",
                provider="openai",
                model=payload["model"],
                reason=_describe(exc),
            ) from exc

        return getattr(response.choices[0].message, "content", "") or ""


def _describe(exc: BaseException) -> str:
    if isinstance(exc, RetryError):
        last = exc.last_attempt.exception()
        if last is not None:
            return str(last)
    return str(exc)


@retry(wait=wait_exponential(multiplier=1, min=1, max=20), stop=stop_after_attempt(5))
async def _retry_chat(client: AsyncOpenAI, payload: dict[str, Any]):
    return await client.chat.completions.create(**payload)


@retry(wait=wait_exponential(multiplier=1, min=1, max=20), stop=stop_after_attempt(5))
async def _retry_embeddings(
    client: AsyncOpenAI,
    payload: dict[str, Any],
    fallback_model: Optional[str] = None,
) -> tuple[Any, str]:
    """Return the response and the model that actually produced it."""

    try:
        return await client.embeddings.create(**payload), payload["model"]
    except OpenAIError:
        if not fallback_model or fallback_model == payload["model"]:
            raise
        response = await client.embeddings.create(**{**payload, "model": fallback_model})
        return response, fallback_model
