from types import SimpleNamespace

import httpx
import pytest
from openai import APIConnectionError

from opinion_map.core.errors import ExternalServiceError
from opinion_map.services.openai_client import OpenAIService


class StubEmbeddings:
    def __init__(self, drop_last: bool = False) -> None:
        self.calls: list[dict] = []
        self.drop_last = drop_last

    async def create(self, **payload):
        self.calls.append(payload)
        inputs = payload["input"][:-1] if self.drop_last else payload["input"]
        data = [SimpleNamespace(embedding=[float(len(text)), 1.0, 0.0]) for text in inputs]
        return SimpleNamespace(data=data, model=f"{payload['model']}-2026")


class StubCompletions:
    def __init__(self, content: str) -> None:
        self.content = content
        self.calls: list[dict] = []

    async def create(self, **payload):
        self.calls.append(payload)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(embeddings=None, completions=None):
    return SimpleNamespace(
        embeddings=embeddings or StubEmbeddings(),
        chat=SimpleNamespace(completions=completions or StubCompletions("{}")),
    )


@pytest.mark.asyncio
async def test_embed_texts_chunks_large_requests():
    embeddings = StubEmbeddings()
    service = OpenAIService(client=_client(embeddings=embeddings))

    batch = await service.embed_texts([f"post {idx}" for idx in range(300)], model="text-embedding-3-small")

    assert service.is_configured
    assert [len(call["input"]) for call in embeddings.calls] == [256, 44]
    assert len(batch.vectors) == 300
    assert batch.dim == 3
    assert batch.model == "text-embedding-3-small"
    assert batch.model_revision == "text-embedding-3-small-2026"


class PrimaryDownEmbeddings(StubEmbeddings):
    async def create(self, **payload):
        if payload["model"] == "primary-model":
            self.calls.append(payload)
            raise APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/embeddings"))
        return await super().create(**payload)


@pytest.mark.asyncio
async def test_embed_texts_reports_the_fallback_model_that_served():
    embeddings = PrimaryDownEmbeddings()
    service = OpenAIService(client=_client(embeddings=embeddings), fallback_model="fallback-model")

    batch = await service.embed_texts(["tram", "rent"], model="primary-model")

    assert [call["model"] for call in embeddings.calls] == ["primary-model", "fallback-model"]
    assert batch.model == "fallback-model"
    assert batch.model_revision == "fallback-model-2026"
    assert len(batch.vectors) == 2


@pytest.mark.asyncio
async def test_embed_texts_rejects_partial_batches():
    service = OpenAIService(client=_client(embeddings=StubEmbeddings(drop_last=True)))
    with pytest.raises(ExternalServiceError):
        await service.embed_texts(["a", "b", "c"])


@pytest.mark.asyncio
async def test_unconfigured_service_raises_external_error():
    service = OpenAIService()
    assert not service.is_configured
    with pytest.raises(ExternalServiceError):
        await service.embed_texts(["a"])
    with pytest.raises(ExternalServiceError):
        await service.complete_json(system_prompt="s", prompt="p")


@pytest.mark.asyncio
async def test_complete_json_requests_json_object():
    completions = StubCompletions('{"label": "Tram Praise", "sentiment": 0.4}')
    service = OpenAIService(client=_client(completions=completions))

    content = await service.complete_json(system_prompt="system", prompt="user", max_tokens=120)

    assert content == '{"label": "Tram Praise", "sentiment": 0.4}'
    payload = completions.calls[0]
    assert payload["response_format"] == {"type": "json_object"}
    assert payload["max_tokens"] == 120
    assert payload["messages"][0] == {"role": "system", "content": "system"}
