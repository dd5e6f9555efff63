"""Token budget helpers for embedding inputs."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

import tiktoken

_DEFAULT_ENCODING = "cl100k_base"


@lru_cache(maxsize=64)
def _encoding_for_model(model: Optional[str]) -> tiktoken.Encoding:
    if not model:
        return tiktoken.get_encoding(_DEFAULT_ENCODING)
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding(_DEFAULT_ENCODING)


def truncate_to_tokens(text: str, max_tokens: int, model: Optional[str] = None) -> str:
    """Cut *text* down to at most *max_tokens* tokens."""

    if not text or max_tokens <= 0:
        return ""
    encoding = _encoding_for_model(model)
    tokens = encoding.encode(text)
    if len(tokens) <= max_tokens:
        return text
    return encoding.decode(tokens[:max_tokens])
