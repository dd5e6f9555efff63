"""Text normalisation and post enrichment helpers."""

from __future__ import annotations

import re
import unicodedata
from typing import Iterable, Optional

from opinion_map.utils.tokenization import truncate_to_tokens

_WHITESPACE_RE = re.compile(r"\s+")


def collapse_whitespace(text: str) -> str:
    """Collapse consecutive whitespace characters into single spaces."""

    if not text:
        return ""
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalise_text(text: str) -> str:
    collapsed = collapse_whitespace(text or "")
    return unicodedata.normalize("NFKC", collapsed)


def enrich_post_content(
    text: str,
    *,
    author_name: Optional[str] = None,
    author_username: Optional[str] = None,
    hashtags: Optional[Iterable[str]] = None,
    max_tokens: int | None = None,
) -> str:
    """Combine post text, author, and hashtags into the string sent for embedding.

    The author line and hashtags give the embedding thematic anchors that short
    posts often lack on their own.
    """

    parts: list[str] = []
    body = normalise_text(text)
    if body:
        parts.append(body)

    author_bits: list[str] = []
    if author_name:
        author_bits.append(author_name.strip())
    if author_username:
        author_bits.append(f"(@{author_username.strip().lstrip('@')})")
    if author_bits:
        parts.append("Author: " + " ".join(author_bits))

    tags = [tag.strip().lstrip("#") for tag in (hashtags or []) if tag and tag.strip()]
    if tags:
        parts.append("Hashtags: " + " ".join(f"#{tag}" for tag in tags))

    enriched = "\n".join(parts)
    # a token always spans at least one byte, so short posts skip the tokenizer
    if max_tokens and len(enriched.encode("utf-8")) > max_tokens:
        enriched = truncate_to_tokens(enriched, max_tokens)
    return enriched
